"""Configuration management for farmledger.

Every numeric knob the engine consumes lives here with its documented default.
The engine never reads globals: a FinanceConfig is built once per game session
and passed to the service, which hands it to the pure functions that need it.
"""

import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from typing import Any, Dict, Mapping

from .core import ConfigurationError, DEFAULT_CURRENCY, to_decimal

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("standard", "json")


@dataclass(frozen=True)
class FinanceConfig:
    """Engine configuration (read-only to the core)."""

    # Pricing
    base_interest_rate: Decimal = Decimal("0.08")
    lease_markup_percent: Decimal = Decimal("15")
    repair_cost_multiplier: Decimal = Decimal("1.0")
    min_down_payment_percent: Decimal = Decimal("0")
    prepayment_penalty_rate: Decimal = Decimal("0.02")
    late_term_prepayment_penalty_rate: Decimal = Decimal("0.01")

    # Default handling
    missed_payments_to_default: int = 3
    late_payment_penalty: int = 15

    # Credit
    enable_credit_system: bool = True
    starting_credit_score: int = 650
    finance_min_score: int = 550
    lease_min_score: int = 600
    cash_loan_min_score: int = 550

    # Collateral
    vehicle_haircut: Decimal = Decimal("0.50")
    land_haircut: Decimal = Decimal("0.60")
    existing_debt_weight: Decimal = Decimal("1.5")
    loan_granularity: Decimal = Decimal("1000")

    # Savings interest on positive farm balances
    enable_bank_interest: bool = True
    bank_interest_rate: Decimal = Decimal("0.01")

    # Session
    currency: str = DEFAULT_CURRENCY
    bank_capital: Decimal = Decimal("1000000000")
    offer_validity_days: int = 7
    log_level: str = "INFO"
    log_format: str = "standard"

    def __post_init__(self):
        for f in fields(self):
            if f.type in ("Decimal", Decimal):
                value = getattr(self, f.name)
                if not isinstance(value, Decimal):
                    object.__setattr__(self, f.name, to_decimal(value))
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError if any knob is out of range."""
        if self.base_interest_rate < 0 or self.base_interest_rate > 1:
            raise ConfigurationError(f"base_interest_rate must be in [0, 1], got {self.base_interest_rate}")
        if self.missed_payments_to_default < 1:
            raise ConfigurationError("missed_payments_to_default must be at least 1")
        if not 300 <= self.starting_credit_score <= 850:
            raise ConfigurationError(f"starting_credit_score must be in [300, 850], got {self.starting_credit_score}")
        if not 0 <= self.min_down_payment_percent <= 50:
            raise ConfigurationError("min_down_payment_percent must be in [0, 50]")
        if self.lease_min_score <= self.finance_min_score:
            raise ConfigurationError("lease_min_score must be strictly above finance_min_score")
        for name in ("vehicle_haircut", "land_haircut"):
            value = getattr(self, name)
            if value <= 0 or value > 1:
                raise ConfigurationError(f"{name} must be in (0, 1], got {value}")
        if self.loan_granularity <= 0:
            raise ConfigurationError("loan_granularity must be positive")
        if self.bank_interest_rate < 0:
            raise ConfigurationError("bank_interest_rate cannot be negative")
        if self.offer_validity_days < 0:
            raise ConfigurationError("offer_validity_days cannot be negative")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")

    def with_overrides(self, **overrides: Any) -> "FinanceConfig":
        """Return a copy with the given fields replaced."""
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown config fields: {sorted(unknown)}")
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dict (Decimals as strings)."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = str(value) if isinstance(value, Decimal) else value
        return out

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FinanceConfig":
        """Build from a plain mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_preset(cls, name: str) -> "FinanceConfig":
        """Build one of the named presets (realistic, casual, hardcore)."""
        try:
            overrides = PRESETS[name.lower()]
        except KeyError:
            raise ConfigurationError(
                f"Unknown preset '{name}', expected one of {sorted(PRESETS)}"
            ) from None
        return cls(**overrides)

    @classmethod
    def from_env(cls, prefix: str = "FARMLEDGER_") -> "FinanceConfig":
        """Create config from environment variables.

        FARMLEDGER_PRESET selects the starting preset; any other
        FARMLEDGER_<FIELD> overrides that field.
        """
        preset = os.environ.get(f"{prefix}PRESET")
        base = cls.from_preset(preset) if preset else cls()

        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            overrides[f.name] = _parse_env_value(f.type, raw)
        return base.with_overrides(**overrides) if overrides else base


def _parse_env_value(type_name: Any, raw: str) -> Any:
    if type_name in ("bool", bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if type_name in ("int", int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"expected an integer, got {raw!r}") from None
    if type_name in ("Decimal", Decimal):
        return to_decimal(raw)
    return raw


PRESETS: Dict[str, Dict[str, Any]] = {
    "realistic": {},
    "casual": {
        "enable_credit_system": False,
        "base_interest_rate": Decimal("0.05"),
        "missed_payments_to_default": 6,
        "late_payment_penalty": 5,
        "repair_cost_multiplier": Decimal("0.5"),
    },
    "hardcore": {
        "base_interest_rate": Decimal("0.12"),
        "missed_payments_to_default": 2,
        "min_down_payment_percent": Decimal("20"),
        "late_payment_penalty": 25,
        "starting_credit_score": 550,
        "repair_cost_multiplier": Decimal("1.5"),
        "enable_bank_interest": False,
    },
}


DEFAULT_CONFIG = FinanceConfig()
