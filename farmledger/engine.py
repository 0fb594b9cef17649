"""
engine.py - Lifecycle Engine

Runs the monthly simulation tick by polling smart contracts.

Execution order each step():
1. Advance ledger time
2. Poll the contract registered for each unit's type, in sorted symbol order
3. Repeat until no contract produces a transaction (catch-up across missed
   billing cycles, one cycle per deal per pass), at most max_passes times

The transaction log is the audit trail - no separate event status tracking needed.
"""

from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional

from .core import (
    PendingTransaction, Transaction,
    ExecuteResult, LedgerError,
    SmartContract,
)
from .ledger import Ledger
from .logging import get_logger


logger = get_logger(__name__)


class LifecycleEngine:
    """
    Smart contract polling engine.

    Features:
    - Deterministic polling order (sorted unit symbols)
    - Cascading passes until stable
    - Full audit trail via the ledger's transaction log
    """

    def __init__(
        self,
        ledger: Ledger,
        contracts: Optional[Dict[str, SmartContract]] = None,
        max_passes: int = 10,
    ):
        """
        Initialize lifecycle engine.

        Args:
            ledger: The ledger to operate on
            contracts: Smart contracts for polling (unit_type -> contract)
            max_passes: Safety limit for cascading passes per step
        """
        self.ledger = ledger
        self.contracts: Dict[str, SmartContract] = contracts or {}
        self.max_passes = max_passes

    def register(self, unit_type: str, contract: SmartContract) -> None:
        """
        Register a smart contract for a unit type.

        Args:
            unit_type: Type of unit (e.g., "FINANCE_DEAL")
            contract: SmartContract implementation (callable or object with check_lifecycle)
        """
        self.contracts[unit_type] = contract

    def step(self, timestamp: datetime) -> List[Transaction]:
        """
        Advance time and execute everything that has come due.

        Returns:
            List of executed transactions

        Raises:
            LedgerError: If the ledger rejects a contract's transaction
        """
        self.ledger.advance_time(timestamp)
        executed: List[Transaction] = []

        for pass_num in range(self.max_passes):
            pass_executed = self._process_smart_contracts(timestamp)
            executed.extend(pass_executed)
            if not pass_executed:
                break
        else:
            logger.warning("step %s stopped after %d passes", timestamp, self.max_passes)

        return executed

    def _process_smart_contracts(self, timestamp: datetime) -> List[Transaction]:
        """Run smart contract polling for event discovery."""
        executed: List[Transaction] = []

        # Sort units for deterministic iteration order
        for symbol in self.ledger.list_units():
            unit = self.ledger.get_unit(symbol)
            contract = self.contracts.get(unit.unit_type)

            if not contract:
                continue

            # Support both callables and objects with check_lifecycle method
            if hasattr(contract, 'check_lifecycle'):
                pending = contract.check_lifecycle(self.ledger, symbol, timestamp)
            else:
                pending = contract(self.ledger, symbol, timestamp)

            if not isinstance(pending, PendingTransaction):
                raise LedgerError(
                    f"Contract for {symbol} must return PendingTransaction, got {type(pending)}"
                )

            if pending.is_empty():
                continue

            exec_result = self.ledger.execute(pending)

            if exec_result == ExecuteResult.REJECTED:
                raise LedgerError(
                    f"Lifecycle event failed for {symbol}: {self.ledger.last_rejection}"
                )

            if exec_result == ExecuteResult.APPLIED and self.ledger.transaction_log:
                executed.append(self.ledger.transaction_log[-1])

        return executed

    def run(self, timestamps: List[datetime]) -> List[Transaction]:
        """Run the engine through a sequence of timestamps."""
        all_transactions: List[Transaction] = []
        for timestamp in timestamps:
            all_transactions.extend(self.step(timestamp))
        return all_transactions
