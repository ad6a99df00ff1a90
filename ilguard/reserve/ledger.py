"""
Reserve Ledger.

Per-pool balance tracker. The only mutation paths are:

    credit(pool, amount)        premium collection
    debit(pool, amount, claim)  settlement payouts (strict)
    debit_up_to(...)            settlement payouts (graceful partial)

All mutations for all pools are linearized by one lock, and every mutation
re-asserts  balance == total_collected − total_paid  and  balance ≥ 0.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ilguard.core.exceptions import InsufficientReserve
from ilguard.core.models import require_uint
from ilguard.reserve.journal import (
    ENTRY_CREDIT,
    ENTRY_DEBIT,
    ReserveJournal,
    require_valid_journal,
)

logger = logging.getLogger(__name__)


@dataclass
class ReserveAccount:
    pool_ref:         str
    balance:          int = 0
    total_collected:  int = 0
    total_paid:       int = 0

    def check_invariants(self) -> None:
        assert self.balance == self.total_collected - self.total_paid, (
            f"reserve {self.pool_ref}: balance {self.balance} != "
            f"{self.total_collected} - {self.total_paid}"
        )
        assert self.balance >= 0, f"reserve {self.pool_ref}: negative balance"

    def snapshot(self) -> "ReserveAccount":
        return ReserveAccount(
            self.pool_ref, self.balance, self.total_collected, self.total_paid
        )


class ReserveLedger:
    """Single-writer reserve accounting, optionally journaled."""

    def __init__(self, journal: Optional[ReserveJournal] = None) -> None:
        self._lock     = threading.Lock()
        self._accounts: Dict[str, ReserveAccount] = {}
        self._journal  = journal

    # ── Reads ─────────────────────────────────────────────────

    def account(self, pool_ref: str) -> ReserveAccount:
        """Copy of the pool's account (zeroed if the pool is unknown)."""
        with self._lock:
            acct = self._accounts.get(pool_ref)
            return acct.snapshot() if acct else ReserveAccount(pool_ref)

    def balance(self, pool_ref: str) -> int:
        return self.account(pool_ref).balance

    def is_solvent(self, pool_ref: str, amount: int) -> bool:
        """True if the pool can fund `amount` in full."""
        return self.balance(pool_ref) >= amount

    def pools(self) -> List[str]:
        with self._lock:
            return sorted(self._accounts)

    # ── Mutations ─────────────────────────────────────────────

    def credit(self, pool_ref: str, amount: int) -> ReserveAccount:
        """Add premium to a pool's reserve."""
        require_uint(amount, "amount")
        with self._lock:
            acct = self._accounts.setdefault(pool_ref, ReserveAccount(pool_ref))
            self._journal_append(ENTRY_CREDIT, pool_ref, amount, None)
            acct.balance         += amount
            acct.total_collected += amount
            acct.check_invariants()
            logger.info("Reserve credit pool=%s amount=%d balance=%d",
                        pool_ref, amount, acct.balance)
            return acct.snapshot()

    def debit(self, pool_ref: str, amount: int, claim_id: Optional[str] = None) -> ReserveAccount:
        """Debit exactly `amount`; raises InsufficientReserve otherwise."""
        require_uint(amount, "amount")
        with self._lock:
            acct = self._accounts.setdefault(pool_ref, ReserveAccount(pool_ref))
            if amount > acct.balance:
                raise InsufficientReserve(
                    "Reserve cannot fund debit",
                    {"pool": pool_ref, "amount": amount, "balance": acct.balance},
                )
            self._apply_debit(acct, amount, claim_id)
            return acct.snapshot()

    def debit_up_to(self, pool_ref: str, amount: int, claim_id: Optional[str] = None) -> int:
        """
        Debit min(amount, balance) in one atomic step.
        Returns the amount actually debited.
        """
        require_uint(amount, "amount")
        with self._lock:
            acct = self._accounts.setdefault(pool_ref, ReserveAccount(pool_ref))
            paid = min(amount, acct.balance)
            self._apply_debit(acct, paid, claim_id)
            return paid

    # ── Internal ──────────────────────────────────────────────

    def _apply_debit(self, acct: ReserveAccount, amount: int, claim_id: Optional[str]) -> None:
        self._journal_append(ENTRY_DEBIT, acct.pool_ref, amount, claim_id)
        acct.balance    -= amount
        acct.total_paid += amount
        acct.check_invariants()
        logger.info("Reserve debit pool=%s amount=%d claim=%s balance=%d",
                    acct.pool_ref, amount, claim_id, acct.balance)

    def _journal_append(self, entry_type: str, pool_ref: str, amount: int,
                        claim_id: Optional[str]) -> None:
        # Journal first: in-memory state only advances after a durable write.
        if self._journal is not None:
            self._journal.append(entry_type, pool_ref, amount, claim_id)

    # ── Restore ───────────────────────────────────────────────

    @classmethod
    def from_journal(cls, journal: ReserveJournal) -> "ReserveLedger":
        """
        Rebuild balances by replaying an existing journal file.

        The file is verified first; a broken chain, sequence gap, bad
        signature or negative balance raises JournalError.
        """
        ledger = cls(journal=journal)
        if not Path(journal.path).exists():
            return ledger
        summary = require_valid_journal(journal.path)
        for pool_ref, balance in summary.balances.items():
            acct = ReserveAccount(
                pool_ref,
                balance,
                summary.total_collected.get(pool_ref, 0),
                summary.total_paid.get(pool_ref, 0),
            )
            acct.check_invariants()
            ledger._accounts[pool_ref] = acct
        return ledger
