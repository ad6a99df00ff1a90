"""
ILGuard Reserve - per-pool funds available to pay claims.
"""

from ilguard.reserve.journal import (
    GENESIS_HASH,
    JournalEntry,
    JournalSummary,
    ReserveJournal,
    verify_journal,
)
from ilguard.reserve.ledger import ReserveAccount, ReserveLedger

__all__ = [
    "GENESIS_HASH",
    "JournalEntry",
    "JournalSummary",
    "ReserveAccount",
    "ReserveJournal",
    "ReserveLedger",
    "verify_journal",
]
