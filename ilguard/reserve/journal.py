"""
ilguard/reserve/journal.py

Reserve Journal: append-only audit trail of reserve credits and debits.

Every entry is hash-chained to its predecessor and Ed25519-signed by the
journal key:

    causal_hash  = SHA-256(JCS(prev.to_signing_dict()))   first entry → GENESIS_HASH
    signature    = Ed25519(JCS(entry.to_signing_dict()))

append() MUST, in this order:
  1. Acquire lock
  2. Build the entry via JournalEntry.create() (chained to the last entry)
  3. Sign
  4. Write one JSON line
  5. Advance sequence / last entry, only after the write succeeded

A journal can be replayed into per-pool balances (ReserveLedger.from_journal)
and verified offline (verify_journal, `ilguard verify`).
"""

import json
import hashlib
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ilguard.core.canonical import canonicalize
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.exceptions import JournalError
from ilguard.core.time import iso_timestamp

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

ENTRY_CREDIT = "credit"
ENTRY_DEBIT  = "debit"
_ENTRY_TYPES = {ENTRY_CREDIT, ENTRY_DEBIT}


@dataclass
class JournalEntry:
    entry_id:           str
    entry_type:         str
    pool_ref:           str
    amount:             int
    claim_id:           Optional[str]
    sequence:           int
    nonce:              str
    timestamp:          str
    causal_hash:        str
    signer_public_key:  str
    signature:          Optional[str] = None

    @classmethod
    def create(
        cls,
        entry_type:         str,
        pool_ref:           str,
        amount:             int,
        signer_public_key:  str,
        sequence:           int,
        prev:               Optional["JournalEntry"] = None,
        claim_id:           Optional[str] = None,
    ) -> "JournalEntry":
        if entry_type not in _ENTRY_TYPES:
            raise ValueError(
                f"Invalid entry_type '{entry_type}'. Valid: {sorted(_ENTRY_TYPES)}"
            )
        if not isinstance(amount, int) or amount < 0:
            raise ValueError(f"amount must be non-negative int, got {amount!r}")
        return cls(
            entry_id=          f"rsv-{uuid.uuid4()}",
            entry_type=        entry_type,
            pool_ref=          pool_ref,
            amount=            amount,
            claim_id=          claim_id,
            sequence=          sequence,
            nonce=             secrets.token_hex(16),
            timestamp=         iso_timestamp(),
            causal_hash=       cls.chain_hash(prev),
            signer_public_key= signer_public_key,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JournalEntry":
        return cls(
            entry_id=          data["entry_id"],
            entry_type=        data["entry_type"],
            pool_ref=          data["pool_ref"],
            amount=            int(data["amount"]),
            claim_id=          data.get("claim_id"),
            sequence=          data["sequence"],
            nonce=             data["nonce"],
            timestamp=         data["timestamp"],
            causal_hash=       data["causal_hash"],
            signer_public_key= data["signer_public_key"],
            signature=         data.get("signature"),
        )

    def to_signing_dict(self) -> Dict[str, Any]:
        """Everything except the signature. Also the chain surface."""
        return {
            "amount":            str(self.amount),
            "causal_hash":       self.causal_hash,
            "claim_id":          self.claim_id,
            "entry_id":          self.entry_id,
            "entry_type":        self.entry_type,
            "nonce":             self.nonce,
            "pool_ref":          self.pool_ref,
            "sequence":          self.sequence,
            "signer_public_key": self.signer_public_key,
            "timestamp":         self.timestamp,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_signing_dict().copy()
        d["signature"] = self.signature
        return d

    @staticmethod
    def chain_hash(prev: Optional["JournalEntry"]) -> str:
        if prev is None:
            return GENESIS_HASH
        return hashlib.sha256(canonicalize(prev.to_signing_dict())).hexdigest()

    def sign(self, key_manager: Ed25519KeyManager) -> "JournalEntry":
        self.signature = key_manager.sign(canonicalize(self.to_signing_dict()))
        return self

    def verify_signature(self) -> bool:
        if not self.signature:
            return False
        return Ed25519KeyManager.verify_detached(
            canonicalize(self.to_signing_dict()),
            self.signature,
            self.signer_public_key,
        )

    def verify_chain(self, prev: Optional["JournalEntry"]) -> bool:
        return self.causal_hash == JournalEntry.chain_hash(prev)

    @property
    def signed_amount(self) -> int:
        """Credits add to the pool balance, debits subtract."""
        return self.amount if self.entry_type == ENTRY_CREDIT else -self.amount


class ReserveJournal:
    """
    Signed, hash-chained JSONL journal.

    Thread-safe via internal lock (single-process only).
    State survives restart by replaying the file on __init__.
    """

    def __init__(self, path: Path, key_manager: Ed25519KeyManager) -> None:
        self.path        = Path(path)
        self.key_manager = key_manager

        self._lock:     threading.Lock         = threading.Lock()
        self._sequence: int                    = 0
        self._last:     Optional[JournalEntry] = None

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._restore_state()

    # ── Public API ────────────────────────────────────────────

    def append(
        self,
        entry_type: str,
        pool_ref:   str,
        amount:     int,
        claim_id:   Optional[str] = None,
    ) -> JournalEntry:
        """Sign and persist one entry. Raises JournalError on write failure."""
        with self._lock:
            entry = JournalEntry.create(
                entry_type=        entry_type,
                pool_ref=          pool_ref,
                amount=            amount,
                signer_public_key= self.key_manager.public_key_hex,
                sequence=          self._sequence,
                prev=              self._last,
                claim_id=          claim_id,
            ).sign(self.key_manager)

            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry.to_dict()) + "\n")
            except OSError as exc:
                raise JournalError(
                    "Reserve journal write failed",
                    {"path": str(self.path), "error": exc},
                ) from exc

            self._sequence += 1
            self._last      = entry
            return entry

    def entries(self) -> List[JournalEntry]:
        return list(iter_journal(self.path))

    @property
    def next_sequence(self) -> int:
        return self._sequence

    # ── Internal ──────────────────────────────────────────────

    def _restore_state(self) -> None:
        if not self.path.exists():
            return
        require_valid_journal(self.path)
        last = None
        for entry in iter_journal(self.path):
            last = entry
        if last is not None:
            self._sequence = last.sequence + 1
            self._last     = last
            logger.info(
                "Reserve journal restored at sequence %d from %s",
                self._sequence, self.path,
            )


def iter_journal(path: Path) -> Iterator[JournalEntry]:
    """Yield entries from a journal file. Raises JournalError on bad lines."""
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield JournalEntry.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                raise JournalError(
                    f"Invalid journal entry at line {line_num}",
                    {"path": str(path), "error": exc},
                ) from exc


# ─────────────────────────────────────────────────────────────
# Offline verification
# ─────────────────────────────────────────────────────────────

@dataclass
class JournalViolation:
    at_sequence:     int
    entry_id:        str
    violation_type:  str   # "chain_break" | "invalid_signature" | "sequence_gap" | "negative_balance"
    detail:          str


@dataclass
class JournalSummary:
    total_entries:       int
    chain_valid:         bool
    valid_signatures:    int
    invalid_signatures:  int
    balances:            Dict[str, int] = field(default_factory=dict)
    total_collected:     Dict[str, int] = field(default_factory=dict)
    total_paid:          Dict[str, int] = field(default_factory=dict)
    violations:          List[JournalViolation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.chain_valid and self.invalid_signatures == 0 and not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_entries":      self.total_entries,
            "chain_valid":        self.chain_valid,
            "valid_signatures":   self.valid_signatures,
            "invalid_signatures": self.invalid_signatures,
            "balances":           {k: str(v) for k, v in self.balances.items()},
            "total_collected":    {k: str(v) for k, v in self.total_collected.items()},
            "total_paid":         {k: str(v) for k, v in self.total_paid.items()},
            "violations":         [v.__dict__ for v in self.violations],
            "valid":              self.is_valid,
        }


def verify_journal(path: Path, trusted_public_key: Optional[str] = None) -> JournalSummary:
    """
    Verify chain linkage, sequence, signatures and non-negative balances.

    trusted_public_key pins the signer; otherwise each entry's embedded key
    is used (integrity only, not authorship).
    """
    entries = list(iter_journal(path))
    summary = JournalSummary(
        total_entries=      len(entries),
        chain_valid=        True,
        valid_signatures=   0,
        invalid_signatures= 0,
    )

    prev = None
    for i, entry in enumerate(entries):
        if entry.sequence != i:
            summary.chain_valid = False
            summary.violations.append(JournalViolation(
                i, entry.entry_id, "sequence_gap",
                f"expected sequence {i}, got {entry.sequence}",
            ))
        if not entry.verify_chain(prev):
            summary.chain_valid = False
            summary.violations.append(JournalViolation(
                entry.sequence, entry.entry_id, "chain_break",
                f"causal_hash ...{entry.causal_hash[-12:]} does not match predecessor",
            ))

        signer_ok = (
            trusted_public_key is None
            or entry.signer_public_key == trusted_public_key
        )
        if signer_ok and entry.verify_signature():
            summary.valid_signatures += 1
        else:
            summary.invalid_signatures += 1
            summary.violations.append(JournalViolation(
                entry.sequence, entry.entry_id, "invalid_signature",
                "signature does not verify" if signer_ok else "untrusted signer",
            ))

        pool = entry.pool_ref
        summary.balances[pool] = summary.balances.get(pool, 0) + entry.signed_amount
        if entry.entry_type == ENTRY_CREDIT:
            summary.total_collected[pool] = summary.total_collected.get(pool, 0) + entry.amount
        else:
            summary.total_paid[pool] = summary.total_paid.get(pool, 0) + entry.amount
        if summary.balances[pool] < 0:
            summary.violations.append(JournalViolation(
                entry.sequence, entry.entry_id, "negative_balance",
                f"pool {pool} balance {summary.balances[pool]}",
            ))

        prev = entry

    return summary


def require_valid_journal(path: Path, trusted_public_key: Optional[str] = None) -> JournalSummary:
    """verify_journal, raising JournalError on the first violation."""
    summary = verify_journal(path, trusted_public_key)
    if not summary.is_valid:
        first = summary.violations[0]
        raise JournalError(
            "Reserve journal failed verification",
            {
                "path":       str(path),
                "violation":  first.violation_type,
                "sequence":   first.at_sequence,
                "violations": len(summary.violations),
            },
        )
    return summary
