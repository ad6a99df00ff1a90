"""
Consensus task and vote records.

A vote signs JCS(vote_payload(task_id, claim_id, payout, approved)).
Each attestor occupies at most one slot in a task's vote map.

Quorum rule, with n = votes received and k = approvals of the proposed
payout:

    completed  once  k ≥ required_quorum  and  3k ≥ 2n
    failed     once  n ≥ failure_participation_bps of the eligible set
               without quorum, or when the deadline passes first
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ilguard.core.canonical import canonicalize
from ilguard.core.config import BPS_DENOMINATOR
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.models import TaskStatus


def vote_payload(task_id: str, claim_id: str, payout: int, approved: bool) -> Dict[str, Any]:
    return {
        "approved": bool(approved),
        "claim_id": claim_id,
        "payout":   str(payout),
        "task_id":  task_id,
    }


@dataclass(frozen=True)
class Vote:
    attestor_id:   str
    task_id:       str
    claim_id:      str
    approved:      bool
    payout:        int
    signature:     str
    submitted_at:  float

    def payload(self) -> Dict[str, Any]:
        return vote_payload(self.task_id, self.claim_id, self.payout, self.approved)

    def verify(self, public_key_hex: str) -> bool:
        return Ed25519KeyManager.verify_detached(
            canonicalize(self.payload()), self.signature, public_key_hex
        )

    def as_evidence(self) -> Dict[str, Any]:
        return {"payload": self.payload(), "signature": self.signature}


@dataclass(frozen=True)
class SettlementDecision:
    """Emitted on quorum; consumed by the settlement executor."""
    claim_id:                str
    approved_payout:         int
    participating_attestors: Tuple[str, ...]
    task_id:                 str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id":                self.claim_id,
            "approved_payout":         str(self.approved_payout),
            "participating_attestors": list(self.participating_attestors),
            "task_id":                 self.task_id,
        }


@dataclass
class ConsensusTask:
    task_id:          str
    claim_id:         str
    required_quorum:  int
    deadline:         float
    proposed_payout:  int
    eligible:         Tuple[str, ...]
    created_at:       float
    status:           TaskStatus = TaskStatus.PENDING
    attestations:     Dict[str, Vote] = field(default_factory=dict)
    finished_at:      Optional[float] = None
    failure_reason:   Optional[str] = None
    compute_result:   Optional[Dict[str, Any]] = None

    @property
    def responses(self) -> int:
        return len(self.attestations)

    @property
    def approvals(self) -> int:
        return sum(
            1 for v in self.attestations.values()
            if v.approved and v.payout == self.proposed_payout
        )

    def approving_attestors(self) -> List[str]:
        return sorted(
            a for a, v in self.attestations.items()
            if v.approved and v.payout == self.proposed_payout
        )

    def non_responders(self) -> List[str]:
        return [a for a in self.eligible if a not in self.attestations]

    def quorum_reached(self) -> bool:
        k, n = self.approvals, self.responses
        return k >= self.required_quorum and 3 * k >= 2 * n

    def participation_exhausted(self, failure_participation_bps: int) -> bool:
        return (
            self.responses * BPS_DENOMINATOR
            >= len(self.eligible) * failure_participation_bps
        )

    def is_past_deadline(self, now: float) -> bool:
        return now > self.deadline

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id":         self.task_id,
            "claim_id":        self.claim_id,
            "required_quorum": self.required_quorum,
            "deadline":        self.deadline,
            "proposed_payout": str(self.proposed_payout),
            "status":          self.status.value,
            "responses":       self.responses,
            "approvals":       self.approvals,
            "failure_reason":  self.failure_reason,
        }
