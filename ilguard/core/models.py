"""
ilguard/core/models.py

Claim Engine Data Model

Policies record coverage terms for one liquidity position. Claims follow
a lifecycle from request to settlement or rejection:

    Requested ──► Attested ──► Settled
        │             │
        └──► Rejected ◄┘

Settled and Rejected are terminal. At most one non-terminal claim exists
per policy.

Amounts are unsigned integers bounded by MAX_UINT256. On the wire they are
decimal strings (JCS cannot carry integers above 2**53 exactly).
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ilguard.core.canonical import canonical_hash
from ilguard.core.exceptions import InvalidCommitment, InvalidParameters

# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────

MAX_UINT256  = 2 ** 256 - 1
BPS          = 10_000
PRICE_SCALE  = 10 ** 18

_COMMITMENT_RE = re.compile(r"^0x[0-9a-f]{64}$")


def is_valid_commitment(value: Any) -> bool:
    """A commitment is '0x' followed by 64 lowercase hex characters."""
    return isinstance(value, str) and bool(_COMMITMENT_RE.match(value))


def require_commitment(value: Any, name: str) -> str:
    if not is_valid_commitment(value):
        raise InvalidCommitment(
            f"{name} must be 0x-prefixed 64-char lowercase hex",
            {name: value},
        )
    return value


def require_uint(value: Any, name: str) -> int:
    """Reject anything that is not an int in [0, MAX_UINT256]."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameters(
            f"{name} must be an unsigned integer",
            {name: repr(value)},
        )
    if value < 0 or value > MAX_UINT256:
        raise InvalidParameters(
            f"{name} out of uint256 range",
            {name: value},
        )
    return value


# ─────────────────────────────────────────────────────────────
# Vocabularies
# ─────────────────────────────────────────────────────────────

class ClaimStatus(Enum):
    NONE      = "none"
    REQUESTED = "requested"
    ATTESTED  = "attested"
    SETTLED   = "settled"
    REJECTED  = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ClaimStatus.SETTLED, ClaimStatus.REJECTED)


class TaskStatus(Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"


class ChallengeStatus(Enum):
    PENDING   = "pending"
    UPHELD    = "upheld"
    DISMISSED = "dismissed"


class MisbehaviorKind(Enum):
    CONFLICTING_ATTESTATION = "conflicting_attestation"
    UNAVAILABILITY          = "unavailability"
    MALICIOUS_SIGNATURE     = "malicious_signature"


class RejectionReason:
    """Reason strings carried by ClaimRejected notifications."""
    COMPUTE_TIMEOUT          = "ComputeTimeout"
    INVALID_WORKER_SIGNATURE = "InvalidWorkerSignature"
    COMPUTE_FAILED           = "ComputeFailed"
    QUORUM_NOT_REACHED       = "QuorumNotReached"
    DEADLINE_EXCEEDED        = "DeadlineExceeded"
    CONFLICTING_ATTESTATION  = "ConflictingAttestation"
    QUORUM_UNREACHABLE       = "QuorumUnreachable"
    MISSING_POSITION_DATA    = "MissingPositionData"
    PAYOUT_OVERFLOW          = "PayoutOverflow"
    DECISION_MISMATCH        = "DecisionMismatch"


# ─────────────────────────────────────────────────────────────
# Positions and prices
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PositionSnapshot:
    """Token amounts of an LP position (plus fees earned, for exits)."""
    amount0:      int
    amount1:      int
    fees_earned:  int = 0

    def __post_init__(self) -> None:
        require_uint(self.amount0, "amount0")
        require_uint(self.amount1, "amount1")
        require_uint(self.fees_earned, "fees_earned")

    def to_dict(self) -> Dict[str, str]:
        return {
            "amount0":     str(self.amount0),
            "amount1":     str(self.amount1),
            "fees_earned": str(self.fees_earned),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionSnapshot":
        return cls(
            amount0=     int(data["amount0"]),
            amount1=     int(data["amount1"]),
            fees_earned= int(data.get("fees_earned", 0)),
        )

    def commitment(self) -> str:
        """'0x' + SHA-256 of the canonical snapshot."""
        return "0x" + canonical_hash(self.to_dict())


@dataclass(frozen=True)
class PriceReference:
    """
    Public price input for a claim.

    ref           opaque 0x-prefixed root (e.g. a TWAP root)
    price_at_exit token0 priced in token1, fixed-point scaled by PRICE_SCALE
    """
    ref:            str
    price_at_exit:  int

    def __post_init__(self) -> None:
        require_commitment(self.ref, "public_price_ref")
        require_uint(self.price_at_exit, "price_at_exit")

    def to_dict(self) -> Dict[str, str]:
        return {"ref": self.ref, "price_at_exit": str(self.price_at_exit)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceReference":
        return cls(ref=data["ref"], price_at_exit=int(data["price_at_exit"]))


# ─────────────────────────────────────────────────────────────
# Policy
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PolicyParams:
    deductible_bps:   int
    cap_bps:          int
    premium_bps:      int
    duration_window:  float   # seconds

    def validate(self) -> None:
        """Raise InvalidParameters if any coverage term is out of range."""
        errors = {}
        for name in ("deductible_bps", "cap_bps", "premium_bps"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                errors[name] = repr(value)
            elif not 0 <= value <= BPS:
                errors[name] = value
        if not isinstance(self.duration_window, (int, float)) or self.duration_window <= 0:
            errors["duration_window"] = self.duration_window
        if errors:
            raise InvalidParameters("Invalid policy parameters", errors)


@dataclass
class Policy:
    policy_id:         str
    owner_ref:         str
    pool_ref:          str
    params:            PolicyParams
    entry_commitment:  str
    created_at:        float
    active:            bool = True
    entry_position:    Optional[PositionSnapshot] = None
    deactivation_reason: Optional[str] = None

    @property
    def expires_at(self) -> float:
        return self.created_at + self.params.duration_window

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id":        self.policy_id,
            "owner_ref":        self.owner_ref,
            "pool_ref":         self.pool_ref,
            "deductible_bps":   self.params.deductible_bps,
            "cap_bps":          self.params.cap_bps,
            "premium_bps":      self.params.premium_bps,
            "duration_window":  self.params.duration_window,
            "entry_commitment": self.entry_commitment,
            "created_at":       self.created_at,
            "active":           self.active,
        }


# ─────────────────────────────────────────────────────────────
# Claim
# ─────────────────────────────────────────────────────────────

@dataclass
class Claim:
    claim_id:          str
    policy_id:         str
    status:            ClaimStatus
    requested_at:      float
    exit_commitment:   str
    claimant_ref:      str
    requested_amount:  int = 0
    final_payout:      Optional[int] = None
    attested_payout:   Optional[int] = None
    exit_position:     Optional[PositionSnapshot] = None
    price:             Optional[PriceReference] = None
    rejection_reason:  Optional[str] = None
    history:           list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id":         self.claim_id,
            "policy_id":        self.policy_id,
            "status":           self.status.value,
            "requested_at":     self.requested_at,
            "exit_commitment":  self.exit_commitment,
            "claimant_ref":     self.claimant_ref,
            "requested_amount": str(self.requested_amount),
            "final_payout":     None if self.final_payout is None else str(self.final_payout),
            "rejection_reason": self.rejection_reason,
        }
