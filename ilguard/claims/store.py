"""
Policy & Claim Store.

Durable record of coverage terms and the claim lifecycle per insured
position. Enforces:

    - one non-terminal claim per policy
    - legal transitions only:
          Requested → Attested | Rejected
          Attested  → Settled  | Rejected
    - Settled deactivates the policy; Rejected leaves it open for a new claim

markAttested is called by the consensus manager; markSettled by the
settlement executor; markRejected by either (and by the compute client).
"""

import logging
import threading
import uuid
from typing import Dict, List, Optional

from ilguard.core.events import (
    ClaimAttested,
    ClaimRejected,
    ClaimRequested,
    ClaimSettled,
    EventBus,
)
from ilguard.core.exceptions import (
    ClaimAlreadyExists,
    ClaimNotFound,
    InvalidClaimStatus,
    InvalidCommitment,
    InvalidParameters,
    PolicyInactive,
    PolicyNotFound,
)
from ilguard.core.models import (
    Claim,
    ClaimStatus,
    Policy,
    PolicyParams,
    PositionSnapshot,
    PriceReference,
    require_commitment,
    require_uint,
)
from ilguard.core.time import Clock, system_clock

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    ClaimStatus.REQUESTED: {ClaimStatus.ATTESTED, ClaimStatus.REJECTED},
    ClaimStatus.ATTESTED:  {ClaimStatus.SETTLED, ClaimStatus.REJECTED},
}


class PolicyClaimStore:
    """In-process policy and claim registry guarded by a single lock."""

    def __init__(self, bus: Optional[EventBus] = None, clock: Clock = system_clock) -> None:
        self.bus    = bus or EventBus()
        self._clock = clock
        self._lock  = threading.RLock()

        self._policies:      Dict[str, Policy] = {}
        self._claims:        Dict[str, Claim]  = {}
        self._active_claim:  Dict[str, str]    = {}   # policy_id → claim_id
        self._by_policy:     Dict[str, List[str]] = {}

    # ── Policies ──────────────────────────────────────────────

    def create_policy(
        self,
        owner:             str,
        pool:              str,
        params:            PolicyParams,
        entry_commitment:  str,
        entry_position:    Optional[PositionSnapshot] = None,
    ) -> str:
        """
        Record coverage terms for a new liquidity position.

        Raises:
            InvalidParameters: bps above 10000, zero duration, empty refs
            InvalidCommitment: malformed commitment, or entry_position does
                               not hash to it
        """
        params.validate()
        if not owner or not pool:
            raise InvalidParameters(
                "owner and pool are required", {"owner": owner, "pool": pool}
            )
        require_commitment(entry_commitment, "entry_commitment")
        if entry_position is not None and entry_position.commitment() != entry_commitment:
            raise InvalidCommitment(
                "entry_position does not match entry_commitment",
                {"entry_commitment": entry_commitment},
            )

        policy = Policy(
            policy_id=        f"pol-{uuid.uuid4()}",
            owner_ref=        owner,
            pool_ref=         pool,
            params=           params,
            entry_commitment= entry_commitment,
            created_at=       self._clock(),
            entry_position=   entry_position,
        )
        with self._lock:
            self._policies[policy.policy_id] = policy
            self._by_policy[policy.policy_id] = []

        logger.info("Policy created %s pool=%s owner=%s",
                    policy.policy_id, pool, owner)
        return policy.policy_id

    def get_policy(self, policy_id: str) -> Policy:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise PolicyNotFound("Policy not found", {"policy_id": policy_id})
            return policy

    def deactivate_policy(self, policy_id: str, reason: str) -> None:
        """Burn / expiry / settlement. Idempotent."""
        with self._lock:
            policy = self.get_policy(policy_id)
            if not policy.active:
                return
            policy.active = False
            policy.deactivation_reason = reason
        logger.info("Policy %s deactivated (%s)", policy_id, reason)

    # ── Claims ────────────────────────────────────────────────

    def request_claim(
        self,
        policy_id:         str,
        exit_commitment:   str,
        claimant:          str,
        requested_amount:  int = 0,
        exit_position:     Optional[PositionSnapshot] = None,
        price:             Optional[PriceReference] = None,
    ) -> str:
        """
        Open a claim in Requested state and publish ClaimRequested.

        Raises:
            PolicyNotFound, PolicyInactive, ClaimAlreadyExists,
            InvalidCommitment
        """
        require_commitment(exit_commitment, "exit_commitment")
        require_uint(requested_amount, "requested_amount")
        if exit_position is not None and exit_position.commitment() != exit_commitment:
            raise InvalidCommitment(
                "exit_position does not match exit_commitment",
                {"exit_commitment": exit_commitment},
            )

        now = self._clock()
        with self._lock:
            policy = self.get_policy(policy_id)
            if policy.active and policy.is_expired(now):
                policy.active = False
                policy.deactivation_reason = "expired"
                logger.info("Policy %s expired", policy_id)
            if not policy.active:
                raise PolicyInactive(
                    "Policy is not active",
                    {"policy_id": policy_id, "reason": policy.deactivation_reason},
                )
            existing = self._active_claim.get(policy_id)
            if existing is not None:
                raise ClaimAlreadyExists(
                    "Policy already has an open claim",
                    {"policy_id": policy_id, "claim_id": existing},
                )

            claim = Claim(
                claim_id=         f"clm-{uuid.uuid4()}",
                policy_id=        policy_id,
                status=           ClaimStatus.REQUESTED,
                requested_at=     now,
                exit_commitment=  exit_commitment,
                claimant_ref=     claimant,
                requested_amount= requested_amount,
                exit_position=    exit_position,
                price=            price,
            )
            claim.history.append((ClaimStatus.REQUESTED.value, now))
            self._claims[claim.claim_id] = claim
            self._active_claim[policy_id] = claim.claim_id
            self._by_policy[policy_id].append(claim.claim_id)

        logger.info("Claim %s requested on policy %s", claim.claim_id, policy_id)
        self.bus.publish(ClaimRequested(claim.claim_id, exit_commitment))
        return claim.claim_id

    def get_claim(self, claim_id: str) -> Claim:
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                raise ClaimNotFound("Claim not found", {"claim_id": claim_id})
            return claim

    def active_claim_for(self, policy_id: str) -> Optional[Claim]:
        with self._lock:
            self.get_policy(policy_id)
            claim_id = self._active_claim.get(policy_id)
            return self._claims[claim_id] if claim_id else None

    def claims_for_policy(self, policy_id: str) -> List[Claim]:
        with self._lock:
            self.get_policy(policy_id)
            return [self._claims[c] for c in self._by_policy[policy_id]]

    # ── Transitions ───────────────────────────────────────────

    def mark_attested(self, claim_id: str, payout: int) -> Claim:
        require_uint(payout, "payout")
        with self._lock:
            claim = self._transition(claim_id, ClaimStatus.ATTESTED)
            claim.attested_payout = payout
        self.bus.publish(ClaimAttested(claim_id))
        return claim

    def mark_settled(self, claim_id: str, payout: int) -> Claim:
        """Settle exactly once; any repeat raises InvalidClaimStatus."""
        require_uint(payout, "payout")
        with self._lock:
            claim = self._transition(claim_id, ClaimStatus.SETTLED)
            claim.final_payout = payout
            self._policies[claim.policy_id].active = False
            self._policies[claim.policy_id].deactivation_reason = "settled"
        self.bus.publish(ClaimSettled(claim_id, payout))
        return claim

    def mark_rejected(self, claim_id: str, reason: str) -> Claim:
        with self._lock:
            claim = self._transition(claim_id, ClaimStatus.REJECTED)
            claim.rejection_reason = reason
        self.bus.publish(ClaimRejected(claim_id, reason))
        return claim

    def _transition(self, claim_id: str, target: ClaimStatus) -> Claim:
        """Caller holds the lock."""
        claim = self.get_claim(claim_id)
        if target not in _TRANSITIONS.get(claim.status, ()):
            raise InvalidClaimStatus(
                "Illegal claim transition",
                {"claim_id": claim_id, "from": claim.status.value, "to": target.value},
            )
        now = self._clock()
        claim.status = target
        claim.history.append((target.value, now))
        if target.is_terminal:
            self._active_claim.pop(claim.policy_id, None)
        logger.info("Claim %s → %s", claim_id, target.value)
        return claim

    # ── Stats ─────────────────────────────────────────────────

    def stats(self) -> dict:
        with self._lock:
            by_status: Dict[str, int] = {}
            for claim in self._claims.values():
                by_status[claim.status.value] = by_status.get(claim.status.value, 0) + 1
            return {
                "policies":        len(self._policies),
                "active_policies": sum(1 for p in self._policies.values() if p.active),
                "claims":          len(self._claims),
                "by_status":       by_status,
            }
