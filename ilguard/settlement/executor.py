"""
Settlement executor.

The single authority that turns a quorum-approved decision into a reserve
debit and a Settled claim, exactly once per claim.

    settle(decision) → SettlementRecord

    1. Claim must be Attested at the decision's payout
    2. Re-derive the bound from the policy's terms and the stored
       positions and price (the worker's payout is never trusted alone)
    3. final = min(approved_payout, calculator_bound)
    4. Debit up to `final` from the pool's reserve; if the reserve is short,
       pay what is there and publish an UnderPaymentNotice
    5. Mark the claim Settled with the amount actually paid
    6. Return a signed SettlementRecord

Missing position/price data or an overflowing bound rejects the claim.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from ilguard.claims.store import PolicyClaimStore
from ilguard.consensus.task import SettlementDecision
from ilguard.core.canonical import canonicalize
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.events import EventBus, UnderPaymentNotice
from ilguard.core.exceptions import (
    InvalidClaimStatus,
    InvalidParameters,
    PayoutOverflow,
)
from ilguard.core.models import ClaimStatus, RejectionReason
from ilguard.core.time import Clock, iso_timestamp, system_clock
from ilguard.payout.calculator import compute_payout
from ilguard.reserve.ledger import ReserveLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementRecord:
    """Signed outcome of one settlement. Amounts sign as decimal strings."""
    settlement_id:        str
    claim_id:             str
    task_id:              str
    pool_ref:             str
    approved_payout:      int
    calculator_bound:     int
    final_payout:         int
    under_paid:           bool
    settled_at:           str
    executor_public_key:  str
    signature:            Optional[str] = None

    def to_signing_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id":       self.settlement_id,
            "claim_id":            self.claim_id,
            "task_id":             self.task_id,
            "pool_ref":            self.pool_ref,
            "approved_payout":     str(self.approved_payout),
            "calculator_bound":    str(self.calculator_bound),
            "final_payout":        str(self.final_payout),
            "under_paid":          self.under_paid,
            "settled_at":          self.settled_at,
            "executor_public_key": self.executor_public_key,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_signing_dict()
        data["signature"] = self.signature
        return data

    def verify(self) -> bool:
        if not self.signature:
            return False
        return Ed25519KeyManager.verify_detached(
            canonicalize(self.to_signing_dict()),
            self.signature,
            self.executor_public_key,
        )


class SettlementExecutor:

    def __init__(
        self,
        store:        PolicyClaimStore,
        ledger:       ReserveLedger,
        key_manager:  Ed25519KeyManager,
        bus:          Optional[EventBus] = None,
        clock:        Clock = system_clock,
    ) -> None:
        self.store       = store
        self.ledger      = ledger
        self.key_manager = key_manager
        self.bus         = bus or store.bus
        self._clock      = clock

        self._claim_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._records:     List[SettlementRecord] = []

    def settle(self, decision: SettlementDecision) -> SettlementRecord:
        """
        Settle one approved claim.

        Raises:
            InvalidClaimStatus: claim not Attested (already settled, rejected,
                                or never attested)
            InvalidParameters:  decision payout differs from the attested one,
                                or the claim lacks position/price data (either
                                way the claim is Rejected first)
            PayoutOverflow:     bound computation overflowed (claim is
                                Rejected first)
        """
        with self._lock_for(decision.claim_id):
            claim  = self.store.get_claim(decision.claim_id)
            if claim.status is not ClaimStatus.ATTESTED:
                raise InvalidClaimStatus(
                    "Only Attested claims can be settled",
                    {"claim_id": claim.claim_id, "status": claim.status.value},
                )
            if decision.approved_payout != claim.attested_payout:
                logger.warning("Decision for %s pays %d but attestors agreed %d; rejecting",
                               claim.claim_id, decision.approved_payout, claim.attested_payout)
                self.store.mark_rejected(claim.claim_id, RejectionReason.DECISION_MISMATCH)
                raise InvalidParameters(
                    "Decision payout differs from attested payout",
                    {
                        "claim_id": claim.claim_id,
                        "decision": decision.approved_payout,
                        "attested": claim.attested_payout,
                    },
                )
            policy = self.store.get_policy(claim.policy_id)

            if (policy.entry_position is None or claim.exit_position is None
                    or claim.price is None):
                logger.warning("Claim %s has no position or price data; rejecting",
                               claim.claim_id)
                self.store.mark_rejected(claim.claim_id, RejectionReason.MISSING_POSITION_DATA)
                raise InvalidParameters(
                    "Claim is missing position or price data",
                    {"claim_id": claim.claim_id},
                )

            try:
                bound = compute_payout(
                    policy.entry_position,
                    claim.exit_position,
                    claim.price.price_at_exit,
                    policy.params.deductible_bps,
                    policy.params.cap_bps,
                ).payout
            except PayoutOverflow:
                logger.error("Payout bound overflowed for %s; rejecting", claim.claim_id)
                self.store.mark_rejected(claim.claim_id, RejectionReason.PAYOUT_OVERFLOW)
                raise

            final = min(decision.approved_payout, bound)
            paid  = self.ledger.debit_up_to(policy.pool_ref, final, claim.claim_id)
            under_paid = paid < final
            if under_paid:
                logger.warning("Reserve %s short for %s: entitled %d, paid %d",
                               policy.pool_ref, claim.claim_id, final, paid)
                self.bus.publish(UnderPaymentNotice(
                    claim_id= claim.claim_id,
                    pool_ref= policy.pool_ref,
                    entitled= final,
                    paid=     paid,
                ))

            self.store.mark_settled(claim.claim_id, paid)

            record = SettlementRecord(
                settlement_id=       f"stl-{uuid.uuid4()}",
                claim_id=            claim.claim_id,
                task_id=             decision.task_id,
                pool_ref=            policy.pool_ref,
                approved_payout=     decision.approved_payout,
                calculator_bound=    bound,
                final_payout=        paid,
                under_paid=          under_paid,
                settled_at=          iso_timestamp(self._clock()),
                executor_public_key= self.key_manager.public_key_hex,
            )
            record = replace(
                record,
                signature=self.key_manager.sign(canonicalize(record.to_signing_dict())),
            )
            with self._locks_guard:
                self._records.append(record)

        logger.info("Settled %s: approved=%d bound=%d paid=%d",
                    claim.claim_id, decision.approved_payout, bound, paid)
        return record

    def records(self) -> List[SettlementRecord]:
        with self._locks_guard:
            return list(self._records)

    def settlement_stats(self) -> dict:
        with self._locks_guard:
            records = list(self._records)
        return {
            "settled":         len(records),
            "total_paid":      sum(r.final_payout for r in records),
            "under_paid":      sum(1 for r in records if r.under_paid),
            "total_shortfall": sum(
                min(r.approved_payout, r.calculator_bound) - r.final_payout
                for r in records
            ),
        }

    def _lock_for(self, claim_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._claim_locks.get(claim_id)
            if lock is None:
                lock = self._claim_locks[claim_id] = threading.Lock()
            return lock
