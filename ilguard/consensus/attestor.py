"""
Attestor node.

An independent attestor re-checks the compute worker's signed result and
signs an approve/reject vote over the proposed payout.
"""

import logging
from typing import Dict, Tuple

from ilguard.compute.messages import ComputeResponse
from ilguard.consensus.task import vote_payload
from ilguard.core.canonical import canonicalize
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.events import AttestationRequested

logger = logging.getLogger(__name__)


class AttestorNode:

    def __init__(self, attestor_id: str, key_manager: Ed25519KeyManager,
                 worker_keys: Dict[str, str]) -> None:
        self.attestor_id = attestor_id
        self.key_manager = key_manager
        self.worker_keys = dict(worker_keys)

    @property
    def public_key_hex(self) -> str:
        return self.key_manager.public_key_hex

    def sign_vote(self, task_id: str, claim_id: str, payout: int, approved: bool) -> str:
        return self.key_manager.sign(
            canonicalize(vote_payload(task_id, claim_id, payout, approved))
        )

    def evaluate(self, request: AttestationRequested) -> Tuple[bool, int, str]:
        """
        Decide on a task. Returns (approved, payout, signature).
        Approves only a result signed by a known worker for this claim
        whose payout equals the proposed payout.
        """
        approved = self._result_is_authentic(request)
        payout   = request.proposed_payout
        signature = self.sign_vote(request.task_id, request.claim_id, payout, approved)
        logger.debug("Attestor %s votes %s on %s",
                     self.attestor_id, "approve" if approved else "reject", request.task_id)
        return approved, payout, signature

    def attest(self, manager, request: AttestationRequested):
        """Evaluate and submit to a consensus manager."""
        approved, payout, signature = self.evaluate(request)
        return manager.submit_attestation(
            request.task_id, self.attestor_id, approved, signature, payout=payout
        )

    def _result_is_authentic(self, request: AttestationRequested) -> bool:
        if not request.compute_result:
            return False
        try:
            response = ComputeResponse.from_dict(request.compute_result)
        except (KeyError, TypeError, ValueError):
            return False
        public_key = self.worker_keys.get(response.worker_id)
        return (
            public_key is not None
            and response.claim_id == request.claim_id
            and response.payout == request.proposed_payout
            and response.verify(public_key)
        )
