"""
In-process compute worker.

Stands in for the confidential compute service: resolves the commitments
in a request to position data, runs the payout formula and signs the
result. Anything implementing ComputeTransport can replace it.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from ilguard.core.canonical import canonical_hash
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.models import PositionSnapshot
from ilguard.compute.messages import ComputeRequest, ComputeResponse
from ilguard.payout.calculator import compute_payout

logger = logging.getLogger(__name__)


class ComputeTransport(Protocol):
    def compute(self, request: ComputeRequest) -> ComputeResponse:
        ...


@dataclass(frozen=True)
class WorkerInputs:
    """What the worker learns by opening a request's commitments."""
    entry_position:  PositionSnapshot
    exit_position:   PositionSnapshot
    price_at_exit:   int
    deductible_bps:  int
    cap_bps:         int


InputResolver = Callable[[ComputeRequest], WorkerInputs]


def audit_hash_for(request: ComputeRequest, payout: int) -> str:
    return "0x" + canonical_hash({
        "entry_commitment": request.entry_commitment,
        "exit_commitment":  request.exit_commitment,
        "public_price_ref": request.public_price_ref,
        "payout":           str(payout),
    })


class LocalComputeWorker:
    """Signs payout results with its own Ed25519 key."""

    def __init__(self, worker_id: str, key_manager: Ed25519KeyManager,
                 resolver: InputResolver) -> None:
        self.worker_id   = worker_id
        self.key_manager = key_manager
        self._resolve    = resolver

    @property
    def public_key_hex(self) -> str:
        return self.key_manager.public_key_hex

    def compute(self, request: ComputeRequest) -> ComputeResponse:
        request.validate()
        inputs = self._resolve(request)
        if inputs.entry_position.commitment() != request.entry_commitment:
            raise ValueError("entry position does not open entry_commitment")
        if inputs.exit_position.commitment() != request.exit_commitment:
            raise ValueError("exit position does not open exit_commitment")

        breakdown = compute_payout(
            inputs.entry_position,
            inputs.exit_position,
            inputs.price_at_exit,
            inputs.deductible_bps,
            inputs.cap_bps,
        )
        logger.debug("Worker %s computed payout %d for %s",
                     self.worker_id, breakdown.payout, request.claim_id)

        return ComputeResponse(
            claim_id=   request.claim_id,
            payout=     breakdown.payout,
            audit_hash= audit_hash_for(request, breakdown.payout),
            worker_id=  self.worker_id,
        ).signed_by(self.key_manager)
