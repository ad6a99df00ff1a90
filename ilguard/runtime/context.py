"""
Runtime context for the ILGuard claim engine.

Builds every component from one EngineConfig and wires the pipeline:

    ClaimRequested
        → ConfidentialComputeClient (signed payout)
        → AttestationConsensusManager.create_task  → AttestationRequested
        → attestor votes                          → SettlementDecision
        → SettlementExecutor.settle

With synchronous=True the whole pipeline runs on the thread that called
request_claim (convenient for tests and the CLI). Otherwise computation
runs on the compute client's pool and attestors vote as results arrive.
In both modes a reaper thread fails consensus tasks whose deadline passed
without a quorum; shutdown() stops it.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ilguard.claims.store import PolicyClaimStore
from ilguard.compute.client import ConfidentialComputeClient
from ilguard.compute.messages import ComputeRequest, ComputeResponse
from ilguard.compute.worker import ComputeTransport, LocalComputeWorker, WorkerInputs
from ilguard.consensus.attestor import AttestorNode
from ilguard.consensus.manager import AttestationConsensusManager
from ilguard.core.config import EngineConfig
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.events import AttestationRequested, ClaimRequested, EventBus
from ilguard.core.exceptions import ILGuardError, QuorumUnreachable
from ilguard.core.models import ClaimStatus, RejectionReason
from ilguard.core.time import Clock, system_clock
from ilguard.reserve.journal import ReserveJournal
from ilguard.reserve.ledger import ReserveLedger
from ilguard.settlement.executor import SettlementExecutor
from ilguard.slashing.registry import StakeRegistry

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    """Every component of one running claim engine."""

    config:       EngineConfig
    bus:          EventBus
    store:        PolicyClaimStore
    ledger:       ReserveLedger
    registry:     StakeRegistry
    compute:      ConfidentialComputeClient
    consensus:    AttestationConsensusManager
    executor:     SettlementExecutor
    key_manager:  Ed25519KeyManager
    synchronous:  bool = False
    attestors:    List[AttestorNode] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        config:       Optional[EngineConfig] = None,
        key_manager:  Optional[Ed25519KeyManager] = None,
        transport:    Optional[ComputeTransport] = None,
        worker_keys:  Optional[Dict[str, str]] = None,
        attestors:    Iterable[AttestorNode] = (),
        clock:        Clock = system_clock,
        synchronous:  bool = False,
    ) -> "RuntimeContext":
        """
        Construct and wire a claim engine.

        Without a transport, an in-process LocalComputeWorker is created
        that opens commitments from the positions stored with the policy
        and claim. In-process attestors are registered with the stake
        registry by the caller.
        """
        config      = config or EngineConfig()
        key_manager = key_manager or Ed25519KeyManager.generate()
        bus         = EventBus()

        store = PolicyClaimStore(bus=bus, clock=clock)

        if config.journal_path:
            journal = ReserveJournal(Path(config.journal_path), key_manager)
            ledger  = ReserveLedger.from_journal(journal)
        else:
            ledger  = ReserveLedger()

        if transport is None:
            worker      = LocalComputeWorker("local-worker", key_manager,
                                             _stored_inputs_resolver(store))
            transport   = worker
            worker_keys = {worker.worker_id: worker.public_key_hex, **(worker_keys or {})}

        registry  = StakeRegistry(config=config, bus=bus, clock=clock)
        compute   = ConfidentialComputeClient(transport, worker_keys or {}, store, config)
        consensus = AttestationConsensusManager(registry, store, config, bus, clock)
        executor  = SettlementExecutor(store, ledger, key_manager, bus, clock)

        ctx = cls(
            config=      config,
            bus=         bus,
            store=       store,
            ledger=      ledger,
            registry=    registry,
            compute=     compute,
            consensus=   consensus,
            executor=    executor,
            key_manager= key_manager,
            synchronous= synchronous,
            attestors=   list(attestors),
        )
        ctx._wire()
        consensus.start_reaper()
        logger.info("Runtime built: %d local attestors, journal=%s, synchronous=%s",
                    len(ctx.attestors), config.journal_path, synchronous)
        return ctx

    # ── Wiring ────────────────────────────────────────────────

    def _wire(self) -> None:
        self.bus.subscribe(ClaimRequested, self._on_claim_requested)
        self.bus.subscribe(AttestationRequested, self._on_attestation_requested)
        self.compute.on_result(self._on_compute_result)
        self.consensus.on_decision(self.executor.settle)

    def _on_claim_requested(self, event: ClaimRequested) -> None:
        claim  = self.store.get_claim(event.claim_id)
        policy = self.store.get_policy(claim.policy_id)
        if claim.price is None:
            logger.warning("Claim %s has no price reference; rejecting", claim.claim_id)
            self.store.mark_rejected(claim.claim_id, RejectionReason.MISSING_POSITION_DATA)
            return

        request = ComputeRequest(
            claim_id=         claim.claim_id,
            entry_commitment= policy.entry_commitment,
            exit_commitment=  claim.exit_commitment,
            public_price_ref= claim.price.ref,
        )
        if self.synchronous:
            try:
                self.compute.compute(request)
            except (ILGuardError, ValueError) as exc:
                logger.warning("Claim %s did not pass compute: %s", claim.claim_id, exc)
            return

        future = self.compute.request_computation(
            request.claim_id,
            request.entry_commitment,
            request.exit_commitment,
            request.public_price_ref,
        )
        future.add_done_callback(_log_failure(claim.claim_id))

    def _on_compute_result(self, request: ComputeRequest, response: ComputeResponse) -> None:
        try:
            self.consensus.create_task(
                request.claim_id,
                proposed_payout= response.payout,
                compute_result=  response.to_dict(),
            )
        except QuorumUnreachable as exc:
            logger.warning("Claim %s: %s", request.claim_id, exc)
            self.store.mark_rejected(request.claim_id, RejectionReason.QUORUM_UNREACHABLE)

    def _on_attestation_requested(self, event: AttestationRequested) -> None:
        for node in self.attestors:
            if self.store.get_claim(event.claim_id).status is not ClaimStatus.REQUESTED:
                break
            try:
                node.attest(self.consensus, event)
            except ILGuardError as exc:
                logger.warning("Attestor %s vote on %s not accepted: %s",
                               node.attestor_id, event.task_id, exc)

    # ── Lifecycle ─────────────────────────────────────────────

    def shutdown(self) -> None:
        self.consensus.stop_reaper()
        self.compute.shutdown()

    def __repr__(self) -> str:
        return (
            f"RuntimeContext("
            f"attestors={len(self.registry.all_attestors())}, "
            f"pools={len(self.ledger.pools())}, "
            f"synchronous={self.synchronous})"
        )


def _stored_inputs_resolver(store: PolicyClaimStore):
    """Open a request's commitments from the data recorded in the store."""

    def resolve(request: ComputeRequest) -> WorkerInputs:
        claim  = store.get_claim(request.claim_id)
        policy = store.get_policy(claim.policy_id)
        if policy.entry_position is None or claim.exit_position is None or claim.price is None:
            raise ValueError(f"no position data recorded for {request.claim_id}")
        return WorkerInputs(
            entry_position= policy.entry_position,
            exit_position=  claim.exit_position,
            price_at_exit=  claim.price.price_at_exit,
            deductible_bps= policy.params.deductible_bps,
            cap_bps=        policy.params.cap_bps,
        )

    return resolve


def _log_failure(claim_id: str):
    def done(future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Claim %s did not pass compute: %s", claim_id, exc)
    return done
