"""
Attestation Consensus Manager.

One ConsensusTask per claim, driven through  pending → completed | failed.

submit_attestation() is safe to call concurrently from many attestors:
all task state changes happen under one lock, and the thread that moves a
task out of `pending` is the only one that dispatches its outcome (claim
transition, settlement decision, slashing), after the lock is released.

Check order for a vote:
    TaskNotFound → TaskNotPending → DeadlineExceeded → AttestorNotFound /
    AttestorIneligible → InvalidAttestationSignature → DuplicateAttestation /
    ConflictingAttestation

Late votes (after the deadline or after the task finished) never count.
A pending task also fails once its deadline passes with no further votes:
start_reaper() runs expire_overdue() on a daemon thread.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ilguard.claims.store import PolicyClaimStore
from ilguard.consensus.task import ConsensusTask, SettlementDecision, Vote
from ilguard.core.config import EngineConfig
from ilguard.core.events import AttestationRequested, EventBus
from ilguard.core.exceptions import (
    AttestorIneligible,
    ConflictingAttestation,
    DeadlineExceeded,
    DuplicateAttestation,
    InvalidAttestationSignature,
    InvalidClaimStatus,
    InvalidParameters,
    QuorumUnreachable,
    TaskNotFound,
    TaskNotPending,
)
from ilguard.core.models import (
    ClaimStatus,
    MisbehaviorKind,
    RejectionReason,
    TaskStatus,
    require_uint,
)
from ilguard.core.time import Clock, system_clock
from ilguard.slashing.registry import StakeRegistry

logger = logging.getLogger(__name__)

DecisionHandler = Callable[[SettlementDecision], None]


@dataclass
class _Outcome:
    """What to do once a task leaves `pending`. Built under the lock."""
    task:       ConsensusTask
    decision:   Optional[SettlementDecision] = None
    reason:     Optional[str] = None
    conflict:   Optional[Dict[str, Any]] = None
    offender:   Optional[str] = None
    missed:     Optional[List[str]] = None


class AttestationConsensusManager:

    def __init__(
        self,
        registry: StakeRegistry,
        store:    PolicyClaimStore,
        config:   Optional[EngineConfig] = None,
        bus:      Optional[EventBus] = None,
        clock:    Clock = system_clock,
    ) -> None:
        self.registry = registry
        self.store    = store
        self.config   = config or EngineConfig()
        self.bus      = bus or store.bus
        self._clock   = clock

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._tasks:         Dict[str, ConsensusTask] = {}
        self._task_by_claim: Dict[str, str] = {}
        self._handlers:      List[DecisionHandler] = []
        self._reaper:        Optional[threading.Thread] = None
        self._reaper_stop    = threading.Event()

    # ── Subscription ──────────────────────────────────────────

    def on_decision(self, handler: DecisionHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    # ── Task creation ─────────────────────────────────────────

    def create_task(
        self,
        claim_id:         str,
        required_quorum:  Optional[int] = None,
        deadline:         Optional[float] = None,
        proposed_payout:  int = 0,
        compute_result:   Optional[Dict[str, Any]] = None,
    ) -> ConsensusTask:
        """
        Open a task for a Requested claim and publish AttestationRequested.

        Raises:
            QuorumUnreachable: required_quorum exceeds the active attestor set
            InvalidClaimStatus: claim not Requested, or already has a task
        """
        quorum = self.config.required_quorum if required_quorum is None else required_quorum
        if isinstance(quorum, bool) or not isinstance(quorum, int) or quorum < 1:
            raise InvalidParameters("required_quorum must be a positive int", {"value": quorum})
        require_uint(proposed_payout, "proposed_payout")

        now = self._clock()
        if deadline is None:
            deadline = now + self.config.consensus_deadline_seconds
        if deadline <= now:
            raise InvalidParameters("deadline must be in the future", {"deadline": deadline})

        claim = self.store.get_claim(claim_id)
        if claim.status is not ClaimStatus.REQUESTED:
            raise InvalidClaimStatus(
                "Consensus requires a Requested claim",
                {"claim_id": claim_id, "status": claim.status.value},
            )

        eligible = tuple(sorted(a.attestor_id for a in self.registry.active_attestors()))
        if quorum > len(eligible):
            raise QuorumUnreachable(
                "Required quorum exceeds active attestors",
                {"required_quorum": quorum, "active_attestors": len(eligible)},
            )

        with self._lock:
            if claim_id in self._task_by_claim:
                raise InvalidClaimStatus(
                    "Claim already has a consensus task",
                    {"claim_id": claim_id, "task_id": self._task_by_claim[claim_id]},
                )
            task = ConsensusTask(
                task_id=         f"task-{uuid.uuid4()}",
                claim_id=        claim_id,
                required_quorum= quorum,
                deadline=        deadline,
                proposed_payout= proposed_payout,
                eligible=        eligible,
                created_at=      now,
                compute_result=  compute_result,
            )
            self._tasks[task.task_id] = task
            self._task_by_claim[claim_id] = task.task_id

        logger.info("Consensus task %s for %s: quorum %d of %d, payout %d",
                    task.task_id, claim_id, quorum, len(eligible), proposed_payout)
        self.bus.publish(AttestationRequested(
            task_id=         task.task_id,
            claim_id=        claim_id,
            proposed_payout= proposed_payout,
            deadline=        deadline,
            compute_result=  dict(compute_result or {}),
        ))
        return task

    # ── Voting ────────────────────────────────────────────────

    def submit_attestation(
        self,
        task_id:      str,
        attestor_id:  str,
        approved:     bool,
        signature:    str,
        payout:       Optional[int] = None,
    ) -> TaskStatus:
        """
        Record one attestor's signed vote. Returns the task status after it.

        payout defaults to the task's proposed payout; approvals of any
        other value are recorded but do not count toward quorum.
        """
        outcome: Optional[_Outcome] = None
        error:   Optional[Exception] = None
        counted = False

        with self._lock:
            task = self._get(task_id)
            if task.status is not TaskStatus.PENDING:
                raise TaskNotPending(
                    "Task is not pending",
                    {"task_id": task_id, "status": task.status.value},
                )

            now = self._clock()
            if task.is_past_deadline(now):
                outcome = self._fail(task, RejectionReason.DEADLINE_EXCEEDED, now)
                error = DeadlineExceeded(
                    "Attestation arrived after deadline",
                    {"task_id": task_id, "attestor_id": attestor_id},
                )
            else:
                attestor = self.registry.get_attestor(attestor_id)
                if not attestor.active or attestor_id not in task.eligible:
                    raise AttestorIneligible(
                        "Attestor is not eligible for this task",
                        {"task_id": task_id, "attestor_id": attestor_id},
                    )

                vote = Vote(
                    attestor_id=  attestor_id,
                    task_id=      task_id,
                    claim_id=     task.claim_id,
                    approved=     bool(approved),
                    payout=       task.proposed_payout if payout is None else payout,
                    signature=    signature,
                    submitted_at= now,
                )
                if not vote.verify(attestor.public_key_hex):
                    logger.warning("Rejected unverifiable vote from %s on %s",
                                   attestor_id, task_id)
                    raise InvalidAttestationSignature(
                        "Vote signature does not verify",
                        {"task_id": task_id, "attestor_id": attestor_id},
                    )

                previous = task.attestations.get(attestor_id)
                if previous is not None:
                    if previous.payload() == vote.payload():
                        raise DuplicateAttestation(
                            "Attestor already voted on this task",
                            {"task_id": task_id, "attestor_id": attestor_id},
                        )
                    outcome = self._fail(task, RejectionReason.CONFLICTING_ATTESTATION, now)
                    outcome.offender = attestor_id
                    outcome.conflict = {
                        "task_id": task_id,
                        "votes":   [previous.as_evidence(), vote.as_evidence()],
                    }
                    error = ConflictingAttestation(
                        "Attestor signed conflicting votes",
                        {"task_id": task_id, "attestor_id": attestor_id},
                    )
                else:
                    task.attestations[attestor_id] = vote
                    counted = True
                    logger.info("Vote %s from %s on %s (k=%d n=%d)",
                                "approve" if vote.approved else "reject",
                                attestor_id, task_id, task.approvals, task.responses)
                    outcome = self._evaluate(task, now)

            status = task.status

        if counted:
            self.registry.record_participation(attestor_id)
        if outcome is not None:
            self._dispatch(outcome)
        if error is not None:
            raise error
        return status

    # ── Waiting & expiry ──────────────────────────────────────

    def wait_for_outcome(self, task_id: str, timeout: Optional[float] = None) -> ConsensusTask:
        """
        Block until the task leaves `pending` (deadline expiry included) or
        `timeout` seconds of wall time pass. Returns the task either way.
        """
        give_up = None if timeout is None else time.monotonic() + timeout
        outcome = None
        with self._cond:
            task = self._get(task_id)
            while task.status is TaskStatus.PENDING:
                now = self._clock()
                if task.is_past_deadline(now):
                    outcome = self._fail(task, RejectionReason.DEADLINE_EXCEEDED, now)
                    break
                slice_ = min(max(task.deadline - now, 0.0), 0.5)
                if give_up is not None:
                    remaining = give_up - time.monotonic()
                    if remaining <= 0:
                        break
                    slice_ = min(slice_, remaining)
                self._cond.wait(timeout=slice_ or 0.01)
        if outcome is not None:
            self._dispatch(outcome)
        return task

    def expire_overdue(self) -> List[str]:
        """Fail every pending task whose deadline has passed."""
        outcomes = []
        with self._lock:
            now = self._clock()
            for task in self._tasks.values():
                if task.status is TaskStatus.PENDING and task.is_past_deadline(now):
                    outcomes.append(self._fail(task, RejectionReason.DEADLINE_EXCEEDED, now))
        for outcome in outcomes:
            self._dispatch(outcome)
        return [o.task.task_id for o in outcomes]

    def collect_garbage(self) -> int:
        """Drop finished tasks older than the retention window."""
        with self._lock:
            horizon = self._clock() - self.config.task_retention_seconds
            stale = [
                t for t in self._tasks.values()
                if t.status is not TaskStatus.PENDING
                and t.finished_at is not None
                and t.finished_at < horizon
            ]
            for task in stale:
                del self._tasks[task.task_id]
                self._task_by_claim.pop(task.claim_id, None)
        if stale:
            logger.debug("Collected %d finished consensus tasks", len(stale))
        return len(stale)

    # ── Reaper ────────────────────────────────────────────────

    def start_reaper(self, interval: Optional[float] = None) -> None:
        """
        Run expire_overdue() and collect_garbage() every `interval` seconds
        of wall time on a daemon thread, so silent attestors cannot hold a
        claim in Requested past its deadline.
        """
        interval = interval or self.config.reaper_interval_seconds
        with self._lock:
            if self._reaper is not None:
                return
            self._reaper_stop.clear()
            self._reaper = threading.Thread(
                target=self._reap, args=(interval,), name="ilguard-reaper", daemon=True
            )
            self._reaper.start()
        logger.debug("Consensus reaper started (every %.3fs)", interval)

    def stop_reaper(self) -> None:
        with self._lock:
            reaper, self._reaper = self._reaper, None
        if reaper is not None:
            self._reaper_stop.set()
            if reaper is not threading.current_thread():
                reaper.join()

    def _reap(self, interval: float) -> None:
        while not self._reaper_stop.wait(interval):
            try:
                expired = self.expire_overdue()
                self.collect_garbage()
                self.registry.expire_challenges()
            except Exception:
                logger.exception("Consensus reaper pass failed")
                continue
            if expired:
                logger.info("Reaper expired %d consensus task(s)", len(expired))

    # ── Queries ───────────────────────────────────────────────

    def get_task(self, task_id: str) -> ConsensusTask:
        with self._lock:
            return self._get(task_id)

    def task_for_claim(self, claim_id: str) -> Optional[ConsensusTask]:
        with self._lock:
            task_id = self._task_by_claim.get(claim_id)
            return self._tasks.get(task_id) if task_id else None

    def pending_tasks(self) -> List[ConsensusTask]:
        with self._lock:
            return [t for t in self._tasks.values() if t.status is TaskStatus.PENDING]

    def stats(self) -> dict:
        with self._lock:
            by_status: Dict[str, int] = {}
            for task in self._tasks.values():
                by_status[task.status.value] = by_status.get(task.status.value, 0) + 1
            return {"tasks": len(self._tasks), "by_status": by_status}

    # ── Internal (lock held) ──────────────────────────────────

    def _get(self, task_id: str) -> ConsensusTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound("Consensus task not found", {"task_id": task_id})
        return task

    def _evaluate(self, task: ConsensusTask, now: float) -> Optional[_Outcome]:
        if task.quorum_reached():
            task.status      = TaskStatus.COMPLETED
            task.finished_at = now
            self._cond.notify_all()
            logger.info("Consensus reached on %s (k=%d n=%d)",
                        task.task_id, task.approvals, task.responses)
            return _Outcome(
                task=task,
                decision=SettlementDecision(
                    claim_id=                task.claim_id,
                    approved_payout=         task.proposed_payout,
                    participating_attestors= tuple(task.approving_attestors()),
                    task_id=                 task.task_id,
                ),
            )
        if task.participation_exhausted(self.config.failure_participation_bps):
            return self._fail(task, RejectionReason.QUORUM_NOT_REACHED, now)
        return None

    def _fail(self, task: ConsensusTask, reason: str, now: float) -> _Outcome:
        task.status         = TaskStatus.FAILED
        task.finished_at    = now
        task.failure_reason = reason
        self._cond.notify_all()
        logger.warning("Consensus failed on %s: %s (k=%d n=%d)",
                       task.task_id, reason, task.approvals, task.responses)
        missed = task.non_responders() if reason == RejectionReason.DEADLINE_EXCEEDED else None
        return _Outcome(task=task, reason=reason, missed=missed)

    # ── Dispatch (lock released) ──────────────────────────────

    def _dispatch(self, outcome: _Outcome) -> None:
        task = outcome.task

        if outcome.conflict is not None:
            self.registry.report_misbehavior(
                outcome.offender,
                MisbehaviorKind.CONFLICTING_ATTESTATION,
                outcome.conflict,
            )
        for attestor_id in outcome.missed or ():
            self.registry.record_missed_task(attestor_id, task.task_id)

        if outcome.decision is not None:
            self.store.mark_attested(task.claim_id, outcome.decision.approved_payout)
            with self._lock:
                handlers = tuple(self._handlers)
            for handler in handlers:
                try:
                    handler(outcome.decision)
                except Exception:
                    logger.exception("Decision handler failed for %s", task.claim_id)
            return

        self.store.mark_rejected(task.claim_id, outcome.reason)
