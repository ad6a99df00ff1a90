"""
Stake & Slashing Registry.

Attestors live in an arena keyed by id and are never deleted; a
disqualified attestor keeps its record (and slash history) with
active=False.

    stake          decreases only by slashing, increases only by deposit
    slashed_total  monotonic
    slash amount   stake × slash_bps / 10000, rounded up
    active         False after any CONFLICTING_ATTESTATION or
                   MALICIOUS_SIGNATURE slash, once slashed_total ≥
                   disqualification_bps of the stake ever bonded, or once
                   stake falls below minimum_stake

Misbehavior kinds and the proof each requires:

    CONFLICTING_ATTESTATION  two validly signed, differing votes by the
                             attestor for the same task
    UNAVAILABILITY           unavailability_grace consecutive missed tasks
                             (tracked here via record_missed_task)
    MALICIOUS_SIGNATURE      a payload/signature pair attributed to the
                             attestor whose signature does NOT verify under
                             its registered key

A third-party MALICIOUS_SIGNATURE accusation can instead go through
open_challenge(): nothing is slashed until the attestor fails to rebut it
with a valid signature over the disputed payload, or stays silent past
challenge_response_seconds.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ilguard.core.canonical import canonicalize
from ilguard.core.config import BPS_DENOMINATOR, EngineConfig
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.events import (
    AttestorDeactivated,
    AttestorSlashed,
    ChallengeOpened,
    ChallengeResolved,
    EventBus,
)
from ilguard.core.exceptions import (
    AttestorNotFound,
    ChallengeNotFound,
    ChallengeRefused,
    DeadlineExceeded,
    InvalidEvidence,
    InvalidParameters,
)
from ilguard.core.models import ChallengeStatus, MisbehaviorKind, require_uint
from ilguard.core.time import Clock, system_clock

logger = logging.getLogger(__name__)

# Proven dishonesty removes the attestor whatever the slash size.
_DISQUALIFYING = frozenset({
    MisbehaviorKind.CONFLICTING_ATTESTATION,
    MisbehaviorKind.MALICIOUS_SIGNATURE,
})


@dataclass(frozen=True)
class SlashRecord:
    kind:      MisbehaviorKind
    amount:    int
    evidence:  Dict[str, Any]
    at:        float


@dataclass
class Attestor:
    attestor_id:       str
    public_key_hex:    str
    stake:             int
    bonded_total:      int
    slashed_total:     int = 0
    active:            bool = True
    missed_in_a_row:   int = 0
    slashing_history:  List[SlashRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestor_id":    self.attestor_id,
            "public_key_hex": self.public_key_hex,
            "stake":          str(self.stake),
            "slashed_total":  str(self.slashed_total),
            "active":         self.active,
            "slash_count":    len(self.slashing_history),
        }


@dataclass
class Challenge:
    """A third-party forgery accusation awaiting the attestor's rebuttal."""
    challenge_id:       str
    challenger:         str
    attestor_id:        str
    evidence:           Dict[str, Any]
    created_at:         float
    response_deadline:  float
    status:             ChallengeStatus = ChallengeStatus.PENDING
    response:           Optional[Dict[str, Any]] = None
    slash:              Optional[SlashRecord] = None
    resolved_at:        Optional[float] = None


class StakeRegistry:
    """Attestor collateral and penalties. Thread-safe."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        bus:    Optional[EventBus] = None,
        clock:  Clock = system_clock,
    ) -> None:
        self.config = config or EngineConfig()
        self.bus    = bus or EventBus()
        self._clock = clock
        self._lock  = threading.RLock()
        self._attestors: Dict[str, Attestor] = {}
        self._challenges:        Dict[str, Challenge] = {}
        self._challenge_counts:  Dict[str, int] = {}
        self._last_challenge_at: Dict[str, float] = {}

    # ── Registration & stake ──────────────────────────────────

    def register_attestor(self, attestor_id: str, public_key_hex: str, stake: int) -> Attestor:
        require_uint(stake, "stake")
        if stake < self.config.minimum_stake:
            raise InvalidParameters(
                "Stake below minimum",
                {"stake": stake, "minimum": self.config.minimum_stake},
            )
        if not isinstance(public_key_hex, str) or len(public_key_hex) != 64:
            raise InvalidParameters(
                "public_key_hex must be 64 hex chars", {"attestor_id": attestor_id}
            )
        with self._lock:
            if attestor_id in self._attestors:
                raise InvalidParameters(
                    "Attestor already registered", {"attestor_id": attestor_id}
                )
            attestor = Attestor(
                attestor_id=    attestor_id,
                public_key_hex= public_key_hex,
                stake=          stake,
                bonded_total=   stake,
            )
            self._attestors[attestor_id] = attestor
        logger.info("Attestor %s registered with stake %d", attestor_id, stake)
        return attestor

    def deposit_stake(self, attestor_id: str, amount: int) -> int:
        """Top up collateral. Does not reactivate a disqualified attestor."""
        require_uint(amount, "amount")
        with self._lock:
            attestor = self.get_attestor(attestor_id)
            attestor.stake        += amount
            attestor.bonded_total += amount
            return attestor.stake

    def get_attestor(self, attestor_id: str) -> Attestor:
        with self._lock:
            attestor = self._attestors.get(attestor_id)
            if attestor is None:
                raise AttestorNotFound("Attestor not registered", {"attestor_id": attestor_id})
            return attestor

    def active_attestors(self) -> List[Attestor]:
        with self._lock:
            return [a for a in self._attestors.values() if a.active]

    def all_attestors(self) -> List[Attestor]:
        with self._lock:
            return list(self._attestors.values())

    def is_eligible(self, attestor_id: str) -> bool:
        with self._lock:
            attestor = self._attestors.get(attestor_id)
            return attestor is not None and attestor.active

    # ── Availability tracking ─────────────────────────────────

    def record_participation(self, attestor_id: str) -> None:
        with self._lock:
            attestor = self._attestors.get(attestor_id)
            if attestor is not None:
                attestor.missed_in_a_row = 0

    def record_missed_task(self, attestor_id: str, task_id: str) -> Optional[SlashRecord]:
        """
        Count one missed task. Slashes for UNAVAILABILITY when the grace
        count is reached, then resets the counter.
        """
        with self._lock:
            attestor = self.get_attestor(attestor_id)
            if not attestor.active:
                return None
            attestor.missed_in_a_row += 1
            logger.info("Attestor %s missed task %s (%d in a row)",
                        attestor_id, task_id, attestor.missed_in_a_row)
            if attestor.missed_in_a_row < self.config.unavailability_grace:
                return None
            missed = attestor.missed_in_a_row
            attestor.missed_in_a_row = 0
            return self._slash(
                attestor,
                MisbehaviorKind.UNAVAILABILITY,
                {"missed_in_a_row": missed, "last_task_id": task_id},
            )

    # ── Misbehavior ───────────────────────────────────────────

    def report_misbehavior(
        self,
        attestor_id: str,
        kind:        MisbehaviorKind,
        evidence:    Dict[str, Any],
    ) -> SlashRecord:
        """
        Validate evidence for `kind` and slash.

        Raises:
            AttestorNotFound, InvalidEvidence
        """
        kind = MisbehaviorKind(kind)
        with self._lock:
            attestor = self.get_attestor(attestor_id)
            if kind is MisbehaviorKind.CONFLICTING_ATTESTATION:
                self._check_conflict_evidence(attestor, evidence)
            elif kind is MisbehaviorKind.MALICIOUS_SIGNATURE:
                self._check_forgery_evidence(attestor, evidence)
            else:
                self._check_unavailability_evidence(evidence)
            return self._slash(attestor, kind, evidence)

    # ── Challenges ────────────────────────────────────────────

    def open_challenge(self, challenger: str, attestor_id: str,
                       evidence: Dict[str, Any]) -> Challenge:
        """
        Accuse an attestor of a forged signature on someone else's say-so.

        The evidence is checked as for MALICIOUS_SIGNATURE, but nothing is
        slashed yet: the attestor has challenge_response_seconds to rebut.
        A challenge left unanswered past its deadline is upheld.

        Raises:
            AttestorNotFound, InvalidEvidence, ChallengeRefused
        """
        now = self._clock()
        with self._lock:
            attestor = self.get_attestor(attestor_id)
            self._check_forgery_evidence(attestor, evidence)

            last = self._last_challenge_at.get(attestor_id)
            if last is not None and now - last < self.config.challenge_cooldown_seconds:
                raise ChallengeRefused(
                    "Attestor is in challenge cooldown",
                    {"attestor_id": attestor_id,
                     "retry_in": self.config.challenge_cooldown_seconds - (now - last)},
                )
            count = self._challenge_counts.get(attestor_id, 0)
            if count >= self.config.max_challenges_per_attestor:
                raise ChallengeRefused(
                    "Challenge limit reached for attestor",
                    {"attestor_id": attestor_id, "limit": self.config.max_challenges_per_attestor},
                )

            challenge = Challenge(
                challenge_id=      f"chl-{uuid.uuid4()}",
                challenger=        challenger,
                attestor_id=       attestor_id,
                evidence=          evidence,
                created_at=        now,
                response_deadline= now + self.config.challenge_response_seconds,
            )
            self._challenges[challenge.challenge_id] = challenge
            self._challenge_counts[attestor_id] = count + 1
            self._last_challenge_at[attestor_id] = now

            logger.info("Challenge %s opened by %s against %s",
                        challenge.challenge_id, challenger, attestor_id)
            self.bus.publish(ChallengeOpened(
                challenge.challenge_id, attestor_id, challenger, challenge.response_deadline
            ))
            return challenge

    def respond_to_challenge(self, challenge_id: str, signature: str) -> Challenge:
        """
        Rebut with the attestor's own signature over the disputed payload.
        A signature that verifies under the registered key dismisses the
        challenge; anything else upholds it and slashes.

        Raises:
            ChallengeNotFound, ChallengeRefused (already resolved),
            DeadlineExceeded (the challenge is upheld first)
        """
        now = self._clock()
        with self._lock:
            challenge = self.get_challenge(challenge_id)
            if challenge.status is not ChallengeStatus.PENDING:
                raise ChallengeRefused(
                    "Challenge already resolved",
                    {"challenge_id": challenge_id, "status": challenge.status.value},
                )
            if now > challenge.response_deadline:
                self._resolve(challenge, upheld=True, now=now)
                raise DeadlineExceeded(
                    "Challenge response window closed",
                    {"challenge_id": challenge_id, "deadline": challenge.response_deadline},
                )

            attestor = self.get_attestor(challenge.attestor_id)
            challenge.response = {"signature": signature}
            rebutted = Ed25519KeyManager.verify_detached(
                canonicalize(challenge.evidence["payload"]), signature, attestor.public_key_hex
            )
            self._resolve(challenge, upheld=not rebutted, now=now)
            return challenge

    def expire_challenges(self) -> List[str]:
        """Uphold every pending challenge whose response window has closed."""
        with self._lock:
            now = self._clock()
            overdue = [
                c for c in self._challenges.values()
                if c.status is ChallengeStatus.PENDING and now > c.response_deadline
            ]
            for challenge in overdue:
                self._resolve(challenge, upheld=True, now=now)
            return [c.challenge_id for c in overdue]

    def get_challenge(self, challenge_id: str) -> Challenge:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None:
                raise ChallengeNotFound("Challenge not found", {"challenge_id": challenge_id})
            return challenge

    def challenges_for(self, attestor_id: str) -> List[Challenge]:
        with self._lock:
            return [c for c in self._challenges.values() if c.attestor_id == attestor_id]

    def challenge_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = {"total": len(self._challenges)}
            for status in ChallengeStatus:
                stats[status.value] = sum(
                    1 for c in self._challenges.values() if c.status is status
                )
            return stats

    def _resolve(self, challenge: Challenge, upheld: bool, now: float) -> None:
        """Caller holds the lock."""
        challenge.status      = ChallengeStatus.UPHELD if upheld else ChallengeStatus.DISMISSED
        challenge.resolved_at = now
        logger.info("Challenge %s against %s %s",
                    challenge.challenge_id, challenge.attestor_id, challenge.status.value)
        if upheld:
            attestor = self.get_attestor(challenge.attestor_id)
            challenge.slash = self._slash(
                attestor,
                MisbehaviorKind.MALICIOUS_SIGNATURE,
                {"challenge_id": challenge.challenge_id, **challenge.evidence},
            )
        self.bus.publish(ChallengeResolved(
            challenge.challenge_id, challenge.attestor_id, challenge.status.value
        ))

    # ── Evidence rules ────────────────────────────────────────

    def _check_conflict_evidence(self, attestor: Attestor, evidence: Dict[str, Any]) -> None:
        votes = evidence.get("votes")
        if not isinstance(votes, (list, tuple)) or len(votes) != 2:
            raise InvalidEvidence("Conflict evidence needs exactly two votes")
        try:
            payloads = [v["payload"] for v in votes]
            sigs     = [v["signature"] for v in votes]
        except (KeyError, TypeError):
            raise InvalidEvidence("Each vote needs payload and signature") from None
        if payloads[0].get("task_id") != payloads[1].get("task_id"):
            raise InvalidEvidence("Votes are for different tasks")
        if payloads[0] == payloads[1]:
            raise InvalidEvidence("Votes do not conflict")
        for payload, sig in zip(payloads, sigs):
            if not Ed25519KeyManager.verify_detached(
                canonicalize(payload), sig, attestor.public_key_hex
            ):
                raise InvalidEvidence(
                    "Conflicting vote not signed by attestor",
                    {"attestor_id": attestor.attestor_id},
                )

    def _check_forgery_evidence(self, attestor: Attestor, evidence: Dict[str, Any]) -> None:
        payload   = evidence.get("payload")
        signature = evidence.get("signature")
        if not isinstance(payload, dict) or not isinstance(signature, str) or not signature:
            raise InvalidEvidence("Forgery evidence needs payload dict and signature")
        if Ed25519KeyManager.verify_detached(
            canonicalize(payload), signature, attestor.public_key_hex
        ):
            raise InvalidEvidence(
                "Signature is valid; no forgery proven",
                {"attestor_id": attestor.attestor_id},
            )

    def _check_unavailability_evidence(self, evidence: Dict[str, Any]) -> None:
        missed = evidence.get("missed_in_a_row", 0)
        if not isinstance(missed, int) or missed < self.config.unavailability_grace:
            raise InvalidEvidence(
                "Unavailability below grace period",
                {"missed": missed, "grace": self.config.unavailability_grace},
            )

    # ── Penalty ───────────────────────────────────────────────

    def _slash(self, attestor: Attestor, kind: MisbehaviorKind,
               evidence: Dict[str, Any]) -> SlashRecord:
        """Caller holds the lock."""
        bps    = self.config.slash_bps[kind]
        amount = (attestor.stake * bps + BPS_DENOMINATOR - 1) // BPS_DENOMINATOR
        attestor.stake         -= amount
        attestor.slashed_total += amount
        record = SlashRecord(kind=kind, amount=amount, evidence=evidence, at=self._clock())
        attestor.slashing_history.append(record)

        logger.warning("Attestor %s slashed %d for %s (stake now %d)",
                       attestor.attestor_id, amount, kind.value, attestor.stake)
        self.bus.publish(AttestorSlashed(attestor.attestor_id, kind.value, amount, attestor.stake))

        disqualified = (
            kind in _DISQUALIFYING
            or attestor.slashed_total * BPS_DENOMINATOR
            >= attestor.bonded_total * self.config.disqualification_bps
            or attestor.stake < max(self.config.minimum_stake, 1)
        )
        if attestor.active and disqualified:
            attestor.active = False
            logger.warning("Attestor %s deactivated (slashed_total=%d)",
                           attestor.attestor_id, attestor.slashed_total)
            self.bus.publish(AttestorDeactivated(attestor.attestor_id, attestor.slashed_total))
        return record
