"""
Lifecycle notifications.

Components publish small immutable event records on an EventBus. Delivery
is synchronous, in subscription order, on the publishing thread. A handler
that raises is logged and skipped; the remaining handlers still run.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimRequested:
    claim_id:         str
    exit_commitment:  str


@dataclass(frozen=True)
class ClaimAttested:
    claim_id:  str


@dataclass(frozen=True)
class ClaimSettled:
    claim_id:  str
    payout:    int


@dataclass(frozen=True)
class ClaimRejected:
    claim_id:  str
    reason:    str


@dataclass(frozen=True)
class UnderPaymentNotice:
    claim_id:  str
    pool_ref:  str
    entitled:  int
    paid:      int

    @property
    def shortfall(self) -> int:
        return self.entitled - self.paid


@dataclass(frozen=True)
class AttestationRequested:
    task_id:          str
    claim_id:         str
    proposed_payout:  int
    deadline:         float
    compute_result:   Dict[str, Any]


@dataclass(frozen=True)
class AttestorSlashed:
    attestor_id:  str
    kind:         str
    amount:       int
    remaining:    int


@dataclass(frozen=True)
class AttestorDeactivated:
    attestor_id:  str
    slashed_total: int


@dataclass(frozen=True)
class ChallengeOpened:
    challenge_id:       str
    attestor_id:        str
    challenger:         str
    response_deadline:  float


@dataclass(frozen=True)
class ChallengeResolved:
    challenge_id:  str
    attestor_id:   str
    status:        str


Handler = Callable[[Any], None]


class EventBus:
    """Thread-safe publish/subscribe keyed by event class."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)
        self._history: Optional[List[Any]] = None

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """Register handler; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return unsubscribe

    def record(self) -> List[Any]:
        """Start keeping every published event; returns the live list."""
        with self._lock:
            if self._history is None:
                self._history = []
            return self._history

    def publish(self, event: Any) -> None:
        with self._lock:
            handlers: Tuple[Handler, ...] = tuple(self._handlers.get(type(event), ()))
            if self._history is not None:
                self._history.append(event)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("event %s %s", type(event).__name__, asdict(event))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %r failed for %s", handler, type(event).__name__
                )
