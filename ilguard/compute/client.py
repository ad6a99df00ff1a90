"""
Confidential Compute Client.

Sends a claim-computation request to the compute worker and validates the
signed response before anything downstream sees it.

    request_computation(...)  → Future[ComputeResponse]

Per request:
    1. Call the transport, waiting at most compute_timeout_seconds
    2. On timeout (or transport error) retry, up to compute_max_retries times
    3. Budget exhausted         → claim Rejected(ComputeTimeout)
       Any other worker error  → claim Rejected(ComputeFailed), not retried
    4. Unknown worker / claim mismatch / bad signature
                                → claim Rejected(InvalidWorkerSignature)
    5. Otherwise deliver the response to on_result subscribers

The payout in a response is advisory. It seeds the attestation round and
is re-bounded by the Payout Calculator at settlement.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, List, Optional

from ilguard.claims.store import PolicyClaimStore
from ilguard.compute.messages import ComputeRequest, ComputeResponse
from ilguard.compute.worker import ComputeTransport
from ilguard.core.config import EngineConfig
from ilguard.core.exceptions import ComputeTimeout, InvalidWorkerSignature
from ilguard.core.models import RejectionReason

logger = logging.getLogger(__name__)

ResultHandler = Callable[[ComputeRequest, ComputeResponse], None]


class ConfidentialComputeClient:

    def __init__(
        self,
        transport:    ComputeTransport,
        worker_keys:  Dict[str, str],
        store:        PolicyClaimStore,
        config:       Optional[EngineConfig] = None,
        max_workers:  int = 8,
    ) -> None:
        """
        Args:
            transport:   anything with compute(request) -> ComputeResponse
            worker_keys: worker_id → Ed25519 public key hex
            store:       claim store, used to reject failed claims
        """
        self.transport   = transport
        self.worker_keys = dict(worker_keys)
        self.store       = store
        self.config      = config or EngineConfig()

        self._handlers: List[ResultHandler] = []
        self._handlers_lock = threading.Lock()
        self._requests = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="ilguard-compute")
        self._calls    = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="ilguard-transport")

    # ── Subscription ──────────────────────────────────────────

    def on_result(self, handler: ResultHandler) -> None:
        with self._handlers_lock:
            self._handlers.append(handler)

    # ── Requests ──────────────────────────────────────────────

    def request_computation(
        self,
        claim_id:          str,
        entry_commitment:  str,
        exit_commitment:   str,
        public_price_ref:  str,
    ) -> "Future[ComputeResponse]":
        """
        Submit asynchronously. The returned future resolves to the verified
        response, or raises ComputeTimeout / InvalidWorkerSignature after the
        claim has already been rejected.
        """
        request = ComputeRequest(claim_id, entry_commitment, exit_commitment, public_price_ref)
        request.validate()
        return self._requests.submit(self.compute, request)

    def compute(self, request: ComputeRequest) -> ComputeResponse:
        """Synchronous form of request_computation, on the calling thread."""
        response = self._call_with_retries(request)
        try:
            self.verify_response(request, response)
        except InvalidWorkerSignature:
            self.store.mark_rejected(request.claim_id, RejectionReason.INVALID_WORKER_SIGNATURE)
            raise

        logger.info("Compute result for %s: payout=%d worker=%s",
                    request.claim_id, response.payout, response.worker_id)

        with self._handlers_lock:
            handlers = tuple(self._handlers)
        for handler in handlers:
            handler(request, response)
        return response

    def verify_response(self, request: ComputeRequest, response: ComputeResponse) -> None:
        """Raise InvalidWorkerSignature unless the response is authentic."""
        if response.claim_id != request.claim_id:
            raise InvalidWorkerSignature(
                "Response is for a different claim",
                {"expected": request.claim_id, "got": response.claim_id},
            )
        public_key = self.worker_keys.get(response.worker_id)
        if public_key is None:
            raise InvalidWorkerSignature(
                "Unknown compute worker", {"worker_id": response.worker_id}
            )
        if not response.verify(public_key):
            logger.warning("Invalid worker signature on %s from %s",
                           request.claim_id, response.worker_id)
            raise InvalidWorkerSignature(
                "Worker signature does not verify",
                {"claim_id": request.claim_id, "worker_id": response.worker_id},
            )

    def shutdown(self, wait: bool = True) -> None:
        self._requests.shutdown(wait=wait)
        self._calls.shutdown(wait=False)

    # ── Internal ──────────────────────────────────────────────

    def _call_with_retries(self, request: ComputeRequest) -> ComputeResponse:
        attempts = self.config.compute_max_retries + 1
        timeout  = self.config.compute_timeout_seconds

        for attempt in range(1, attempts + 1):
            call = self._calls.submit(self.transport.compute, request)
            try:
                return call.result(timeout=timeout)
            except FutureTimeout:
                call.cancel()
                logger.warning("Compute timeout for %s (attempt %d/%d)",
                               request.claim_id, attempt, attempts)
            except (ComputeTimeout, TimeoutError, ConnectionError) as exc:
                logger.warning("Compute attempt %d/%d for %s failed: %s",
                               attempt, attempts, request.claim_id, exc)
            except Exception:
                logger.exception("Compute worker failed for %s", request.claim_id)
                self.store.mark_rejected(request.claim_id, RejectionReason.COMPUTE_FAILED)
                raise

        self.store.mark_rejected(request.claim_id, RejectionReason.COMPUTE_TIMEOUT)
        raise ComputeTimeout(
            "Compute worker did not respond within retry budget",
            {"claim_id": request.claim_id, "attempts": attempts},
        )
