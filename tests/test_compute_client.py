"""
tests/test_compute_client.py

Confidential compute client and the in-process worker.

  VERIFICATION
    valid worker signature accepted, delivered to on_result subscribers
    forged signature / unknown worker / claim mismatch → InvalidWorkerSignature,
    claim Rejected

  TIMEOUTS
    slow worker retried up to the budget, then claim Rejected(ComputeTimeout)
    transient transport errors retried
    worker crash → claim Rejected(ComputeFailed), not retried

  LOCAL WORKER
    signed payout equals the calculator's
    positions that do not open the commitments are refused
"""

import threading

import pytest

from ilguard.claims.store import PolicyClaimStore
from ilguard.compute.client import ConfidentialComputeClient
from ilguard.compute.messages import ComputeRequest
from ilguard.compute.worker import LocalComputeWorker, WorkerInputs
from ilguard.core.config import EngineConfig
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.exceptions import ComputeTimeout, InvalidCommitment, InvalidWorkerSignature
from ilguard.core.models import PRICE_SCALE, ClaimStatus, PositionSnapshot, RejectionReason
from tests.helpers.factories import ENTRY, EXIT, PRICE_REF, ManualClock, open_claim, signed_response

FAST = EngineConfig(compute_timeout_seconds=0.05, compute_max_retries=2)


class StubTransport:
    """Returns a response signed by `key`, optionally failing first."""

    def __init__(self, key, payout=270, worker_id="worker-1", failures=(), claim_override=None):
        self.key            = key
        self.payout         = payout
        self.worker_id      = worker_id
        self.failures       = list(failures)
        self.claim_override = claim_override
        self.calls          = 0

    def compute(self, request):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return signed_response(
            self.key, self.claim_override or request.claim_id, self.payout, self.worker_id
        )


class HangingTransport:
    def __init__(self):
        self.release = threading.Event()
        self.calls   = 0

    def compute(self, request):
        self.calls += 1
        self.release.wait(5)
        raise ConnectionError("released")


@pytest.fixture
def worker_key():
    return Ed25519KeyManager.generate()


@pytest.fixture
def store():
    return PolicyClaimStore(clock=ManualClock())


@pytest.fixture
def claim_id(store):
    return open_claim(store)[1]


def _request(claim_id):
    return ComputeRequest(claim_id, ENTRY.commitment(), EXIT.commitment(), PRICE_REF)


def _client(transport, worker_key, store, config=FAST):
    return ConfidentialComputeClient(
        transport, {"worker-1": worker_key.public_key_hex}, store, config
    )


# ─────────────────────────────────────────────────────────────
# Verification
# ─────────────────────────────────────────────────────────────

class TestVerification:

    def test_valid_response_delivered(self, worker_key, store, claim_id):
        client = _client(StubTransport(worker_key), worker_key, store)
        seen = []
        client.on_result(lambda req, resp: seen.append((req.claim_id, resp.payout)))
        try:
            response = client.compute(_request(claim_id))
        finally:
            client.shutdown()
        assert response.payout == 270
        assert seen == [(claim_id, 270)]
        assert store.get_claim(claim_id).status is ClaimStatus.REQUESTED

    def test_future_resolves(self, worker_key, store, claim_id):
        client = _client(StubTransport(worker_key), worker_key, store)
        try:
            future = client.request_computation(
                claim_id, ENTRY.commitment(), EXIT.commitment(), PRICE_REF
            )
            assert future.result(timeout=5).claim_id == claim_id
        finally:
            client.shutdown()

    def test_malformed_request_rejected_up_front(self, worker_key, store, claim_id):
        client = _client(StubTransport(worker_key), worker_key, store)
        try:
            with pytest.raises(InvalidCommitment):
                client.request_computation(claim_id, "0x12", EXIT.commitment(), PRICE_REF)
        finally:
            client.shutdown()

    def test_forged_signature(self, worker_key, store, claim_id):
        forger = Ed25519KeyManager.generate()
        client = _client(StubTransport(forger), worker_key, store)
        try:
            with pytest.raises(InvalidWorkerSignature):
                client.compute(_request(claim_id))
        finally:
            client.shutdown()
        claim = store.get_claim(claim_id)
        assert claim.status is ClaimStatus.REJECTED
        assert claim.rejection_reason == RejectionReason.INVALID_WORKER_SIGNATURE

    def test_unknown_worker(self, worker_key, store, claim_id):
        client = _client(StubTransport(worker_key, worker_id="rogue"), worker_key, store)
        try:
            with pytest.raises(InvalidWorkerSignature):
                client.compute(_request(claim_id))
        finally:
            client.shutdown()
        assert store.get_claim(claim_id).status is ClaimStatus.REJECTED

    def test_response_for_other_claim(self, worker_key, store, claim_id):
        transport = StubTransport(worker_key, claim_override="clm-other")
        client = _client(transport, worker_key, store)
        try:
            with pytest.raises(InvalidWorkerSignature):
                client.compute(_request(claim_id))
        finally:
            client.shutdown()

    def test_future_carries_rejection(self, worker_key, store, claim_id):
        client = _client(StubTransport(Ed25519KeyManager.generate()), worker_key, store)
        try:
            future = client.request_computation(
                claim_id, ENTRY.commitment(), EXIT.commitment(), PRICE_REF
            )
            with pytest.raises(InvalidWorkerSignature):
                future.result(timeout=5)
        finally:
            client.shutdown()


# ─────────────────────────────────────────────────────────────
# Timeouts and retries
# ─────────────────────────────────────────────────────────────

class TestRetries:

    def test_timeout_exhausts_budget_and_rejects(self, worker_key, store, claim_id):
        transport = HangingTransport()
        client = _client(transport, worker_key, store)
        try:
            with pytest.raises(ComputeTimeout):
                client.compute(_request(claim_id))
        finally:
            transport.release.set()
            client.shutdown()
        assert transport.calls == 3
        claim = store.get_claim(claim_id)
        assert claim.status is ClaimStatus.REJECTED
        assert claim.rejection_reason == RejectionReason.COMPUTE_TIMEOUT

    def test_transient_errors_retried(self, worker_key, store, claim_id):
        transport = StubTransport(worker_key, failures=[ConnectionError("down"), TimeoutError()])
        client = _client(transport, worker_key, store)
        try:
            assert client.compute(_request(claim_id)).payout == 270
        finally:
            client.shutdown()
        assert transport.calls == 3

    def test_worker_crash_not_retried(self, worker_key, store, claim_id):
        transport = StubTransport(worker_key, failures=[ValueError("bad input")])
        client = _client(transport, worker_key, store)
        try:
            with pytest.raises(ValueError):
                client.compute(_request(claim_id))
        finally:
            client.shutdown()
        assert transport.calls == 1
        assert store.get_claim(claim_id).rejection_reason == RejectionReason.COMPUTE_FAILED


# ─────────────────────────────────────────────────────────────
# Local worker
# ─────────────────────────────────────────────────────────────

class TestLocalWorker:

    def _worker(self, key, entry=ENTRY, exit_=EXIT):
        inputs = WorkerInputs(entry, exit_, PRICE_SCALE, 1000, 5000)
        return LocalComputeWorker("worker-1", key, lambda request: inputs)

    def test_signs_calculator_payout(self, worker_key):
        response = self._worker(worker_key).compute(_request("clm-1"))
        assert response.payout == 270
        assert response.verify(worker_key.public_key_hex)
        assert response.audit_hash.startswith("0x")

    def test_refuses_positions_not_matching_commitments(self, worker_key):
        worker = self._worker(worker_key, exit_=PositionSnapshot(1, 1))
        with pytest.raises(ValueError):
            worker.compute(_request("clm-1"))

    def test_response_round_trips_through_dict(self, worker_key):
        response = self._worker(worker_key).compute(_request("clm-1"))
        assert type(response).from_dict(response.to_dict()).verify(worker_key.public_key_hex)
