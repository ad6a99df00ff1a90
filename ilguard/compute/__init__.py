"""
ILGuard Confidential Compute - request/response contract, client and a
local worker.
"""

from ilguard.compute.client import ConfidentialComputeClient
from ilguard.compute.messages import ComputeRequest, ComputeResponse
from ilguard.compute.worker import (
    ComputeTransport,
    LocalComputeWorker,
    WorkerInputs,
    audit_hash_for,
)

__all__ = [
    "ComputeRequest",
    "ComputeResponse",
    "ComputeTransport",
    "ConfidentialComputeClient",
    "LocalComputeWorker",
    "WorkerInputs",
    "audit_hash_for",
]
