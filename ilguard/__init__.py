"""
ilguard/__init__.py

ILGuard: Impermanent-Loss Claim Settlement and Attestation Consensus

Turns a liquidity withdrawal into a verified, bounded, non-replayable
payout:

    claim → confidential compute → attestor quorum → reserve debit

Every signed artifact (worker result, attestation vote, settlement record,
reserve journal entry) is Ed25519 over RFC 8785 canonical JSON.
"""

__version__ = "0.1.0"

from ilguard.claims.store import PolicyClaimStore
from ilguard.compute.client import ConfidentialComputeClient
from ilguard.consensus.attestor import AttestorNode
from ilguard.consensus.manager import AttestationConsensusManager
from ilguard.consensus.task import SettlementDecision
from ilguard.core.config import EngineConfig, init_config_from_env
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.events import EventBus
from ilguard.core.exceptions import ILGuardError
from ilguard.core.models import PolicyParams, PositionSnapshot, PriceReference
from ilguard.payout.calculator import compute_payout
from ilguard.reserve.ledger import ReserveLedger
from ilguard.runtime.context import RuntimeContext
from ilguard.settlement.executor import SettlementExecutor, SettlementRecord
from ilguard.slashing.registry import StakeRegistry

__all__ = [
    # Components
    "AttestationConsensusManager",
    "AttestorNode",
    "ConfidentialComputeClient",
    "PolicyClaimStore",
    "ReserveLedger",
    "RuntimeContext",
    "SettlementExecutor",
    "StakeRegistry",
    # Records
    "PolicyParams",
    "PositionSnapshot",
    "PriceReference",
    "SettlementDecision",
    "SettlementRecord",
    # Infrastructure
    "Ed25519KeyManager",
    "EngineConfig",
    "EventBus",
    "ILGuardError",
    "init_config_from_env",
    # Helpers
    "compute_payout",
]
