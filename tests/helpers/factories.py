"""
tests/helpers/factories.py

Shared builders for the ILGuard test suite: a manual clock, position
snapshots, signed compute responses and a fully wired set of components
with in-process attestors.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ilguard.claims.store import PolicyClaimStore
from ilguard.compute.messages import ComputeResponse
from ilguard.consensus.attestor import AttestorNode
from ilguard.consensus.manager import AttestationConsensusManager
from ilguard.core.config import EngineConfig
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.events import EventBus
from ilguard.core.models import PRICE_SCALE, PolicyParams, PositionSnapshot, PriceReference
from ilguard.reserve.ledger import ReserveLedger
from ilguard.settlement.executor import SettlementExecutor
from ilguard.slashing.registry import StakeRegistry

PRICE_REF = "0x" + "ab" * 32
POOL      = "pool-eth-usdc"


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def params(deductible_bps=1000, cap_bps=5000, premium_bps=30, duration=86_400.0) -> PolicyParams:
    return PolicyParams(deductible_bps, cap_bps, premium_bps, duration)


def price(value: int = PRICE_SCALE) -> PriceReference:
    return PriceReference(PRICE_REF, value)


# hodl = 1000, lp = 700 at price 1.0
ENTRY = PositionSnapshot(1000, 0)
EXIT  = PositionSnapshot(700, 0)


def open_claim(store: PolicyClaimStore, entry=ENTRY, exit_=EXIT, pool=POOL,
               policy_params: Optional[PolicyParams] = None, with_data: bool = True):
    """Create a policy and a Requested claim on it. Returns (policy_id, claim_id)."""
    policy_id = store.create_policy(
        "owner-1", pool, policy_params or params(), entry.commitment(),
        entry_position=entry if with_data else None,
    )
    claim_id = store.request_claim(
        policy_id, exit_.commitment(), "owner-1",
        exit_position=exit_ if with_data else None,
        price=price() if with_data else None,
    )
    return policy_id, claim_id


def signed_response(key: Ed25519KeyManager, claim_id: str, payout: int,
                    worker_id: str = "worker-1") -> ComputeResponse:
    return ComputeResponse(
        claim_id=   claim_id,
        payout=     payout,
        audit_hash= "0x" + "cd" * 32,
        worker_id=  worker_id,
    ).signed_by(key)


@dataclass
class Engine:
    clock:      ManualClock
    bus:        EventBus
    config:     EngineConfig
    store:      PolicyClaimStore
    ledger:     ReserveLedger
    registry:   StakeRegistry
    manager:    AttestationConsensusManager
    executor:   SettlementExecutor
    worker_key: Ed25519KeyManager
    nodes:      Dict[str, AttestorNode] = field(default_factory=dict)

    def node_ids(self) -> List[str]:
        return sorted(self.nodes)


def build_engine(n_attestors: int = 5, stake: int = 1_000,
                 config: Optional[EngineConfig] = None) -> Engine:
    clock      = ManualClock()
    bus        = EventBus()
    config     = config or EngineConfig()
    worker_key = Ed25519KeyManager.generate()
    store      = PolicyClaimStore(bus=bus, clock=clock)
    ledger     = ReserveLedger()
    registry   = StakeRegistry(config=config, bus=bus, clock=clock)
    manager    = AttestationConsensusManager(registry, store, config, bus, clock)
    executor   = SettlementExecutor(store, ledger, Ed25519KeyManager.generate(), bus, clock)

    engine = Engine(clock, bus, config, store, ledger, registry, manager, executor, worker_key)
    for i in range(n_attestors):
        node = AttestorNode(f"att-{i}", Ed25519KeyManager.generate(),
                            {"worker-1": worker_key.public_key_hex})
        registry.register_attestor(node.attestor_id, node.public_key_hex, stake)
        engine.nodes[node.attestor_id] = node
    return engine
