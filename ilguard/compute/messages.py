"""
Confidential compute wire contract.

    Request:  { claim_id, entry_commitment, exit_commitment, public_price_ref }
    Response: { claim_id, payout, audit_hash, worker_signature, worker_id }

The worker signs JCS({claim_id, payout, audit_hash, worker_id}) with its
Ed25519 key. payout travels as a decimal string.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ilguard.core.canonical import canonicalize
from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.models import require_commitment


@dataclass(frozen=True)
class ComputeRequest:
    claim_id:          str
    entry_commitment:  str
    exit_commitment:   str
    public_price_ref:  str

    def validate(self) -> None:
        require_commitment(self.entry_commitment, "entry_commitment")
        require_commitment(self.exit_commitment, "exit_commitment")
        require_commitment(self.public_price_ref, "public_price_ref")

    def to_dict(self) -> Dict[str, str]:
        return {
            "claim_id":         self.claim_id,
            "entry_commitment": self.entry_commitment,
            "exit_commitment":  self.exit_commitment,
            "public_price_ref": self.public_price_ref,
        }


@dataclass(frozen=True)
class ComputeResponse:
    claim_id:          str
    payout:            int
    audit_hash:        str
    worker_id:         str
    worker_signature:  Optional[str] = None

    def to_signing_dict(self) -> Dict[str, Any]:
        return {
            "audit_hash": self.audit_hash,
            "claim_id":   self.claim_id,
            "payout":     str(self.payout),
            "worker_id":  self.worker_id,
        }

    def canonical_bytes(self) -> bytes:
        return canonicalize(self.to_signing_dict())

    def signed_by(self, key_manager: Ed25519KeyManager) -> "ComputeResponse":
        """Return a copy carrying key_manager's signature."""
        return ComputeResponse(
            claim_id=         self.claim_id,
            payout=           self.payout,
            audit_hash=       self.audit_hash,
            worker_id=        self.worker_id,
            worker_signature= key_manager.sign(self.canonical_bytes()),
        )

    def verify(self, public_key_hex: str) -> bool:
        if not self.worker_signature:
            return False
        return Ed25519KeyManager.verify_detached(
            self.canonical_bytes(), self.worker_signature, public_key_hex
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_signing_dict()
        d["worker_signature"] = self.worker_signature
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComputeResponse":
        return cls(
            claim_id=         data["claim_id"],
            payout=           int(data["payout"]),
            audit_hash=       data["audit_hash"],
            worker_id=        data["worker_id"],
            worker_signature= data.get("worker_signature"),
        )
