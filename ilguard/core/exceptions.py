"""
ILGuard Exception Hierarchy

All exceptions inherit from ILGuardError for easy catching.

Taxonomy:
    ValidationError     bad parameters or malformed input; no state change
    NotFoundError       unknown policy / claim / task / attestor
    CoordinationError   timeouts, quorum problems, illegal transitions
    IntegrityError      signature failures and misbehavior evidence
    EconomicError       reserve shortfalls
"""


class ILGuardError(Exception):
    """Base exception for all ILGuard errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# ── Validation ────────────────────────────────────────────────

class ValidationError(ILGuardError):
    """Raised when data validation fails"""
    pass


class InvalidParameters(ValidationError):
    """Raised when policy or configuration parameters are out of range"""
    pass


class InvalidCommitment(ValidationError):
    """Raised when a position commitment is malformed or does not match"""
    pass


class PayoutOverflow(ValidationError):
    """Raised when fixed-point arithmetic exceeds the uint256 range"""
    pass


# ── Lookup ────────────────────────────────────────────────────

class NotFoundError(ILGuardError):
    """Raised when a referenced record does not exist"""
    pass


class PolicyNotFound(NotFoundError):
    pass


class ClaimNotFound(NotFoundError):
    pass


class TaskNotFound(NotFoundError):
    pass


class AttestorNotFound(NotFoundError):
    pass


class ChallengeNotFound(NotFoundError):
    pass


# ── Coordination ──────────────────────────────────────────────

class CoordinationError(ILGuardError):
    """Raised when a lifecycle or consensus rule blocks an operation"""
    pass


class PolicyInactive(CoordinationError):
    pass


class ClaimAlreadyExists(CoordinationError):
    pass


class InvalidClaimStatus(CoordinationError):
    pass


class TaskNotPending(CoordinationError):
    pass


class DeadlineExceeded(CoordinationError):
    pass


class DuplicateAttestation(CoordinationError):
    pass


class QuorumUnreachable(CoordinationError):
    pass


class AttestorIneligible(CoordinationError):
    """Raised when an inactive (disqualified) attestor tries to vote"""
    pass


class ComputeTimeout(CoordinationError):
    """Raised when the compute worker exhausts its retry budget"""
    pass


class ChallengeRefused(CoordinationError):
    """Raised when a challenge is blocked by cooldown or cap, or is no longer pending"""
    pass


# ── Integrity ─────────────────────────────────────────────────

class IntegrityError(ILGuardError):
    """Raised when cryptographic integrity check fails"""
    pass


class InvalidWorkerSignature(IntegrityError):
    pass


class InvalidAttestationSignature(IntegrityError):
    pass


class ConflictingAttestation(IntegrityError):
    """Raised when an attestor signs two different votes for one task"""
    pass


class InvalidEvidence(IntegrityError):
    """Raised when a misbehavior report does not carry acceptable proof"""
    pass


class JournalError(IntegrityError):
    """Raised when the reserve journal cannot be written or is corrupted"""
    pass


# ── Economic ──────────────────────────────────────────────────

class EconomicError(ILGuardError):
    pass


class InsufficientReserve(EconomicError):
    """Raised by strict debits that would take a pool below zero"""
    pass
