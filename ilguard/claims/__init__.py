"""
ILGuard Claims - policies and the claim lifecycle.
"""

from ilguard.claims.store import PolicyClaimStore

__all__ = ["PolicyClaimStore"]
