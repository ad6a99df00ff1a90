"""
ILGuard Runtime - wires the claim engine together.
"""

from ilguard.runtime.context import RuntimeContext

__all__ = ["RuntimeContext"]
