"""
ILGuard Slashing - attestor stake, penalties and forgery challenges.
"""

from ilguard.slashing.registry import Attestor, Challenge, SlashRecord, StakeRegistry

__all__ = ["Attestor", "Challenge", "SlashRecord", "StakeRegistry"]
