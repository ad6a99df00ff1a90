"""
ILGuard engine configuration.

EngineConfig holds every tunable of the claim engine. Defaults are
production-safe; EngineConfig.from_yaml() loads a config file and
init_config_from_env() overlays ILGUARD_* variables.

Basis points (bps) are out of 10_000.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Optional

import yaml

from ilguard.core.exceptions import InvalidParameters
from ilguard.core.models import MisbehaviorKind

BPS_DENOMINATOR = 10_000


def _default_slash_bps() -> Dict[MisbehaviorKind, int]:
    return {
        MisbehaviorKind.CONFLICTING_ATTESTATION: 5_000,
        MisbehaviorKind.UNAVAILABILITY:          1_000,
        MisbehaviorKind.MALICIOUS_SIGNATURE:     10_000,
    }


@dataclass(frozen=True)
class EngineConfig:
    # Confidential compute
    compute_timeout_seconds:      float = 30.0
    compute_max_retries:          int   = 3

    # Attestation consensus
    consensus_deadline_seconds:   float = 300.0
    required_quorum:              int   = 3
    failure_participation_bps:    int   = 8_000
    task_retention_seconds:       float = 3_600.0
    reaper_interval_seconds:      float = 1.0

    # Stake & slashing
    unavailability_grace:         int   = 3
    disqualification_bps:         int   = 5_000
    minimum_stake:                int   = 1
    slash_bps:                    Dict[MisbehaviorKind, int] = field(
        default_factory=_default_slash_bps
    )

    # Third-party forgery challenges
    challenge_response_seconds:   float = 3_600.0
    challenge_cooldown_seconds:   float = 600.0
    max_challenges_per_attestor:  int   = 5

    # Reserve journal (None → in-memory only)
    journal_path:                 Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise InvalidParameters on any out-of-range value."""
        if self.compute_timeout_seconds <= 0:
            raise InvalidParameters(
                "compute_timeout_seconds must be positive",
                {"value": self.compute_timeout_seconds},
            )
        if self.compute_max_retries < 0:
            raise InvalidParameters(
                "compute_max_retries must be non-negative",
                {"value": self.compute_max_retries},
            )
        if self.consensus_deadline_seconds <= 0:
            raise InvalidParameters(
                "consensus_deadline_seconds must be positive",
                {"value": self.consensus_deadline_seconds},
            )
        if self.reaper_interval_seconds <= 0:
            raise InvalidParameters(
                "reaper_interval_seconds must be positive",
                {"value": self.reaper_interval_seconds},
            )
        if self.required_quorum < 1:
            raise InvalidParameters(
                "required_quorum must be at least 1",
                {"value": self.required_quorum},
            )
        for name in ("failure_participation_bps", "disqualification_bps"):
            value = getattr(self, name)
            if not 0 < value <= BPS_DENOMINATOR:
                raise InvalidParameters(
                    f"{name} must be in (0, {BPS_DENOMINATOR}]",
                    {"value": value},
                )
        if self.unavailability_grace < 1:
            raise InvalidParameters(
                "unavailability_grace must be at least 1",
                {"value": self.unavailability_grace},
            )
        if self.challenge_response_seconds <= 0:
            raise InvalidParameters(
                "challenge_response_seconds must be positive",
                {"value": self.challenge_response_seconds},
            )
        if self.challenge_cooldown_seconds < 0:
            raise InvalidParameters(
                "challenge_cooldown_seconds must be non-negative",
                {"value": self.challenge_cooldown_seconds},
            )
        if self.max_challenges_per_attestor < 1:
            raise InvalidParameters(
                "max_challenges_per_attestor must be at least 1",
                {"value": self.max_challenges_per_attestor},
            )
        if self.minimum_stake < 0:
            raise InvalidParameters(
                "minimum_stake must be non-negative",
                {"value": self.minimum_stake},
            )
        for kind in MisbehaviorKind:
            bps = self.slash_bps.get(kind)
            if bps is None or not 0 < bps <= BPS_DENOMINATOR:
                raise InvalidParameters(
                    f"slash_bps[{kind.value}] must be in (0, {BPS_DENOMINATOR}]",
                    {"value": bps},
                )

    def with_overrides(self, **changes) -> "EngineConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        return init_config_from_env(environ)

    @classmethod
    def from_yaml(cls, config_file: Path) -> "EngineConfig":
        """
        Load configuration from a YAML mapping of field names.

            required_quorum: 5
            consensus_deadline_seconds: 120
            slash_bps:
              conflicting_attestation: 2500
        """
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise InvalidParameters("config file must hold a mapping", {"path": str(config_file)})

        known   = {fld.name for fld in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidParameters("unknown config keys", {"keys": unknown})

        if "slash_bps" in data:
            slash = _default_slash_bps()
            try:
                slash.update({MisbehaviorKind(k): int(v) for k, v in data["slash_bps"].items()})
            except (ValueError, AttributeError) as exc:
                raise InvalidParameters("invalid slash_bps", {"error": exc}) from None
            data["slash_bps"] = slash
        return cls(**data)


# ─────────────────────────────────────────────────────────────
# Environment
# ─────────────────────────────────────────────────────────────

_ENV_PREFIX = "ILGUARD_"

_ENV_FIELDS = {
    "COMPUTE_TIMEOUT":       ("compute_timeout_seconds",     float),
    "COMPUTE_RETRIES":       ("compute_max_retries",         int),
    "CONSENSUS_DEADLINE":    ("consensus_deadline_seconds",  float),
    "REQUIRED_QUORUM":       ("required_quorum",             int),
    "FAILURE_PARTICIPATION": ("failure_participation_bps",   int),
    "TASK_RETENTION":        ("task_retention_seconds",      float),
    "REAPER_INTERVAL":       ("reaper_interval_seconds",     float),
    "UNAVAILABILITY_GRACE":  ("unavailability_grace",        int),
    "DISQUALIFICATION_BPS":  ("disqualification_bps",        int),
    "MINIMUM_STAKE":         ("minimum_stake",               int),
    "CHALLENGE_RESPONSE":    ("challenge_response_seconds",  float),
    "CHALLENGE_COOLDOWN":    ("challenge_cooldown_seconds",  float),
    "MAX_CHALLENGES":        ("max_challenges_per_attestor", int),
    "JOURNAL_PATH":          ("journal_path",                str),
}


def init_config_from_env(environ: Optional[Dict[str, str]] = None) -> EngineConfig:
    """
    Build an EngineConfig from ILGUARD_* environment variables.

    ILGUARD_CONFIG names an optional YAML file loaded first; the other
    variables override it. Unset variables keep their defaults.
    """
    environ = os.environ if environ is None else environ
    base    = EngineConfig()
    values  = {}

    config_file = environ.get(_ENV_PREFIX + "CONFIG")
    if config_file:
        base = EngineConfig.from_yaml(Path(config_file))

    for suffix, (name, cast) in _ENV_FIELDS.items():
        raw = environ.get(_ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            values[name] = cast(raw)
        except ValueError:
            raise InvalidParameters(
                f"{_ENV_PREFIX}{suffix} is not a valid {cast.__name__}",
                {"value": raw},
            ) from None

    return base.with_overrides(**values) if values else base
