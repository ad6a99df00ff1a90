"""
tests/test_config.py

EngineConfig defaults, validation and ILGUARD_* environment overlay.
"""

import pytest

from ilguard.core.config import EngineConfig, init_config_from_env
from ilguard.core.exceptions import InvalidParameters
from ilguard.core.models import MisbehaviorKind


class TestDefaults:

    def test_defaults_are_valid(self):
        config = EngineConfig()
        assert config.required_quorum == 3
        assert config.failure_participation_bps == 8_000
        assert config.unavailability_grace == 3
        assert config.journal_path is None
        assert config.slash_bps[MisbehaviorKind.MALICIOUS_SIGNATURE] == 10_000

    def test_with_overrides_returns_copy(self):
        base = EngineConfig()
        tuned = base.with_overrides(required_quorum=5)
        assert tuned.required_quorum == 5
        assert base.required_quorum == 3

    @pytest.mark.parametrize("changes", [
        {"compute_timeout_seconds": 0},
        {"compute_max_retries": -1},
        {"consensus_deadline_seconds": -5.0},
        {"required_quorum": 0},
        {"failure_participation_bps": 10_001},
        {"disqualification_bps": 0},
        {"unavailability_grace": 0},
        {"minimum_stake": -1},
        {"reaper_interval_seconds": 0},
        {"challenge_response_seconds": 0},
        {"challenge_cooldown_seconds": -1},
        {"max_challenges_per_attestor": 0},
        {"slash_bps": {MisbehaviorKind.UNAVAILABILITY: 100}},
    ])
    def test_out_of_range_rejected(self, changes):
        with pytest.raises(InvalidParameters):
            EngineConfig(**changes)


class TestEnvironment:

    def test_unset_keeps_defaults(self):
        assert init_config_from_env({}) == EngineConfig()

    def test_overlay(self):
        config = EngineConfig.from_env({
            "ILGUARD_REQUIRED_QUORUM":    "4",
            "ILGUARD_CONSENSUS_DEADLINE": "12.5",
            "ILGUARD_JOURNAL_PATH":       "/var/lib/ilguard/reserve.jsonl",
            "ILGUARD_COMPUTE_RETRIES":    "",
            "ILGUARD_REAPER_INTERVAL":    "0.25",
            "ILGUARD_MAX_CHALLENGES":     "2",
        })
        assert config.required_quorum == 4
        assert config.consensus_deadline_seconds == 12.5
        assert config.journal_path == "/var/lib/ilguard/reserve.jsonl"
        assert config.compute_max_retries == EngineConfig().compute_max_retries
        assert config.reaper_interval_seconds == 0.25
        assert config.max_challenges_per_attestor == 2

    def test_unparseable_value(self):
        with pytest.raises(InvalidParameters):
            init_config_from_env({"ILGUARD_REQUIRED_QUORUM": "three"})

    def test_parsed_value_still_validated(self):
        with pytest.raises(InvalidParameters):
            init_config_from_env({"ILGUARD_REQUIRED_QUORUM": "0"})

    def test_config_file_then_variables(self, tmp_path):
        config_file = tmp_path / "ilguard.yaml"
        config_file.write_text("required_quorum: 5\nconsensus_deadline_seconds: 60\n")
        config = init_config_from_env({
            "ILGUARD_CONFIG":          str(config_file),
            "ILGUARD_REQUIRED_QUORUM": "7",
        })
        assert config.required_quorum == 7
        assert config.consensus_deadline_seconds == 60


class TestYamlFile:

    def test_load(self, tmp_path):
        config_file = tmp_path / "ilguard.yaml"
        config_file.write_text(
            "required_quorum: 4\n"
            "journal_path: /tmp/reserve.jsonl\n"
            "slash_bps:\n"
            "  conflicting_attestation: 2500\n"
        )
        config = EngineConfig.from_yaml(config_file)
        assert config.required_quorum == 4
        assert config.journal_path == "/tmp/reserve.jsonl"
        assert config.slash_bps[MisbehaviorKind.CONFLICTING_ATTESTATION] == 2_500
        assert config.slash_bps[MisbehaviorKind.MALICIOUS_SIGNATURE] == 10_000

    def test_empty_file_gives_defaults(self, tmp_path):
        config_file = tmp_path / "ilguard.yaml"
        config_file.write_text("")
        assert EngineConfig.from_yaml(config_file) == EngineConfig()

    @pytest.mark.parametrize("text", [
        "- 1\n- 2\n",
        "quorum: 3\n",
        "slash_bps:\n  bribery: 100\n",
        "required_quorum: 0\n",
    ])
    def test_invalid_files(self, tmp_path, text):
        config_file = tmp_path / "ilguard.yaml"
        config_file.write_text(text)
        with pytest.raises(InvalidParameters):
            EngineConfig.from_yaml(config_file)
