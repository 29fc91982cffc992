"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts the shipped ones.
"""
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from tools.config_validator import (
    PolicySchema,
    WindowConfig,
    validate_all_configs,
    validate_policy,
    validate_sanity_checks,
)

SHIPPED_CONFIG = Path(__file__).resolve().parents[1] / "config"


def _edit(config_dir, filename, mutate):
    path = config_dir / filename
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


class TestShippedConfig:
    def test_repository_config_is_valid(self):
        """config/ as committed must pass every check"""
        assert validate_all_configs(str(SHIPPED_CONFIG)) == []

    def test_fixture_copy_is_valid(self, config_dir):
        assert validate_all_configs(str(config_dir)) == []


class TestSchemaErrors:
    def test_unknown_provider(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["providers"].append({"name": "bloomberg"}))

        errors = validate_policy(config_dir)

        assert len(errors) == 1
        assert errors[0].startswith("policy.yaml: providers -> 4 -> name:")
        assert "unknown provider 'bloomberg'" in errors[0]

    def test_window_open_after_close(self):
        with pytest.raises(ValidationError, match="must be before close"):
            WindowConfig(open="16:00", close="09:30")

    def test_bad_time_format(self):
        with pytest.raises(ValidationError):
            WindowConfig(open="9:30")

    def test_lock_ttl_for_unknown_job(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["schedule"]["lock_ttl_seconds"].update({"nightly": 60}))
        errors = validate_all_configs(str(config_dir))
        assert any("lock TTL for unknown job 'nightly'" in e for e in errors)

    def test_providers_required(self):
        with pytest.raises(ValidationError):
            PolicySchema(providers=[])

    def test_bad_lock_backend(self, config_dir):
        _edit(config_dir, "app.yaml", lambda d: d["locks"].update({"backend": "redis"}))
        errors = validate_all_configs(str(config_dir))
        assert errors and errors[0].startswith("app.yaml: locks -> backend")

    def test_errors_skip_sanity_checks(self, config_dir):
        def mutate(d):
            d["gateway"]["retry_attempts"] = 0
            d["risk"]["position_warn_pct"] = 50.0

        _edit(config_dir, "policy.yaml", mutate)
        errors = validate_all_configs(str(config_dir))
        assert len(errors) == 1
        assert "retry_attempts" in errors[0]


class TestSanityChecks:
    def test_warn_must_be_below_max(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["risk"].update({"position_warn_pct": 25.0}))
        assert validate_sanity_checks(config_dir) == [
            "policy.yaml: risk: position_warn_pct must be below position_max_pct"
        ]

    def test_all_providers_disabled(self, config_dir):
        def mutate(d):
            for provider in d["providers"]:
                provider["enabled"] = False

        _edit(config_dir, "policy.yaml", mutate)
        assert "at least one provider must be enabled" in validate_sanity_checks(config_dir)[0]

    def test_duplicate_provider(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["providers"].append({"name": "yahoo"}))
        assert any("duplicate entries ['yahoo']" in e for e in validate_sanity_checks(config_dir))

    def test_keyed_provider_needs_env_var(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["providers"][0].pop("api_key_env"))
        errors = validate_sanity_checks(config_dir)
        assert errors == ["policy.yaml: providers -> alpha_vantage: api_key_env is required"]

    def test_invalid_trigger_override(self, config_dir):
        _edit(
            config_dir,
            "policy.yaml",
            lambda d: d["schedule"].update({"triggers": {"decision_refresh": {"minute": "every-five"}}}),
        )
        errors = validate_sanity_checks(config_dir)
        assert len(errors) == 1
        assert errors[0].startswith("policy.yaml: schedule -> triggers -> decision_refresh:")

    def test_valid_trigger_override(self, config_dir):
        _edit(
            config_dir,
            "policy.yaml",
            lambda d: d["schedule"].update({"triggers": {"decision_refresh": {"minute": "*/10", "hour": "9-15"}}}),
        )
        assert validate_sanity_checks(config_dir) == []


class TestFileErrors:
    def test_missing_file(self, config_dir):
        (config_dir / "app.yaml").unlink()
        errors = validate_all_configs(str(config_dir))
        assert errors[0].startswith("app.yaml: Config file not found")

    def test_malformed_yaml_reports_line(self, config_dir):
        (config_dir / "policy.yaml").write_text("providers:\n  - name: yahoo\n    enabled: [true\n")
        errors = validate_all_configs(str(config_dir))
        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]
        assert "line" in errors[0]

    def test_top_level_must_be_mapping(self, config_dir):
        (config_dir / "app.yaml").write_text("- just\n- a list\n")
        assert validate_all_configs(str(config_dir)) == ["app.yaml: top level must be a mapping"]
