"""
Unit tests for named policies and the policy registry.
"""

import pytest

from service_admission.app.ratelimit.keys import by_caller, by_origin, by_tenant
from service_admission.app.ratelimit.policies import (
    Policy,
    build_policy_registry,
    load_overrides,
)
from shared.config import get_config
from shared.errors import ConfigurationError


class TestPolicy:
    """Test cases for Policy."""

    def test_refill_rate_and_window(self):
        policy = Policy.from_window_ms("query", max=30, window_ms=60_000, key_strategy="tenant")
        assert policy.window_seconds == 60
        assert policy.refill_rate == pytest.approx(0.5)
        assert policy.window_ms == 60_000
        assert policy.key_strategy is by_tenant

    def test_default_message(self):
        policy = Policy(name="p", capacity=1, window_seconds=1)
        assert policy.message == "Too many requests, please try again later"

    @pytest.mark.parametrize("capacity", [0, -5, 1.5, True])
    def test_rejects_bad_capacity(self, capacity):
        with pytest.raises(ConfigurationError):
            Policy(name="p", capacity=capacity, window_seconds=60)

    @pytest.mark.parametrize("window_seconds", [0, -1, "60"])
    def test_rejects_bad_window(self, window_seconds):
        with pytest.raises(ConfigurationError):
            Policy(name="p", capacity=5, window_seconds=window_seconds)

    def test_rejects_unknown_key_strategy(self):
        with pytest.raises(ConfigurationError):
            Policy(name="p", capacity=5, window_seconds=60, key_strategy_name="cookie")

    def test_is_immutable(self):
        policy = Policy(name="p", capacity=5, window_seconds=60)
        with pytest.raises(AttributeError):
            policy.capacity = 10


class TestPolicyRegistry:
    """Test cases for building the named policy registry."""

    @pytest.fixture
    def config(self):
        return get_config("admission", 8000)

    def test_default_policies(self, config):
        registry = build_policy_registry(config)

        assert registry.names() == ["admin", "general", "health", "query", "upload"]
        assert registry.get("general").capacity == 100
        assert registry.get("general").key_strategy is by_origin
        assert registry.get("query").capacity == 30
        assert registry.get("upload").capacity == 5
        assert registry.get("admin").capacity == 60
        assert registry.get("admin").key_strategy is by_caller
        assert registry.get("health").capacity == 300
        assert all(policy.window_seconds == 60 for policy in registry)

    def test_settings_drive_capacity(self):
        config = get_config("admission", 8000, upload_max=2, upload_window_ms=1_000)
        policy = build_policy_registry(config).get("upload")
        assert policy.capacity == 2
        assert policy.window_seconds == 1

    def test_invalid_settings_fail_at_build(self):
        config = get_config("admission", 8000, query_max=0)
        with pytest.raises(ConfigurationError):
            build_policy_registry(config)

    def test_overrides_and_new_policies(self, config):
        registry = build_policy_registry(config, overrides={
            "query": {"max": 50, "message": "Slow down"},
            "export": {"windowMs": 3_600_000, "max": 3, "keyStrategy": "caller"},
        })

        assert registry.get("query").capacity == 50
        assert registry.get("query").message == "Slow down"
        assert registry.get("query").key_strategy is by_tenant
        assert registry.get("export").window_seconds == 3600
        assert registry.get("export").key_strategy is by_caller

    def test_new_policy_requires_limits(self, config):
        with pytest.raises(ConfigurationError):
            build_policy_registry(config, overrides={"export": {"max": 3}})

    def test_unknown_override_field(self, config):
        with pytest.raises(ConfigurationError):
            build_policy_registry(config, overrides={"query": {"burst": 3}})

    def test_unknown_policy_name(self, config):
        registry = build_policy_registry(config)
        with pytest.raises(ConfigurationError):
            registry.get("missing")

    def test_describe(self, config):
        described = build_policy_registry(config).describe()
        assert described["upload"] == {
            "name": "upload",
            "max": 5,
            "window_ms": 60_000,
            "key_strategy": "tenant",
            "message": "Too many uploads from this enterprise, please try again later",
        }


class TestRateLimitsFile:
    """Test cases for YAML policy overrides."""

    def test_load_from_settings_file(self, tmp_path):
        path = tmp_path / "rate_limits.yaml"
        path.write_text(
            "policies:\n"
            "  health:\n"
            "    max: 10\n"
            "    window_ms: 1000\n"
        )
        config = get_config("admission", 8000, rate_limits_file=str(path))

        policy = build_policy_registry(config).get("health")

        assert policy.capacity == 10
        assert policy.window_seconds == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_overrides(str(tmp_path / "absent.yaml"))

    def test_malformed_document(self, tmp_path):
        path = tmp_path / "rate_limits.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            load_overrides(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "rate_limits.yaml"
        path.write_text("policies: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_overrides(str(path))
