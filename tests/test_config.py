"""
Unit tests for configuration loading and validation.

Tests strict validation of the proxy YAML file and centralized key lookup.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from ai_quota_proxy.config.loader import (
    CacheConfig,
    ProxyConfig,
    load_centralized_keys,
    load_encryption_secret,
    load_proxy_config,
)
from ai_quota_proxy.core.rate_limiter import DEFAULT_RATE_LIMITS, RateLimitConfig


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a complete config loads."""
        config_path = self._write_config({
            "environment": "development",
            "request_timeout_seconds": 30,
            "adapter_timeout_seconds": 90,
            "cache": {"enabled": False, "ttl_seconds": 60, "max_entries": 10},
            "rate_limits": {
                "default": {"minute": 20, "hour": 100, "day": 1000},
                "summarize": {"minute": 5, "hour": 50, "day": 200},
            },
        })

        config = load_proxy_config(config_path, environ={})

        assert config.development
        assert config.request_timeout_seconds == 30.0
        assert config.adapter_timeout_seconds == 90.0
        assert config.cache == CacheConfig(enabled=False, ttl_seconds=60.0, max_entries=10)
        assert config.rate_limits_for("summarize") == RateLimitConfig(5, 50, 200)

    def test_no_path_gives_defaults(self):
        config = load_proxy_config(environ={})

        assert config.environment == "production"
        assert config.request_timeout_seconds == 60.0
        assert config.adapter_timeout_seconds == 120.0
        assert config.cache.ttl_seconds == 900.0
        assert config.cache.max_entries == 100
        assert config.rate_limits_for("anything") == DEFAULT_RATE_LIMITS

    def test_unknown_call_site_uses_default_profile(self):
        config_path = self._write_config({
            "rate_limits": {"default": {"minute": 3, "hour": 30, "day": 300}},
        })

        config = load_proxy_config(config_path, environ={})

        assert config.rate_limits_for("unlisted") == RateLimitConfig(3, 30, 300)
        assert config.rate_limits_for(None) == RateLimitConfig(3, 30, 300)

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError, match="Proxy config file not found"):
            load_proxy_config("nonexistent.yaml", environ={})

    def test_empty_config_raises_error(self):
        config_path = self._write_config({})

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_proxy_config(config_path, environ={})

    def test_invalid_yaml_raises_error(self):
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("cache: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_proxy_config(config_path, environ={})

    def test_unknown_top_level_keys_raise_error(self):
        config_path = self._write_config({"request_timeout_seconds": 30, "budget": {}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_proxy_config(config_path, environ={})

    def test_unknown_cache_keys_raise_error(self):
        config_path = self._write_config({"cache": {"size": 10}})

        with pytest.raises(ValueError, match="Unknown keys in cache"):
            load_proxy_config(config_path, environ={})

    @pytest.mark.parametrize("value", [0, -5, "fast", True])
    def test_invalid_timeout_raises_error(self, value):
        config_path = self._write_config({"request_timeout_seconds": value})

        with pytest.raises(ValueError, match="request_timeout_seconds"):
            load_proxy_config(config_path, environ={})

    def test_invalid_environment_raises_error(self):
        config_path = self._write_config({"environment": "staging"})

        with pytest.raises(ValueError, match="environment"):
            load_proxy_config(config_path, environ={})

    def test_rate_limits_require_default_profile(self):
        config_path = self._write_config({
            "rate_limits": {"chat": {"minute": 1, "hour": 2, "day": 3}},
        })

        with pytest.raises(ValueError, match="Missing required 'default' rate limit profile"):
            load_proxy_config(config_path, environ={})

    def test_partial_rate_limit_profile_raises_error(self):
        config_path = self._write_config({
            "rate_limits": {"default": {"minute": 1, "hour": 2}},
        })

        with pytest.raises(ValueError, match="Missing keys in rate_limits.default"):
            load_proxy_config(config_path, environ={})

    def test_non_positive_rate_limit_raises_error(self):
        config_path = self._write_config({
            "rate_limits": {"default": {"minute": 0, "hour": 2, "day": 3}},
        })

        with pytest.raises(ValueError, match="Invalid rate_limits.default"):
            load_proxy_config(config_path, environ={})


class TestCentralizedKeys:
    """Test operator-supplied provider keys."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_keys_from_environment(self):
        keys = load_centralized_keys({
            "CENTRALIZED_OPENAI_API_KEY": " sk-openai \n",
            "CENTRALIZED_ANTHROPIC_API_KEY": "sk-ant",
        })

        assert keys == {"openai": "sk-openai", "anthropic": "sk-ant"}

    def test_key_from_file(self):
        secret_path = os.path.join(self.temp_dir, "openai.key")
        with open(secret_path, 'w', encoding='utf-8') as f:
            f.write("sk-from-file\n")

        keys = load_centralized_keys({"CENTRALIZED_OPENAI_API_KEY_FILE": secret_path})

        assert keys == {"openai": "sk-from-file"}

    def test_unreadable_key_file_is_skipped(self):
        keys = load_centralized_keys({
            "CENTRALIZED_OPENAI_API_KEY_FILE": os.path.join(self.temp_dir, "missing.key"),
        })

        assert keys == {}

    def test_empty_values_ignored(self):
        assert load_centralized_keys({"CENTRALIZED_OPENAI_API_KEY": ""}) == {}

    def test_keys_attached_to_config(self):
        config = load_proxy_config(environ={"CENTRALIZED_ANTHROPIC_API_KEY": "sk-ant"})

        assert config.centralized_key("anthropic") == "sk-ant"
        assert config.centralized_key("openai") is None

    def test_encryption_secret_from_environment(self):
        config = load_proxy_config(environ={"API_KEY_ENCRYPTION_SECRET": "k" * 32})

        assert config.encryption_secret == "k" * 32

    def test_encryption_secret_from_file(self):
        secret_path = os.path.join(self.temp_dir, "encryption.secret")
        with open(secret_path, 'w', encoding='utf-8') as f:
            f.write("k" * 32 + "\n")

        assert load_encryption_secret({"API_KEY_ENCRYPTION_SECRET_FILE": secret_path}) == "k" * 32

    def test_secrets_kept_out_of_repr(self):
        config = load_proxy_config(environ={
            "CENTRALIZED_OPENAI_API_KEY": "sk-openai",
            "API_KEY_ENCRYPTION_SECRET": "k" * 32,
        })

        assert "sk-openai" not in repr(config)
        assert "k" * 32 not in repr(config)

    def test_proxy_config_validation(self):
        with pytest.raises(ValueError):
            ProxyConfig(request_timeout_seconds=0)
        with pytest.raises(ValueError):
            CacheConfig(max_entries=0)
