"""
Configuration management and loading.

Proxy settings come from a YAML file (timeouts, cache, per-call-site rate
limits). Centralized provider keys and the secret that encrypts stored keys
come from the environment and are never written to the YAML file.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ai_quota_proxy.core.key_encryption import ENCRYPTION_SECRET_ENV_VAR
from ai_quota_proxy.core.rate_limiter import DEFAULT_RATE_LIMITS, RateLimitConfig

logger = logging.getLogger(__name__)

DEFAULT_CALL_SITE = "default"

# Provider name -> environment variable holding the centralized key
CENTRALIZED_KEY_ENV_VARS = {
    "openai": "CENTRALIZED_OPENAI_API_KEY",
    "anthropic": "CENTRALIZED_ANTHROPIC_API_KEY",
}


@dataclass(frozen=True)
class CacheConfig:
    """Response cache settings."""
    enabled: bool = True
    ttl_seconds: float = 900.0
    max_entries: int = 100

    def __post_init__(self):
        """Validate cache values are positive."""
        if self.ttl_seconds <= 0:
            raise ValueError("cache ttl_seconds must be > 0")
        if self.max_entries <= 0:
            raise ValueError("cache max_entries must be > 0")


@dataclass(frozen=True)
class ProxyConfig:
    """Complete proxy configuration."""
    environment: str = "production"
    request_timeout_seconds: float = 60.0
    adapter_timeout_seconds: float = 120.0
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limits: Dict[str, RateLimitConfig] = field(
        default_factory=lambda: {DEFAULT_CALL_SITE: DEFAULT_RATE_LIMITS}
    )
    centralized_keys: Dict[str, str] = field(default_factory=dict, repr=False)
    encryption_secret: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        """Validate timeouts and environment."""
        if self.environment not in ("production", "development"):
            raise ValueError("environment must be 'production' or 'development'")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if self.adapter_timeout_seconds <= 0:
            raise ValueError("adapter_timeout_seconds must be > 0")

    @property
    def development(self) -> bool:
        return self.environment == "development"

    def rate_limits_for(self, call_site: Optional[str]) -> RateLimitConfig:
        """Ceilings for a call site, falling back to the default profile."""
        if call_site and call_site in self.rate_limits:
            return self.rate_limits[call_site]
        return self.rate_limits.get(DEFAULT_CALL_SITE, DEFAULT_RATE_LIMITS)

    def centralized_key(self, provider: str) -> Optional[str]:
        return self.centralized_keys.get(provider) or None


def _read_secret(environ: Mapping[str, str], env_var: str) -> Optional[str]:
    """Read a secret from ``env_var`` or from the file named by ``env_var + '_FILE'``."""
    value = environ.get(env_var)
    if value:
        return value.strip()

    file_path = environ.get(f"{env_var}_FILE")
    if file_path:
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                value = f.read().strip()
            if value:
                return value
        except OSError as e:
            logger.error("Cannot read secret file %s (from %s_FILE): %s", file_path, env_var, e)
    return None


def load_centralized_keys(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collect operator-supplied provider keys from the environment.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Provider name -> key, only for providers that have one
    """
    if environ is None:
        environ = os.environ
    keys = {}
    for provider, env_var in CENTRALIZED_KEY_ENV_VARS.items():
        value = _read_secret(environ, env_var)
        if value:
            keys[provider] = value
    return keys


def load_encryption_secret(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Secret used to encrypt provider keys at rest, if the operator set one."""
    if environ is None:
        environ = os.environ
    return _read_secret(environ, ENCRYPTION_SECRET_ENV_VAR)


def load_proxy_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProxyConfig:
    """Load and validate proxy configuration.

    Strict validation: unknown keys and out-of-range values are errors
    rather than silently ignored.

    Args:
        path: Path to YAML configuration file; defaults are used when None
        environ: Environment for centralized keys and the encryption secret
            (defaults to ``os.environ``)

    Returns:
        Validated ProxyConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    secrets = {
        "centralized_keys": load_centralized_keys(environ),
        "encryption_secret": load_encryption_secret(environ),
    }
    if path is None:
        return ProxyConfig(**secrets)

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Proxy config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {
        "environment", "request_timeout_seconds", "adapter_timeout_seconds",
        "cache", "rate_limits",
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = dict(secrets)

    if "environment" in raw_config:
        kwargs["environment"] = str(raw_config["environment"]).lower()
    for key in ("request_timeout_seconds", "adapter_timeout_seconds"):
        if key in raw_config:
            kwargs[key] = _parse_number(raw_config[key], key)

    if "cache" in raw_config:
        kwargs["cache"] = _parse_cache_config(raw_config["cache"])

    if "rate_limits" in raw_config:
        kwargs["rate_limits"] = _parse_rate_limits(raw_config["rate_limits"])

    return ProxyConfig(**kwargs)


def _parse_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be a number > 0")
    return float(value)


def _parse_cache_config(data: Any) -> CacheConfig:
    """Parse and validate the ``cache`` section.

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'cache' must be a dictionary")

    unknown_keys = set(data.keys()) - {"enabled", "ttl_seconds", "max_entries"}
    if unknown_keys:
        raise ValueError(f"Unknown keys in cache: {unknown_keys}")

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ValueError("'cache.enabled' must be a boolean")

    max_entries = data.get("max_entries", 100)
    if isinstance(max_entries, bool) or not isinstance(max_entries, int) or max_entries <= 0:
        raise ValueError("'cache.max_entries' must be an integer > 0")

    return CacheConfig(
        enabled=enabled,
        ttl_seconds=_parse_number(data.get("ttl_seconds", 900), "cache.ttl_seconds"),
        max_entries=max_entries,
    )


def _parse_rate_limits(data: Any) -> Dict[str, RateLimitConfig]:
    """Parse and validate the ``rate_limits`` section.

    Each call site maps to ``{minute, hour, day}``; a ``default`` profile is
    required so that unknown call sites still get a ceiling.

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'rate_limits' must be a dictionary")
    if DEFAULT_CALL_SITE not in data:
        raise ValueError(f"Missing required '{DEFAULT_CALL_SITE}' rate limit profile")

    profiles = {}
    for call_site, profile in data.items():
        path = f"rate_limits.{call_site}"
        if not isinstance(profile, dict):
            raise ValueError(f"'{path}' must be a dictionary")

        unknown_keys = set(profile.keys()) - {"minute", "hour", "day"}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        missing = {"minute", "hour", "day"} - set(profile.keys())
        if missing:
            raise ValueError(f"Missing keys in {path}: {sorted(missing)}")

        try:
            profiles[call_site] = RateLimitConfig(
                minute_limit=profile["minute"],
                hour_limit=profile["hour"],
                day_limit=profile["day"],
            )
        except ValueError as e:
            raise ValueError(f"Invalid {path}: {e}")

    return profiles
