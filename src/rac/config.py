"""Configuration management for rac daemon."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


DEFAULT_URL_PATTERN = r"https?://[^\s]+\.trycloudflare\.com"


@dataclass
class AuthConfig:
    """Device authorization configuration."""

    devices_file: str = "~/.config/rac/devices.json"
    token_ttl_days: int = 365
    pending_request_ttl: float = 300.0  # seconds
    trust_forwarded_for: bool = True  # take client IP from X-Forwarded-For


@dataclass
class TunnelConfig:
    """Public tunnel relay configuration."""

    binary: str = "cloudflared"
    url_pattern: str = DEFAULT_URL_PATTERN
    stop_timeout: float = 5.0  # seconds before SIGKILL


@dataclass
class Config:
    """Daemon configuration."""

    port: int = 5173
    bind_address: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: str | None = None
    auth: AuthConfig = field(default_factory=AuthConfig)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)


def get_config_dir() -> Path:
    """Directory holding config, state and lock files."""
    return Path.home() / ".config" / "rac"


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return get_config_dir() / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    auth_data = data.get("auth") or {}
    auth_config = AuthConfig(
        devices_file=auth_data.get("devices_file", AuthConfig.devices_file),
        token_ttl_days=auth_data.get("token_ttl_days", AuthConfig.token_ttl_days),
        pending_request_ttl=auth_data.get(
            "pending_request_ttl", AuthConfig.pending_request_ttl
        ),
        trust_forwarded_for=auth_data.get(
            "trust_forwarded_for", AuthConfig.trust_forwarded_for
        ),
    )

    tunnel_data = data.get("tunnel") or {}
    tunnel_config = TunnelConfig(
        binary=tunnel_data.get("binary", TunnelConfig.binary),
        url_pattern=tunnel_data.get("url_pattern", TunnelConfig.url_pattern),
        stop_timeout=tunnel_data.get("stop_timeout", TunnelConfig.stop_timeout),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        auth=auth_config,
        tunnel=tunnel_config,
    )
