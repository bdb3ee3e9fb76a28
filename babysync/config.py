"""Configuration loading for babysync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DeviceConfig:
    """Who this device syncs as."""

    user_id: str = ""
    family_id: str = ""
    device_id: str = "default"


@dataclass
class ClientConfig:
    """Configuration for the device-side sync engine."""

    server_url: str = "http://localhost:8080"
    db_path: str = "~/.babysync/device.db"
    batch_size: int = 100
    page_size: int = 500
    sync_interval_seconds: int = 60
    timeout: float = 30.0
    max_attempts: int = 8
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 3600.0


@dataclass
class ServerConfig:
    """Configuration for the remote sync service."""

    host: str = "0.0.0.0"
    port: int = 8080
    db_path: str = "~/.babysync/server.db"
    dedup_retention_hours: float = 168.0
    pull_page_size: int = 500
    max_pull_page_size: int = 1000
    max_push_events: int = 500


@dataclass
class StaticTokenConfig:
    """A fixed development token accepted by the server."""

    access_token: str
    user_id: str
    family_id: str
    refresh_token: str | None = None


@dataclass
class AuthConfig:
    """Credentials used by the client, and tokens seeded into the server."""

    access_token: str = ""
    refresh_token: str | None = None
    token_ttl_seconds: int = 3600
    tokens: list[StaticTokenConfig] = field(default_factory=list)


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with BABYSYNC_ prefix."""
    return os.environ.get(f"BABYSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Device overrides
    if user_id := _get_env("USER_ID"):
        config.device.user_id = user_id
    if family_id := _get_env("FAMILY_ID"):
        config.device.family_id = family_id
    if device_id := _get_env("DEVICE_ID"):
        config.device.device_id = device_id

    # Client overrides
    if server_url := _get_env("SERVER_URL"):
        config.client.server_url = server_url
    if db_path := _get_env("CLIENT_DB_PATH"):
        config.client.db_path = db_path
    if interval := _get_env("SYNC_INTERVAL"):
        config.client.sync_interval_seconds = int(interval)
    if max_attempts := _get_env("MAX_ATTEMPTS"):
        config.client.max_attempts = int(max_attempts)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if db_path := _get_env("SERVER_DB_PATH"):
        config.server.db_path = db_path
    if retention := _get_env("DEDUP_RETENTION_HOURS"):
        config.server.dedup_retention_hours = float(retention)

    # Auth overrides
    if access_token := _get_env("ACCESS_TOKEN"):
        config.auth.access_token = access_token
    if refresh_token := _get_env("REFRESH_TOKEN"):
        config.auth.refresh_token = refresh_token

    return config


def _parse_tokens(data: list) -> list[StaticTokenConfig]:
    """Parse static token configurations."""
    tokens = []
    for token_data in data:
        tokens.append(
            StaticTokenConfig(
                access_token=token_data["access_token"],
                user_id=token_data["user_id"],
                family_id=token_data["family_id"],
                refresh_token=token_data.get("refresh_token"),
            )
        )
    return tokens


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "device" in data:
                device_data = data["device"]
                config.device = DeviceConfig(
                    user_id=str(device_data.get("user_id", config.device.user_id)),
                    family_id=str(device_data.get("family_id", config.device.family_id)),
                    device_id=str(device_data.get("device_id", config.device.device_id)),
                )

            if "client" in data:
                client_data = data["client"]
                defaults = ClientConfig()
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", defaults.server_url),
                    db_path=client_data.get("db_path", defaults.db_path),
                    batch_size=client_data.get("batch_size", defaults.batch_size),
                    page_size=client_data.get("page_size", defaults.page_size),
                    sync_interval_seconds=client_data.get(
                        "sync_interval_seconds", defaults.sync_interval_seconds
                    ),
                    timeout=client_data.get("timeout", defaults.timeout),
                    max_attempts=client_data.get("max_attempts", defaults.max_attempts),
                    backoff_base_seconds=client_data.get(
                        "backoff_base_seconds", defaults.backoff_base_seconds
                    ),
                    backoff_max_seconds=client_data.get(
                        "backoff_max_seconds", defaults.backoff_max_seconds
                    ),
                )

            if "server" in data:
                server_data = data["server"]
                defaults = ServerConfig()
                config.server = ServerConfig(
                    host=server_data.get("host", defaults.host),
                    port=server_data.get("port", defaults.port),
                    db_path=server_data.get("db_path", defaults.db_path),
                    dedup_retention_hours=server_data.get(
                        "dedup_retention_hours", defaults.dedup_retention_hours
                    ),
                    pull_page_size=server_data.get(
                        "pull_page_size", defaults.pull_page_size
                    ),
                    max_pull_page_size=server_data.get(
                        "max_pull_page_size", defaults.max_pull_page_size
                    ),
                    max_push_events=server_data.get(
                        "max_push_events", defaults.max_push_events
                    ),
                )

            if "auth" in data:
                auth_data = data["auth"]
                config.auth = AuthConfig(
                    access_token=auth_data.get("access_token", ""),
                    refresh_token=auth_data.get("refresh_token"),
                    token_ttl_seconds=auth_data.get(
                        "token_ttl_seconds", config.auth.token_ttl_seconds
                    ),
                    tokens=_parse_tokens(auth_data.get("tokens", [])),
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
