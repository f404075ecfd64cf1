"""Runtime settings.

Settings come from an optional ``settings.json`` in the config dir, overlaid
by environment variables. Environment names match the ones the docker-compose
deployment already exports (``PROWLARR_URL``, ``LOCAL_NETWORK``, ...).
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
import os
from pathlib import Path
from typing import Any, Final, Mapping

from tunnelgate.core.errors import ConfigError
from tunnelgate.core.storage import get_config_dir, load_json

logger = logging.getLogger(__name__)

SETTINGS_FILE: Final[str] = "settings.json"

DEFAULT_LOCATIONS: Final[tuple[str, ...]] = (
    "australia",
    "singapore",
    "united_states",
    "canada",
    "netherlands",
    "switzerland",
    "japan",
)

DEFAULT_CONTAINER_SUBNETS: Final[tuple[str, ...]] = (
    "172.17.0.0/16",
    "172.18.0.0/16",
    "172.19.0.0/16",
    "172.20.0.0/16",
    "172.21.0.0/16",
    "172.22.0.0/16",
)

DEFAULT_DNS_SERVERS: Final[tuple[str, ...]] = ("127.0.0.11", "1.1.1.1", "1.0.0.1")


@dataclass(frozen=True, slots=True)
class Settings:
    prowlarr_url: str = "http://localhost:9696"
    prowlarr_api_key: str = ""
    prowlarr_timeout_s: float = 30.0
    search_timeout_s: float = 180.0

    qbittorrent_url: str = "http://localhost:8080"
    qbittorrent_username: str = "admin"
    qbittorrent_password: str = ""

    # Empty means the `nordvpn` CLI is on the local PATH.
    tunnel_container: str = "nordvpn_official"
    local_network: str | None = None
    extra_subnet: str | None = None
    container_subnets: tuple[str, ...] = DEFAULT_CONTAINER_SUBNETS
    dns_servers: tuple[str, ...] = DEFAULT_DNS_SERVERS
    locations: tuple[str, ...] = DEFAULT_LOCATIONS

    health_threshold: int = 50
    inactivity_timeout_s: float = 600.0
    connect_timeout_s: float = 60.0
    command_timeout_s: float = 30.0
    account_timeout_s: float = 10.0
    login_timeout_s: float = 15.0
    settings_timeout_s: float = 15.0
    connect_settle_s: float = 8.0
    disconnect_settle_s: float = 3.0
    recovery_wait_s: float = 5.0


_ENV_KEYS: Final[dict[str, str]] = {
    "PROWLARR_URL": "prowlarr_url",
    "PROWLARR_API_KEY": "prowlarr_api_key",
    "QBITTORRENT_URL": "qbittorrent_url",
    "QBITTORRENT_USERNAME": "qbittorrent_username",
    "QBITTORRENT_PASSWORD": "qbittorrent_password",
    "TUNNEL_CONTAINER": "tunnel_container",
    "LOCAL_NETWORK": "local_network",
    "AI_MEDIA_NETWORK_SUBNET": "extra_subnet",
    "HEALTH_THRESHOLD": "health_threshold",
    "VPN_INACTIVITY_SECONDS": "inactivity_timeout_s",
    "VPN_LOCATIONS": "locations",
}


def _split_list(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        raise ConfigError(
            f"Expected list or comma separated string, got {type(raw).__name__}",
            user_message="List settings must be a JSON list or a comma separated string.",
        )
    return tuple(item.strip() for item in items if item and item.strip())


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, tuple):
        return _split_list(raw)

    if isinstance(default, (int, float)):
        kind = type(default)
        try:
            value = kind(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"Invalid value for {name}: {raw!r}",
                user_message=f"Setting {name} must be a number (got {raw!r}).",
            ) from exc
        if value < 0:
            raise ConfigError(
                f"Negative value for {name}: {value}",
                user_message=f"Setting {name} must not be negative.",
            )
        return value

    if raw is None:
        return None
    value = str(raw).strip()
    if name in {"local_network", "extra_subnet"} and not value:
        return None
    if name.endswith("_url"):
        value = value.rstrip("/")
    return value


def _defaults() -> dict[str, Any]:
    return {f.name: f.default for f in fields(Settings)}


def load_settings(
    env: Mapping[str, str] | None = None,
    *,
    config_path: Path | None = None,
) -> Settings:
    env = os.environ if env is None else env
    config_path = config_path or (get_config_dir() / SETTINGS_FILE)
    defaults = _defaults()

    overrides: dict[str, Any] = {}

    data = load_json(config_path, {})
    if not isinstance(data, dict):
        raise ConfigError(
            f"{config_path} must contain a JSON object",
            user_message=f"Invalid settings file: {config_path}",
        )
    for key, raw in data.items():
        if key not in defaults:
            logger.warning("Ignoring unknown setting %r in %s", key, config_path)
            continue
        overrides[key] = _coerce(key, raw, defaults[key])

    for env_name, key in _ENV_KEYS.items():
        raw = env.get(env_name)
        if raw is None or (raw.strip() == "" and key not in {"tunnel_container", "prowlarr_api_key"}):
            continue
        overrides[key] = _coerce(key, raw, defaults[key])

    settings = replace(Settings(), **overrides)
    if not 0 <= settings.health_threshold <= 100:
        raise ConfigError(
            f"health_threshold out of range: {settings.health_threshold}",
            user_message="HEALTH_THRESHOLD must be between 0 and 100.",
        )
    if not settings.locations:
        raise ConfigError(
            "No VPN locations configured",
            user_message="VPN_LOCATIONS must name at least one location.",
        )
    return settings
