"""Tunnel status values and parsing of `nordvpn` CLI output.

The CLI output format drifts between releases (``Current server:`` became
``Hostname:``, ``Your new IP:`` became ``IP:``), so parsing is label based and
every field other than the connection state is optional.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import re
from typing import Final, Union

_LOGIN_URL_RE: Final[re.Pattern[str]] = re.compile(r"https://[^\s'\"]+")

_NOT_LOGGED_IN_MARKERS: Final[tuple[str, ...]] = (
    "you are not logged in",
    "please login",
    "please log in",
)

_LABELS: Final[dict[str, tuple[str, ...]]] = {
    "city": ("city",),
    "country": ("country",),
    "ip": ("your new ip", "current ip", "ip"),
    "server": ("current server", "hostname", "server"),
    "protocol": ("current protocol", "protocol"),
    "technology": ("current technology", "technology"),
    "uptime": ("uptime",),
}


@dataclass(frozen=True, slots=True)
class Connected:
    city: str | None = None
    country: str | None = None
    ip: str | None = None
    server: str | None = None
    protocol: str | None = None
    technology: str | None = None
    uptime: str | None = None
    connected_since: datetime | None = None
    message: str = "VPN connected."

    connected = True

    def location_label(self) -> str:
        parts = [p for p in (self.city, self.country) if p]
        return ", ".join(parts) if parts else "unknown location"


@dataclass(frozen=True, slots=True)
class Disconnected:
    message: str = "VPN disconnected."
    # None when the account check itself failed and auth state is unknown.
    authenticated: bool | None = True

    connected = False


@dataclass(frozen=True, slots=True)
class NeedsAuthentication:
    login_url: str | None = None
    message: str = "NordVPN requires login."

    connected = False


TunnelStatus = Union[Connected, Disconnected, NeedsAuthentication]


def is_not_logged_in(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _NOT_LOGGED_IN_MARKERS)


def find_login_url(text: str) -> str | None:
    match = _LOGIN_URL_RE.search(text or "")
    return match.group(0) if match else None


def _status_fields(stdout: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw_line in (stdout or "").splitlines():
        line = raw_line.strip().lstrip("-").strip()
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()
        if key and value and key not in values:
            values[key] = value
    return values


def parse_status_output(stdout: str) -> Connected | Disconnected:
    values = _status_fields(stdout)
    if values.get("status", "").lower() != "connected":
        return Disconnected()

    found: dict[str, str | None] = {}
    for name, labels in _LABELS.items():
        found[name] = next((values[label] for label in labels if values.get(label)), None)
    return Connected(**found)


@dataclass(slots=True)
class TunnelState:
    """Process-wide view of the tunnel, written only by TunnelController.

    Fields are only updated from a freshly verified status check; the
    connect/disconnect commands themselves never change this object.
    """

    connected: bool = False
    location: tuple[str | None, str | None] | None = None
    external_address: str | None = None
    authenticated: bool | None = None
    last_connected_at: datetime | None = None
    pending_disconnect_deadline: datetime | None = None

    def record(self, status: TunnelStatus) -> None:
        if isinstance(status, Connected):
            self.connected = True
            self.location = (status.city, status.country)
            self.external_address = status.ip
            self.authenticated = True
            return

        self.connected = False
        self.location = None
        self.external_address = None
        if isinstance(status, NeedsAuthentication):
            self.authenticated = False
            self.last_connected_at = None
        else:
            self.authenticated = status.authenticated

    def copy(self) -> "TunnelState":
        return replace(self)
