from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Sequence

import pytest

from tunnelgate.core.commands import CommandResult
from tunnelgate.core.errors import TunnelCommandError
from tunnelgate.core.tunnel_controller import TunnelController

STATUS_CONNECTED = """\
Status: Connected
Hostname: au512.nordvpn.com
IP: 103.137.12.200
Country: Australia
City: Sydney
Current technology: NORDLYNX
Current protocol: UDP
Post-quantum VPN: Disabled
Transfer: 1.52 MiB received, 203.48 KiB sent
Uptime: 2 minutes 11 seconds
"""

STATUS_CONNECTED_LEGACY = """\
Status: Connected
Current server: us5321.nordvpn.com
Country: United States
City: New York
Your new IP: 185.203.218.77
Current technology: OPENVPN
Current protocol: TCP
Transfer: 12.1 MiB received, 1.3 MiB sent
Uptime: 1 hour 3 minutes 8 seconds
"""

STATUS_DISCONNECTED = "Status: Disconnected\n"

LOGIN_OUTPUT = "Continue in the browser: https://api.nordvpn.com/v1/users/oauth/login-redirect?attempt=4c3b\n"


class FakeDaemon:
    """Scripted stand-in for the `nordvpn` CLI behind a CommandRunner."""

    def __init__(
        self,
        *,
        logged_in: bool = True,
        connected: bool = False,
        unverified_locations: Sequence[str] = (),
        failing_locations: Sequence[str] = (),
        stuck_connected: bool = False,
        failing_settings: Sequence[str] = (),
    ) -> None:
        self.logged_in = logged_in
        self.connected = connected
        self.unverified_locations = set(unverified_locations)
        self.failing_locations = set(failing_locations)
        self.stuck_connected = stuck_connected
        self.failing_settings = set(failing_settings)
        self.account_error: str | None = None
        self.calls: list[list[str]] = []
        self.connect_attempts: list[str | None] = []
        self.timeouts: dict[str, float] = {}

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if len(c) > 1 and c[1] == name]

    def run(self, args: Sequence[str], *, timeout_s: float) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        assert args[0] == "nordvpn", args
        cmd = args[1:]
        self.timeouts[cmd[0]] = timeout_s

        if cmd == ["account"]:
            if self.account_error:
                raise TunnelCommandError(
                    "Command failed: nordvpn account",
                    user_message=f"Tunnel command 'nordvpn account' failed: {self.account_error}",
                    stderr=self.account_error,
                )
            if not self.logged_in:
                raise TunnelCommandError(
                    "Command failed: nordvpn account",
                    stdout="You are not logged in.",
                )
            return CommandResult(stdout="Account Information:\nEmail Address: me@example.com", stderr="")

        if cmd[0] == "login":
            return CommandResult(stdout=LOGIN_OUTPUT, stderr="")

        if cmd == ["status"]:
            return CommandResult(
                stdout=STATUS_CONNECTED if self.connected else STATUS_DISCONNECTED,
                stderr="",
            )

        if cmd[0] == "connect":
            location = cmd[1] if len(cmd) > 1 else None
            self.connect_attempts.append(location)
            if location in self.failing_locations:
                raise TunnelCommandError(
                    f"Command failed: nordvpn connect {location}",
                    user_message=f"Tunnel command 'nordvpn connect {location}' failed: no servers",
                    stderr="The specified server is not available at the moment",
                )
            if location not in self.unverified_locations:
                self.connected = True
            return CommandResult(stdout="Connecting...", stderr="")

        if cmd == ["disconnect"]:
            if not self.stuck_connected:
                self.connected = False
            return CommandResult(stdout="You are disconnected from NordVPN.", stderr="")

        if cmd[0] in {"set", "whitelist"}:
            if cmd[1] in self.failing_settings:
                raise TunnelCommandError(f"Command failed: nordvpn {' '.join(cmd)}")
            return CommandResult(stdout="", stderr="")

        raise AssertionError(f"Unexpected command: {args}")


class FakeResponse:
    def __init__(self, body: bytes, headers: dict[str, str] | None = None) -> None:
        self._body = body
        self.headers = headers or {}

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class FakeOpener:
    """Replays queued replies for each open(): responses, JSON-able payloads or errors to raise."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.requests = []
        self.timeouts: list[float | None] = []

    def open(self, request, timeout=None):
        self.requests.append(request)
        self.timeouts.append(timeout)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, FakeResponse):
            return reply
        return FakeResponse(json.dumps(reply).encode("utf-8"))


class FakeTimer:
    def __init__(self, delay_s: float, callback) -> None:
        self.delay_s = delay_s
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        # Fires even when cancelled: cancel() cannot stop a callback that already started.
        self.callback()


class TimerRecorder:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay_s: float, callback) -> FakeTimer:
        timer = FakeTimer(delay_s, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def timers() -> TimerRecorder:
    return TimerRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_controller(timers: TimerRecorder, clock: FakeClock, sleeps: list[float]):
    def _make(runner, **kwargs) -> TunnelController:
        kwargs.setdefault("local_network", "192.168.1.0/24")
        return TunnelController(
            runner,
            sleep=sleeps.append,
            clock=clock,
            timer_factory=timers,
            **kwargs,
        )

    return _make
