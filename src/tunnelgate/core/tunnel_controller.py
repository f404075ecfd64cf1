"""Drive the VPN tunnel daemon.

The `nordvpn` connect/disconnect commands return before the daemon has
finished negotiating, so every transition is confirmed by a fresh status check
after a settle interval. TunnelState is only ever written from such a check.

Auto-disconnect: after a verified connect the controller arms an inactivity
timer. Any activity re-arms it. An explicit disconnect sets a manual intent
flag that the timer re-checks when it fires, because cancelling a
threading.Timer does not stop a callback that has already started.

The deadline is also saved to the state dir so a later process can re-arm the
timer, or disconnect straight away when the deadline passed in between.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path
import threading
import time
from typing import Callable, Protocol, Sequence

from tunnelgate.core.commands import CommandRunner, SubprocessRunner
from tunnelgate.core.config import (
    DEFAULT_CONTAINER_SUBNETS,
    DEFAULT_DNS_SERVERS,
    DEFAULT_LOCATIONS,
    Settings,
)
from tunnelgate.core.errors import (
    AppError,
    AuthenticationRequiredError,
    ConnectionVerificationError,
    DisconnectionVerificationError,
    TunnelCommandError,
)
from tunnelgate.core.storage import get_state_dir, load_json, save_json
from tunnelgate.core.tunnel_status import (
    Connected,
    Disconnected,
    NeedsAuthentication,
    TunnelState,
    TunnelStatus,
    find_login_url,
    is_not_logged_in,
    parse_status_output,
)

logger = logging.getLogger(__name__)

NORDVPN = "nordvpn"
SESSION_FILE = "vpn_session.json"


class CancellableTimer(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], CancellableTimer]


def _start_daemon_timer(delay_s: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_s, callback)
    timer.daemon = True
    timer.start()
    return timer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TunnelResult:
    success: bool
    message: str
    status: TunnelStatus

    @property
    def needs_login(self) -> bool:
        return isinstance(self.status, NeedsAuthentication)

    @property
    def login_url(self) -> str | None:
        if isinstance(self.status, NeedsAuthentication):
            return self.status.login_url
        return None


class TunnelController:
    def __init__(
        self,
        runner: CommandRunner,
        *,
        state: TunnelState | None = None,
        locations: Sequence[str] = DEFAULT_LOCATIONS,
        local_network: str | None = None,
        extra_subnet: str | None = None,
        container_subnets: Sequence[str] = DEFAULT_CONTAINER_SUBNETS,
        dns_servers: Sequence[str] = DEFAULT_DNS_SERVERS,
        inactivity_timeout_s: float = 600.0,
        connect_timeout_s: float = 60.0,
        command_timeout_s: float = 30.0,
        account_timeout_s: float = 10.0,
        login_timeout_s: float = 15.0,
        settings_timeout_s: float = 15.0,
        connect_settle_s: float = 8.0,
        disconnect_settle_s: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        timer_factory: TimerFactory = _start_daemon_timer,
        session_path: Path | None = None,
    ) -> None:
        self._runner = runner
        self._state = state if state is not None else TunnelState()
        self._locations = tuple(locations)
        self._local_network = local_network
        self._extra_subnet = extra_subnet
        self._container_subnets = tuple(container_subnets)
        self._dns_servers = tuple(dns_servers)
        self._inactivity_timeout_s = inactivity_timeout_s
        self._connect_timeout_s = connect_timeout_s
        self._command_timeout_s = command_timeout_s
        self._account_timeout_s = account_timeout_s
        self._login_timeout_s = login_timeout_s
        self._settings_timeout_s = settings_timeout_s
        self._connect_settle_s = connect_settle_s
        self._disconnect_settle_s = disconnect_settle_s
        self._sleep = sleep
        self._clock = clock
        self._timer_factory = timer_factory

        # _lock guards state and timer bookkeeping; _op_lock serializes whole
        # connect/disconnect sequences (including the timer's auto-disconnect).
        self._lock = threading.RLock()
        self._op_lock = threading.RLock()
        self._timer: CancellableTimer | None = None
        self._timer_generation = 0
        self._manual_disconnect = False

        # One-shot CLI processes exit long before the inactivity timeout, so
        # the auto-disconnect deadline is handed over through the state dir.
        self._session_path = session_path
        self._restore_session()

    @classmethod
    def from_settings(
        cls, settings: Settings, runner: CommandRunner | None = None, **kwargs
    ) -> "TunnelController":
        runner = runner or SubprocessRunner.for_container(settings.tunnel_container)
        return cls(
            runner,
            locations=settings.locations,
            local_network=settings.local_network,
            extra_subnet=settings.extra_subnet,
            container_subnets=settings.container_subnets,
            dns_servers=settings.dns_servers,
            inactivity_timeout_s=settings.inactivity_timeout_s,
            connect_timeout_s=settings.connect_timeout_s,
            command_timeout_s=settings.command_timeout_s,
            account_timeout_s=settings.account_timeout_s,
            login_timeout_s=settings.login_timeout_s,
            settings_timeout_s=settings.settings_timeout_s,
            connect_settle_s=settings.connect_settle_s,
            disconnect_settle_s=settings.disconnect_settle_s,
            session_path=get_state_dir() / SESSION_FILE,
            **kwargs,
        )

    # ------------------------------------------------------------------ properties
    @property
    def state(self) -> TunnelState:
        with self._lock:
            return self._state.copy()

    @property
    def inactivity_timeout_s(self) -> float:
        return self._inactivity_timeout_s

    @property
    def manual_disconnect_requested(self) -> bool:
        with self._lock:
            return self._manual_disconnect

    def recommended_locations(self) -> list[str]:
        return list(self._locations)

    # ------------------------------------------------------------------ status
    def status(self) -> TunnelStatus:
        try:
            status = self._check_status()
        except Exception as exc:  # pragma: no cover - runner contract violation
            logger.exception("Unexpected error while checking VPN status")
            status = Disconnected(message=f"Error getting VPN status: {exc}", authenticated=None)

        with self._lock:
            self._state.record(status)
            if isinstance(status, Connected) and self._state.last_connected_at is not None:
                status = replace(status, connected_since=self._state.last_connected_at)
        return status

    def _check_status(self) -> TunnelStatus:
        try:
            account = self._runner.run([NORDVPN, "account"], timeout_s=self._account_timeout_s)
        except TunnelCommandError as exc:
            if is_not_logged_in(exc.output or str(exc)):
                return NeedsAuthentication(login_url=self._fetch_login_url())
            logger.warning("VPN account check failed: %s", exc)
            return Disconnected(
                message=f"Error checking NordVPN account status: {exc.user_message}",
                authenticated=None,
            )
        if is_not_logged_in(account.stdout):
            return NeedsAuthentication(login_url=self._fetch_login_url())

        try:
            result = self._runner.run([NORDVPN, "status"], timeout_s=self._command_timeout_s)
        except TunnelCommandError as exc:
            if is_not_logged_in(exc.output or str(exc)):
                return NeedsAuthentication(login_url=self._fetch_login_url())
            logger.warning("VPN status check failed: %s", exc)
            return Disconnected(
                message=f"Error getting VPN status: {exc.user_message}",
                authenticated=True,
            )
        return parse_status_output(result.stdout)

    def _fetch_login_url(self) -> str | None:
        for args in ([NORDVPN, "login", "--callback"], [NORDVPN, "login"]):
            try:
                output = self._runner.run(args, timeout_s=self._login_timeout_s).stdout
            except TunnelCommandError as exc:
                output = exc.output
            url = find_login_url(output)
            if url:
                return url
        logger.info("VPN needs login but no login URL could be obtained")
        return None

    # ------------------------------------------------------------------ connect
    def connect(self, preferred_location: str | None = None) -> TunnelResult:
        location = (preferred_location or "").strip() or None
        with self._op_lock:
            with self._lock:
                self._manual_disconnect = False
            try:
                return self._connect(location)
            except AuthenticationRequiredError as exc:
                logger.warning("VPN connect aborted: %s", exc)
                return TunnelResult(
                    success=False,
                    message=exc.user_message,
                    status=NeedsAuthentication(login_url=exc.login_url),
                )
            except AppError as exc:
                logger.warning("VPN connect to %s failed: %s", location or "<auto>", exc)
                with self._lock:
                    self._state.last_connected_at = None
                    self._persist_session_locked()
                return TunnelResult(
                    success=False,
                    message=f"Failed to connect VPN: {exc.user_message}",
                    status=self.status(),
                )

    def _connect(self, location: str | None) -> TunnelResult:
        initial = self.status()
        if isinstance(initial, NeedsAuthentication):
            raise AuthenticationRequiredError(
                "VPN daemon is not authenticated",
                user_message=initial.message,
                login_url=initial.login_url,
            )

        if isinstance(initial, Connected):
            logger.info("VPN already connected to %s; re-applying settings", initial.location_label())
            self._apply_post_connection_settings()
            with self._lock:
                if self._state.last_connected_at is None:
                    self._state.last_connected_at = self._clock()
            self._start_timer()
            return TunnelResult(
                success=True,
                message="VPN already connected. LAN settings re-applied.",
                status=self.status(),
            )

        args = [NORDVPN, "connect"] + ([location] if location else [])
        logger.info("Connecting VPN: %s", args)
        self._runner.run(args, timeout_s=self._connect_timeout_s)
        self._sleep(self._connect_settle_s)

        after = self.status()
        if isinstance(after, NeedsAuthentication):
            raise AuthenticationRequiredError(
                "VPN daemon reported missing login after connect",
                user_message="NordVPN requires login (detected after connect attempt).",
                login_url=after.login_url,
            )
        if not isinstance(after, Connected):
            raise ConnectionVerificationError(
                f"Status after connect: {after.message}",
                user_message=f"VPN connection verification failed. Status details: {after.message}",
            )

        self._apply_post_connection_settings()
        final = self.status()
        if not isinstance(final, Connected):
            raise ConnectionVerificationError(
                f"Status after post-connection settings: {final.message}",
                user_message="VPN unexpectedly disconnected after post-connection settings were applied.",
            )

        with self._lock:
            self._state.last_connected_at = self._clock()
        self._start_timer()
        final = replace(final, connected_since=self.state.last_connected_at)

        suffix = f" to {final.city}" if final.city else ""
        logger.info("VPN connected%s (ip=%s)", suffix, final.ip)
        return TunnelResult(
            success=True,
            message=f"Successfully connected VPN{suffix}. LAN settings applied.",
            status=final,
        )

    def connect_with_fallback(self, candidates: Sequence[str]) -> TunnelResult:
        initial = self.status()
        if isinstance(initial, Connected):
            return TunnelResult(
                success=True,
                message=f"VPN already connected to {initial.location_label()}.",
                status=initial,
            )
        if isinstance(initial, NeedsAuthentication):
            return TunnelResult(success=False, message=initial.message, status=initial)

        failures: list[str] = []
        last: TunnelResult | None = None
        for location in candidates:
            logger.info("Trying VPN location %s", location)
            last = self.connect(location)
            if last.success:
                return last
            if last.needs_login:
                return last
            failures.append(f"{location}: {last.message}")

        detail = "; ".join(failures) if failures else "no candidate locations configured"
        return TunnelResult(
            success=False,
            message=f"Could not connect VPN to any location ({detail})",
            status=last.status if last is not None else initial,
        )

    def _apply_post_connection_settings(self) -> None:
        subnets: list[str] = []
        for subnet in (self._local_network, *self._container_subnets, self._extra_subnet):
            if subnet and subnet not in subnets:
                subnets.append(subnet)

        steps: list[tuple[list[str], float]] = [
            ([NORDVPN, "set", "killswitch", "off"], self._settings_timeout_s),
            ([NORDVPN, "set", "lan-discovery", "on"], self._settings_timeout_s),
            ([NORDVPN, "set", "notify", "off"], self._settings_timeout_s),
        ]
        if self._dns_servers:
            steps.append(([NORDVPN, "set", "dns", *self._dns_servers], self._settings_timeout_s + 5))
        for subnet in subnets:
            steps.append(([NORDVPN, "whitelist", "add", "subnet", subnet], self._settings_timeout_s))

        for args, timeout_s in steps:
            try:
                self._runner.run(args, timeout_s=timeout_s)
            except TunnelCommandError as exc:
                # Already-applied settings make the CLI exit non-zero too.
                logger.warning("Post-connection setting %s failed: %s", args[1:], exc)

    # ------------------------------------------------------------------ disconnect
    def disconnect(self) -> TunnelResult:
        with self._op_lock:
            with self._lock:
                self._manual_disconnect = True
                self._cancel_timer_locked()
                self._state.last_connected_at = None
                self._persist_session_locked()
            try:
                return self._disconnect()
            except AppError as exc:
                logger.warning("VPN disconnect failed: %s", exc)
                return TunnelResult(
                    success=False,
                    message=f"Failed to disconnect VPN: {exc.user_message}. Auto-disconnect timer cleared.",
                    status=self.status(),
                )

    def _disconnect(self) -> TunnelResult:
        initial = self.status()
        if isinstance(initial, NeedsAuthentication):
            return TunnelResult(
                success=False,
                message="Cannot disconnect, NordVPN needs login.",
                status=initial,
            )
        if isinstance(initial, Disconnected) and initial.authenticated is not None:
            return TunnelResult(success=True, message="VPN was already disconnected.", status=initial)

        logger.info("Disconnecting VPN")
        self._runner.run([NORDVPN, "disconnect"], timeout_s=self._command_timeout_s)
        self._sleep(self._disconnect_settle_s)

        after = self.status()
        if isinstance(after, Connected):
            raise DisconnectionVerificationError(
                "Daemon still reports connected after disconnect",
                user_message="VPN disconnection verification failed; NordVPN client still reports as connected.",
            )
        if isinstance(after, Disconnected) and after.authenticated is None:
            raise DisconnectionVerificationError(
                f"Could not verify disconnect: {after.message}",
                user_message=f"VPN disconnection could not be verified: {after.message}",
            )

        logger.info("VPN disconnected")
        return TunnelResult(
            success=True,
            message="VPN disconnected successfully. Auto-disconnect timer cleared.",
            status=after,
        )

    # ------------------------------------------------------------------ inactivity timer
    def reset_activity_timer(self) -> bool:
        """Re-arm the auto-disconnect timer; returns False when it was a no-op."""
        with self._lock:
            if (
                self._manual_disconnect
                or self._state.last_connected_at is None
                or not self._state.connected
            ):
                logger.debug("Not resetting VPN timer (not connected by us or manual disconnect)")
                return False
        return self._start_timer()

    def _start_timer(self, delay_s: float | None = None) -> bool:
        with self._lock:
            if self._manual_disconnect:
                logger.debug("Skipping auto-disconnect timer (manual disconnect intent active)")
                return False
            self._cancel_timer_locked()
            self._timer_generation += 1
            generation = self._timer_generation
            if delay_s is None:
                delay_s = self._inactivity_timeout_s
            self._state.pending_disconnect_deadline = self._clock() + timedelta(seconds=delay_s)
            self._timer = self._timer_factory(delay_s, lambda: self._on_timer_expired(generation))
            self._persist_session_locked()
            logger.debug(
                "VPN auto-disconnect armed for %s", self._state.pending_disconnect_deadline
            )
        return True

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._state.pending_disconnect_deadline = None

    def _on_timer_expired(self, generation: int) -> None:
        with self._op_lock:
            with self._lock:
                if self._manual_disconnect or generation != self._timer_generation:
                    logger.debug("Stale or cancelled auto-disconnect timer ignored")
                    return
                self._timer = None
            logger.info("Auto-disconnecting VPN after %ss of inactivity", self._inactivity_timeout_s)
            result = self.disconnect()
            if not result.success:
                logger.warning("Auto-disconnect failed: %s", result.message)

    def shutdown(self) -> None:
        """Drop the pending timer without touching the tunnel.

        The saved deadline stays on disk; the next process enforces it through
        resume_inactivity_timer().
        """
        with self._lock:
            self._timer_generation += 1
            self._cancel_timer_locked()

    def resume_inactivity_timer(self) -> bool:
        """Pick up an auto-disconnect deadline saved by an earlier process.

        Re-arms the timer for the time that is left and returns True. A
        deadline that already passed disconnects the tunnel right away.
        """
        with self._op_lock:
            with self._lock:
                deadline = self._state.pending_disconnect_deadline
                if (
                    self._timer is not None
                    or self._state.last_connected_at is None
                    or deadline is None
                ):
                    return False

            status = self.status()
            if not isinstance(status, Connected):
                if isinstance(status, Disconnected) and status.authenticated is None:
                    logger.warning("Cannot verify VPN state; keeping saved auto-disconnect deadline")
                    return False
                logger.info("VPN no longer up; dropping saved auto-disconnect deadline")
                with self._lock:
                    self._state.last_connected_at = None
                    self._cancel_timer_locked()
                    self._persist_session_locked()
                return False

            remaining_s = (deadline - self._clock()).total_seconds()
            if remaining_s <= 0:
                logger.info("Auto-disconnect deadline %s passed while no process was running", deadline)
                result = self.disconnect()
                if not result.success:
                    logger.warning("Auto-disconnect failed: %s", result.message)
                return False

            logger.info("Resuming VPN auto-disconnect timer (%.0fs left)", remaining_s)
            return self._start_timer(remaining_s)

    # ------------------------------------------------------------------ session file
    def _restore_session(self) -> None:
        if self._session_path is None:
            return
        data = load_json(self._session_path, {})
        if not isinstance(data, dict):
            return
        connected_at = _parse_time(data.get("last_connected_at"))
        deadline = _parse_time(data.get("disconnect_deadline"))
        if connected_at is None or deadline is None:
            return
        self._state.last_connected_at = connected_at
        self._state.pending_disconnect_deadline = deadline

    def _persist_session_locked(self) -> None:
        if self._session_path is None:
            return
        payload = {
            "last_connected_at": _format_time(self._state.last_connected_at),
            "disconnect_deadline": _format_time(self._state.pending_disconnect_deadline),
        }
        try:
            save_json(self._session_path, payload)
        except OSError as exc:
            logger.warning("Could not save VPN session to %s: %s", self._session_path, exc)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_time(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
