"""Health-gated execution of tool operations.

Before an operation runs, indexer health is measured. Below the threshold the
VPN is brought up (trying each recommended location in turn), the indexers get
a short recovery window, and health is measured again. A tunnel that did not
fix health blocks the operation; a tunnel that could not be established does
not, since the indexers may still answer.

``execute()`` never raises: every failure comes back as an OperationOutcome
with a message, the last known health score and the tunnel state.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable, Protocol, Sequence

from tunnelgate.core.errors import AppError, DelegateError, ProbeUnavailableError
from tunnelgate.core.health_probe import HealthProbe, HealthReport, HealthSnapshot
from tunnelgate.core.prowlarr_api import ProwlarrClient, SearchResult
from tunnelgate.core.tunnel_controller import TunnelController, TunnelResult
from tunnelgate.core.tunnel_status import TunnelStatus

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_THRESHOLD = 50


@dataclass(frozen=True, slots=True)
class DelegateResult:
    count: int
    payload: Any = None


class Operation(Protocol):
    name: str

    def run(self) -> DelegateResult: ...


@dataclass(frozen=True, slots=True)
class SearchOperation:
    client: ProwlarrClient
    query: str
    indexer_ids: tuple[int, ...] = ()
    categories: tuple[int, ...] = ()
    limit: int = 20
    name: str = "search"

    def run(self) -> DelegateResult:
        query = (self.query or "").strip()
        if not query:
            raise DelegateError("Empty search query", user_message="Search query is required.")
        try:
            results = self.client.search(
                query,
                indexer_ids=self.indexer_ids or None,
                categories=self.categories or None,
                limit=self.limit,
            )
        except AppError as exc:
            raise DelegateError(
                f"Search for {query!r} failed: {exc}",
                user_message=f"Search failed: {exc.user_message}",
            ) from exc
        return DelegateResult(count=len(results), payload=results)


@dataclass(frozen=True, slots=True)
class OperationOutcome:
    success: bool
    message: str
    health_score: int
    tunnel_engaged: bool = False
    resources_recovered: int = 0
    no_results: bool = False
    tunnel_connected: bool | None = None
    score_before: int | None = None
    result_count: int = 0
    payload: Any = None
    tunnel_status: TunnelStatus | None = None

    @property
    def search_results(self) -> list[SearchResult]:
        if isinstance(self.payload, list):
            return [item for item in self.payload if isinstance(item, SearchResult)]
        return []


@dataclass(frozen=True, slots=True)
class SystemOverview:
    timestamp: datetime
    tunnel: TunnelStatus
    health: HealthReport | None
    health_error: str | None
    ready_for_search: bool


class OrchestrationEngine:
    def __init__(
        self,
        probe: HealthProbe,
        tunnel: TunnelController,
        *,
        health_threshold: int = DEFAULT_HEALTH_THRESHOLD,
        recovery_wait_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._probe = probe
        self._tunnel = tunnel
        self._health_threshold = health_threshold
        self._recovery_wait_s = recovery_wait_s
        self._sleep = sleep

    @property
    def tunnel(self) -> TunnelController:
        return self._tunnel

    @property
    def health_threshold(self) -> int:
        return self._health_threshold

    def _measure(self) -> HealthSnapshot:
        try:
            return self._probe.probe()
        except ProbeUnavailableError as exc:
            logger.warning("Treating unavailable health source as score 0: %s", exc)
            return HealthSnapshot.unavailable()

    def execute(self, operation: Operation, health_threshold: int | None = None) -> OperationOutcome:
        threshold = self._health_threshold if health_threshold is None else health_threshold
        last_score = 0
        score_before: int | None = None
        tunnel_engaged = False
        recovered = 0
        tunnel_status: TunnelStatus | None = None
        try:
            before = self._measure()
            last_score = before.score
            score_before = before.score

            if before.score >= threshold:
                status = self._tunnel.status()
                tunnel_status = status
                if status.connected:
                    self._tunnel.reset_activity_timer()
            else:
                logger.info(
                    "Health %s%% below threshold %s%%; bringing up VPN for %s",
                    before.score,
                    threshold,
                    operation.name,
                )
                connected = self._tunnel.connect_with_fallback(self._tunnel.recommended_locations())
                tunnel_status = connected.status
                if connected.success:
                    tunnel_engaged = True
                    self._sleep(self._recovery_wait_s)
                    after = self._measure()
                    last_score = after.score
                    recovered = after.healthy_resources - before.healthy_resources
                    self._tunnel.reset_activity_timer()
                    if after.score < threshold:
                        return OperationOutcome(
                            success=False,
                            message=(
                                f"Indexers still unhealthy after VPN connection "
                                f"({before.score}% -> {after.score}%, recovered {recovered}). "
                                "Please check your configuration."
                            ),
                            health_score=after.score,
                            tunnel_engaged=True,
                            resources_recovered=recovered,
                            tunnel_connected=True,
                            score_before=before.score,
                            tunnel_status=tunnel_status,
                        )
                else:
                    logger.warning("Continuing %s without VPN: %s", operation.name, connected.message)

            result = operation.run()
            final_score = self._measure().score
            last_score = final_score
            if result.count == 0:
                return OperationOutcome(
                    success=False,
                    message=(
                        "No results found. Try different terms or check whether more "
                        "indexers are available."
                    ),
                    health_score=final_score,
                    tunnel_engaged=tunnel_engaged,
                    resources_recovered=recovered,
                    no_results=True,
                    tunnel_connected=bool(tunnel_status and tunnel_status.connected),
                    score_before=before.score,
                    payload=result.payload,
                    tunnel_status=tunnel_status,
                )

            return OperationOutcome(
                success=True,
                message=self._success_message(result.count, tunnel_engaged, recovered),
                health_score=final_score,
                tunnel_engaged=tunnel_engaged,
                resources_recovered=recovered,
                tunnel_connected=bool(tunnel_status and tunnel_status.connected),
                score_before=before.score,
                result_count=result.count,
                payload=result.payload,
                tunnel_status=tunnel_status,
            )
        except Exception as exc:
            if isinstance(exc, DelegateError):
                # Operations word their own failures.
                logger.warning("%s failed: %s", operation.name, exc)
                message = exc.user_message
            elif isinstance(exc, AppError):
                logger.warning("%s failed: %s", operation.name, exc)
                message = f"{operation.name.capitalize()} failed: {exc.user_message}"
            else:
                logger.exception("%s failed unexpectedly", operation.name)
                message = f"{operation.name.capitalize()} failed: {str(exc) or type(exc).__name__}"
            return OperationOutcome(
                success=False,
                message=message,
                health_score=last_score,
                tunnel_engaged=tunnel_engaged,
                resources_recovered=recovered,
                tunnel_connected=self._tunnel_connected(),
                score_before=score_before,
                tunnel_status=tunnel_status,
            )

    def _tunnel_connected(self) -> bool | None:
        try:
            return self._tunnel.status().connected
        except Exception:  # pragma: no cover - status() itself never raises
            logger.exception("Tunnel status unavailable")
            return None

    def _success_message(self, count: int, tunnel_engaged: bool, recovered: int) -> str:
        message = f"Found {count} results."
        minutes = max(1, round(self._tunnel.inactivity_timeout_s / 60))
        if tunnel_engaged and recovered > 0:
            plural = "" if recovered == 1 else "s"
            message += (
                f" Connected VPN and restored {recovered} indexer{plural};"
                f" VPN will auto-disconnect after {minutes} minutes of inactivity."
            )
        elif tunnel_engaged:
            message += f" Using VPN connection; session extended for {minutes} minutes."
        return message

    # ------------------------------------------------------------------ manual control
    def status(self) -> SystemOverview:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="status") as pool:
            health_future = pool.submit(self._probe.report)
            tunnel_future = pool.submit(self._tunnel.status)
            tunnel = tunnel_future.result()
            try:
                health: HealthReport | None = health_future.result()
                health_error = None
            except ProbeUnavailableError as exc:
                health = None
                health_error = exc.user_message

        return SystemOverview(
            timestamp=datetime.now(timezone.utc),
            tunnel=tunnel,
            health=health,
            health_error=health_error,
            ready_for_search=health is not None and health.snapshot.score >= self._health_threshold,
        )

    def connect(self, location: str | None = None) -> TunnelResult:
        return self._tunnel.connect(location)

    def force_disconnect(self) -> TunnelResult:
        return self._tunnel.disconnect()

    def record_activity(self) -> bool:
        return self._tunnel.reset_activity_timer()


def search_operation(
    client: ProwlarrClient,
    query: str,
    *,
    indexer_ids: Sequence[int] = (),
    categories: Sequence[int] = (),
    limit: int = 20,
) -> SearchOperation:
    return SearchOperation(
        client=client,
        query=query,
        indexer_ids=tuple(indexer_ids),
        categories=tuple(categories),
        limit=limit,
    )
