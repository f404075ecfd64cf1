from __future__ import annotations

from typing import Sequence

import pytest

from tunnelgate.core.errors import DelegateError, ProbeUnavailableError, ProwlarrApiError
from tunnelgate.core.health_probe import HealthReport, HealthSnapshot
from tunnelgate.core.orchestrator import (
    DelegateResult,
    OrchestrationEngine,
    SearchOperation,
    search_operation,
)
from tunnelgate.core.prowlarr_api import SearchResult, SystemStatus
from tunnelgate.core.tunnel_controller import TunnelResult
from tunnelgate.core.tunnel_status import Connected, Disconnected, NeedsAuthentication


def _snapshot(score: int, healthy: int, total: int = 10) -> HealthSnapshot:
    return HealthSnapshot(
        score=score,
        total_resources=total,
        healthy_resources=healthy,
        failed_resources=total - healthy,
    )


class FakeProbe:
    def __init__(self, *snapshots: HealthSnapshot | Exception) -> None:
        self._snapshots = list(snapshots)
        self.calls = 0

    def probe(self) -> HealthSnapshot:
        self.calls += 1
        item = self._snapshots.pop(0) if len(self._snapshots) > 1 else self._snapshots[0]
        if isinstance(item, Exception):
            raise item
        return item

    def report(self) -> HealthReport:
        return HealthReport(snapshot=self.probe(), system=SystemStatus(app_name="Prowlarr", version="1.24.3"))


class FakeTunnel:
    inactivity_timeout_s = 600.0

    def __init__(self, *, connected: bool = False, connect_ok: bool = True) -> None:
        self.connected = connected
        self.connect_ok = connect_ok
        self.fallback_calls: list[list[str]] = []
        self.resets = 0
        self.disconnects = 0

    def _status(self):
        if self.connected:
            return Connected(city="Sydney", country="Australia", ip="103.137.12.200")
        return Disconnected()

    def status(self):
        return self._status()

    def recommended_locations(self) -> list[str]:
        return ["australia", "singapore"]

    def connect_with_fallback(self, candidates: Sequence[str]) -> TunnelResult:
        self.fallback_calls.append(list(candidates))
        if self.connect_ok:
            self.connected = True
            return TunnelResult(success=True, message="Successfully connected VPN to Sydney.", status=self._status())
        return TunnelResult(
            success=False,
            message="Could not connect VPN to any location (australia: timed out)",
            status=self._status(),
        )

    def connect(self, location: str | None = None) -> TunnelResult:
        self.connected = True
        return TunnelResult(success=True, message="ok", status=self._status())

    def disconnect(self) -> TunnelResult:
        self.disconnects += 1
        self.connected = False
        return TunnelResult(success=True, message="VPN disconnected successfully.", status=self._status())

    def reset_activity_timer(self) -> bool:
        self.resets += 1
        return self.connected


class FakeOperation:
    name = "search"

    def __init__(self, count: int = 5, *, error: Exception | None = None) -> None:
        self.count = count
        self.error = error
        self.runs = 0

    def run(self) -> DelegateResult:
        self.runs += 1
        if self.error is not None:
            raise self.error
        return DelegateResult(count=self.count, payload=[f"release-{i}" for i in range(self.count)])


@pytest.fixture
def sleeps() -> list[float]:
    return []


def _engine(probe: FakeProbe, tunnel: FakeTunnel, sleeps: list[float], **kwargs) -> OrchestrationEngine:
    return OrchestrationEngine(probe, tunnel, sleep=sleeps.append, **kwargs)


def test_healthy_runs_without_tunnel(sleeps) -> None:
    probe = FakeProbe(_snapshot(90, 9))
    tunnel = FakeTunnel()
    operation = FakeOperation(3)

    outcome = _engine(probe, tunnel, sleeps).execute(operation)

    assert outcome.success is True
    assert outcome.message == "Found 3 results."
    assert outcome.health_score == 90
    assert outcome.tunnel_engaged is False
    assert outcome.resources_recovered == 0
    assert tunnel.fallback_calls == []
    assert tunnel.resets == 0
    assert sleeps == []
    assert operation.runs == 1


def test_healthy_with_tunnel_up_extends_timer(sleeps) -> None:
    tunnel = FakeTunnel(connected=True)

    outcome = _engine(FakeProbe(_snapshot(90, 9)), tunnel, sleeps).execute(FakeOperation())

    assert outcome.success is True
    assert outcome.tunnel_connected is True
    assert outcome.tunnel_engaged is False
    assert tunnel.resets == 1


def test_tunnel_that_does_not_help_blocks_operation(sleeps) -> None:
    probe = FakeProbe(_snapshot(20, 2), _snapshot(30, 3))
    tunnel = FakeTunnel()
    operation = FakeOperation()

    outcome = _engine(probe, tunnel, sleeps).execute(operation)

    assert outcome.success is False
    assert outcome.health_score == 30
    assert outcome.tunnel_engaged is True
    assert outcome.resources_recovered == 1
    assert "still unhealthy" in outcome.message
    assert operation.runs == 0
    assert sleeps == [5.0]
    assert tunnel.fallback_calls == [["australia", "singapore"]]


def test_tunnel_recovers_health(sleeps) -> None:
    probe = FakeProbe(_snapshot(20, 2), _snapshot(70, 7))
    tunnel = FakeTunnel()

    outcome = _engine(probe, tunnel, sleeps).execute(FakeOperation(5))

    assert outcome.success is True
    assert outcome.tunnel_engaged is True
    assert outcome.resources_recovered == 5
    assert outcome.health_score == 70
    assert outcome.score_before == 20
    assert outcome.result_count == 5
    assert "restored 5 indexers" in outcome.message
    assert "10 minutes" in outcome.message
    assert tunnel.resets == 1


def test_zero_results_is_reported_separately(sleeps) -> None:
    outcome = _engine(FakeProbe(_snapshot(100, 10)), FakeTunnel(), sleeps).execute(FakeOperation(0))

    assert outcome.success is False
    assert outcome.no_results is True
    assert outcome.health_score == 100
    assert "No results found" in outcome.message


def test_delegate_error_becomes_failed_outcome(sleeps) -> None:
    operation = FakeOperation(error=DelegateError("boom", user_message="Search failed: HTTP 500"))

    outcome = _engine(FakeProbe(_snapshot(90, 9)), FakeTunnel(), sleeps).execute(operation)

    assert outcome.success is False
    assert outcome.message == "Search failed: HTTP 500"
    assert outcome.health_score == 90
    assert outcome.tunnel_connected is False


def test_delegate_failure_after_recovery_keeps_tunnel_details(sleeps) -> None:
    probe = FakeProbe(_snapshot(20, 2), _snapshot(70, 7))
    client = FakeSearchClient(error=ProwlarrApiError("refused", user_message="Cannot reach Prowlarr"))
    operation = SearchOperation(client=client, query="batman")

    outcome = _engine(probe, FakeTunnel(), sleeps).execute(operation)

    assert outcome.success is False
    assert outcome.message == "Search failed: Cannot reach Prowlarr"
    assert outcome.health_score == 70
    assert outcome.score_before == 20
    assert outcome.tunnel_engaged is True
    assert outcome.resources_recovered == 5
    assert outcome.tunnel_connected is True
    assert isinstance(outcome.tunnel_status, Connected)


def test_unexpected_error_message_names_operation(sleeps) -> None:
    operation = FakeOperation(error=RuntimeError("kaboom"))

    outcome = _engine(FakeProbe(_snapshot(90, 9)), FakeTunnel(), sleeps).execute(operation)

    assert outcome.message == "Search failed: kaboom"
    assert outcome.score_before == 90


def test_failed_fallback_still_runs_operation(sleeps) -> None:
    probe = FakeProbe(_snapshot(20, 2))
    tunnel = FakeTunnel(connect_ok=False)
    operation = FakeOperation(4)

    outcome = _engine(probe, tunnel, sleeps).execute(operation)

    assert outcome.success is True
    assert outcome.tunnel_engaged is False
    assert outcome.health_score == 20
    assert operation.runs == 1
    assert sleeps == []


def test_unavailable_probe_counts_as_zero(sleeps) -> None:
    probe = FakeProbe(ProbeUnavailableError("down"), _snapshot(60, 6))
    tunnel = FakeTunnel()

    outcome = _engine(probe, tunnel, sleeps).execute(FakeOperation(2))

    assert outcome.success is True
    assert outcome.score_before == 0
    assert outcome.tunnel_engaged is True
    assert tunnel.fallback_calls


def test_unexpected_exception_never_escapes(sleeps) -> None:
    operation = FakeOperation(error=RuntimeError("kaboom"))

    outcome = _engine(FakeProbe(_snapshot(90, 9)), FakeTunnel(connected=True), sleeps).execute(operation)

    assert outcome.success is False
    assert "kaboom" in outcome.message
    assert outcome.tunnel_connected is True


def test_threshold_override(sleeps) -> None:
    tunnel = FakeTunnel()
    probe = FakeProbe(_snapshot(60, 6))

    outcome = _engine(probe, tunnel, sleeps).execute(FakeOperation(), health_threshold=90)

    assert tunnel.fallback_calls
    assert outcome.tunnel_engaged is True


def test_status_overview(sleeps) -> None:
    engine = _engine(FakeProbe(_snapshot(70, 7)), FakeTunnel(connected=True), sleeps)

    overview = engine.status()

    assert isinstance(overview.tunnel, Connected)
    assert overview.health is not None
    assert overview.health.snapshot.score == 70
    assert overview.ready_for_search is True
    assert overview.timestamp.tzinfo is not None


def test_status_overview_without_health(sleeps) -> None:
    engine = _engine(FakeProbe(ProbeUnavailableError("down", user_message="Prowlarr unreachable")), FakeTunnel(), sleeps)

    overview = engine.status()

    assert overview.health is None
    assert overview.health_error == "Prowlarr unreachable"
    assert overview.ready_for_search is False


def test_manual_controls_delegate_to_tunnel(sleeps) -> None:
    tunnel = FakeTunnel()
    engine = _engine(FakeProbe(_snapshot(90, 9)), tunnel, sleeps)

    assert engine.connect("japan").success is True
    assert engine.record_activity() is True
    assert engine.force_disconnect().success is True
    assert tunnel.disconnects == 1
    assert engine.record_activity() is False


def test_auth_needed_outcome_carries_status(sleeps) -> None:
    class NoLoginTunnel(FakeTunnel):
        def connect_with_fallback(self, candidates: Sequence[str]) -> TunnelResult:
            status = NeedsAuthentication(login_url="https://api.nordvpn.com/login")
            return TunnelResult(success=False, message=status.message, status=status)

    outcome = _engine(FakeProbe(_snapshot(10, 1)), NoLoginTunnel(), sleeps).execute(FakeOperation(1))

    assert outcome.success is True
    assert isinstance(outcome.tunnel_status, NeedsAuthentication)


class FakeSearchClient:
    def __init__(self, results=None, error: Exception | None = None) -> None:
        self.results = results or []
        self.error = error
        self.calls: list[tuple] = []

    def search(self, query, *, indexer_ids=None, categories=None, limit=20):
        self.calls.append((query, indexer_ids, categories, limit))
        if self.error is not None:
            raise self.error
        return list(self.results)


def test_search_operation_runs_query() -> None:
    release = SearchResult(guid="g1", indexer_id=3, title="Some.Release.1080p")
    client = FakeSearchClient([release])

    result = search_operation(client, " batman ", indexer_ids=[3], limit=10).run()

    assert result.count == 1
    assert result.payload == [release]
    assert client.calls == [("batman", (3,), None, 10)]


def test_search_operation_rejects_empty_query() -> None:
    with pytest.raises(DelegateError):
        SearchOperation(client=FakeSearchClient(), query="   ").run()


def test_search_operation_wraps_api_errors() -> None:
    client = FakeSearchClient(error=ProwlarrApiError("timeout", user_message="Cannot reach Prowlarr"))

    with pytest.raises(DelegateError) as excinfo:
        SearchOperation(client=client, query="batman").run()

    assert excinfo.value.user_message == "Search failed: Cannot reach Prowlarr"


def test_search_outcome_exposes_results(sleeps) -> None:
    release = SearchResult(guid="g1", indexer_id=3, title="Some.Release.1080p")
    operation = SearchOperation(client=FakeSearchClient([release]), query="batman")

    outcome = _engine(FakeProbe(_snapshot(90, 9)), FakeTunnel(), sleeps).execute(operation)

    assert outcome.search_results == [release]
