"""Indexer health score.

An enabled indexer counts as healthy when Prowlarr has no active failure
record for it. The score is the rounded percentage of healthy indexers among
enabled ones. Nothing is cached: every probe re-fetches both listings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Final, Protocol

from tunnelgate.core.errors import ProbeUnavailableError, ProwlarrApiError
from tunnelgate.core.prowlarr_api import (
    HealthIssue,
    Indexer,
    IndexerFailure,
    SystemStatus,
)

logger = logging.getLogger(__name__)

HEALTHY_SCORE: Final[int] = 80
DEGRADED_SCORE: Final[int] = 50


class HealthSource(Protocol):
    def get_indexers(self) -> list[Indexer]: ...

    def get_indexer_status(self) -> list[IndexerFailure]: ...

    def get_health_issues(self) -> list[HealthIssue]: ...

    def get_system_status(self) -> SystemStatus: ...


@dataclass(frozen=True, slots=True)
class FailureDetail:
    resource_name: str
    last_failure_time: str | None
    disabled_until: str | None


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    score: int
    total_resources: int
    healthy_resources: int
    failed_resources: int
    failure_details: tuple[FailureDetail, ...] = ()
    healthy_names: tuple[str, ...] = ()

    @classmethod
    def unavailable(cls) -> "HealthSnapshot":
        return cls(score=0, total_resources=0, healthy_resources=0, failed_resources=0)


@dataclass(frozen=True, slots=True)
class HealthReport:
    snapshot: HealthSnapshot
    system: SystemStatus
    issues: tuple[HealthIssue, ...] = field(default_factory=tuple)
    disabled_resources: int = 0

    @property
    def overall(self) -> str:
        return overall_label(self.snapshot.score)


def overall_label(score: int) -> str:
    if score >= HEALTHY_SCORE:
        return "healthy"
    if score >= DEGRADED_SCORE:
        return "degraded"
    return "unhealthy"


def compute_score(healthy: int, total: int) -> int:
    if total <= 0:
        return 0
    # Half rounds up; the builtin round() would round 50.5 down to 50.
    score = math.floor(100 * healthy / total + 0.5)
    return max(0, min(100, score))


def build_snapshot(indexers: list[Indexer], failures: list[IndexerFailure]) -> HealthSnapshot:
    enabled = [indexer for indexer in indexers if indexer.enabled]
    failures_by_id: dict[int, IndexerFailure] = {}
    for failure in failures:
        failures_by_id.setdefault(failure.indexer_id, failure)

    healthy: list[Indexer] = []
    details: list[FailureDetail] = []
    for indexer in enabled:
        failure = failures_by_id.get(indexer.id)
        if failure is None:
            healthy.append(indexer)
            continue
        details.append(
            FailureDetail(
                resource_name=indexer.name,
                last_failure_time=failure.most_recent_failure,
                disabled_until=failure.disabled_until,
            )
        )

    return HealthSnapshot(
        score=compute_score(len(healthy), len(enabled)),
        total_resources=len(enabled),
        healthy_resources=len(healthy),
        failed_resources=len(details),
        failure_details=tuple(details),
        healthy_names=tuple(indexer.name for indexer in healthy),
    )


class HealthProbe:
    def __init__(self, source: HealthSource) -> None:
        self._source = source

    def probe(self) -> HealthSnapshot:
        try:
            indexers = self._source.get_indexers()
            failures = self._source.get_indexer_status()
        except ProwlarrApiError as exc:
            raise ProbeUnavailableError(
                f"Health source unreachable: {exc}",
                user_message=f"Indexer health unavailable: {exc.user_message}",
            ) from exc

        snapshot = build_snapshot(indexers, failures)
        logger.info(
            "Indexer health %s%% (%s/%s healthy)",
            snapshot.score,
            snapshot.healthy_resources,
            snapshot.total_resources,
        )
        return snapshot

    def report(self) -> HealthReport:
        try:
            indexers = self._source.get_indexers()
            failures = self._source.get_indexer_status()
            system = self._source.get_system_status()
            issues = self._source.get_health_issues()
        except ProwlarrApiError as exc:
            raise ProbeUnavailableError(
                f"Health source unreachable: {exc}",
                user_message=f"Indexer health unavailable: {exc.user_message}",
            ) from exc

        return HealthReport(
            snapshot=build_snapshot(indexers, failures),
            system=system,
            issues=tuple(issues),
            disabled_resources=sum(1 for indexer in indexers if not indexer.enabled),
        )
