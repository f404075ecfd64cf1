"""Plain-text rendering of results for the terminal."""

from __future__ import annotations

from typing import Iterable, Sequence

from tunnelgate.core.health_probe import HealthReport, HealthSnapshot
from tunnelgate.core.humanize import (
    format_age_hours,
    format_bytes,
    format_progress,
    format_speed,
    format_timestamp,
)
from tunnelgate.core.orchestrator import OperationOutcome, SystemOverview
from tunnelgate.core.prowlarr_api import Indexer, SearchResult
from tunnelgate.core.qbittorrent_api import TorrentInfo, TransferInfo
from tunnelgate.core.tunnel_controller import TunnelResult
from tunnelgate.core.tunnel_status import Connected, NeedsAuthentication, TunnelStatus


def render_tunnel_status(status: TunnelStatus, *, inactivity_minutes: int | None = None) -> str:
    if isinstance(status, NeedsAuthentication):
        lines = ["VPN: not authenticated", status.message]
        if status.login_url:
            lines.append(f"Login URL: {status.login_url}")
            lines.append("Open the URL in a browser, log in, then try again.")
        else:
            lines.append("Run `nordvpn login` in the VPN container to get a login URL.")
        return "\n".join(lines)

    if isinstance(status, Connected):
        lines = [f"VPN: connected ({status.location_label()})"]
        for label, value in (
            ("IP", status.ip),
            ("Server", status.server),
            ("Technology", status.technology),
            ("Protocol", status.protocol),
            ("Uptime", status.uptime),
        ):
            if value:
                lines.append(f"{label}: {value}")
        if status.connected_since is not None:
            lines.append(f"Connected since: {format_timestamp(status.connected_since)}")
            if inactivity_minutes:
                lines.append(f"Auto-disconnect after {inactivity_minutes} minutes of inactivity")
        return "\n".join(lines)

    return f"VPN: disconnected\n{status.message}"


def render_tunnel_result(result: TunnelResult) -> str:
    head = "OK" if result.success else "FAILED"
    return f"{head}: {result.message}\n{render_tunnel_status(result.status)}"


def _render_snapshot(snapshot: HealthSnapshot) -> list[str]:
    lines = [
        f"Health score: {snapshot.score}% "
        f"({snapshot.healthy_resources}/{snapshot.total_resources} enabled indexers healthy)"
    ]
    if snapshot.failure_details:
        lines.append("Failing indexers:")
        for detail in snapshot.failure_details:
            extra = []
            if detail.last_failure_time:
                extra.append(f"last failure {detail.last_failure_time}")
            if detail.disabled_until:
                extra.append(f"disabled until {detail.disabled_until}")
            suffix = f" ({', '.join(extra)})" if extra else ""
            lines.append(f"  - {detail.resource_name}{suffix}")
    return lines


def render_health(report: HealthReport) -> str:
    system = report.system
    env = "Docker" if system.is_docker else "Native"
    lines = [
        f"{system.app_name} v{system.version} ({env}{', ' + system.os_name if system.os_name else ''})",
        f"Overall: {report.overall}",
    ]
    lines.extend(_render_snapshot(report.snapshot))
    if report.disabled_resources:
        lines.append(f"Disabled indexers: {report.disabled_resources}")
    if report.issues:
        lines.append("Issues:")
        for issue in report.issues:
            lines.append(f"  [{issue.type or 'info'}] {issue.message}")
    if report.snapshot.score < 50 and report.snapshot.failed_resources:
        lines.append("Hint: failing indexers are often geo-blocked; try `tunnelgate vpn connect`.")
    return "\n".join(lines)


def render_overview(overview: SystemOverview, *, inactivity_minutes: int | None = None) -> str:
    lines = [f"Checked at {format_timestamp(overview.timestamp)}"]
    lines.append(render_tunnel_status(overview.tunnel, inactivity_minutes=inactivity_minutes))
    if overview.health is not None:
        lines.append(render_health(overview.health))
    else:
        lines.append(f"Health: unavailable ({overview.health_error})")
    lines.append(f"Ready for search: {'yes' if overview.ready_for_search else 'no'}")
    return "\n".join(lines)


def render_indexers(indexers: Iterable[Indexer]) -> str:
    lines = []
    for indexer in indexers:
        state = "enabled" if indexer.enabled else "disabled"
        meta = "/".join(p for p in (indexer.protocol, indexer.privacy) if p)
        lines.append(f"{indexer.id:>4}  {indexer.name}  [{state}{', ' + meta if meta else ''}]")
    return "\n".join(lines) if lines else "No indexers configured."


def render_search_results(results: Sequence[SearchResult]) -> str:
    lines = []
    for option, result in enumerate(results, start=1):
        lines.append(f"{option}. {result.title}")
        lines.append(
            f"   {format_bytes(result.size)} | seeds {result.seeders} | peers {result.peers}"
            f" | {result.indexer} | {format_age_hours(result.age_hours)}"
        )
    lines.append("Use `tunnelgate grab <option>` to send a release to the download client.")
    return "\n".join(lines)


def render_outcome(outcome: OperationOutcome) -> str:
    lines = [outcome.message]
    if outcome.success:
        lines.append(render_search_results(outcome.search_results))
    lines.append(f"Health score: {outcome.health_score}%")
    if outcome.tunnel_engaged:
        lines.append(f"VPN engaged; indexers recovered: {outcome.resources_recovered}")
    elif outcome.tunnel_connected:
        lines.append("VPN connected")
    return "\n".join(lines)


def render_torrents(torrents: Iterable[TorrentInfo]) -> str:
    lines = []
    for torrent in torrents:
        lines.append(f"{torrent.hash[:12]}  {torrent.name}")
        lines.append(
            f"   {torrent.state} | {format_progress(torrent.progress)} of {format_bytes(torrent.size)}"
            f" | down {format_speed(torrent.dlspeed)} | up {format_speed(torrent.upspeed)}"
        )
    return "\n".join(lines) if lines else "No torrents."


def render_transfer(info: TransferInfo) -> str:
    return "\n".join(
        [
            f"Connection: {info.connection_status} (DHT nodes: {info.dht_nodes})",
            f"Download: {format_speed(info.dl_info_speed)} ({format_bytes(info.dl_info_data)} this session)",
            f"Upload: {format_speed(info.up_info_speed)} ({format_bytes(info.up_info_data)} this session)",
        ]
    )
