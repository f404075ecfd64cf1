from __future__ import annotations

from datetime import datetime, timezone

from tunnelgate.cli.render import render_health, render_tunnel_status
from tunnelgate.core.health_probe import FailureDetail, HealthReport, HealthSnapshot
from tunnelgate.core.humanize import format_age_hours, format_bytes, format_progress
from tunnelgate.core.prowlarr_api import SystemStatus
from tunnelgate.core.tunnel_status import Connected, NeedsAuthentication


def test_needs_login_shows_url() -> None:
    text = render_tunnel_status(NeedsAuthentication(login_url="https://api.nordvpn.com/v1/users/oauth/login-redirect"))
    assert "not authenticated" in text
    assert "Login URL: https://api.nordvpn.com/v1/users/oauth/login-redirect" in text


def test_connected_shows_auto_disconnect_only_when_we_connected() -> None:
    status = Connected(city="Tokyo", country="Japan", ip="5.6.7.8")
    assert "Auto-disconnect" not in render_tunnel_status(status, inactivity_minutes=10)

    since = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    text = render_tunnel_status(Connected(city="Tokyo", country="Japan", connected_since=since), inactivity_minutes=10)
    assert "connected (Tokyo, Japan)" in text
    assert "Auto-disconnect after 10 minutes" in text


def test_unhealthy_report_suggests_vpn() -> None:
    snapshot = HealthSnapshot(
        score=25,
        total_resources=4,
        healthy_resources=1,
        failed_resources=3,
        failure_details=(FailureDetail("1337x", "2026-10-19T11:00:00Z", None),),
    )
    report = HealthReport(snapshot=snapshot, system=SystemStatus(app_name="Prowlarr", version="1.24.3"))

    text = render_health(report)

    assert "Overall: unhealthy" in text
    assert "Health score: 25% (1/4 enabled indexers healthy)" in text
    assert "  - 1337x (last failure 2026-10-19T11:00:00Z)" in text
    assert "vpn connect" in text


def test_humanize_helpers() -> None:
    assert format_bytes(512) == "512 B"
    assert format_bytes(1536) == "1.5 KiB"
    assert format_progress(0.256) == "25.6%"
    assert format_age_hours(0.2) == "< 1h"
    assert format_age_hours(50) == "2d"
    assert format_age_hours(24 * 400) == "1y"
