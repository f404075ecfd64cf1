"""Command-line front end.

One-shot sub-commands map onto the engine and the API clients. ``console``
keeps one process (and so one inactivity timer) alive across many commands.
"""

from __future__ import annotations

import argparse
import logging
import shlex
import sys
from typing import Any, Callable, TextIO

from tunnelgate.cli.render import (
    render_health,
    render_indexers,
    render_outcome,
    render_overview,
    render_torrents,
    render_transfer,
    render_tunnel_result,
    render_tunnel_status,
)
from tunnelgate.core.config import Settings
from tunnelgate.core.errors import AppError
from tunnelgate.core.health_probe import HealthProbe
from tunnelgate.core.humanize import format_bytes
from tunnelgate.core.orchestrator import OrchestrationEngine, search_operation
from tunnelgate.core.prowlarr_api import ProwlarrClient, SearchResult
from tunnelgate.core.qbittorrent_api import QBittorrentClient
from tunnelgate.core.storage import get_state_dir, load_json, save_json
from tunnelgate.core.tunnel_controller import TunnelController

logger = logging.getLogger(__name__)

LAST_SEARCH_FILE = "last_search.json"
TORRENT_FILTERS = ("all", "downloading", "seeding", "completed", "paused", "active", "inactive")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tunnelgate",
        description="Search indexers and manage downloads, bringing up the VPN when indexers are unhealthy.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="VPN, indexer health and search readiness")
    sub.add_parser("health", help="indexer health report")

    indexers = sub.add_parser("indexers", help="list configured indexers")
    indexers.add_argument("--enabled-only", action="store_true")

    search = sub.add_parser("search", help="health-gated search (connects VPN when needed)")
    search.add_argument("query", nargs="+")
    search.add_argument("--indexer-id", type=int, action="append", default=[], dest="indexer_ids")
    search.add_argument("--category", type=int, action="append", default=[], dest="categories")
    search.add_argument("--limit", type=int, default=20)
    search.add_argument("--threshold", type=int, default=None, help="minimum health score (0-100)")

    grab = sub.add_parser("grab", help="send a release from the last search to the download client")
    grab.add_argument("option", type=int)

    sub.add_parser("download-clients", help="list Prowlarr download clients")

    vpn = sub.add_parser("vpn", help="manual VPN control")
    vpn_sub = vpn.add_subparsers(dest="vpn_command", required=True)
    vpn_sub.add_parser("status")
    connect = vpn_sub.add_parser("connect")
    connect.add_argument("location", nargs="?", default=None)
    vpn_sub.add_parser("disconnect")
    vpn_sub.add_parser("locations")

    torrents = sub.add_parser("torrents", help="qBittorrent management")
    t_sub = torrents.add_subparsers(dest="torrent_command", required=True)
    t_list = t_sub.add_parser("list")
    t_list.add_argument("--filter", choices=TORRENT_FILTERS, default=None)
    t_list.add_argument("--category", default=None)
    t_list.add_argument("--limit", type=int, default=None)
    t_add = t_sub.add_parser("add")
    t_add.add_argument("urls", nargs="+")
    t_add.add_argument("--category", default=None)
    t_add.add_argument("--savepath", default=None)
    t_add.add_argument("--paused", action="store_true")
    for action in ("pause", "resume", "delete"):
        t_action = t_sub.add_parser(action)
        t_action.add_argument("hashes", nargs="+")
        if action == "delete":
            t_action.add_argument("--delete-files", action="store_true")
    t_sub.add_parser("transfer")
    t_sub.add_parser("check")

    sub.add_parser("console", help="interactive session (keeps the VPN inactivity timer alive)")
    return parser


class App:
    def __init__(
        self,
        settings: Settings,
        *,
        engine: OrchestrationEngine,
        prowlarr: ProwlarrClient,
        qbittorrent: QBittorrentClient,
        out: TextIO | None = None,
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._prowlarr = prowlarr
        self._qbittorrent = qbittorrent
        self._out = out or sys.stdout

    @classmethod
    def from_settings(cls, settings: Settings, *, out: TextIO | None = None) -> "App":
        prowlarr = ProwlarrClient(
            settings.prowlarr_url,
            settings.prowlarr_api_key,
            timeout_s=settings.prowlarr_timeout_s,
            search_timeout_s=settings.search_timeout_s,
        )
        engine = OrchestrationEngine(
            HealthProbe(prowlarr),
            TunnelController.from_settings(settings),
            health_threshold=settings.health_threshold,
            recovery_wait_s=settings.recovery_wait_s,
        )
        qbittorrent = QBittorrentClient(
            settings.qbittorrent_url,
            settings.qbittorrent_username,
            settings.qbittorrent_password,
        )
        return cls(settings, engine=engine, prowlarr=prowlarr, qbittorrent=qbittorrent, out=out)

    def _print(self, text: str) -> None:
        print(text, file=self._out)

    @property
    def _inactivity_minutes(self) -> int:
        return max(1, round(self._settings.inactivity_timeout_s / 60))

    def dispatch(self, args: argparse.Namespace) -> int:
        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "status": self.cmd_status,
            "health": self.cmd_health,
            "indexers": self.cmd_indexers,
            "search": self.cmd_search,
            "grab": self.cmd_grab,
            "download-clients": self.cmd_download_clients,
            "vpn": self.cmd_vpn,
            "torrents": self.cmd_torrents,
            "console": self.cmd_console,
        }
        return handlers[args.command](args)

    def resume_session(self) -> bool:
        return self._engine.tunnel.resume_inactivity_timer()

    def close(self) -> None:
        self._engine.tunnel.shutdown()
        self._qbittorrent.logout()

    # ------------------------------------------------------------------ commands
    def cmd_status(self, args: argparse.Namespace) -> int:
        overview = self._engine.status()
        self._print(render_overview(overview, inactivity_minutes=self._inactivity_minutes))
        return 0

    def cmd_health(self, args: argparse.Namespace) -> int:
        report = HealthProbe(self._prowlarr).report()
        self._print(render_health(report))
        return 0

    def cmd_indexers(self, args: argparse.Namespace) -> int:
        indexers = self._prowlarr.get_indexers()
        if args.enabled_only:
            indexers = [indexer for indexer in indexers if indexer.enabled]
        self._print(render_indexers(indexers))
        return 0

    def cmd_search(self, args: argparse.Namespace) -> int:
        query = " ".join(args.query)
        operation = search_operation(
            self._prowlarr,
            query,
            indexer_ids=args.indexer_ids,
            categories=args.categories,
            limit=args.limit,
        )
        outcome = self._engine.execute(operation, args.threshold)
        if outcome.success:
            save_json(
                get_state_dir() / LAST_SEARCH_FILE,
                {"query": query, "results": [r.to_payload() for r in outcome.search_results]},
            )
        self._print(render_outcome(outcome))
        if outcome.success or outcome.no_results:
            return 0
        return 1

    def _last_results(self) -> list[SearchResult]:
        data = load_json(get_state_dir() / LAST_SEARCH_FILE, {})
        items: Any = data.get("results") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [SearchResult.from_payload(item) for item in items if isinstance(item, dict)]

    def cmd_grab(self, args: argparse.Namespace) -> int:
        results = self._last_results()
        if not results:
            raise AppError("No saved search results", user_message="No search results available. Run a search first.")
        if not 1 <= args.option <= len(results):
            raise AppError(
                f"Option {args.option} out of range",
                user_message=f"Option {args.option} not found. Choose a number between 1 and {len(results)}.",
            )

        selected = results[args.option - 1]
        # Downloading counts as activity for the VPN inactivity timer.
        self._engine.record_activity()
        grab = self._prowlarr.grab_release(selected.guid, selected.indexer_id)
        head = "Grabbed" if grab.success else "Failed to grab"
        self._print(f"{head}: {selected.title}")
        self._print(f"Indexer: {selected.indexer} | Size: {format_bytes(selected.size)}")
        self._print(grab.message)
        return 0 if grab.success else 1

    def cmd_download_clients(self, args: argparse.Namespace) -> int:
        clients = self._prowlarr.get_download_clients()
        if not clients:
            self._print("No download clients configured.")
        for client in clients:
            state = "enabled" if client.get("enable") else "disabled"
            self._print(f"{client.get('name', '?')} ({client.get('implementation', '?')}, {state})")
        return 0

    def cmd_vpn(self, args: argparse.Namespace) -> int:
        tunnel = self._engine.tunnel
        if args.vpn_command == "status":
            self._print(render_tunnel_status(tunnel.status(), inactivity_minutes=self._inactivity_minutes))
            return 0
        if args.vpn_command == "locations":
            self._print("\n".join(tunnel.recommended_locations()))
            return 0
        if args.vpn_command == "connect":
            result = self._engine.connect(args.location)
        else:
            result = self._engine.force_disconnect()
        self._print(render_tunnel_result(result))
        return 0 if result.success else 1

    def cmd_torrents(self, args: argparse.Namespace) -> int:
        client = self._qbittorrent
        command = args.torrent_command
        if command == "list":
            torrents = client.get_torrents(filter=args.filter, category=args.category, limit=args.limit)
            self._print(render_torrents(torrents))
        elif command == "add":
            client.add_torrent(args.urls, category=args.category, savepath=args.savepath, paused=args.paused or None)
            self._engine.record_activity()
            self._print(f"Added {len(args.urls)} torrent(s).")
        elif command in ("pause", "resume", "delete"):
            client.control_torrents(command, args.hashes, delete_files=getattr(args, "delete_files", False))
            self._print(f"{command.capitalize()}d {len(args.hashes)} torrent(s).")
        elif command == "transfer":
            self._print(render_transfer(client.get_transfer_info()))
        else:
            health = client.health_check()
            if not health.connected:
                self._print(f"qBittorrent unreachable: {health.error}")
                return 1
            self._print(f"qBittorrent {health.version} (Web API {health.web_api_version})")
        return 0

    def cmd_console(self, args: argparse.Namespace, *, read_line: Callable[[str], str] = input) -> int:
        parser = build_parser()
        self._print("tunnelgate console. Type a command (e.g. `search batman`), `help`, or `exit`.")
        while True:
            try:
                line = read_line("tunnelgate> ").strip()
            except EOFError:
                break
            if not line:
                continue
            if line in {"exit", "quit"}:
                break
            if line == "help":
                parser.print_help(self._out)
                continue
            try:
                sub_args = parser.parse_args(shlex.split(line))
            except SystemExit:
                continue
            except ValueError as exc:
                self._print(f"Cannot parse command: {exc}")
                continue
            if sub_args.command == "console":
                continue
            try:
                self.dispatch(sub_args)
            except AppError as exc:
                logger.warning("Console command failed: %s", exc)
                self._print(exc.user_message)
        return 0
