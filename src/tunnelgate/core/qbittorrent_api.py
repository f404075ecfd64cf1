"""qBittorrent Web API client (v2).

Authentication is cookie based: ``/api/v2/auth/login`` hands out a ``SID``
cookie that is sent on every later request. The session is renewed when it
ages out, and once more when the server answers 403.
"""

from __future__ import annotations

from dataclasses import dataclass
import http.client
import json
import logging
import re
import time
from typing import Any, Callable, Final, Iterable, Literal
import urllib.error
import urllib.parse
import urllib.request

from tunnelgate.core.errors import QBittorrentError

logger = logging.getLogger(__name__)

_SID_RE: Final[re.Pattern[str]] = re.compile(r"SID=([^;]+)")

TorrentFilter = Literal[
    "all", "downloading", "seeding", "completed", "paused", "active", "inactive"
]
TorrentAction = Literal["pause", "resume", "delete"]
_ACTIONS: Final[frozenset[str]] = frozenset({"pause", "resume", "delete"})


@dataclass(frozen=True, slots=True)
class TorrentInfo:
    hash: str
    name: str
    size: int
    progress: float
    state: str
    dlspeed: int = 0
    upspeed: int = 0
    eta: int = 0
    category: str = ""
    tags: str = ""
    ratio: float = 0.0
    save_path: str = ""
    added_on: int = 0

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "TorrentInfo":
        return cls(
            hash=str(item.get("hash") or ""),
            name=str(item.get("name") or ""),
            size=int(item.get("size") or 0),
            progress=float(item.get("progress") or 0.0),
            state=str(item.get("state") or "unknown"),
            dlspeed=int(item.get("dlspeed") or 0),
            upspeed=int(item.get("upspeed") or 0),
            eta=int(item.get("eta") or 0),
            category=str(item.get("category") or ""),
            tags=str(item.get("tags") or ""),
            ratio=float(item.get("ratio") or 0.0),
            save_path=str(item.get("save_path") or ""),
            added_on=int(item.get("added_on") or 0),
        )


@dataclass(frozen=True, slots=True)
class TransferInfo:
    dl_info_speed: int
    dl_info_data: int
    up_info_speed: int
    up_info_data: int
    dht_nodes: int = 0
    connection_status: str = "unknown"

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "TransferInfo":
        return cls(
            dl_info_speed=int(item.get("dl_info_speed") or 0),
            dl_info_data=int(item.get("dl_info_data") or 0),
            up_info_speed=int(item.get("up_info_speed") or 0),
            up_info_data=int(item.get("up_info_data") or 0),
            dht_nodes=int(item.get("dht_nodes") or 0),
            connection_status=str(item.get("connection_status") or "unknown"),
        )


@dataclass(frozen=True, slots=True)
class ClientHealth:
    connected: bool
    version: str | None = None
    web_api_version: str | None = None
    error: str | None = None


class QBittorrentClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        session_timeout_s: float = 3600.0,
        timeout_s: float = 30.0,
        opener: urllib.request.OpenerDirector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._session_timeout_s = session_timeout_s
        self._timeout_s = timeout_s
        self._opener = opener or urllib.request.build_opener()
        self._clock = clock
        self._sid: str | None = None
        self._session_expiry = 0.0

    # ------------------------------------------------------------------ session
    def _authenticate(self) -> None:
        logger.info("Authenticating with qBittorrent at %s", self._base_url)
        body = urllib.parse.urlencode(
            {"username": self._username, "password": self._password}
        ).encode("utf-8")
        request = urllib.request.Request(
            f"{self._base_url}/api/v2/auth/login",
            data=body,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Referer": self._base_url,
                "Origin": self._base_url,
            },
            method="POST",
        )
        try:
            with self._opener.open(request, timeout=self._timeout_s) as response:
                cookie = response.headers.get("Set-Cookie") or ""
                text = response.read().decode("utf-8", errors="replace").strip()
        except urllib.error.HTTPError as exc:
            if exc.code == 403:
                raise QBittorrentError(
                    "AUTH",
                    "qBittorrent login rejected (HTTP 403)",
                    user_message="qBittorrent rejected the login (too many failed attempts?).",
                    status_code=403,
                ) from exc
            raise QBittorrentError(
                "NETWORK",
                f"qBittorrent login failed: HTTP {exc.code}",
                user_message=f"qBittorrent login failed (HTTP {exc.code}).",
                status_code=exc.code,
            ) from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
            reason = getattr(exc, "reason", None) or exc
            raise QBittorrentError(
                "NETWORK",
                f"qBittorrent unreachable: {reason}",
                user_message=f"Cannot reach qBittorrent at {self._base_url}: {reason}",
            ) from exc

        match = _SID_RE.search(cookie)
        if not match:
            if text.lower().startswith("fails"):
                raise QBittorrentError(
                    "AUTH",
                    "qBittorrent login failed: invalid credentials",
                    user_message="Invalid qBittorrent username or password.",
                    status_code=200,
                )
            raise QBittorrentError(
                "AUTH",
                "qBittorrent login returned no SID cookie",
                user_message="qBittorrent did not return a session cookie.",
                status_code=200,
            )

        self._sid = match.group(1)
        self._session_expiry = self._clock() + self._session_timeout_s

    def _ensure_authenticated(self) -> None:
        if self._sid is None or self._clock() >= self._session_expiry:
            self._authenticate()

    def _api(
        self,
        endpoint: str,
        *,
        params: dict[str, str] | None = None,
        form: dict[str, str] | None = None,
        retries: int = 1,
    ) -> Any:
        self._ensure_authenticated()

        url = f"{self._base_url}/api/v2{endpoint}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        headers = {"Cookie": f"SID={self._sid}", "Referer": self._base_url}
        data: bytes | None = None
        method = "GET"
        if form is not None:
            data = urllib.parse.urlencode(form).encode("utf-8")
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            method = "POST"

        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug("qBittorrent API: %s %s", method, endpoint)
        try:
            with self._opener.open(request, timeout=self._timeout_s) as response:
                content_type = response.headers.get("Content-Type") or ""
                raw = response.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 403:
                if retries > 0:
                    logger.info("qBittorrent session expired; re-authenticating")
                    self._sid = None
                    return self._api(endpoint, params=params, form=form, retries=retries - 1)
                raise QBittorrentError(
                    "AUTH",
                    f"{endpoint}: authentication failed after retry",
                    user_message="qBittorrent authentication failed after retry.",
                    status_code=403,
                ) from exc
            messages = {
                400: "Bad request",
                404: "Resource not found",
                409: "Conflict or invalid operation",
            }
            detail = messages.get(exc.code, f"API request failed: {exc.reason}")
            raise QBittorrentError(
                "API",
                f"{endpoint}: HTTP {exc.code}: {detail}",
                user_message=f"qBittorrent: {detail} (HTTP {exc.code}).",
                status_code=exc.code,
            ) from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
            reason = getattr(exc, "reason", None) or exc
            raise QBittorrentError(
                "NETWORK",
                f"{endpoint}: network error: {reason}",
                user_message=f"Network error talking to qBittorrent: {reason}",
            ) from exc

        text = raw.decode("utf-8", errors="replace")
        if "application/json" in content_type:
            try:
                return json.loads(text)
            except json.JSONDecodeError as exc:
                raise QBittorrentError(
                    "API",
                    f"{endpoint}: invalid JSON",
                    user_message="qBittorrent returned invalid JSON.",
                ) from exc
        return text

    # ------------------------------------------------------------------ public surface
    def health_check(self) -> ClientHealth:
        try:
            version = str(self._api("/app/version")).strip()
            web_api_version = str(self._api("/app/webapiVersion")).strip()
        except QBittorrentError as exc:
            return ClientHealth(connected=False, error=exc.user_message)
        return ClientHealth(connected=True, version=version, web_api_version=web_api_version)

    def get_torrents(
        self,
        *,
        filter: TorrentFilter | None = None,
        category: str | None = None,
        tag: str | None = None,
        sort: str | None = None,
        reverse: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[TorrentInfo]:
        params: dict[str, str] = {}
        if filter:
            params["filter"] = filter
        if category:
            params["category"] = category
        if tag:
            params["tag"] = tag
        if sort:
            params["sort"] = sort
        if reverse:
            params["reverse"] = "true"
        if limit:
            params["limit"] = str(int(limit))
        if offset:
            params["offset"] = str(int(offset))

        data = self._api("/torrents/info", params=params or None)
        if not isinstance(data, list):
            raise QBittorrentError(
                "API",
                f"/torrents/info returned {type(data).__name__}",
                user_message="qBittorrent returned an unexpected torrent list.",
            )
        return [TorrentInfo.from_payload(item) for item in data if isinstance(item, dict)]

    def add_torrent(
        self,
        urls: str | Iterable[str],
        *,
        savepath: str | None = None,
        category: str | None = None,
        tags: str | None = None,
        paused: bool | None = None,
        skip_checking: bool = False,
        root_folder: bool | None = None,
        rename: str | None = None,
        up_limit: int | None = None,
        dl_limit: int | None = None,
        sequential_download: bool = False,
        first_last_piece_prio: bool = False,
    ) -> None:
        url_text = urls if isinstance(urls, str) else "\n".join(urls)
        if not url_text.strip():
            raise QBittorrentError(
                "API",
                "add_torrent called without URLs",
                user_message="Provide at least one torrent URL or magnet link.",
            )

        form: dict[str, str] = {"urls": url_text}
        if savepath:
            form["savepath"] = savepath
        if category:
            form["category"] = category
        if tags:
            form["tags"] = tags
        if paused is not None:
            form["paused"] = _bool(paused)
        if skip_checking:
            form["skip_checking"] = "true"
        if root_folder is not None:
            form["root_folder"] = _bool(root_folder)
        if rename:
            form["rename"] = rename
        if up_limit:
            form["upLimit"] = str(int(up_limit))
        if dl_limit:
            form["dlLimit"] = str(int(dl_limit))
        if sequential_download:
            form["sequentialDownload"] = "true"
        if first_last_piece_prio:
            form["firstLastPiecePrio"] = "true"

        self._api("/torrents/add", form=form)

    def control_torrents(
        self,
        action: TorrentAction,
        hashes: str | Iterable[str],
        *,
        delete_files: bool = False,
    ) -> None:
        if action not in _ACTIONS:
            raise QBittorrentError(
                "API",
                f"Unsupported torrent action: {action!r}",
                user_message=f"Unsupported torrent action: {action}",
            )
        hash_text = hashes if isinstance(hashes, str) else "|".join(hashes)
        form = {"hashes": hash_text}
        if action == "delete":
            form["deleteFiles"] = _bool(delete_files)
        self._api(f"/torrents/{action}", form=form)

    def get_transfer_info(self) -> TransferInfo:
        data = self._api("/transfer/info")
        if not isinstance(data, dict):
            raise QBittorrentError(
                "API",
                f"/transfer/info returned {type(data).__name__}",
                user_message="qBittorrent returned unexpected transfer info.",
            )
        return TransferInfo.from_payload(data)

    def logout(self) -> None:
        if self._sid is None:
            return
        try:
            self._api("/auth/logout", form={}, retries=0)
        except QBittorrentError as exc:
            logger.warning("qBittorrent logout failed: %s", exc)
        finally:
            self._sid = None
            self._session_expiry = 0.0


def _bool(value: bool) -> str:
    return "true" if value else "false"
