"""Minimal Prowlarr REST client.

Only the endpoints the tools need: indexer listings and failure status for the
health score, search and grab, and the configured download clients. Plain
urllib keeps this dependency-free; payloads are parsed leniently because
field sets differ between Prowlarr versions.
"""

from __future__ import annotations

from dataclasses import dataclass
import http.client
import json
import logging
from typing import Any, Sequence
import urllib.error
import urllib.parse
import urllib.request

from tunnelgate.core.errors import ProwlarrApiError

logger = logging.getLogger(__name__)

USER_AGENT = "tunnelgate/0.1"
# -2 is Prowlarr's "all torrent indexers" pseudo id.
ALL_TORRENT_INDEXERS = -2


@dataclass(frozen=True, slots=True)
class Indexer:
    id: int
    name: str
    enabled: bool
    protocol: str | None = None
    privacy: str | None = None
    supports_search: bool = True

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "Indexer":
        return cls(
            id=_int(item.get("id")),
            name=str(item.get("name") or f"ID {item.get('id')}"),
            enabled=bool(item.get("enable")),
            protocol=_str_or_none(item.get("protocol")),
            privacy=_str_or_none(item.get("privacy")),
            supports_search=bool(item.get("supportsSearch", True)),
        )


@dataclass(frozen=True, slots=True)
class IndexerFailure:
    indexer_id: int
    disabled_until: str | None = None
    most_recent_failure: str | None = None
    initial_failure: str | None = None

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "IndexerFailure":
        return cls(
            indexer_id=_int(item.get("indexerId")),
            disabled_until=_str_or_none(item.get("disabledTill")),
            most_recent_failure=_str_or_none(item.get("mostRecentFailure")),
            initial_failure=_str_or_none(item.get("initialFailure")),
        )


@dataclass(frozen=True, slots=True)
class HealthIssue:
    source: str
    type: str
    message: str
    wiki_url: str | None = None

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "HealthIssue":
        return cls(
            source=str(item.get("source") or ""),
            type=str(item.get("type") or ""),
            message=str(item.get("message") or ""),
            wiki_url=_str_or_none(item.get("wikiUrl")),
        )


@dataclass(frozen=True, slots=True)
class SystemStatus:
    app_name: str
    version: str
    is_docker: bool = False
    os_name: str | None = None
    start_time: str | None = None
    database_type: str | None = None
    authentication: str | None = None

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "SystemStatus":
        return cls(
            app_name=str(item.get("appName") or "Prowlarr"),
            version=str(item.get("version") or "unknown"),
            is_docker=bool(item.get("isDocker")),
            os_name=_str_or_none(item.get("osName")),
            start_time=_str_or_none(item.get("startTime")),
            database_type=_str_or_none(item.get("databaseType")),
            authentication=_str_or_none(item.get("authentication")),
        )


@dataclass(frozen=True, slots=True)
class SearchResult:
    guid: str
    indexer_id: int
    title: str
    indexer: str = "Unknown"
    size: int = 0
    seeders: int = 0
    leechers: int = 0
    age_hours: float = 0.0
    download_url: str | None = None
    magnet_url: str | None = None
    protocol: str | None = None

    @property
    def peers(self) -> int:
        return self.seeders + self.leechers

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "SearchResult":
        return cls(
            guid=str(item.get("guid") or ""),
            indexer_id=_int(item.get("indexerId")),
            title=str(item.get("title") or "Unknown Title"),
            indexer=str(item.get("indexer") or "Unknown"),
            size=_int(item.get("size")),
            seeders=_int(item.get("seeders")),
            leechers=_int(item.get("leechers")),
            age_hours=_float(item.get("ageHours")),
            download_url=_str_or_none(item.get("downloadUrl")),
            magnet_url=_str_or_none(item.get("magnetUrl")),
            protocol=_str_or_none(item.get("protocol")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "guid": self.guid,
            "indexerId": self.indexer_id,
            "title": self.title,
            "indexer": self.indexer,
            "size": self.size,
            "seeders": self.seeders,
            "leechers": self.leechers,
            "ageHours": self.age_hours,
            "downloadUrl": self.download_url,
            "magnetUrl": self.magnet_url,
            "protocol": self.protocol,
        }


@dataclass(frozen=True, slots=True)
class GrabResult:
    success: bool
    message: str
    payload: Any = None


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _list_payload(data: Any, what: str) -> list[dict[str, Any]]:
    if not isinstance(data, list):
        raise ProwlarrApiError(
            f"Expected a list from {what}, got {type(data).__name__}",
            user_message=f"Prowlarr returned an unexpected response for {what}.",
        )
    return [item for item in data if isinstance(item, dict)]


class ProwlarrClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 30.0,
        search_timeout_s: float = 180.0,
        opener: urllib.request.OpenerDirector | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._search_timeout_s = search_timeout_s
        self._opener = opener or urllib.request.build_opener()

    @property
    def base_url(self) -> str:
        return self._base_url

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: Any = None,
        timeout_s: float | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        headers = {
            "X-Api-Key": self._api_key,
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        data: bytes | None = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug("Prowlarr %s %s", method, path)
        try:
            with self._opener.open(request, timeout=timeout_s or self._timeout_s) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = _error_detail(exc)
            raise ProwlarrApiError(
                f"Prowlarr {method} {path} failed: HTTP {exc.code}: {detail}",
                user_message=f"Prowlarr request failed (HTTP {exc.code}): {detail}",
                status_code=exc.code,
            ) from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
            reason = getattr(exc, "reason", None) or exc
            raise ProwlarrApiError(
                f"Prowlarr {method} {path} unreachable: {reason}",
                user_message=f"Cannot reach Prowlarr at {self._base_url}: {reason}",
            ) from exc

        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProwlarrApiError(
                f"Prowlarr {method} {path} returned invalid JSON",
                user_message="Prowlarr returned a response that is not valid JSON.",
            ) from exc

    def get_indexers(self) -> list[Indexer]:
        data = self._request("GET", "/api/v1/indexer")
        return [Indexer.from_payload(item) for item in _list_payload(data, "indexers")]

    def get_indexer_status(self) -> list[IndexerFailure]:
        data = self._request("GET", "/api/v1/indexerstatus")
        return [IndexerFailure.from_payload(item) for item in _list_payload(data, "indexer status")]

    def get_health_issues(self) -> list[HealthIssue]:
        data = self._request("GET", "/api/v1/health")
        return [HealthIssue.from_payload(item) for item in _list_payload(data, "health")]

    def get_system_status(self) -> SystemStatus:
        data = self._request("GET", "/api/v1/system/status")
        if not isinstance(data, dict):
            raise ProwlarrApiError(
                "System status payload is not an object",
                user_message="Prowlarr returned an unexpected system status response.",
            )
        return SystemStatus.from_payload(data)

    def search(
        self,
        query: str,
        *,
        indexer_ids: Sequence[int] | None = None,
        categories: Sequence[int] | None = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        params = {
            "query": query,
            "indexerIds": ",".join(str(i) for i in indexer_ids) if indexer_ids else str(ALL_TORRENT_INDEXERS),
            "type": "search",
            "limit": str(int(limit)),
        }
        if categories:
            params["categories"] = ",".join(str(c) for c in categories)
        data = self._request("GET", "/api/v1/search", params=params, timeout_s=self._search_timeout_s)
        if data is None:
            return []
        return [SearchResult.from_payload(item) for item in _list_payload(data, "search")]

    def grab_release(self, guid: str, indexer_id: int) -> GrabResult:
        try:
            payload = self._request(
                "POST",
                "/api/v1/search",
                body={"guid": guid, "indexerId": indexer_id},
                timeout_s=self._search_timeout_s,
            )
        except ProwlarrApiError as exc:
            logger.warning("Grab failed for %s: %s", guid, exc)
            return GrabResult(success=False, message=f"Grab failed: {exc.user_message}")
        return GrabResult(
            success=True,
            message="Release successfully sent to download client",
            payload=payload,
        )

    def get_download_clients(self) -> list[dict[str, Any]]:
        data = self._request("GET", "/api/v1/downloadclient")
        if data is None:
            return []
        return _list_payload(data, "download clients")


def _error_detail(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read()
    except Exception:
        raw = b""
    if raw:
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return raw.decode("utf-8", errors="replace").strip()[:200]
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            return str(payload[0].get("errorMessage") or payload[0])
    return exc.reason if isinstance(exc.reason, str) else str(exc)
