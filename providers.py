import asyncio
import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from storage import JsonStateStore, StorageError

LOG = logging.getLogger(__name__)

DEFAULT_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
UNAUTHORIZED = "UNAUTHORIZED"
STORAGE_LOCAL = "localstorage"


class ProviderError(RuntimeError):
    """Raised when the catalog backend fails to answer."""


class UnauthorizedError(ProviderError):
    """The backend rejected the session (HTTP 401)."""


def _normalize_base_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return url
    parsed = urllib.parse.urlparse(url)
    if not parsed.scheme:
        url = "http://" + url
    return url.rstrip('/')


@dataclass
class SourceDetail:
    """One provider's answer for a title."""

    source: str
    id: str
    title: str
    source_name: str = ""
    episodes: List[str] = field(default_factory=list)
    poster: str = ""
    year: str = ""

    @classmethod
    def from_json(cls, row: Dict) -> "SourceDetail":
        return cls(
            source=str(row.get("source") or ""),
            id=str(row.get("id") or ""),
            title=str(row.get("title") or ""),
            source_name=str(row.get("source_name") or row.get("source") or ""),
            episodes=[str(e) for e in (row.get("episodes") or []) if e],
            poster=str(row.get("poster") or ""),
            year=str(row.get("year") or ""),
        )


@dataclass
class LiveSource:
    key: str
    name: str
    url: str = ""


@dataclass
class LiveChannel:
    id: str
    name: str
    url: str
    group: str = "Other"
    tvg_id: str = ""
    logo: str = ""


class CatalogClient:
    """JSON API client for the remote catalog backend."""

    def __init__(self, base_url: str, user_agent: str = DEFAULT_UA, timeout: int = 30, auth_cookie: Optional[str] = None):
        self._base = _normalize_base_url(base_url)
        self.user_agent = user_agent
        self.timeout = timeout
        self.auth_cookie = auth_cookie or None

    @property
    def base_url(self) -> str:
        return self._base

    def _request(self, path: str, params: Optional[Dict[str, str]] = None, body: Optional[Dict] = None):
        if not self._base:
            raise ProviderError("Catalog base URL is not configured")
        query = f"?{urllib.parse.urlencode(params)}" if params else ""
        url = f"{self._base}{path}{query}"
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if self.auth_cookie:
            headers["Cookie"] = self.auth_cookie
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method="POST" if data is not None else "GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
                cookies = resp.headers.get_all("Set-Cookie") if body is not None else None
        except urllib.error.HTTPError as e:
            if e.code == 401:
                raise UnauthorizedError(UNAUTHORIZED) from e
            raise ProviderError(f"HTTP error {e.code} from {path}") from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise ProviderError(f"Catalog request failed for {path}: {e}") from e
        text = raw.decode("utf-8", "ignore")
        try:
            payload = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError:
            raise ProviderError(f"Invalid response from catalog: {text[:200]!r}")
        return payload, cookies or []

    def _get_json(self, path: str, params: Optional[Dict[str, str]] = None):
        return self._request(path, params)[0]

    def login(self, username: Optional[str], password: Optional[str]) -> bool:
        """POST credentials; on success keep the returned session cookie."""
        body = {"password": password or ""}
        if username:
            body["username"] = username
        payload, cookies = self._request("/api/login", body=body)
        ok = bool(payload.get("ok")) if isinstance(payload, dict) else False
        if ok:
            pairs = [c.split(";", 1)[0].strip() for c in cookies if c]
            self.auth_cookie = "; ".join(p for p in pairs if p) or self.auth_cookie
        return ok

    def logout(self) -> None:
        try:
            self._request("/api/logout", body={})
        finally:
            self.auth_cookie = None

    def get_play_records(self) -> Dict:
        payload = self._get_json("/api/playrecords")
        return payload if isinstance(payload, dict) else {}

    def get_server_config(self) -> Dict:
        payload = self._get_json("/api/server-config")
        if not isinstance(payload, dict):
            raise ProviderError("Server config response is not an object")
        return payload

    def search(self, title: str) -> List[SourceDetail]:
        payload = self._get_json("/api/search", {"q": title})
        rows = payload.get("results", []) if isinstance(payload, dict) else payload
        return [SourceDetail.from_json(r) for r in rows or [] if isinstance(r, dict)]

    def detail(self, source: str, item_id: str) -> SourceDetail:
        payload = self._get_json("/api/detail", {"source": source, "id": item_id})
        if not isinstance(payload, dict):
            raise ProviderError("Detail response is not an object")
        payload.setdefault("source", source)
        payload.setdefault("id", item_id)
        return SourceDetail.from_json(payload)

    def list_sources(self) -> List[LiveSource]:
        payload = self._get_json("/api/live/sources")
        rows = payload.get("data", []) if isinstance(payload, dict) else payload
        sources = []
        for row in rows or []:
            if isinstance(row, dict) and row.get("key"):
                sources.append(LiveSource(key=str(row["key"]), name=str(row.get("name") or row["key"]),
                                          url=str(row.get("url") or "")))
        return sources

    def list_channels(self, source_key: str) -> List[LiveChannel]:
        payload = self._get_json("/api/live/channels", {"source": source_key})
        rows = payload.get("data", []) if isinstance(payload, dict) else payload
        channels = []
        for row in rows or []:
            if not isinstance(row, dict) or not row.get("url"):
                continue
            channels.append(LiveChannel(
                id=str(row.get("id") or row["url"]),
                name=str(row.get("name") or "Unknown"),
                url=str(row["url"]),
                group=str(row.get("group") or "Other"),
                tvg_id=str(row.get("tvgId") or row.get("tvg_id") or ""),
                logo=str(row.get("logo") or ""),
            ))
        return channels

    def describe(self) -> str:
        return f"Catalog ({urllib.parse.urlparse(self._base).netloc})"


class DetailRegistry:
    """Current title detail plus every source that offered it.

    The playback session only talks to this interface: it reads episodes,
    marks sources as failed and asks for the next usable source.
    """

    def __init__(self, client: CatalogClient):
        self.client = client
        self.detail: Optional[SourceDetail] = None
        self.search_results: List[SourceDetail] = []
        self.error: Optional[str] = None
        self.failed_sources: Dict[str, str] = {}

    async def init(self, title: str, preferred_source: str, item_id: str) -> None:
        self.error = None
        self.failed_sources = {}
        try:
            results = await asyncio.to_thread(self.client.search, title)
        except ProviderError as e:
            LOG.warning("Search for %r failed: %s", title, e)
            results = []
            self.error = str(e)
        results = [r for r in results if r.title == title] or results
        preferred = next((r for r in results if r.source == preferred_source and r.id == item_id), None)
        if preferred is None and preferred_source and item_id:
            try:
                preferred = await asyncio.to_thread(self.client.detail, preferred_source, item_id)
                results.insert(0, preferred)
            except ProviderError as e:
                LOG.warning("Detail for %s/%s failed: %s", preferred_source, item_id, e)
                self.error = self.error or str(e)
        self.search_results = results
        if preferred is not None and preferred.episodes:
            self.detail = preferred
        else:
            self.detail = next((r for r in results if r.episodes), preferred)
        if self.detail is not None:
            self.error = None
            LOG.info("Detail for %r resolved to source %s (%d episodes)",
                     title, self.detail.source, len(self.detail.episodes))

    def episodes_for(self, source: str) -> List[str]:
        if self.detail is not None and self.detail.source == source:
            return list(self.detail.episodes)
        for result in self.search_results:
            if result.source == source:
                return list(result.episodes)
        return []

    def first_source_with_episodes(self) -> Optional[SourceDetail]:
        return next((r for r in self.search_results if r.episodes), None)

    def mark_source_failed(self, source: str, reason: str) -> None:
        LOG.warning("Marking source %s as failed: %s", source, reason)
        self.failed_sources[source] = reason

    def next_available_source(self, excluding: str, episode_index: int) -> Optional[SourceDetail]:
        for result in self.search_results:
            if result.source == excluding or result.source in self.failed_sources:
                continue
            if len(result.episodes) > episode_index:
                return result
        return None

    async def set_detail(self, detail: SourceDetail) -> None:
        self.detail = detail
        if all(r.source != detail.source for r in self.search_results):
            self.search_results.append(detail)


class AuthSession:
    """Keeps the catalog login alive between runs.

    A stored session cookie is checked against the play-records endpoint. A
    transport failure gets one retry after ``retry_delay``; UNAUTHORIZED drops
    the cookie and falls through to a login with the configured credentials.
    Backends in ``localstorage`` mode take a password only.
    """

    SECTION = "auth"
    COOKIE_KEY = "cookies"

    def __init__(
        self,
        client: CatalogClient,
        username: str = "",
        password: str = "",
        state: Optional[JsonStateStore] = None,
        retry_delay: float = 0.4,
    ):
        self.client = client
        self.username = username
        self.password = password
        self.state = state
        self.retry_delay = retry_delay
        self.storage_type: Optional[str] = None
        self.is_logged_in = False
        self.needs_login = False

    def _stored_cookie(self) -> str:
        if self.state is None:
            return ""
        try:
            return str(self.state.get(self.SECTION, self.COOKIE_KEY) or "")
        except StorageError as e:
            LOG.warning("Failed to read stored session: %s", e)
            return ""

    def _store_cookie(self, value: str) -> None:
        if self.state is None:
            return
        try:
            self.state.put(self.SECTION, self.COOKIE_KEY, value)
        except StorageError as e:
            LOG.warning("Failed to store session: %s", e)

    def _finish(self, logged_in: bool, needs_login: bool = False) -> bool:
        self.is_logged_in = logged_in
        self.needs_login = needs_login
        LOG.info("Catalog session: logged_in=%s needs_login=%s", logged_in, needs_login)
        return logged_in

    async def validate_session(self) -> bool:
        """True when the backend accepts the current cookie.

        Raises :class:`ProviderError` when the retry fails for a reason other
        than UNAUTHORIZED.
        """
        try:
            await asyncio.to_thread(self.client.get_play_records)
            return True
        except UnauthorizedError:
            return False
        except ProviderError as e:
            LOG.warning("Session check failed (%s), retrying once", e)
        await asyncio.sleep(self.retry_delay)
        try:
            await asyncio.to_thread(self.client.get_play_records)
            return True
        except UnauthorizedError:
            return False

    async def try_auto_login(self) -> bool:
        if self.storage_type == STORAGE_LOCAL:
            username = None
        elif not self.username or not self.password:
            return False
        else:
            username = self.username
        try:
            ok = await asyncio.to_thread(self.client.login, username, self.password or None)
        except ProviderError as e:
            LOG.warning("Automatic login failed: %s", e)
            return False
        if ok and self.client.auth_cookie:
            self._store_cookie(self.client.auth_cookie)
        return ok

    async def check_login_status(self) -> bool:
        """Restore or re-create the catalog session; returns the login state."""
        if not self.client.base_url:
            return self._finish(False)
        self.needs_login = False
        try:
            if not self.storage_type:
                config = await asyncio.to_thread(self.client.get_server_config)
                self.storage_type = str(config.get("StorageType") or "") or None
            if not self.storage_type:
                return self._finish(False)
            cookie = self._stored_cookie()
            if cookie:
                self.client.auth_cookie = cookie
                if await self.validate_session():
                    return self._finish(True)
                LOG.info("Stored session expired")
                self.client.auth_cookie = None
                self._store_cookie("")
            if await self.try_auto_login():
                return self._finish(True)
            return self._finish(False, self.storage_type != STORAGE_LOCAL)
        except UnauthorizedError:
            LOG.error("Failed to check login status: %s", UNAUTHORIZED)
            if await self.try_auto_login():
                return self._finish(True)
            return self._finish(False, True)
        except ProviderError as e:
            LOG.error("Failed to check login status: %s", e)
            # The backend is unreachable; a stored cookie is trusted until proven stale.
            if self._stored_cookie():
                return self._finish(True)
            return self._finish(False, True)

    async def logout(self) -> None:
        try:
            await asyncio.to_thread(self.client.logout)
        except ProviderError as e:
            LOG.error("Failed to logout: %s", e)
            return
        self._store_cookie("")
        self._finish(False, True)
