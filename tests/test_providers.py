"""
Tests for the catalog client and the detail registry used by the session.
"""
import asyncio
import io
import json
import os
import sys
import urllib.error
from unittest.mock import MagicMock, Mock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from providers import AuthSession, CatalogClient, DetailRegistry, ProviderError, SourceDetail, UnauthorizedError
from storage import JsonStateStore


def _response(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__.return_value = resp
    return resp


def _detail(source, count, title="Show", item_id=None):
    return SourceDetail(source=source, id=item_id or f"{source}-1", title=title,
                        episodes=[f"https://{source}.example.com/{i}.m3u8" for i in range(count)])


class TestCatalogClient:
    """JSON endpoints."""

    def test_search_builds_url(self):
        """Search hits /api/search with the title as q."""
        client = CatalogClient("api.example.com/")
        payload = {"results": [{"source": "a", "id": "1", "title": "Show", "episodes": ["u1", "", "u2"]}]}
        with patch("urllib.request.urlopen", return_value=_response(payload)) as urlopen:
            results = client.search("Show Time")
        req = urlopen.call_args[0][0]
        assert req.full_url == "http://api.example.com/api/search?q=Show+Time"
        assert results[0].episodes == ["u1", "u2"]
        assert results[0].source_name == "a"

    def test_detail_fills_identity(self):
        """Detail responses inherit source and id from the request."""
        client = CatalogClient("https://api.example.com")
        with patch("urllib.request.urlopen", return_value=_response({"title": "Show", "episodes": ["x"]})):
            detail = client.detail("a", "7")
        assert (detail.source, detail.id, detail.episodes) == ("a", "7", ["x"])

    def test_live_endpoints(self):
        """Sources and channels are parsed into dataclasses."""
        client = CatalogClient("https://api.example.com")
        with patch("urllib.request.urlopen", return_value=_response({"data": [{"key": "s1", "name": "One"}]})):
            sources = client.list_sources()
        assert sources[0].key == "s1" and sources[0].name == "One"
        channels_payload = {"data": [
            {"id": "c1", "name": "News", "url": "https://live/1.m3u8", "group": "News", "tvgId": "news.tv"},
            {"name": "no url"},
        ]}
        with patch("urllib.request.urlopen", return_value=_response(channels_payload)):
            channels = client.list_channels("s1")
        assert len(channels) == 1
        assert channels[0].tvg_id == "news.tv"

    def test_unauthorized(self):
        """HTTP 401 maps to an UNAUTHORIZED provider error."""
        client = CatalogClient("https://api.example.com")
        err = urllib.error.HTTPError("https://api.example.com/api/search", 401, "Unauthorized", {}, io.BytesIO(b""))
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(UnauthorizedError, match="UNAUTHORIZED"):
                client.search("Show")

    def test_network_and_json_errors(self):
        """Transport and decode failures become ProviderError."""
        client = CatalogClient("https://api.example.com")
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with pytest.raises(ProviderError):
                client.list_sources()
        bad = MagicMock()
        bad.read.return_value = b"<html>"
        bad.__enter__.return_value = bad
        with patch("urllib.request.urlopen", return_value=bad):
            with pytest.raises(ProviderError):
                client.list_sources()

    def test_unconfigured(self):
        """No base URL means no request."""
        with pytest.raises(ProviderError):
            CatalogClient("").search("x")


class TestDetailRegistry:
    """Source bookkeeping for fallback."""

    def test_init_prefers_requested_source(self):
        """The requested source/id is chosen when it has episodes."""
        client = Mock()
        client.search.return_value = [_detail("a", 2), _detail("b", 3)]
        registry = DetailRegistry(client)
        asyncio.run(registry.init("Show", "b", "b-1"))
        assert registry.detail.source == "b"
        assert registry.error is None

    def test_init_fetches_detail_when_not_in_search(self):
        """A title missing from search is fetched directly."""
        client = Mock()
        client.search.return_value = [_detail("a", 2)]
        client.detail.return_value = _detail("z", 4, item_id="z-9")
        registry = DetailRegistry(client)
        asyncio.run(registry.init("Show", "z", "z-9"))
        assert registry.detail.source == "z"
        assert registry.search_results[0].source == "z"

    def test_init_failure_records_error(self):
        """Backend failures leave no detail and an error string."""
        client = Mock()
        client.search.side_effect = ProviderError("down")
        client.detail.side_effect = ProviderError("down")
        registry = DetailRegistry(client)
        asyncio.run(registry.init("Show", "a", "a-1"))
        assert registry.detail is None
        assert registry.error == "down"

    def test_next_available_source(self):
        """Failed, excluded and too-short sources are skipped."""
        registry = DetailRegistry(Mock())
        registry.search_results = [_detail("a", 5), _detail("b", 1), _detail("c", 5), _detail("d", 5)]
        registry.mark_source_failed("c", "network error: x...")
        assert registry.next_available_source("a", 3).source == "d"
        assert registry.next_available_source("a", 0).source == "b"
        registry.mark_source_failed("d", "other error: y...")
        assert registry.next_available_source("a", 3) is None

    def test_episodes_for_and_set_detail(self):
        """Episodes come from the active detail first, then search results."""
        registry = DetailRegistry(Mock())
        registry.search_results = [_detail("a", 2)]
        assert len(registry.episodes_for("a")) == 2
        assert registry.episodes_for("x") == []
        extra = _detail("x", 1)
        asyncio.run(registry.set_detail(extra))
        assert registry.detail is extra
        assert registry.episodes_for("x") == extra.episodes
        assert registry.search_results[-1] is extra


class TestCatalogLogin:
    """Login keeps the backend's session cookie for later requests."""

    def test_login_stores_cookie_and_sends_it(self):
        """Set-Cookie values from a successful login go out on the next request."""
        client = CatalogClient("https://api.example.com")
        resp = _response({"ok": True})
        resp.headers.get_all.return_value = ["auth=abc123; Path=/; HttpOnly", "lang=en"]
        with patch("urllib.request.urlopen", return_value=resp) as urlopen:
            assert client.login("me", "secret") is True
        req = urlopen.call_args[0][0]
        assert req.get_method() == "POST"
        assert json.loads(req.data) == {"username": "me", "password": "secret"}
        assert client.auth_cookie == "auth=abc123; lang=en"
        with patch("urllib.request.urlopen", return_value=_response({})) as urlopen:
            client.get_play_records()
        assert urlopen.call_args[0][0].get_header("Cookie") == "auth=abc123; lang=en"

    def test_rejected_login_keeps_no_cookie(self):
        """ok=false leaves the client without a session."""
        client = CatalogClient("https://api.example.com")
        resp = _response({"ok": False})
        resp.headers.get_all.return_value = ["auth=nope"]
        with patch("urllib.request.urlopen", return_value=resp):
            assert client.login(None, "pw") is False
        assert client.auth_cookie is None


def _auth(tmp_path, client, storage_type="redis", cookie="", **kwargs):
    store = JsonStateStore(str(tmp_path / "state.json"))
    if cookie:
        store.put(AuthSession.SECTION, AuthSession.COOKIE_KEY, cookie)
    client.base_url = "https://api.example.com"
    client.auth_cookie = None
    client.get_server_config.return_value = {"StorageType": storage_type}
    return AuthSession(client, state=store, retry_delay=0, **kwargs), store


class TestAuthSession:
    """Session restore, retry and automatic login."""

    def test_valid_stored_cookie(self, tmp_path):
        """A stored cookie that passes the check logs in without credentials."""
        client = Mock()
        auth, _store = _auth(tmp_path, client, cookie="auth=1")
        assert asyncio.run(auth.check_login_status()) is True
        assert client.auth_cookie == "auth=1"
        client.login.assert_not_called()

    def test_transient_failure_retried_once(self, tmp_path):
        """A non-UNAUTHORIZED failure is retried once before giving up."""
        client = Mock()
        client.get_play_records.side_effect = [ProviderError("reset"), {}]
        auth, _store = _auth(tmp_path, client, cookie="auth=1")
        assert asyncio.run(auth.check_login_status()) is True
        assert client.get_play_records.call_count == 2

    def test_unreachable_backend_trusts_stored_cookie(self, tmp_path):
        """Two transport failures keep the stored session."""
        client = Mock()
        client.get_play_records.side_effect = ProviderError("down")
        auth, _store = _auth(tmp_path, client, cookie="auth=1")
        assert asyncio.run(auth.check_login_status()) is True
        assert client.get_play_records.call_count == 2
        assert not auth.needs_login

    def test_unauthorized_falls_through_to_auto_login(self, tmp_path):
        """An expired cookie is dropped and stored credentials log in again."""
        client = Mock()
        client.get_play_records.side_effect = UnauthorizedError("UNAUTHORIZED")

        def login(username, password):
            client.auth_cookie = "auth=new"
            return True

        client.login.side_effect = login
        auth, store = _auth(tmp_path, client, cookie="auth=old", username="me", password="pw")
        assert asyncio.run(auth.check_login_status()) is True
        assert client.get_play_records.call_count == 1
        client.login.assert_called_once_with("me", "pw")
        assert store.get(AuthSession.SECTION, AuthSession.COOKIE_KEY) == "auth=new"

    def test_no_credentials_needs_login(self, tmp_path):
        """Without a session or credentials the user must log in."""
        client = Mock()
        client.get_play_records.side_effect = UnauthorizedError("UNAUTHORIZED")
        auth, store = _auth(tmp_path, client, cookie="auth=old")
        assert asyncio.run(auth.check_login_status()) is False
        assert auth.needs_login
        client.login.assert_not_called()
        assert store.get(AuthSession.SECTION, AuthSession.COOKIE_KEY) == ""

    def test_localstorage_logs_in_with_password_only(self, tmp_path):
        """localstorage backends take a password and never prompt."""
        client = Mock()
        client.login.return_value = False
        auth, _store = _auth(tmp_path, client, storage_type="localstorage", password="pw")
        assert asyncio.run(auth.check_login_status()) is False
        client.login.assert_called_once_with(None, "pw")
        assert not auth.needs_login

    def test_unauthorized_server_config(self, tmp_path):
        """UNAUTHORIZED outside the session check still tries automatic login."""
        client = Mock()
        auth, _store = _auth(tmp_path, client, username="me", password="pw")
        client.get_server_config.side_effect = UnauthorizedError("UNAUTHORIZED")
        client.login.return_value = True
        assert asyncio.run(auth.check_login_status()) is True
        client.login.assert_called_once_with("me", "pw")

    def test_no_storage_type_is_logged_out(self, tmp_path):
        """A backend without user storage needs no login."""
        client = Mock()
        auth, _store = _auth(tmp_path, client, storage_type="")
        assert asyncio.run(auth.check_login_status()) is False
        assert not auth.needs_login
        client.get_play_records.assert_not_called()
