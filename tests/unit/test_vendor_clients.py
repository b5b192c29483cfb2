"""Tests for the vendor HTTP clients."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from sharewatch.vendors import MediaServerClient, VendorError, create_client
from sharewatch.vendors.jellyfin import EmbyClient, JellyfinClient
from sharewatch.vendors.plex import PlexClient, sessions_from_response


def run_async(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestPlexClient:
    def test_fetch_sessions(self, plex_server):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            return httpx.Response(
                200, json={"MediaContainer": {"size": 1, "Metadata": [{"sessionKey": "1"}]}}
            )

        client = PlexClient(plex_server, http=_http(handler))
        assert run_async(client.fetch_sessions()) == [{"sessionKey": "1"}]
        assert seen["url"] == "http://plex.local:32400/status/sessions"
        assert seen["headers"]["X-Plex-Token"] == "plex-token"
        assert seen["headers"]["Accept"] == "application/json"
        assert seen["headers"]["X-Plex-Client-Identifier"] == "sharewatch"
        run_async(client.aclose())

    def test_empty_server(self, plex_server):
        client = PlexClient(
            plex_server, http=_http(lambda r: httpx.Response(200, json={"MediaContainer": {"size": 0}}))
        )
        assert run_async(client.fetch_sessions()) == []

    def test_http_error(self, plex_server):
        client = PlexClient(plex_server, http=_http(lambda r: httpx.Response(401)))
        with pytest.raises(VendorError) as excinfo:
            run_async(client.fetch_sessions())
        assert excinfo.value.server_id == "plex1"

    def test_connection_error(self, plex_server):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = PlexClient(plex_server, http=_http(handler))
        with pytest.raises(VendorError, match="request failed"):
            run_async(client.fetch_sessions())

    def test_bad_json(self, plex_server):
        client = PlexClient(plex_server, http=_http(lambda r: httpx.Response(200, text="<xml/>")))
        with pytest.raises(VendorError, match="Bad Plex response"):
            run_async(client.fetch_sessions())

    def test_metadata_must_be_list(self):
        with pytest.raises(ValueError):
            sessions_from_response({"MediaContainer": {"Metadata": {"a": 1}}})


class TestJellyfinClient:
    def test_fetch_sessions(self, jellyfin_server):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["X-Emby-Authorization"]
            return httpx.Response(200, json=[{"Id": "a"}, "junk"])

        client = JellyfinClient(jellyfin_server, http=_http(handler))
        assert run_async(client.fetch_sessions()) == [{"Id": "a"}]
        assert seen["url"] == "http://jellyfin.local:8096/Sessions"
        assert seen["auth"].startswith('MediaBrowser Client="sharewatch"')
        assert 'Token="jf-token"' in seen["auth"]
        assert 'DeviceId="sharewatch-jf1"' in seen["auth"]

    def test_non_list_response(self, jellyfin_server):
        client = JellyfinClient(
            jellyfin_server, http=_http(lambda r: httpx.Response(200, json={"error": "x"}))
        )
        with pytest.raises(VendorError, match="not a list"):
            run_async(client.fetch_sessions())

    def test_emby_errors_name_the_vendor(self, emby_server):
        client = EmbyClient(emby_server, http=_http(lambda r: httpx.Response(500)))
        with pytest.raises(VendorError, match="Emby request failed"):
            run_async(client.fetch_sessions())


def test_create_client(plex_server, jellyfin_server, emby_server):
    clients = [create_client(s) for s in (plex_server, jellyfin_server, emby_server)]
    assert [type(c) for c in clients] == [PlexClient, JellyfinClient, EmbyClient]
    assert all(isinstance(c, MediaServerClient) for c in clients)
    for client in clients:
        run_async(client.aclose())
