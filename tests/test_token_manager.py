"""
Tests for the OAuth refresher and authorization helpers.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config.settings import config
from connectors.errors import CredentialInvalid, NetworkError, ProviderServerError
from connectors.token_manager import (
    OAuthNotConfigured,
    TokenRefresher,
    build_authorize_url,
    exchange_code,
    get_oauth_config,
)
from database import helpers
from utils.clock import ensure_utc, utcnow


@pytest.fixture(autouse=True)
def kit_oauth(monkeypatch):
    monkeypatch.setattr(config, "kit_oauth_client_id", "client-id")
    monkeypatch.setattr(config, "kit_oauth_client_secret", "client-secret")


@pytest.fixture
def oauth_connection(make_connection, vault):
    async def _make(expires_in_minutes=-5, refresh_token="refresh-1"):
        return await make_connection(
            provider="kit",
            auth_method="oauth",
            encrypted_api_key=None,
            encrypted_access_token=vault.encrypt("access-1"),
            encrypted_refresh_token=vault.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=utcnow() + timedelta(minutes=expires_in_minutes),
        )

    return _make


def _refresher(session_factory, vault, handler):
    return TokenRefresher(session_factory, vault=vault, transport=httpx.MockTransport(handler), margin_seconds=60)


async def _reload(session_factory, connection_id):
    async with session_factory() as session:
        return await helpers.get_connection(session, connection_id)


class TestNeedsRefresh:
    @pytest.mark.asyncio
    async def test_window(self, session_factory, vault, oauth_connection):
        refresher = _refresher(session_factory, vault, lambda r: httpx.Response(500))
        conn = await oauth_connection(expires_in_minutes=30)
        assert refresher.needs_refresh(conn) is False

        conn.token_expires_at = utcnow() + timedelta(seconds=30)
        assert refresher.needs_refresh(conn) is True
        conn.token_expires_at = utcnow() - timedelta(seconds=1)
        assert refresher.needs_refresh(conn) is True
        conn.token_expires_at = None
        assert refresher.needs_refresh(conn) is True

    @pytest.mark.asyncio
    async def test_fresh_token_is_not_refreshed(self, session_factory, vault, oauth_connection):
        calls = []
        refresher = _refresher(session_factory, vault, lambda r: calls.append(r) or httpx.Response(500))
        conn = await oauth_connection(expires_in_minutes=30)

        assert await refresher.ensure_fresh_access_token(conn) == "access-1"
        assert calls == []

    @pytest.mark.asyncio
    async def test_non_expiring_provider_is_never_refreshed(self, session_factory, vault, make_connection):
        calls = []
        refresher = _refresher(session_factory, vault, lambda r: calls.append(r) or httpx.Response(500))
        conn = await make_connection(
            provider="mailchimp",
            auth_method="oauth",
            encrypted_api_key=None,
            encrypted_access_token=vault.encrypt("mc-token"),
            encrypted_refresh_token=None,
            token_expires_at=None,
        )

        assert refresher.needs_refresh(conn) is False
        assert await refresher.ensure_fresh_access_token(conn) == "mc-token"
        assert calls == []


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotated_refresh_token_replaces_old(self, session_factory, vault, oauth_connection):
        def handler(request):
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            assert form["refresh_token"] == ["refresh-1"]
            assert form["client_id"] == ["client-id"]
            assert form["client_secret"] == ["client-secret"]
            return httpx.Response(200, json={"access_token": "access-2", "refresh_token": "refresh-2"})

        conn = await oauth_connection()
        token = await _refresher(session_factory, vault, handler).ensure_fresh_access_token(conn)

        assert token == "access-2"
        stored = await _reload(session_factory, conn.id)
        assert vault.decrypt(stored.encrypted_refresh_token) == "refresh-2"
        assert stored.last_validated_at is not None
        # expires_in missing → one hour
        remaining = ensure_utc(stored.token_expires_at) - utcnow()
        assert timedelta(minutes=55) < remaining <= timedelta(hours=1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401])
    async def test_rejected_refresh_marks_invalid(self, session_factory, vault, oauth_connection, status):
        conn = await oauth_connection()
        refresher = _refresher(session_factory, vault, lambda r: httpx.Response(status, json={"error": "invalid_grant"}))

        with pytest.raises(CredentialInvalid):
            await refresher.ensure_fresh_access_token(conn)

        assert (await _reload(session_factory, conn.id)).status == "invalid"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, session_factory, vault, oauth_connection):
        conn = await oauth_connection()
        refresher = _refresher(session_factory, vault, lambda r: httpx.Response(503))

        with pytest.raises(ProviderServerError) as exc_info:
            await refresher.ensure_fresh_access_token(conn)

        assert exc_info.value.retryable is True
        stored = await _reload(session_factory, conn.id)
        assert stored.status == "active"
        assert stored.encrypted_access_token == conn.encrypted_access_token

    @pytest.mark.asyncio
    async def test_network_failure(self, session_factory, vault, oauth_connection):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        conn = await oauth_connection()
        with pytest.raises(NetworkError):
            await _refresher(session_factory, vault, handler).ensure_fresh_access_token(conn)

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, session_factory, vault, oauth_connection):
        conn = await oauth_connection(refresh_token=None)
        with pytest.raises(CredentialInvalid):
            await _refresher(session_factory, vault, lambda r: httpx.Response(200)).ensure_fresh_access_token(conn)
        assert (await _reload(session_factory, conn.id)).status == "invalid"

    @pytest.mark.asyncio
    async def test_concurrent_rotation_adopts_stored_pair(self, session_factory, vault, oauth_connection):
        live = {"refresh-1"}
        issued = iter(["2", "3"])

        def handler(request):
            spent = parse_qs(request.content.decode())["refresh_token"][0]
            if spent not in live:
                return httpx.Response(400, json={"error": "invalid_grant"})
            live.discard(spent)
            n = next(issued)
            live.add(f"refresh-{n}")
            return httpx.Response(200, json={"access_token": f"access-{n}", "refresh_token": f"refresh-{n}"})

        conn = await oauth_connection()
        stale_copy = await _reload(session_factory, conn.id)
        refresher = _refresher(session_factory, vault, handler)

        assert await refresher.ensure_fresh_access_token(conn, force=True) == "access-2"
        assert await refresher.ensure_fresh_access_token(stale_copy, force=True) == "access-2"

        stored = await _reload(session_factory, conn.id)
        assert stored.status == "active"
        assert vault.decrypt(stored.encrypted_refresh_token) == "refresh-2"
        assert stale_copy.encrypted_refresh_token == stored.encrypted_refresh_token
        assert stale_copy.status == "active"


class TestAuthorizationFlow:
    def test_authorize_url(self):
        url = build_authorize_url("kit", "state-xyz", redirect_uri="https://app.example.com/cb")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert url.startswith(config.kit_oauth_authorization_url)
        assert query["client_id"] == ["client-id"]
        assert query["state"] == ["state-xyz"]
        assert query["response_type"] == ["code"]
        assert query["redirect_uri"] == ["https://app.example.com/cb"]

    def test_unconfigured_provider(self, monkeypatch):
        monkeypatch.setattr(config, "kit_oauth_client_secret", "")
        with pytest.raises(OAuthNotConfigured):
            get_oauth_config("kit")
        with pytest.raises(OAuthNotConfigured):
            get_oauth_config("mailerlite")

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        def handler(request):
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["authorization_code"]
            assert form["code"] == ["the-code"]
            return httpx.Response(200, json={
                "access_token": "a", "refresh_token": "r", "expires_in": 7200, "scope": "public read",
            })

        tokens = await exchange_code("kit", "the-code", transport=httpx.MockTransport(handler))

        assert tokens.access_token == "a"
        assert tokens.refresh_token == "r"
        assert tokens.expires_in == 7200
        assert tokens.scopes == ["public", "read"]
