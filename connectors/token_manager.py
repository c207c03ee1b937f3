"""
Token manager — OAuth refresh, authorize-URL and code-exchange helpers.

``TokenRefresher.ensure_fresh_access_token`` is the single interface the
sync engine uses to get a usable access token for an OAuth connection.
The token endpoint call happens outside any database transaction; the
new token pair is persisted afterwards in its own short session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.encryption import CredentialVault, get_vault
from connectors.errors import CredentialInvalid, NetworkError, ProviderServerError
from database import helpers
from database.session import async_session_factory
from utils.clock import ensure_utc, utcnow
from utils.schemas import ConnectionStatus, OAuthConfig, TokenSet

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600

# Providers whose OAuth access tokens never expire and come without a refresh token.
NON_EXPIRING_TOKEN_PROVIDERS = frozenset({"mailchimp"})


def access_tokens_expire(provider: str) -> bool:
    return provider not in NON_EXPIRING_TOKEN_PROVIDERS


class OAuthNotConfigured(RuntimeError):
    """The provider has no client id / secret / token URL configured."""


def get_oauth_config(provider: str) -> OAuthConfig:
    settings = config.get_oauth_settings(provider) or {}
    if not (settings.get("client_id") and settings.get("client_secret") and settings.get("token_url")):
        raise OAuthNotConfigured(f"OAuth is not configured for provider '{provider}'")
    return OAuthConfig(**settings)


def default_redirect_uri(provider: str) -> str:
    return f"{config.oauth_redirect_base.rstrip('/')}/oauth/{provider}/callback"


def build_authorize_url(provider: str, state: str, redirect_uri: Optional[str] = None) -> str:
    """URL the user is sent to in order to grant access."""
    oauth = get_oauth_config(provider)
    params = {
        "client_id": oauth.client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri or default_redirect_uri(provider),
        "state": state,
    }
    if oauth.scopes:
        params["scope"] = oauth.scopes
    return f"{oauth.authorization_url}?{urlencode(params)}"


def _parse_token_response(body: Any, provider: str) -> TokenSet:
    if not isinstance(body, dict) or not body.get("access_token"):
        raise ProviderServerError(f"{provider}: token response without access_token", provider=provider)
    scope = body.get("scope") or ""
    return TokenSet(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token") or None,
        expires_in=int(body.get("expires_in") or DEFAULT_EXPIRES_IN),
        scopes=scope.split() if isinstance(scope, str) else list(scope),
    )


async def _post_token_endpoint(
    oauth: OAuthConfig,
    data: Dict[str, str],
    *,
    provider: str,
    what: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: Optional[float] = None,
) -> TokenSet:
    """
    POST a form to the provider's token endpoint.

    400/401 → CredentialInvalid (permanent); 5xx and anything unexpected →
    ProviderServerError; transport failures → NetworkError.
    """
    form = {**data, "client_id": oauth.client_id, "client_secret": oauth.client_secret}
    try:
        async with httpx.AsyncClient(
            transport=transport,
            timeout=timeout if timeout is not None else config.esp_http_timeout_seconds,
        ) as client:
            response = await client.post(
                oauth.token_url, data=form, headers={"Accept": "application/json"}
            )
    except httpx.TimeoutException as exc:
        raise NetworkError(f"{provider}: timed out while {what}", provider=provider) from exc
    except httpx.TransportError as exc:
        raise NetworkError(
            f"{provider}: network error while {what}: {type(exc).__name__}", provider=provider
        ) from exc

    if response.status_code in (400, 401):
        raise CredentialInvalid(
            f"{provider}: token endpoint rejected grant ({response.status_code}) while {what}",
            provider=provider,
        )
    if not 200 <= response.status_code < 300:
        raise ProviderServerError(
            f"{provider}: token endpoint returned {response.status_code} while {what}",
            provider=provider,
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderServerError(f"{provider}: malformed token response", provider=provider) from exc
    return _parse_token_response(body, provider)


async def exchange_code(
    provider: str,
    code: str,
    *,
    redirect_uri: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TokenSet:
    """Trade an authorization code for a token pair."""
    oauth = get_oauth_config(provider)
    tokens = await _post_token_endpoint(
        oauth,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or default_redirect_uri(provider),
        },
        provider=provider,
        what="exchanging authorization code",
        transport=transport,
    )
    logger.info("Exchanged %s authorization code (scopes=%s)", provider, tokens.scopes)
    return tokens


# ── Refresher ───────────────────────────────────────────────────────


class TokenRefresher:
    """Keeps OAuth access tokens usable, persisting every rotation."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        vault: Optional[CredentialVault] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        margin_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._vault = vault
        self._transport = transport
        self._margin = timedelta(
            seconds=margin_seconds if margin_seconds is not None else config.oauth_refresh_margin_seconds
        )

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_vault()
        return self._vault

    def needs_refresh(self, connection, now: Optional[datetime] = None) -> bool:
        if not access_tokens_expire(connection.provider):
            return False
        expires_at = ensure_utc(connection.token_expires_at)
        if expires_at is None:
            return True
        return expires_at <= (now or utcnow()) + self._margin

    async def ensure_fresh_access_token(self, connection, *, force: bool = False) -> str:
        """
        Return a decrypted access token for *connection*, refreshing first
        when it is missing an expiry, expired, or inside the safety margin.

        *connection* is updated in place with the rotated ciphertexts.
        """
        if not force and not self.needs_refresh(connection):
            return self.vault.decrypt(connection.encrypted_access_token)
        return await self.refresh(connection)

    async def refresh(self, connection) -> str:
        """
        Spend the stored refresh token and persist the new pair.

        If another worker rotated the pair first, the provider rejects our
        now-stale refresh token; the pair already in the database is adopted
        instead of marking the connection invalid.
        """
        provider = connection.provider
        if not connection.encrypted_refresh_token:
            await self._mark_invalid(connection)
            raise CredentialInvalid(
                f"{provider}: no refresh token stored for connection {connection.id}",
                provider=provider,
            )

        spent = connection.encrypted_refresh_token
        refresh_token = self.vault.decrypt(spent)
        oauth = get_oauth_config(provider)
        try:
            tokens = await _post_token_endpoint(
                oauth,
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
                provider=provider,
                what="refreshing access token",
                transport=self._transport,
            )
        except CredentialInvalid:
            adopted = await self._adopt_stored_tokens(connection, spent)
            if adopted is not None:
                return adopted
            logger.warning("Refresh token rejected for connection %s (%s)", connection.id, provider)
            await self._mark_invalid(connection)
            raise

        encrypted_access = self.vault.encrypt(tokens.access_token)
        encrypted_refresh = self.vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        expires_at = utcnow() + timedelta(seconds=tokens.expires_in)

        async with self._session_factory() as session:
            stored = await helpers.update_tokens(
                session,
                connection.id,
                encrypted_access_token=encrypted_access,
                encrypted_refresh_token=encrypted_refresh,
                token_expires_at=expires_at,
                expected_refresh_token=spent,
            )
            await session.commit()
        if not stored:
            adopted = await self._adopt_stored_tokens(connection, spent)
            if adopted is not None:
                return adopted

        connection.encrypted_access_token = encrypted_access
        if encrypted_refresh is not None:
            connection.encrypted_refresh_token = encrypted_refresh
        connection.token_expires_at = expires_at
        connection.last_validated_at = utcnow()
        connection.status = ConnectionStatus.ACTIVE.value

        logger.info(
            "Refreshed %s token for connection %s (expires %s, refresh token %s)",
            provider,
            connection.id,
            expires_at.isoformat(),
            "rotated" if encrypted_refresh else "kept",
        )
        return tokens.access_token

    async def _adopt_stored_tokens(self, connection, spent: str) -> Optional[str]:
        """Take the stored pair if a concurrent refresh replaced ``spent``; None otherwise."""
        async with self._session_factory() as session:
            current = await helpers.get_connection(session, connection.id)
        if (
            current is None
            or not current.encrypted_access_token
            or current.encrypted_refresh_token == spent
        ):
            return None
        connection.encrypted_access_token = current.encrypted_access_token
        connection.encrypted_refresh_token = current.encrypted_refresh_token
        connection.token_expires_at = current.token_expires_at
        connection.status = current.status
        logger.info(
            "Connection %s (%s) was refreshed concurrently; using the stored token pair",
            connection.id, connection.provider,
        )
        return self.vault.decrypt(current.encrypted_access_token)

    async def _mark_invalid(self, connection) -> None:
        async with self._session_factory() as session:
            await helpers.set_connection_status(session, connection.id, ConnectionStatus.INVALID)
            await session.commit()
        connection.status = ConnectionStatus.INVALID.value
