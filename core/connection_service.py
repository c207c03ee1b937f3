"""
Connection lifecycle — create, reconfigure, inspect and delete ESP
connections.

A connection is only persisted after its credential (and every selected
list) has been validated against the provider.  Secrets are encrypted
before they reach the store.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.base import BaseConnector
from connectors.encryption import CredentialVault, get_vault
from connectors.errors import CredentialInvalid, RemoteNotFound
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenRefresher, access_tokens_expire
from core.orchestrator import ConnectionNotFound
from database import helpers
from database.models import EspConnection
from database.session import async_session_factory
from utils.clock import utcnow
from utils.schemas import AuthMethod, Credential, EspList, TokenSet

logger = logging.getLogger(__name__)


class ConnectionService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        registry: Optional[ConnectorRegistry] = None,
        vault: Optional[CredentialVault] = None,
        refresher: Optional[TokenRefresher] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._registry = registry or ConnectorRegistry()
        self._vault = vault or get_vault()
        self._refresher = refresher or TokenRefresher(self._session_factory, vault=self._vault)

    # ── create ──────────────────────────────────────────────────────────

    async def create_api_key_connection(
        self,
        user_id: uuid.UUID | str,
        provider: str,
        api_key: str,
        list_ids: Sequence[str] = (),
    ) -> EspConnection:
        """
        Validate *api_key* (and each list id) with the provider, then store
        the connection with the key encrypted.  Raises CredentialInvalid or
        RemoteNotFound when validation fails.
        """
        connector = self._connector(provider, AuthMethod.API_KEY)
        credential = Credential(secret=api_key, auth_method=AuthMethod.API_KEY)
        await self._validate(connector, credential, list_ids)

        async with self._session_factory() as session:
            conn = await helpers.create_connection(
                session,
                user_id=user_id,
                provider=connector.provider.value,
                auth_method=AuthMethod.API_KEY.value,
                list_ids=list_ids,
                encrypted_api_key=self._vault.encrypt(api_key),
            )
            await session.commit()
        return conn

    async def create_oauth_connection(
        self,
        user_id: uuid.UUID | str,
        provider: str,
        tokens: TokenSet,
        list_ids: Sequence[str] = (),
    ) -> EspConnection:
        """Store a connection from a freshly exchanged token pair."""
        connector = self._connector(provider, AuthMethod.OAUTH)
        credential = Credential(secret=tokens.access_token, auth_method=AuthMethod.OAUTH)
        await self._validate(connector, credential, list_ids)

        async with self._session_factory() as session:
            conn = await helpers.create_connection(
                session,
                user_id=user_id,
                provider=connector.provider.value,
                auth_method=AuthMethod.OAUTH.value,
                list_ids=list_ids,
                encrypted_access_token=self._vault.encrypt(tokens.access_token),
                encrypted_refresh_token=(
                    self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None
                ),
                token_expires_at=(
                    utcnow() + timedelta(seconds=tokens.expires_in)
                    if access_tokens_expire(connector.provider.value)
                    else None
                ),
            )
            await session.commit()
        return conn

    # ── inspect / reconfigure ───────────────────────────────────────────

    async def get(self, connection_id: uuid.UUID | str) -> EspConnection:
        async with self._session_factory() as session:
            conn = await helpers.get_connection(session, connection_id)
        if conn is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return conn

    async def list_for_user(self, user_id: uuid.UUID | str) -> List[EspConnection]:
        async with self._session_factory() as session:
            return await helpers.list_user_connections(session, user_id)

    async def fetch_remote_lists(self, connection_id: uuid.UUID | str) -> List[EspList]:
        conn = await self.get(connection_id)
        connector = self._connector(conn.provider, AuthMethod(conn.auth_method))
        return await connector.fetch_lists(await self._credential_for(conn))

    async def update_selected_lists(
        self, connection_id: uuid.UUID | str, list_ids: Sequence[str]
    ) -> EspConnection:
        """Replace the selected lists after checking each exists at the provider."""
        remote = {item.id for item in await self.fetch_remote_lists(connection_id)}
        missing = [lid for lid in list_ids if lid not in remote]
        if missing:
            raise RemoteNotFound(f"Unknown list id(s): {', '.join(missing)}")

        async with self._session_factory() as session:
            await helpers.update_list_ids(session, connection_id, list_ids)
            await session.commit()
        logger.info("Connection %s now syncs lists %s", connection_id, list(list_ids))
        return await self.get(connection_id)

    async def get_subscriber_count(self, connection_id: uuid.UUID | str, list_id: str) -> int:
        conn = await self.get(connection_id)
        connector = self._connector(conn.provider, AuthMethod(conn.auth_method))
        return await connector.get_subscriber_count(await self._credential_for(conn), list_id)

    # ── delete ──────────────────────────────────────────────────────────

    async def delete_connection(
        self, connection_id: uuid.UUID | str, user_id: uuid.UUID | str | None = None
    ) -> bool:
        async with self._session_factory() as session:
            deleted = await helpers.delete_connection(session, connection_id, user_id)
            await session.commit()
        if deleted:
            logger.info("Deleted connection %s with its subscribers and history", connection_id)
        return deleted

    async def delete_user_connections(self, user_id: uuid.UUID | str) -> int:
        """Account removal: drop every connection the user owns."""
        async with self._session_factory() as session:
            connections = await helpers.list_user_connections(session, user_id)
            for conn in connections:
                await helpers.delete_connection(session, conn.id)
            await session.commit()
        logger.info("Deleted %d connection(s) for user %s", len(connections), user_id)
        return len(connections)

    # ── internals ───────────────────────────────────────────────────────

    def _connector(self, provider: str, method: AuthMethod) -> BaseConnector:
        connector = self._registry.get(provider)
        if connector is None:
            raise ValueError(f"Unknown provider: {provider}")
        if not connector.supports(method):
            raise ValueError(f"{connector.display_name} does not support {method.value}")
        return connector

    async def _validate(
        self, connector: BaseConnector, credential: Credential, list_ids: Sequence[str]
    ) -> None:
        if not await connector.validate_credential(credential):
            raise CredentialInvalid(
                f"{connector.display_name} rejected the credential", provider=connector.provider.value
            )
        for list_id in list_ids:
            if not await connector.validate_credential(credential, list_id):
                raise RemoteNotFound(
                    f"List {list_id} is not visible to this credential",
                    provider=connector.provider.value,
                )

    async def _credential_for(self, conn: EspConnection) -> Credential:
        if conn.auth_method == AuthMethod.OAUTH.value:
            token = await self._refresher.ensure_fresh_access_token(conn)
            return Credential(secret=token, auth_method=AuthMethod.OAUTH)
        return Credential(secret=self._vault.decrypt(conn.encrypted_api_key))
