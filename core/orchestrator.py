"""
Sync Orchestrator — drives one sync attempt for one connection.

Per attempt:

  1. claim the connection (atomic ``sync_status != 'syncing'`` → ``syncing``,
     recording the job id as owner) and open a SyncHistory row; a retry
     resumes the open row only when its own job holds the claim
  2. resolve a usable credential (decrypt the API key, or refresh OAuth)
  3. verify every selected list still exists, then fetch each one
  4. map every raw record and upsert in batches; each batch refreshes the
     claim's heartbeat so stale recovery leaves long syncs alone
  5. finalize: ``synced`` + history ``success``, or on the final permitted
     attempt ``error`` + history ``failed``

The attempt number and ceiling are passed in by the caller.  Errors are
always re-raised so the queue can decide whether to retry.  Each
database step uses its own short session; none spans a network call.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.base import BaseConnector
from connectors.encryption import CredentialVault, DecryptionError, get_vault
from connectors.errors import CredentialInvalid, RemoteNotFound, is_retryable
from connectors.registry import ConnectorRegistry
from connectors.token_manager import OAuthNotConfigured, TokenRefresher
from core.mapper import SubscriberMapper
from core.sync_history import SyncHistoryRecorder
from database import helpers
from database.models import EspConnection, SyncHistory
from database.session import async_session_factory
from utils.clock import utcnow
from utils.schemas import (
    AuthMethod,
    ConnectionStatus,
    Credential,
    SyncResult,
    SyncStatus,
)

logger = logging.getLogger(__name__)


class SyncConfigurationError(Exception):
    """The connection cannot be synced as configured (no lists, unknown provider, …)."""

    retryable = False


class ConnectionNotFound(LookupError):
    retryable = False


class _CredentialHolder:
    """The credential in use for one attempt; swapped after a forced refresh."""

    def __init__(self, credential: Credential):
        self.credential = credential
        self.force_refreshed = False


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        registry: Optional[ConnectorRegistry] = None,
        vault: Optional[CredentialVault] = None,
        refresher: Optional[TokenRefresher] = None,
        recorder: Optional[SyncHistoryRecorder] = None,
        batch_size: Optional[int] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._registry = registry or ConnectorRegistry()
        self._vault = vault or get_vault()
        self._refresher = refresher or TokenRefresher(self._session_factory, vault=self._vault)
        self._recorder = recorder or SyncHistoryRecorder(self._session_factory)
        self._mapper = SubscriberMapper(self._vault)
        self._batch_size = batch_size or config.upsert_batch_size

    # ── public entry point ──────────────────────────────────────────────

    async def run(
        self,
        connection_id: uuid.UUID | str,
        attempt_number: int = 1,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Execute one attempt.

        Returns ``SyncResult(started=False)`` when another job already
        holds the connection.  Only the job that claimed the connection
        (``job_id``) may resume it on a later attempt.  Any failure is
        re-raised after the terminal bookkeeping (which only happens on
        the final attempt or for non-retryable errors).
        """
        connection_id = uuid.UUID(str(connection_id))
        max_attempts = max_attempts or config.sync_max_attempts
        owner = job_id or uuid.uuid4().hex

        connection = await self._load(connection_id)
        history = await self._begin(connection, attempt_number, owner)
        if history is None:
            logger.info("Connection %s is already syncing; trigger ignored", connection_id)
            return SyncResult(connection_id=connection_id, started=False)

        logger.info(
            "Sync attempt %d/%d for connection %s (%s, lists=%s)",
            attempt_number, max_attempts, connection_id, connection.provider, connection.list_ids,
        )
        try:
            count = await self._execute(connection, owner)
        except Exception as exc:
            await self._record_failure(connection, history, exc, attempt_number, max_attempts, owner)
            raise

        await self._recorder.finalize_success(history.id, count)
        async with self._session_factory() as session:
            released = await helpers.finish_sync(
                session,
                connection_id,
                SyncStatus.SYNCED,
                connection_status=ConnectionStatus.ACTIVE,
                last_synced_at=utcnow(),
                owner=owner,
            )
            await session.commit()
        if not released:
            logger.warning(
                "Connection %s was no longer held by job %s when its sync finished", connection_id, owner
            )
        logger.info("Sync of connection %s succeeded: %d subscribers", connection_id, count)
        return SyncResult(
            connection_id=connection_id, started=True, history_id=history.id, subscriber_count=count
        )

    # ── lifecycle ───────────────────────────────────────────────────────

    async def _load(self, connection_id: uuid.UUID) -> EspConnection:
        async with self._session_factory() as session:
            connection = await helpers.get_connection(session, connection_id)
        if connection is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    async def _begin(
        self, connection: EspConnection, attempt_number: int, owner: str
    ) -> Optional[SyncHistory]:
        """Claim the connection, or resume the lifecycle this job opened on an earlier attempt."""
        if (
            attempt_number > 1
            and connection.sync_status == SyncStatus.SYNCING.value
            and connection.sync_job_id == owner
        ):
            open_row = await self._recorder.find_open(connection.id)
            if open_row is not None:
                return open_row

        async with self._session_factory() as session:
            claimed = await helpers.try_begin_sync(session, connection.id, owner)
            await session.commit()
        if not claimed:
            return None
        connection.sync_status = SyncStatus.SYNCING.value
        connection.sync_job_id = owner

        list_ids = list(connection.list_ids or [])
        return await self._recorder.start(connection.id, list_ids[0] if len(list_ids) == 1 else None)

    async def _record_failure(
        self,
        connection: EspConnection,
        history: SyncHistory,
        exc: Exception,
        attempt_number: int,
        max_attempts: int,
        owner: str,
    ) -> None:
        retryable = is_retryable(exc)
        if retryable and attempt_number < max_attempts:
            logger.warning(
                "Sync attempt %d/%d for connection %s failed (%s); will retry",
                attempt_number, max_attempts, connection.id, type(exc).__name__,
            )
            return

        logger.error(
            "Sync of connection %s failed on attempt %d/%d: %s",
            connection.id, attempt_number, max_attempts, _describe(exc),
        )
        await self._recorder.finalize_failed(history.id, _describe(exc))
        async with self._session_factory() as session:
            await helpers.finish_sync(
                session,
                connection.id,
                SyncStatus.ERROR,
                connection_status=_connection_status_for(exc),
                owner=owner,
            )
            await session.commit()

    # ── the attempt itself ──────────────────────────────────────────────

    async def _execute(self, connection: EspConnection, owner: str) -> int:
        connector = self._registry.get(connection.provider)
        if connector is None:
            raise SyncConfigurationError(f"No connector for provider '{connection.provider}'")
        list_ids = [str(lid) for lid in (connection.list_ids or [])]
        if not list_ids:
            raise SyncConfigurationError("No lists selected for this connection")

        holder = _CredentialHolder(await self._resolve_credential(connection, connector))

        remote_lists = await self._call(connection, holder, connector.fetch_lists)
        remote_ids = {item.id for item in remote_lists}
        missing = [lid for lid in list_ids if lid not in remote_ids]
        if missing:
            raise RemoteNotFound(
                f"Selected list(s) no longer exist at {connection.provider}: {', '.join(missing)}",
                provider=connection.provider,
            )

        seen: Set[str] = set()
        for list_id in list_ids:
            raw = await self._call(
                connection, holder, lambda cred, lid=list_id: connector.fetch_subscribers(cred, lid)
            )
            mapped = self._mapper.map_many(raw, connection.id, list_id)
            await self._upsert(connection.id, owner, mapped)
            seen.update(row.external_id for row in mapped)
            logger.info(
                "Connection %s list %s: fetched %d, upserted %d",
                connection.id, list_id, len(raw), len(mapped),
            )
        return len(seen)

    async def _resolve_credential(self, connection: EspConnection, connector: BaseConnector) -> Credential:
        method = AuthMethod(connection.auth_method)
        if not connector.supports(method):
            raise SyncConfigurationError(
                f"{connector.display_name} does not support {method.value} connections"
            )
        if method == AuthMethod.OAUTH:
            try:
                token = await self._refresher.ensure_fresh_access_token(connection)
            except OAuthNotConfigured as exc:
                raise SyncConfigurationError(str(exc)) from exc
            return Credential(secret=token, auth_method=AuthMethod.OAUTH)

        if not connection.encrypted_api_key:
            raise SyncConfigurationError("Connection has no stored API key")
        return Credential(secret=self._vault.decrypt(connection.encrypted_api_key))

    async def _call(
        self,
        connection: EspConnection,
        holder: _CredentialHolder,
        call: Callable[[Credential], Awaitable[Any]],
    ) -> Any:
        """Run a connector call; for OAuth, a 401 earns one forced refresh and one retry."""
        try:
            return await call(holder.credential)
        except CredentialInvalid:
            if connection.auth_method != AuthMethod.OAUTH.value or holder.force_refreshed:
                raise
            logger.info("Access token rejected for connection %s; forcing refresh", connection.id)
            holder.force_refreshed = True
            try:
                token = await self._refresher.ensure_fresh_access_token(connection, force=True)
            except OAuthNotConfigured as exc:
                raise SyncConfigurationError(str(exc)) from exc
            holder.credential = Credential(secret=token, auth_method=AuthMethod.OAUTH)
            return await call(holder.credential)

    async def _upsert(self, connection_id: uuid.UUID, owner: str, rows: List) -> None:
        """Write in batches; each batch also refreshes the sync heartbeat."""
        if not rows:
            async with self._session_factory() as session:
                await helpers.touch_sync(session, connection_id, owner)
                await session.commit()
            return
        for start in range(0, len(rows), self._batch_size):
            batch = rows[start:start + self._batch_size]
            async with self._session_factory() as session:
                await helpers.upsert_subscribers(session, batch)
                await helpers.touch_sync(session, connection_id, owner)
                await session.commit()


def _connection_status_for(exc: Exception) -> Optional[ConnectionStatus]:
    if isinstance(exc, (CredentialInvalid, DecryptionError)):
        return ConnectionStatus.INVALID
    if isinstance(exc, (RemoteNotFound, SyncConfigurationError)):
        return ConnectionStatus.ERROR
    return None


def _describe(exc: Exception) -> str:
    if isinstance(exc, DecryptionError):
        return "Stored credential could not be decrypted"
    message = str(exc)
    return message or type(exc).__name__
