"""
Database helper functions — the persistence surface for connections,
subscribers and sync history.

Every helper takes the caller's ``AsyncSession`` and leaves committing to
the caller.  None of them perform network I/O, so no transaction is ever
held open across an ESP call.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import EspConnection, Subscriber, SyncHistory
from utils.clock import utcnow
from utils.schemas import (
    AuthMethod,
    CanonicalSubscriber,
    ConnectionStatus,
    SyncHistoryStatus,
    SyncStatus,
)

logger = logging.getLogger(__name__)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


# ── Connections ─────────────────────────────────────────────────────


def check_credential_mode(
    auth_method: str,
    *,
    encrypted_api_key: Optional[str],
    encrypted_access_token: Optional[str],
    encrypted_refresh_token: Optional[str],
) -> None:
    """
    Exactly one credential family may be present, and it must match
    ``auth_method``.  Raises ValueError for mixed or missing material.
    """
    has_key = bool(encrypted_api_key)
    has_tokens = bool(encrypted_access_token or encrypted_refresh_token)
    if auth_method == AuthMethod.API_KEY.value:
        if not has_key:
            raise ValueError("API-key connection requires an encrypted API key")
        if has_tokens:
            raise ValueError("API-key connection must not carry OAuth tokens")
    elif auth_method == AuthMethod.OAUTH.value:
        if not encrypted_access_token:
            raise ValueError("OAuth connection requires an encrypted access token")
        if has_key:
            raise ValueError("OAuth connection must not carry an API key")
    else:
        raise ValueError(f"Unknown auth method: {auth_method}")


async def create_connection(
    session: AsyncSession,
    *,
    user_id: str | uuid.UUID,
    provider: str,
    auth_method: str,
    list_ids: Sequence[str],
    encrypted_api_key: Optional[str] = None,
    encrypted_access_token: Optional[str] = None,
    encrypted_refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
) -> EspConnection:
    check_credential_mode(
        auth_method,
        encrypted_api_key=encrypted_api_key,
        encrypted_access_token=encrypted_access_token,
        encrypted_refresh_token=encrypted_refresh_token,
    )
    now = utcnow()
    conn = EspConnection(
        id=uuid.uuid4(),
        user_id=_to_uuid(user_id),
        provider=provider,
        auth_method=auth_method,
        encrypted_api_key=encrypted_api_key,
        encrypted_access_token=encrypted_access_token,
        encrypted_refresh_token=encrypted_refresh_token,
        token_expires_at=token_expires_at,
        list_ids=list(list_ids),
        status=ConnectionStatus.ACTIVE.value,
        sync_status=SyncStatus.IDLE.value,
        last_validated_at=now,
    )
    session.add(conn)
    await session.flush()
    logger.info("Created %s connection %s for user %s", provider, conn.id, user_id)
    return conn


async def get_connection(session: AsyncSession, connection_id: str | uuid.UUID) -> Optional[EspConnection]:
    result = await session.execute(
        select(EspConnection).where(EspConnection.id == _to_uuid(connection_id))
    )
    return result.scalar_one_or_none()


async def list_user_connections(session: AsyncSession, user_id: str | uuid.UUID) -> List[EspConnection]:
    result = await session.execute(
        select(EspConnection)
        .where(EspConnection.user_id == _to_uuid(user_id))
        .order_by(EspConnection.created_at)
    )
    return list(result.scalars().all())


async def update_list_ids(
    session: AsyncSession, connection_id: str | uuid.UUID, list_ids: Sequence[str]
) -> bool:
    result = await session.execute(
        update(EspConnection)
        .where(EspConnection.id == _to_uuid(connection_id))
        .values(list_ids=list(list_ids), updated_at=utcnow())
    )
    return result.rowcount == 1


async def set_connection_status(
    session: AsyncSession, connection_id: str | uuid.UUID, status: ConnectionStatus
) -> None:
    await session.execute(
        update(EspConnection)
        .where(EspConnection.id == _to_uuid(connection_id))
        .values(status=status.value, updated_at=utcnow())
    )


async def update_tokens(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    *,
    encrypted_access_token: str,
    token_expires_at: datetime,
    encrypted_refresh_token: Optional[str] = None,
    expected_refresh_token: Optional[str] = None,
) -> bool:
    """
    Persist a refreshed token pair.  A None refresh token keeps the stored one.

    With ``expected_refresh_token`` the write only lands if the stored
    refresh token is still the one the caller spent; returns False when a
    concurrent refresh already rotated it.
    """
    values: Dict[str, Any] = {
        "encrypted_access_token": encrypted_access_token,
        "token_expires_at": token_expires_at,
        "status": ConnectionStatus.ACTIVE.value,
        "last_validated_at": utcnow(),
        "updated_at": utcnow(),
    }
    if encrypted_refresh_token is not None:
        values["encrypted_refresh_token"] = encrypted_refresh_token
    stmt = update(EspConnection).where(EspConnection.id == _to_uuid(connection_id))
    if expected_refresh_token is not None:
        stmt = stmt.where(EspConnection.encrypted_refresh_token == expected_refresh_token)
    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def try_begin_sync(
    session: AsyncSession, connection_id: str | uuid.UUID, owner: Optional[str] = None
) -> bool:
    """
    Compare-and-swap ``sync_status`` to ``syncing``.

    A single conditional UPDATE, so two workers in different processes
    cannot both win.  Returns True only for the caller that flipped it.
    ``owner`` (the job id) is recorded so only that job can resume or
    release the claim.
    """
    now = utcnow()
    result = await session.execute(
        update(EspConnection)
        .where(
            EspConnection.id == _to_uuid(connection_id),
            EspConnection.sync_status != SyncStatus.SYNCING.value,
        )
        .values(
            sync_status=SyncStatus.SYNCING.value,
            sync_started_at=now,
            sync_heartbeat_at=now,
            sync_job_id=owner,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def touch_sync(
    session: AsyncSession, connection_id: str | uuid.UUID, owner: Optional[str] = None
) -> bool:
    """Record progress on a running sync so the stale sweep leaves it alone."""
    stmt = update(EspConnection).where(
        EspConnection.id == _to_uuid(connection_id),
        EspConnection.sync_status == SyncStatus.SYNCING.value,
    )
    if owner is not None:
        stmt = stmt.where(EspConnection.sync_job_id == owner)
    result = await session.execute(
        stmt.values(sync_heartbeat_at=utcnow()).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def finish_sync(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    sync_status: SyncStatus,
    *,
    connection_status: Optional[ConnectionStatus] = None,
    last_synced_at: Optional[datetime] = None,
    owner: Optional[str] = None,
) -> bool:
    """
    Leave the ``syncing`` state.  No-op (returns False) if not currently
    syncing, or if ``owner`` is given and another job holds the claim.
    """
    values: Dict[str, Any] = {
        "sync_status": sync_status.value,
        "sync_started_at": None,
        "sync_heartbeat_at": None,
        "sync_job_id": None,
    }
    if connection_status is not None:
        values["status"] = connection_status.value
    if last_synced_at is not None:
        values["last_synced_at"] = last_synced_at
    stmt = update(EspConnection).where(
        EspConnection.id == _to_uuid(connection_id),
        EspConnection.sync_status == SyncStatus.SYNCING.value,
    )
    if owner is not None:
        stmt = stmt.where(EspConnection.sync_job_id == owner)
    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def find_connections_due_for_sync(session: AsyncSession) -> List[EspConnection]:
    """Active connections that are not mid-sync.  List selection is checked by the caller."""
    result = await session.execute(
        select(EspConnection).where(
            EspConnection.status == ConnectionStatus.ACTIVE.value,
            EspConnection.sync_status != SyncStatus.SYNCING.value,
        )
    )
    return list(result.scalars().all())


async def find_connections_with_expiring_tokens(
    session: AsyncSession, before: datetime
) -> List[EspConnection]:
    result = await session.execute(
        select(EspConnection).where(
            EspConnection.auth_method == AuthMethod.OAUTH.value,
            EspConnection.status == ConnectionStatus.ACTIVE.value,
            EspConnection.token_expires_at.is_not(None),
            EspConnection.token_expires_at <= before,
        )
    )
    return list(result.scalars().all())


async def find_stale_syncing_connections(
    session: AsyncSession, started_before: datetime
) -> List[EspConnection]:
    """Connections stuck in ``syncing`` with no progress recorded since ``started_before``."""
    last_seen = func.coalesce(EspConnection.sync_heartbeat_at, EspConnection.sync_started_at)
    result = await session.execute(
        select(EspConnection).where(
            EspConnection.sync_status == SyncStatus.SYNCING.value,
            last_seen.is_(None) | (last_seen < started_before),
        )
    )
    return list(result.scalars().all())


async def delete_connection(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    user_id: str | uuid.UUID | None = None,
) -> bool:
    """Delete a connection with its subscribers and history.  Returns False if not found."""
    cid = _to_uuid(connection_id)
    query = select(EspConnection.id).where(EspConnection.id == cid)
    if user_id is not None:
        query = query.where(EspConnection.user_id == _to_uuid(user_id))
    if (await session.execute(query)).scalar_one_or_none() is None:
        return False
    await session.execute(delete(Subscriber).where(Subscriber.connection_id == cid))
    await session.execute(delete(SyncHistory).where(SyncHistory.connection_id == cid))
    await session.execute(delete(EspConnection).where(EspConnection.id == cid))
    return True


# ── Subscribers ─────────────────────────────────────────────────────


def _insert_for(session: AsyncSession, table):
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)


async def upsert_subscribers(session: AsyncSession, rows: Sequence[CanonicalSubscriber]) -> int:
    """
    Insert-or-update keyed by (connection_id, external_id).

    Never deletes.  The stored ciphertext is only replaced when the email
    fingerprint changed, so re-running against unchanged data leaves every
    column as it was.  Returns the number of distinct rows written.
    """
    if not rows:
        return 0

    # One statement may not touch the same key twice.
    by_key: Dict[tuple, CanonicalSubscriber] = {}
    for row in rows:
        by_key[(row.connection_id, row.external_id)] = row

    table = Subscriber.__table__
    values = [
        {
            "id": uuid.uuid4(),
            "connection_id": row.connection_id,
            "external_id": row.external_id,
            "encrypted_email": row.encrypted_email,
            "email_fingerprint": row.email_fingerprint,
            "masked_email": row.masked_email,
            "status": row.status.value,
            "first_name": row.first_name,
            "last_name": row.last_name,
            "subscribed_at": row.subscribed_at,
            "unsubscribed_at": row.unsubscribed_at,
            "metadata": row.metadata,
            "created_at": utcnow(),
        }
        for row in by_key.values()
    ]
    stmt = _insert_for(session, table).values(values)
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.connection_id, table.c.external_id],
        set_={
            "encrypted_email": case(
                (table.c.email_fingerprint != excluded.email_fingerprint, excluded.encrypted_email),
                else_=table.c.encrypted_email,
            ),
            "email_fingerprint": excluded.email_fingerprint,
            "masked_email": excluded.masked_email,
            "status": excluded.status,
            "first_name": excluded.first_name,
            "last_name": excluded.last_name,
            "subscribed_at": excluded.subscribed_at,
            "unsubscribed_at": excluded.unsubscribed_at,
            "metadata": excluded["metadata"],
        },
    )
    await session.execute(stmt)
    return len(values)


async def count_subscribers(session: AsyncSession, connection_id: str | uuid.UUID) -> int:
    result = await session.execute(
        select(func.count()).select_from(Subscriber).where(
            Subscriber.connection_id == _to_uuid(connection_id)
        )
    )
    return int(result.scalar_one())


async def list_subscribers(
    session: AsyncSession, connection_id: str | uuid.UUID
) -> List[Subscriber]:
    result = await session.execute(
        select(Subscriber)
        .where(Subscriber.connection_id == _to_uuid(connection_id))
        .order_by(Subscriber.external_id)
    )
    return list(result.scalars().all())


# ── Sync history ────────────────────────────────────────────────────


async def create_sync_history(
    session: AsyncSession, connection_id: str | uuid.UUID, list_id: Optional[str] = None
) -> SyncHistory:
    row = SyncHistory(
        id=uuid.uuid4(),
        connection_id=_to_uuid(connection_id),
        list_id=list_id,
        status=SyncHistoryStatus.STARTED.value,
        started_at=utcnow(),
    )
    session.add(row)
    await session.flush()
    return row


async def finalize_sync_history(
    session: AsyncSession,
    history_id: str | uuid.UUID,
    *,
    status: SyncHistoryStatus,
    error_message: Optional[str] = None,
    subscriber_count: Optional[int] = None,
) -> bool:
    """
    Write the terminal outcome.  Conditional on ``completed_at IS NULL``
    so a row can only ever be finalized once; returns False otherwise.
    """
    result = await session.execute(
        update(SyncHistory)
        .where(SyncHistory.id == _to_uuid(history_id), SyncHistory.completed_at.is_(None))
        .values(
            status=status.value,
            completed_at=utcnow(),
            error_message=error_message,
            subscriber_count=subscriber_count,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def find_open_sync_history(
    session: AsyncSession, connection_id: str | uuid.UUID
) -> Optional[SyncHistory]:
    result = await session.execute(
        select(SyncHistory)
        .where(
            SyncHistory.connection_id == _to_uuid(connection_id),
            SyncHistory.completed_at.is_(None),
        )
        .order_by(SyncHistory.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_sync_history(
    session: AsyncSession, connection_id: str | uuid.UUID, limit: int = 50
) -> List[SyncHistory]:
    result = await session.execute(
        select(SyncHistory)
        .where(SyncHistory.connection_id == _to_uuid(connection_id))
        .order_by(SyncHistory.started_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
