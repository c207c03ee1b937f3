"""
End-to-end: trigger through the job queue into the orchestrator.
"""

import uuid

import pytest

from conftest import raw
from connectors.errors import ProviderServerError
from connectors.registry import ConnectorRegistry
from core.job_queue import RetryPolicy
from core.orchestrator import ConnectionNotFound, SyncOrchestrator
from core.sync_service import SyncService
from database import helpers


@pytest.fixture
async def service(session_factory, vault, fake_connector):
    orchestrator = SyncOrchestrator(session_factory, registry=ConnectorRegistry(), vault=vault)
    svc = SyncService(
        orchestrator,
        session_factory,
        workers=2,
        policy=RetryPolicy(max_attempts=2, base_delay=0.01),
    )
    await svc.start()
    yield svc
    await svc.stop()


class TestTriggerSync:
    @pytest.mark.asyncio
    async def test_trigger_runs_in_background(self, service, fake_connector, make_connection, session_factory):
        fake_connector.pages["L"] = [raw("A"), raw("B")]
        conn = await make_connection()

        job_id = await service.trigger_sync(conn.id)
        await service.queue.join()

        assert service.queue.job_state(job_id) == "succeeded"
        (row,) = await service.get_sync_history(conn.id)
        assert row.status == "success"
        assert row.subscriber_count == 2
        async with session_factory() as session:
            assert await helpers.count_subscribers(session, conn.id) == 2

    @pytest.mark.asyncio
    async def test_retry_reuses_history_row(self, service, fake_connector, make_connection):
        fake_connector.pages["L"] = [raw("A")]
        fake_connector.failures.append(ProviderServerError("503 from provider"))
        conn = await make_connection()

        job_id = await service.trigger_sync(conn.id)
        await service.queue.join()

        assert service.queue.job_state(job_id) == "succeeded"
        (row,) = await service.get_sync_history(conn.id)
        assert row.status == "success"

    @pytest.mark.asyncio
    async def test_unknown_connection(self, service):
        with pytest.raises(ConnectionNotFound):
            await service.trigger_sync(uuid.uuid4())
        with pytest.raises(ConnectionNotFound):
            await service.get_sync_history(uuid.uuid4())


class TestHistoryQuery:
    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, service, make_connection):
        conn = await make_connection()
        for _ in range(3):
            row = await service.recorder.start(conn.id)
            await service.recorder.finalize_success(row.id, 0)

        assert len(await service.get_sync_history(conn.id, 0)) == 3
        assert len(await service.get_sync_history(conn.id, 2)) == 2
        assert len(await service.get_sync_history(conn.id, 10_000)) == 3
