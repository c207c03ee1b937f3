"""
Periodic triggers, run by APScheduler inside the app's event loop.

- nightly sync of every active connection with lists selected
- proactive refresh of OAuth tokens about to expire
- recovery of connections stuck in ``syncing`` after a worker died
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import config
from connectors.token_manager import TokenRefresher
from core.sync_service import SyncService
from database import helpers
from utils.clock import utcnow
from utils.schemas import SyncHistoryStatus, SyncStatus

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Owns the APScheduler instance and the three sweeps it runs."""

    def __init__(self, sync_service: SyncService, refresher: Optional[TokenRefresher] = None):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._service = sync_service
        self._session_factory = sync_service.session_factory
        self._refresher = refresher or TokenRefresher(self._session_factory)
        self._initialized = False

    async def start(self) -> None:
        if self._initialized:
            return
        self.scheduler.add_job(
            self.run_nightly_sync,
            CronTrigger.from_crontab(config.nightly_sync_cron, timezone="UTC"),
            id="nightly_sync",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.refresh_expiring_tokens,
            IntervalTrigger(minutes=config.token_refresh_interval_minutes),
            id="token_refresh",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.recover_stale_syncs,
            IntervalTrigger(minutes=max(1, config.stale_sync_timeout_minutes // 4)),
            id="stale_sync_recovery",
            replace_existing=True,
        )
        self.scheduler.start()
        self._initialized = True
        logger.info("Scheduler started (nightly sync cron '%s')", config.nightly_sync_cron)

    async def stop(self) -> None:
        if self._initialized:
            self.scheduler.shutdown(wait=False)
            self._initialized = False
            logger.info("Scheduler stopped")

    # ── sweeps ──────────────────────────────────────────────────────────

    async def run_nightly_sync(self) -> Dict[str, int]:
        async with self._session_factory() as session:
            connections = await helpers.find_connections_due_for_sync(session)

        queued = skipped = 0
        for conn in connections:
            if not conn.list_ids:
                skipped += 1
                continue
            self._service.queue.enqueue(conn.id, reason="nightly")
            queued += 1
        logger.info("Nightly sync: %d queued, %d skipped (no lists)", queued, skipped)
        return {"queued": queued, "skipped": skipped}

    async def refresh_expiring_tokens(self) -> Dict[str, int]:
        horizon = utcnow() + timedelta(minutes=config.oauth_refresh_window_minutes)
        async with self._session_factory() as session:
            connections = await helpers.find_connections_with_expiring_tokens(session, horizon)

        refreshed = failed = 0
        for conn in connections:
            try:
                await self._refresher.ensure_fresh_access_token(conn, force=True)
                refreshed += 1
            except Exception:
                failed += 1
                logger.exception("Proactive token refresh failed for connection %s", conn.id)
        if connections:
            logger.info("Token refresh sweep: %d refreshed, %d failed", refreshed, failed)
        return {"refreshed": refreshed, "failed": failed}

    async def recover_stale_syncs(self) -> int:
        """Finalize lifecycles whose worker vanished.  Returns how many were recovered."""
        timeout = config.stale_sync_timeout_minutes
        cutoff = utcnow() - timedelta(minutes=timeout)
        async with self._session_factory() as session:
            stale = await helpers.find_stale_syncing_connections(session, cutoff)

        recovered = 0
        for conn in stale:
            try:
                async with self._session_factory() as session:
                    open_row = await helpers.find_open_sync_history(session, conn.id)
                    if open_row is not None:
                        await helpers.finalize_sync_history(
                            session,
                            open_row.id,
                            status=SyncHistoryStatus.FAILED,
                            error_message=f"Sync did not complete within {timeout} minutes",
                        )
                    await helpers.finish_sync(session, conn.id, SyncStatus.ERROR)
                    await session.commit()
                recovered += 1
            except Exception:
                logger.exception("Stale sync recovery failed for connection %s", conn.id)
        if recovered:
            logger.warning("Recovered %d stale sync(s)", recovered)
        return recovered
