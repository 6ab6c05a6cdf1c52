"""TrialExpirationSweep: periodic demotion of trials the provider never confirmed.

Runs as an asyncio.Task inside the API process, once at startup and then on
a fixed interval. Single-flight in two layers:
  1. An in-process flag makes overlapping invocations return immediately
  2. A Redis lease (SET NX EX) keeps several instances from sweeping together

The sweep is idempotent (every write is conditional on the row still being
trialing), so a Redis outage degrades to running without the lease.
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import redis.asyncio as redis
import structlog

from pantry_billing.core.exceptions import TransientError
from pantry_billing.services.trial_service import TrialService
from pantry_billing.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)

_LEASE_KEY = "pantry:sweep:trial_expiration"


@dataclass
class SweepReport:
    expired: int = 0
    skipped: int = 0  # rows no longer trialing by the time expire ran
    failed: int = 0
    reprocessed: int = 0


class TrialExpirationSweep:
    def __init__(
        self,
        trials: TrialService,
        reconciler: WebhookReconciler | None = None,
        redis_client: redis.Redis | None = None,
        interval_seconds: int = 3600,
        lease_ttl_seconds: int = 900,
        batch_size: int = 500,
    ) -> None:
        self.trials = trials
        self.reconciler = reconciler
        self.redis = redis_client
        self.interval_seconds = interval_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.batch_size = batch_size
        self._running = False
        self._task: asyncio.Task | None = None
        self._owner = uuid.uuid4().hex

    @property
    def in_flight(self) -> bool:
        return self._running

    async def _acquire_lease(self) -> bool:
        if self.redis is None:
            return True
        try:
            acquired = await self.redis.set(_LEASE_KEY, self._owner, nx=True, ex=self.lease_ttl_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.warning("sweep_lease_unavailable", error=str(exc))
            return True
        return bool(acquired)

    async def _release_lease(self) -> None:
        if self.redis is None:
            return
        try:
            current = await self.redis.get(_LEASE_KEY)
            if current == self._owner:
                await self.redis.delete(_LEASE_KEY)
        except (redis.RedisError, OSError) as exc:
            logger.warning("sweep_lease_release_failed", error=str(exc))

    async def run_once(self, now: datetime | None = None) -> SweepReport | None:
        """Run one sweep. Returns None when another run holds the flag or the lease."""
        if self._running:
            logger.info("sweep_skipped_in_flight")
            return None

        self._running = True
        try:
            if not await self._acquire_lease():
                logger.info("sweep_skipped_lease_held")
                return None
            try:
                return await self._sweep(now or datetime.now(UTC))
            finally:
                await self._release_lease()
        finally:
            self._running = False

    async def _sweep(self, now: datetime) -> SweepReport:
        report = SweepReport()

        try:
            user_ids = await self.trials.find_expired(now, self.batch_size)
        except TransientError as exc:
            logger.warning("sweep_query_failed", error=str(exc))
            user_ids = []

        for user_id in user_ids:
            try:
                if await self.trials.expire(user_id, now):
                    report.expired += 1
                else:
                    report.skipped += 1
            except Exception:
                logger.exception("sweep_trial_expire_failed", user_id=user_id)
                report.failed += 1

        if self.reconciler is not None:
            try:
                report.reprocessed = await self.reconciler.reprocess_failed(now)
            except TransientError as exc:
                logger.warning("sweep_reprocess_failed", error=str(exc))

        logger.info(
            "sweep_completed",
            candidates=len(user_ids),
            expired=report.expired,
            skipped=report.skipped,
            failed=report.failed,
            reprocessed=report.reprocessed,
        )
        return report

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("sweep_run_crashed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        """Schedule the sweep: once immediately, then every ``interval_seconds``."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("sweep_started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("sweep_stopped")
