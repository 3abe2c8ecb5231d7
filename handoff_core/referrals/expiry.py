"""
Referral Expiry Sweeper

Background task that moves overdue PENDING and ACCEPTED referrals to EXPIRED.
Each referral is swapped with the version it was read at; a concurrent human
decision wins and the sweeper moves on.
"""

import asyncio
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field
from structlog import get_logger

from ..config import HandoffConfig, get_config
from .db_service import ReferralStore
from .lifecycle import ReferralLifecycleEngine

logger = get_logger()


class SweepSummary(BaseModel):
    """Counts for one sweep pass."""

    scanned: int = 0
    expired: int = 0
    lost_races: int = 0
    errors: int = 0
    started_at: Optional[datetime] = Field(default=None)


class ExpirySweeper:
    """
    Periodically expires overdue referrals.

    The sweeper never touches terminal referrals and never books
    appointments; it only writes EXPIRED through the engine's expiry path.
    """

    def __init__(
        self,
        engine: ReferralLifecycleEngine,
        store: Optional[ReferralStore] = None,
        config: Optional[HandoffConfig] = None,
    ):
        """
        Initialize expiry sweeper.

        Args:
            engine: Lifecycle engine used to apply the EXPIRED transition
            store: Referral store (the engine's store if not provided)
            config: Service configuration (uses cached config if not provided)
        """
        self.engine = engine
        self.store = store or engine.store
        self.config = config or get_config()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Expire every referral overdue at now.

        Args:
            now: Sweep time (engine clock if not provided)

        Returns:
            Summary of the pass
        """
        now = now or self.engine.clock()
        batch_size = self.config.expiry_sweep_batch_size
        summary = SweepSummary(started_at=now)

        while True:
            batch = await self.store.list_due_for_expiry(now, limit=batch_size)
            expired_in_batch = 0

            for referral in batch:
                summary.scanned += 1
                try:
                    expired = await self.engine.expire(referral, now)
                except Exception as e:
                    summary.errors += 1
                    logger.error(
                        "referral_expiry_failed",
                        referral_id=referral.referral_id,
                        error=str(e),
                    )
                    continue

                if expired is None:
                    summary.lost_races += 1
                else:
                    summary.expired += 1
                    expired_in_batch += 1

            # A short batch means nothing else is due; a batch with no progress
            # would only return the same records again.
            if len(batch) < batch_size or expired_in_batch == 0:
                break

        logger.info(
            "expiry_sweep_completed",
            scanned=summary.scanned,
            expired=summary.expired,
            lost_races=summary.lost_races,
            errors=summary.errors,
        )
        return summary

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            logger.warning("expiry_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "expiry_sweeper_started",
            interval_seconds=self.config.expiry_sweep_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the sweep loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("expiry_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("expiry_sweep_failed", error=str(e))

            try:
                await asyncio.sleep(self.config.expiry_sweep_interval_seconds)
            except asyncio.CancelledError:
                break
