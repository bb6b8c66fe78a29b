"""
Pool Manager
Keeps a buffer of fully provisioned sites so allocation does not pay the
provisioning latency.

Available entries live in ``sitepool``; allocation moves one into
``sites`` in a single transaction, so no entry can be handed out twice.
Refills run as a single background task at a time.
"""
import logging
from typing import Optional, Tuple

from ..config import get_settings
from ..models import SiteStatus
from ..schemas import PoolStatus, SiteDescriptor
from .site_orchestrator import SiteOrchestrator, get_site_orchestrator
from .site_store import to_descriptor
from .task_manager import Task, TaskManager, get_task_manager

logger = logging.getLogger(__name__)

POOL_REFILL_TASK = "pool_refill"


class PoolManager:

    def __init__(self, orchestrator: SiteOrchestrator, task_manager: Optional[TaskManager] = None):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.task_manager = task_manager or get_task_manager()
        self.settings = get_settings()

    async def allocate(self, requested_username: Optional[str] = None) -> SiteDescriptor:
        """
        Hand out a site: a pool entry when one is ready, otherwise a freshly
        provisioned site (slow path).
        """
        site = None
        if self.settings.pool_enabled:
            row = await self.store.claim_pool_entry(requested_username)
            if row is not None:
                logger.info(f"[POOL] Allocated pooled site {row.site_id}")
                site = to_descriptor(row)

        if site is None:
            logger.info("[POOL] Pool empty, provisioning on demand")
            site = await self.orchestrator.create_site(requested_username)

        if self.settings.pool_enabled:
            available = await self.store.count_pool(SiteStatus.READY)
            if available < self.settings.pool_min_size:
                logger.info(f"[POOL] {available} available, below minimum {self.settings.pool_min_size}")
                self.trigger_refill()

        return site

    def trigger_refill(self) -> Optional[Task]:
        """Start a refill unless one is already queued or running."""
        if not self.settings.pool_enabled:
            return None
        task, started = self.task_manager.start_singleton_task(POOL_REFILL_TASK, self.refill)
        if started:
            logger.info(f"[POOL] Refill started as task {task.id}")
        return task

    async def refill(self, task: Optional[Task] = None) -> int:
        """
        Provision pool entries until the target size is reached.

        Stops at the first failure; the next trigger tries again. Returns
        the number of entries created.
        """
        reclaimed, _ = await self.orchestrator.reclaim_abandoned(pooled=True)
        if reclaimed:
            logger.info(f"[POOL] Reclaimed {len(reclaimed)} abandoned pool builds")

        created = 0
        target = self.settings.pool_target_size
        while True:
            available, in_flight, _ = await self._counts()
            current = available + in_flight
            if current >= target:
                break
            if task:
                task.update_progress(current, target, f"Provisioning pool entry {current + 1}/{target}")
            try:
                site = await self.orchestrator.create_site(pooled=True)
            except Exception as e:
                logger.error(f"[POOL] Refill stopped after {created} new entries: {e}")
                if created == 0:
                    raise
                break
            created += 1
            logger.info(f"[POOL] Added {site.site_id} to pool ({current + 1}/{target})")

        logger.info(f"[POOL] Refill finished, {created} entries created")
        return created

    async def ensure_minimum(self) -> Optional[Task]:
        """Startup hook: refill when the pool is below its minimum."""
        if not self.settings.pool_enabled:
            return None
        available = await self.store.count_pool(SiteStatus.READY)
        logger.info(f"[POOL] {available} entries available at startup (minimum {self.settings.pool_min_size})")
        if available < self.settings.pool_min_size:
            return self.trigger_refill()
        return None

    async def _counts(self) -> Tuple[int, int, int]:
        """(ready, provisioning within the grace, abandoned) pool entries."""
        available = await self.store.count_pool(SiteStatus.READY)
        in_flight = abandoned = 0
        for row, pooled in await self.store.list_provisioning():
            if not pooled:
                continue
            if self.orchestrator.is_abandoned(row):
                abandoned += 1
            else:
                in_flight += 1
        return available, in_flight, abandoned

    async def status(self) -> PoolStatus:
        available, in_flight, abandoned = await self._counts()
        active = self.task_manager.get_active_task(POOL_REFILL_TASK)
        return PoolStatus(
            available=available,
            provisioning=in_flight,
            abandoned=abandoned,
            target=self.settings.pool_target_size,
            minimum=self.settings.pool_min_size,
            refilling=active is not None,
            refill_task_id=active.id if active else None,
        )


_pool_manager: Optional[PoolManager] = None


def get_pool_manager() -> PoolManager:
    global _pool_manager
    if _pool_manager is None:
        _pool_manager = PoolManager(get_site_orchestrator())
    return _pool_manager
