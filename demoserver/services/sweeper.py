"""
Reclamation Sweeper
Periodically removes sites older than the retention threshold.

The store decides what is live. Each pass first tears down rows left in
``provisioning`` past the provisioning grace (a crashed creation), with or
without a container. Container labels then nominate candidates: a container
is torn down when its row says the site has expired, or, for containers
with no row at all, once the orphan grace period has passed (if one is
configured).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, TYPE_CHECKING

from ..config import get_settings
from ..models import SiteStatus
from ..utils.naming import site_id_from_db_name
from .site_labels import CREATED_AT_LABEL, DBNAME_LABEL, DBUSER_LABEL, parse_created_at
from .site_store import as_utc, utcnow

if TYPE_CHECKING:
    from .site_orchestrator import SiteOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    scanned: int = 0
    reclaimed: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)  # container -> reason
    failed: Dict[str, str] = field(default_factory=dict)  # container -> error

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "scanned": self.scanned,
            "reclaimed": self.reclaimed,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class ReclamationSweeper:
    """Finds expired sites and tears them down, one failure at a time."""

    def __init__(self, orchestrator: "SiteOrchestrator"):
        self.orchestrator = orchestrator
        self.runtime = orchestrator.runtime
        self.store = orchestrator.store
        self.settings = get_settings()

    @property
    def retention(self) -> timedelta:
        return timedelta(minutes=self.settings.site_retention_minutes)

    @property
    def orphan_grace(self) -> Optional[timedelta]:
        if self.settings.orphan_grace_minutes is None:
            return None
        return timedelta(minutes=self.settings.orphan_grace_minutes)

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one pass over abandoned rows, then over every labeled container, running or stopped."""
        now = now or utcnow()
        report = SweepReport(started_at=now)

        reclaimed, failed = await self.orchestrator.reclaim_abandoned(now)
        report.reclaimed.extend(reclaimed)
        for site_id, error in failed.items():
            report.failed[self.orchestrator.names_for(site_id).container_name] = error

        containers = await self.runtime.list_containers(label=CREATED_AT_LABEL)
        report.scanned = len(containers)
        logger.info(f"[SWEEP] Checking {len(containers)} containers (retention {self.retention})")

        for info in containers:
            created_at = parse_created_at(info.labels)
            if created_at is None:
                report.skipped[info.name] = "no creation timestamp"
                continue
            if now - created_at < self.retention:
                report.skipped[info.name] = "within retention"
                continue

            db_name = info.labels.get(DBNAME_LABEL)
            if not db_name:
                report.skipped[info.name] = "no database label"
                continue

            try:
                await self._reclaim_if_expired(info, db_name, created_at, now, report)
            except Exception as e:
                # One bad site must not stop the sweep
                logger.error(f"[SWEEP] Failed to reclaim {info.name}: {e}", exc_info=True)
                report.failed[info.name] = str(e)

        logger.info(
            f"[SWEEP] Done: {len(report.reclaimed)} reclaimed, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    async def _reclaim_if_expired(self, info, db_name: str, label_created_at: datetime,
                                  now: datetime, report: SweepReport) -> None:
        row, pooled = await self.store.get_by_db_name(db_name)

        if row is None:
            grace = self.orphan_grace
            if grace is None or now - label_created_at < grace:
                report.skipped[info.name] = "no store row"
                return
            site_id = site_id_from_db_name(db_name)
            logger.info(f"[SWEEP] Reclaiming orphan container {info.name}")
            await self.orchestrator.teardown(
                site_id, db_name, info.labels.get(DBUSER_LABEL), info.id
            )
            report.reclaimed.append(site_id)
            return

        if pooled:
            report.skipped[info.name] = "pool entry"
            return
        if row.status == SiteStatus.PROVISIONING.value:
            report.skipped[info.name] = "still provisioning"
            return
        # Rows moved out of the pool restart their clock at allocation
        if now - as_utc(row.created_at) < self.retention:
            report.skipped[info.name] = "within retention"
            return

        logger.info(f"[SWEEP] Reclaiming expired site {row.site_id} ({info.name})")
        await self.store.set_status(row.site_id, SiteStatus.RECLAIMING)
        await self.orchestrator.teardown(row.site_id, row.db_name, row.db_user, info.id)
        report.reclaimed.append(row.site_id)
