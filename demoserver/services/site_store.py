"""
Site Store
Persistence for allocated sites (``sites``) and pre-provisioned pool entries
(``sitepool``). The store is the source of truth for which sites exist;
container labels are only a cache of it.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Type, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import SiteIdCollision
from ..models import PoolSite, Site, SiteStatus
from ..schemas import SiteDescriptor

logger = logging.getLogger(__name__)

SiteRow = Union[Site, PoolSite]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp read back from the database (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_descriptor(row: SiteRow, **extra) -> SiteDescriptor:
    """Convert a store row to the descriptor returned to callers."""
    return SiteDescriptor(
        site_id=row.site_id,
        url=row.siteurl,
        admin_user=row.user,
        admin_pass=row.password,
        admin_email=row.email,
        owner=row.owner,
        db_name=row.db_name,
        db_user=row.db_user,
        db_pass=row.db_pass,
        container_id=row.containerid,
        status=row.status,
        created_at=as_utc(row.created_at),
        **extra,
    )


class SiteStore:
    """Row-level operations on the ``sites`` and ``sitepool`` tables."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from ..database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    @staticmethod
    def _model(pooled: bool) -> Type[SiteRow]:
        return PoolSite if pooled else Site

    async def insert(
        self,
        *,
        pooled: bool,
        site_id: str,
        siteurl: str,
        user: str,
        password: str,
        email: Optional[str],
        owner: Optional[str],
        db_name: str,
        db_user: str,
        db_pass: str,
        status: SiteStatus = SiteStatus.PROVISIONING,
    ) -> SiteRow:
        """Insert a new row. A duplicate identifier raises SiteIdCollision."""
        model = self._model(pooled)
        row = model(
            site_id=site_id,
            siteurl=siteurl,
            user=user,
            password=password,
            email=email,
            owner=owner,
            db_name=db_name,
            db_user=db_user,
            db_pass=db_pass,
            status=status.value,
            created_at=utcnow(),
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise SiteIdCollision(f"Site id {site_id} already recorded", site_id) from e
        logger.debug(f"[STORE] Inserted {model.__tablename__} row for {site_id}")
        return row

    async def finalize(self, site_id: str, pooled: bool, status: SiteStatus, containerid: str) -> None:
        """Mark a provisioning row as usable and record its container."""
        model = self._model(pooled)
        async with self._session_factory() as session:
            await session.execute(
                update(model)
                .where(model.site_id == site_id)
                .values(status=status.value, containerid=containerid)
            )
            await session.commit()

    async def set_status(self, site_id: str, status: SiteStatus) -> None:
        async with self._session_factory() as session:
            for model in (Site, PoolSite):
                await session.execute(
                    update(model).where(model.site_id == site_id).values(status=status.value)
                )
            await session.commit()

    async def delete(self, site_id: str) -> bool:
        """Delete a site from whichever partition holds it. Returns False if absent."""
        deleted = 0
        async with self._session_factory() as session:
            for model in (Site, PoolSite):
                result = await session.execute(delete(model).where(model.site_id == site_id))
                deleted += result.rowcount or 0
            await session.commit()
        return deleted > 0

    async def get(self, site_id: str) -> Tuple[Optional[SiteRow], bool]:
        """Look up a site by identifier. Returns (row, pooled)."""
        async with self._session_factory() as session:
            for model, pooled in ((Site, False), (PoolSite, True)):
                row = (await session.execute(
                    select(model).where(model.site_id == site_id)
                )).scalar_one_or_none()
                if row is not None:
                    return row, pooled
        return None, False

    async def get_by_db_name(self, db_name: str) -> Tuple[Optional[SiteRow], bool]:
        """Look up a site by its database name, the stable key shared with container labels."""
        async with self._session_factory() as session:
            for model, pooled in ((Site, False), (PoolSite, True)):
                row = (await session.execute(
                    select(model).where(model.db_name == db_name)
                )).scalar_one_or_none()
                if row is not None:
                    return row, pooled
        return None, False

    async def list_sites(self) -> List[Site]:
        """All allocated sites, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Site).order_by(Site.created_at.desc(), Site.id.desc())
            )
            return list(result.scalars().all())

    async def list_pool(self) -> List[PoolSite]:
        async with self._session_factory() as session:
            result = await session.execute(select(PoolSite).order_by(PoolSite.created_at.asc()))
            return list(result.scalars().all())

    async def count_pool(self, status: Optional[SiteStatus] = None) -> int:
        async with self._session_factory() as session:
            query = select(func.count()).select_from(PoolSite)
            if status is not None:
                query = query.where(PoolSite.status == status.value)
            return (await session.execute(query)).scalar_one()

    async def list_provisioning(self) -> List[Tuple[SiteRow, bool]]:
        """Rows of either partition still in ``provisioning``, as (row, pooled)."""
        rows = []
        async with self._session_factory() as session:
            for model, pooled in ((Site, False), (PoolSite, True)):
                result = await session.execute(
                    select(model).where(model.status == SiteStatus.PROVISIONING.value)
                )
                rows.extend((row, pooled) for row in result.scalars().all())
        return rows

    async def claim_pool_entry(self, owner: Optional[str]) -> Optional[Site]:
        """
        Atomically move one ready pool entry into ``sites``.

        The delete from ``sitepool`` and the insert into ``sites`` commit in
        the same transaction, and the candidate row is locked with
        SKIP LOCKED so concurrent claims never pick the same entry.
        Returns None when the pool has no ready entry.
        """
        async with self._session_factory() as session:
            async with session.begin():
                entry = (await session.execute(
                    select(PoolSite)
                    .where(PoolSite.status == SiteStatus.READY.value)
                    .order_by(PoolSite.created_at.asc(), PoolSite.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )).scalar_one_or_none()

                if entry is None:
                    return None

                site = Site(
                    site_id=entry.site_id,
                    containerid=entry.containerid,
                    siteurl=entry.siteurl,
                    user=entry.user,
                    password=entry.password,
                    email=entry.email,
                    owner=owner,
                    db_name=entry.db_name,
                    db_user=entry.db_user,
                    db_pass=entry.db_pass,
                    status=SiteStatus.ALLOCATED.value,
                    # Retention counts from allocation, not from when the entry was built
                    created_at=utcnow(),
                )
                await session.delete(entry)
                await session.flush()
                session.add(site)

        logger.info(f"[STORE] Claimed pool entry {site.site_id} for {owner or 'anonymous'}")
        return site
