"""
Site Lifecycle Orchestrator

Drives a site from request to a usable WordPress instance:

    Requested -> DBProvisioned -> ContainerCreated -> ContainerStarted
              -> AppReady -> Registered

with Failed reachable from every step. A failed creation tears down
whatever it created, so no usable-looking row is ever left behind.

Usage:
    from demoserver.services.site_orchestrator import get_site_orchestrator

    orchestrator = get_site_orchestrator()
    site = await orchestrator.create_site("alice")
"""
import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..config import get_settings
from ..errors import (
    ContainerNotFound,
    DemoServerError,
    ReadinessTimeout,
    RuntimeGatewayError,
    SiteCommandError,
    SiteIdCollision,
    SiteNotFound,
    SiteProvisioningError,
)
from ..models import SiteStatus
from ..runtime import ContainerSpec, RuntimeGateway, get_runtime
from ..schemas import SiteDescriptor
from ..utils.naming import SiteNames, derive_names, generate_password, generate_site_id, site_id_from_db_name
from .database_provisioner import DatabaseProvisioner
from .golden_image import GoldenImageBuilder
from .readiness import ReadinessProber
from .site_labels import (
    CREATED_AT_LABEL,
    DBNAME_LABEL,
    DBUSER_LABEL,
    POOLED_LABEL,
    USERNAME_LABEL,
    build_site_labels,
    parse_created_at,
    parse_host,
)
from .site_store import SiteRow, SiteStore, as_utc, to_descriptor, utcnow

logger = logging.getLogger(__name__)


class ProvisioningStage(str, Enum):
    REQUESTED = "requested"
    DB_PROVISIONED = "db_provisioned"
    CONTAINER_CREATED = "container_created"
    CONTAINER_STARTED = "container_started"
    APP_READY = "app_ready"
    REGISTERED = "registered"
    FAILED = "failed"


@dataclass
class ReconcileReport:
    """Differences between store rows and labeled containers."""
    rows_without_container: List[str] = field(default_factory=list)
    containers_without_row: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)  # stuck in provisioning past the grace
    pruned: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rows_without_container": self.rows_without_container,
            "abandoned": self.abandoned,
            "containers_without_row": self.containers_without_row,
            "pruned": self.pruned,
        }


class SiteOrchestrator:
    """Creates, lists and tears down sites."""

    def __init__(
        self,
        runtime: RuntimeGateway,
        store: SiteStore,
        provisioner: DatabaseProvisioner,
        prober: ReadinessProber,
        golden: GoldenImageBuilder,
    ):
        self.runtime = runtime
        self.store = store
        self.provisioner = provisioner
        self.prober = prober
        self.golden = golden
        self.settings = get_settings()
        self._sweeper = None

    @property
    def sweeper(self):
        if self._sweeper is None:
            from .sweeper import ReclamationSweeper
            self._sweeper = ReclamationSweeper(self)
        return self._sweeper

    def names_for(self, site_id: str) -> SiteNames:
        return derive_names(site_id, self.settings.domain_suffix)

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_site(self, requested_username: Optional[str] = None, pooled: bool = False) -> SiteDescriptor:
        """
        Provision a new site and return its descriptor.

        A duplicate identifier is retried with a fresh one. Any other failure
        removes what was created and propagates.
        """
        await self.golden.require_image()

        attempts = self.settings.site_id_max_attempts
        for attempt in range(1, attempts + 1):
            site_id = generate_site_id(self.settings.site_id_length)
            try:
                return await self._provision(site_id, requested_username, pooled)
            except SiteIdCollision as e:
                logger.warning(f"[SITE] Identifier collision on {site_id} ({attempt}/{attempts}): {e}")

        raise SiteIdCollision(f"Could not allocate a unique site id after {attempts} attempts")

    async def _provision(self, site_id: str, owner: Optional[str], pooled: bool) -> SiteDescriptor:
        s = self.settings
        names = self.names_for(site_id)
        admin_user = s.site_admin_user
        admin_pass = generate_password(12)
        admin_email = f"admin@{names.subdomain}"
        db_pass = generate_password(16)
        kind = "pool entry" if pooled else "site"

        logger.info(f"[SITE] Creating {kind} {site_id} for {owner or 'anonymous'}")

        # The row exists before the container so the sweeper never sees an untracked container
        await self.store.insert(
            pooled=pooled,
            site_id=site_id,
            siteurl=names.url,
            user=admin_user,
            password=admin_pass,
            email=admin_email,
            owner=owner,
            db_name=names.db_name,
            db_user=names.db_user,
            db_pass=db_pass,
        )

        stage = ProvisioningStage.REQUESTED
        db_created = False
        container_id: Optional[str] = None
        ready = True
        warning = None
        login_url = None

        try:
            try:
                await self.provisioner.create_database(names.db_name, names.db_user, db_pass, site_id)
            except SiteIdCollision:
                # The database belongs to someone else; only our row is ours to remove
                await self.store.delete(site_id)
                raise
            db_created = True
            if s.golden_sql_path:
                await self.provisioner.import_dump(names.db_name, s.golden_sql_path)
            else:
                # An empty schema would never pass `wp core is-installed`
                await self.provisioner.clone_database(s.golden_db_name, names.db_name)
            stage = ProvisioningStage.DB_PROVISIONED

            container_id = await self.runtime.create_container(ContainerSpec(
                image=s.golden_image,
                name=names.container_name,
                environment={
                    "WORDPRESS_DB_HOST": f"{s.db_host}:{s.db_port}",
                    "WORDPRESS_DB_USER": names.db_user,
                    "WORDPRESS_DB_PASSWORD": db_pass,
                    "WORDPRESS_DB_NAME": names.db_name,
                    "WP_SITE_TITLE": s.site_title,
                    "WP_ADMIN_USER": admin_user,
                    "WP_ADMIN_PASS": admin_pass,
                    "WP_ADMIN_EMAIL": admin_email,
                    "WP_SITE_URL": names.url,
                },
                labels=build_site_labels(names, owner, pooled),
                network=s.traefik_network,
                mem_limit=s.site_memory_limit,
            ))
            stage = ProvisioningStage.CONTAINER_CREATED

            await self.runtime.start_container(names.container_name)
            stage = ProvisioningStage.CONTAINER_STARTED

            try:
                await self.prober.wait_for_ready(names.container_name, site_id=site_id)
            except ReadinessTimeout:
                if s.is_rollback_on_timeout:
                    raise
                ready = False
                warning = "Site created but WordPress did not report ready in time; it may take a little longer"
                logger.warning(f"[SITE] {site_id} not ready within probe budget, returning anyway")

            if ready:
                if s.configure_after_ready:
                    await self.configure_site(names, admin_user, admin_pass, site_id)
                stage = ProvisioningStage.APP_READY
                login_url = await self.prober.read_login_token(names.container_name, names.url)
                if s.verify_https and not pooled:
                    if not await self.prober.wait_for_https(names.url):
                        warning = "Site is ready but HTTPS is not reachable yet; the certificate may still be issuing"

            await self.store.finalize(
                site_id,
                pooled,
                SiteStatus.READY if pooled else SiteStatus.ALLOCATED,
                container_id,
            )
            stage = ProvisioningStage.REGISTERED

        except SiteIdCollision:
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._rollback(names, container_id is not None, db_created))
            raise
        except DemoServerError as e:
            logger.error(f"[SITE] Creating {site_id} failed at {stage.value}: {e}")
            await self._rollback(names, container_id is not None, db_created)
            e.site_id = e.site_id or site_id
            if isinstance(e, SiteProvisioningError) and not e.stage:
                e.stage = stage.value
            raise
        except Exception as e:
            logger.error(f"[SITE] Creating {site_id} failed at {stage.value}: {e}", exc_info=True)
            await self._rollback(names, container_id is not None, db_created)
            raise SiteProvisioningError(
                f"Creating site {site_id} failed at {stage.value}: {e}", site_id, stage.value
            ) from e

        logger.info(f"[SITE] {kind.capitalize()} {site_id} registered at {names.url} (ready={ready})")
        row, _ = await self.store.get(site_id)
        return SiteDescriptor(
            site_id=site_id,
            url=names.url,
            admin_user=admin_user,
            admin_pass=admin_pass,
            admin_email=admin_email,
            owner=owner,
            db_name=names.db_name,
            db_user=names.db_user,
            db_pass=db_pass,
            container_id=container_id,
            status=(SiteStatus.READY if pooled else SiteStatus.ALLOCATED).value,
            created_at=as_utc(row.created_at) if row else utcnow(),
            ready=ready,
            login_url=login_url,
            warning=warning,
        )

    async def configure_site(self, names: SiteNames, admin_user: str, admin_pass: str, site_id: str) -> None:
        """Set canonical URLs and the admin password. Any failure is fatal."""
        wp_path = shlex.quote(self.settings.wp_path)
        url = shlex.quote(names.url)
        commands = [
            ("wp option update home", f"wp option update home {url} --allow-root --path={wp_path}"),
            ("wp option update siteurl", f"wp option update siteurl {url} --allow-root --path={wp_path}"),
            (
                f"wp user update {admin_user}",
                f"wp user update {shlex.quote(admin_user)} --user_pass={shlex.quote(admin_pass)}"
                f" --allow-root --path={wp_path}",
            ),
        ]
        for label, command in commands:
            result = await self.runtime.exec_shell(names.container_name, command)
            if not result.success:
                raise SiteCommandError(
                    label,
                    result.exit_code,
                    result.output,
                    site_id=site_id,
                    stage=ProvisioningStage.CONTAINER_STARTED.value,
                )

    async def _rollback(self, names: SiteNames, container_created: bool, db_created: bool) -> None:
        """Best-effort removal of a partially created site. Errors are logged, never raised."""
        logger.info(f"[SITE] Rolling back {names.site_id}")
        if container_created:
            try:
                await self.runtime.remove_container(names.container_name, remove_volumes=True)
            except RuntimeGatewayError as e:
                logger.error(f"[SITE] Rollback could not remove {names.container_name}: {e}")
        if db_created:
            try:
                await self.provisioner.drop_database(names.db_name, names.db_user)
            except DemoServerError as e:
                logger.error(f"[SITE] Rollback could not drop {names.db_name}: {e}")
        try:
            await self.store.delete(names.site_id)
        except Exception as e:
            logger.error(f"[SITE] Rollback could not delete row {names.site_id}: {e}")

    # ========================================================================
    # Listing
    # ========================================================================

    def _is_expired(self, created_at: Optional[datetime]) -> bool:
        if created_at is None:
            return False
        age = utcnow() - as_utc(created_at)
        return age.total_seconds() >= self.settings.site_retention_minutes * 60

    async def list_sites(self, source: str = "store") -> List[SiteDescriptor]:
        """
        List allocated sites, newest first.

        ``source="store"`` reads the sites table; ``source="runtime"`` rebuilds
        the list from container labels. Neither mutates anything.
        """
        if source == "runtime":
            return await self._list_from_runtime()

        sites = []
        for row in await self.store.list_sites():
            site = to_descriptor(row)
            if site.status == SiteStatus.ALLOCATED.value and self._is_expired(row.created_at):
                site.status = SiteStatus.EXPIRED.value
            sites.append(site)
        return sites

    async def _list_from_runtime(self) -> List[SiteDescriptor]:
        sites = []
        for info in await self.runtime.list_containers(label=CREATED_AT_LABEL):
            labels = info.labels
            db_name = labels.get(DBNAME_LABEL, "")
            host = parse_host(labels)
            created_at = parse_created_at(labels)
            # Labels are fixed at creation, so a pool entry handed out later still reads as pooled
            if labels.get(POOLED_LABEL) == "true":
                status = SiteStatus.READY
            elif self._is_expired(created_at):
                status = SiteStatus.EXPIRED
            else:
                status = SiteStatus.ALLOCATED
            sites.append(SiteDescriptor(
                site_id=site_id_from_db_name(db_name),
                url=f"https://{host}" if host else "",
                owner=labels.get(USERNAME_LABEL) or None,
                db_name=db_name,
                db_user=labels.get(DBUSER_LABEL),
                container_id=info.id,
                status=status.value,
                created_at=created_at,
                ready=info.is_running,
            ))
        sites.sort(key=lambda s: s.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return sites

    # ========================================================================
    # Teardown
    # ========================================================================

    async def teardown(self, site_id: str, db_name: Optional[str] = None, db_user: Optional[str] = None,
                       container_ref: Optional[str] = None) -> None:
        """
        Remove every resource a site owns. Safe to repeat: anything already
        gone counts as removed.
        """
        names = self.names_for(site_id)
        ref = container_ref or names.container_name

        volumes: List[str] = []
        try:
            info = await self.runtime.inspect_container(ref)
            volumes = info.named_volumes
        except ContainerNotFound:
            logger.info(f"[SITE] Container {ref} already gone")

        try:
            await self.runtime.stop_container(ref)
        except RuntimeGatewayError as e:
            logger.warning(f"[SITE] Stopping {ref} failed, removing anyway: {e}")

        await self.runtime.remove_container(ref, remove_volumes=True)

        # Removing the container only drops anonymous volumes
        for volume in volumes:
            try:
                await self.runtime.remove_volume(volume)
            except RuntimeGatewayError as e:
                logger.warning(f"[SITE] Could not remove volume {volume}: {e}")

        await self.provisioner.drop_database(db_name or names.db_name, db_user or names.db_user)
        await self.store.delete(site_id)
        logger.info(f"[SITE] Tore down {site_id}")

    async def destroy_site(self, site_id: str) -> bool:
        """Tear down one site on request, regardless of age."""
        row, _ = await self.store.get(site_id)
        if row is None:
            if not await self.runtime.container_exists(self.names_for(site_id).container_name):
                raise SiteNotFound(f"Site {site_id} not found", site_id)
            await self.teardown(site_id)
            return True

        await self.store.set_status(site_id, SiteStatus.RECLAIMING)
        await self.teardown(site_id, row.db_name, row.db_user, row.containerid)
        return True

    def is_abandoned(self, row: SiteRow, now: Optional[datetime] = None) -> bool:
        """A row still provisioning long after any create_site could still be running."""
        if row.status != SiteStatus.PROVISIONING.value:
            return False
        age = (now or utcnow()) - as_utc(row.created_at)
        return age.total_seconds() >= self.settings.provisioning_grace_seconds

    async def reclaim_abandoned(self, now: Optional[datetime] = None,
                                pooled: Optional[bool] = None) -> Tuple[List[str], Dict[str, str]]:
        """
        Tear down rows left in ``provisioning`` by a crashed or killed creation,
        whether or not their container still exists.

        ``pooled`` restricts the pass to one partition. Returns the reclaimed
        site ids and a mapping of site id to error for the ones that failed.
        """
        reclaimed: List[str] = []
        failed: Dict[str, str] = {}
        for row, row_pooled in await self.store.list_provisioning():
            if pooled is not None and row_pooled != pooled:
                continue
            if not self.is_abandoned(row, now):
                continue
            logger.warning(f"[SITE] Reclaiming abandoned {'pool entry' if row_pooled else 'site'} {row.site_id}")
            try:
                await self.store.set_status(row.site_id, SiteStatus.RECLAIMING)
                await self.teardown(row.site_id, row.db_name, row.db_user, row.containerid)
                reclaimed.append(row.site_id)
            except Exception as e:
                logger.error(f"[SITE] Reclaiming abandoned {row.site_id} failed: {e}", exc_info=True)
                failed[row.site_id] = str(e)
                # Left as provisioning so the next pass retries it
                await self.store.set_status(row.site_id, SiteStatus.PROVISIONING)
        return reclaimed, failed

    async def cleanup_expired(self):
        """Run one reclamation sweep. Returns its SweepReport."""
        return await self.sweeper.sweep()

    # ========================================================================
    # Reconciliation
    # ========================================================================

    async def reconcile(self, prune: bool = False) -> ReconcileReport:
        """
        Compare store rows with labeled containers.

        With ``prune``, rows whose container has vanished are torn down
        (database dropped, row deleted), and so are rows stuck in
        ``provisioning`` past the grace period. Rows still within it are left
        alone. Containers without rows are only reported; reclaiming them is
        the sweeper's job.
        """
        report = ReconcileReport()
        rows = list(await self.store.list_sites()) + list(await self.store.list_pool())
        containers = await self.runtime.list_containers(label=CREATED_AT_LABEL)
        by_db_name = {c.labels.get(DBNAME_LABEL): c for c in containers}
        row_db_names = {row.db_name for row in rows}

        for row in rows:
            if row.status == SiteStatus.PROVISIONING.value:
                if not self.is_abandoned(row):
                    continue
                report.abandoned.append(row.site_id)
                if prune:
                    await self._prune(row, report)
                continue
            if row.db_name in by_db_name:
                continue
            report.rows_without_container.append(row.site_id)
            if prune:
                await self._prune(row, report)

        for db_name, info in by_db_name.items():
            if db_name not in row_db_names:
                report.containers_without_row.append(info.name)

        logger.info(
            f"[SITE] Reconcile: {len(report.rows_without_container)} rows without container, "
            f"{len(report.containers_without_row)} containers without row, "
            f"{len(report.abandoned)} abandoned, {len(report.pruned)} pruned"
        )
        return report

    async def _prune(self, row: SiteRow, report: ReconcileReport) -> None:
        try:
            await self.teardown(row.site_id, row.db_name, row.db_user, row.containerid)
            report.pruned.append(row.site_id)
        except DemoServerError as e:
            logger.error(f"[SITE] Pruning {row.site_id} failed: {e}")


_orchestrator: Optional[SiteOrchestrator] = None


def get_site_orchestrator() -> SiteOrchestrator:
    """Get the process-wide orchestrator, wired to the default runtime and store."""
    global _orchestrator
    if _orchestrator is None:
        runtime = get_runtime()
        provisioner = DatabaseProvisioner(runtime)
        prober = ReadinessProber(runtime)
        _orchestrator = SiteOrchestrator(
            runtime=runtime,
            store=SiteStore(),
            provisioner=provisioner,
            prober=prober,
            golden=GoldenImageBuilder(runtime, provisioner, prober),
        )
    return _orchestrator
