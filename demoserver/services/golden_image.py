"""
Golden Image Builder

Builds the ``wp-golden`` image every site starts from: the base WordPress
image plus WP-CLI, an installed WordPress, and any plugins, themes and
uploads found in the host assets directory.

The build runs once per deployment. If the tagged image already exists the
whole build is skipped. It is started in the background at startup and only
gates creation of new sites.
"""
import logging
import shlex
from typing import Optional

from ..config import get_settings
from ..errors import (
    DatabaseNotReady,
    GoldenImageBuildError,
    GoldenImageUnavailable,
    ReadinessTimeout,
    RuntimeGatewayError,
)
from ..runtime import ContainerSpec, RuntimeGateway
from ..utils.retry import RetryError, StillWaiting, poll_until
from .database_provisioner import DatabaseProvisioner
from .readiness import ReadinessProber
from .task_manager import Task, get_task_manager

logger = logging.getLogger(__name__)

GOLDEN_BUILD_TASK = "golden_image_build"
ASSETS_MOUNT = "/backups"
WP_SOURCE_CONTENT = "/usr/src/wordpress/wp-content"
BUILD_STEPS = 9


class GoldenImageBuilder:
    """One-shot, idempotent build of the golden WordPress image."""

    def __init__(
        self,
        runtime: RuntimeGateway,
        provisioner: DatabaseProvisioner,
        prober: Optional[ReadinessProber] = None,
    ):
        self.runtime = runtime
        self.provisioner = provisioner
        self.prober = prober or ReadinessProber(runtime)
        self.settings = get_settings()

    @property
    def image_ref(self) -> str:
        return self.settings.golden_image

    async def image_exists(self) -> bool:
        return await self.runtime.image_exists(self.image_ref)

    async def require_image(self) -> None:
        """Raise GoldenImageUnavailable (and kick off a build) when the image is missing."""
        if await self.image_exists():
            return
        await self.start_background_build()
        raise GoldenImageUnavailable(
            f"Golden image {self.image_ref} is not built yet; try again once the build completes"
        )

    async def start_background_build(self) -> Optional[Task]:
        """
        Start the build as a background task unless the image exists or a
        build is already in flight. Returns the build task, if any.
        """
        if await self.image_exists():
            logger.info(f"[GOLDEN] {self.image_ref} already exists, skipping build")
            return None
        task, started = get_task_manager().start_singleton_task(
            GOLDEN_BUILD_TASK,
            self.ensure_image,
            metadata={"image": self.image_ref},
        )
        if started:
            logger.info(f"[GOLDEN] Build of {self.image_ref} started as task {task.id}")
        return task

    async def ensure_image(self, task: Optional[Task] = None) -> str:
        """Build the golden image unless it already exists. Returns the image reference."""
        if await self.image_exists():
            logger.info(f"[GOLDEN] {self.image_ref} already exists")
            return self.image_ref
        return await self.build(task=task)

    def _progress(self, task: Optional[Task], step: int, message: str):
        logger.info(f"[GOLDEN] ({step}/{BUILD_STEPS}) {message}")
        if task:
            task.update_progress(step, BUILD_STEPS, message)

    async def _run(self, container: str, label: str, command: str) -> str:
        """Run a build command; any non-zero exit aborts the build with its output."""
        result = await self.runtime.exec_shell(container, command)
        if not result.success:
            raise GoldenImageBuildError(
                f"{label} failed with exit code {result.exit_code}: {result.output.strip()}"
            )
        return result.output

    async def wait_for_database(self) -> None:
        """Poll MySQL until it accepts connections. Raises DatabaseNotReady past the cap."""
        async def attempt():
            try:
                await self.provisioner.ping()
            except (ConnectionError, RuntimeGatewayError) as e:
                raise StillWaiting(str(e))

        try:
            await poll_until(
                attempt,
                self.settings.db_wait_max_attempts,
                self.settings.db_wait_interval_seconds,
            )
        except RetryError:
            raise DatabaseNotReady(
                f"MySQL not ready after {self.settings.db_wait_max_attempts} attempts"
            )

    async def ensure_base_image(self) -> None:
        base = self.settings.wp_base_image
        if await self.runtime.image_exists(base):
            return
        try:
            await self.runtime.pull_image(base)
        except RuntimeGatewayError as e:
            raise GoldenImageBuildError(f"Base image {base} missing and could not be pulled: {e.detail}")

    def _build_spec(self) -> ContainerSpec:
        s = self.settings
        volumes = {}
        if s.host_assets_path:
            volumes[s.host_assets_path] = {"bind": ASSETS_MOUNT, "mode": "ro"}
        return ContainerSpec(
            image=s.wp_base_image,
            name=s.golden_container_name,
            environment={
                "WORDPRESS_DB_HOST": f"{s.db_host}:{s.db_port}",
                "WORDPRESS_DB_USER": "root",
                "WORDPRESS_DB_PASSWORD": s.db_root_password,
                "WORDPRESS_DB_NAME": s.golden_db_name,
            },
            network=s.traefik_network,
            volumes=volumes,
            ports=[80],
        )

    async def _install_assets(self, container: str) -> None:
        """Unpack plugin and theme archives and seed uploads from the assets mount."""
        s = self.settings
        await self._run(
            container,
            "install unzip",
            "apt-get update -qq && DEBIAN_FRONTEND=noninteractive apt-get install -y -qq unzip",
        )
        archives = [(name, "plugins") for name in s.golden_plugin_archives.split(",")]
        archives += [(name, "themes") for name in s.golden_theme_archives.split(",")]
        for name, kind in archives:
            name = name.strip()
            if not name:
                continue
            source = shlex.quote(f"{ASSETS_MOUNT}/{name}")
            target = shlex.quote(f"{WP_SOURCE_CONTENT}/{kind}")
            await self._run(container, f"unzip {name}", f"unzip -oq {source} -d {target}")

        await self._run(
            container,
            "copy uploads",
            f"if [ -d {ASSETS_MOUNT}/uploads ]; then "
            f"mkdir -p {WP_SOURCE_CONTENT}/uploads && "
            f"cp -r {ASSETS_MOUNT}/uploads/. {WP_SOURCE_CONTENT}/uploads/ && "
            f"chown -R www-data:www-data {WP_SOURCE_CONTENT}/uploads; fi",
        )

    async def build(self, task: Optional[Task] = None) -> str:
        """Run the full build sequence. Returns the image reference."""
        s = self.settings
        container = s.golden_container_name
        wp_path = shlex.quote(s.wp_path)

        self._progress(task, 1, "Waiting for MySQL")
        await self.wait_for_database()
        await self.provisioner.ensure_database(s.golden_db_name)

        self._progress(task, 2, f"Ensuring base image {s.wp_base_image}")
        await self.ensure_base_image()
        await self.runtime.ensure_network(s.traefik_network)

        self._progress(task, 3, "Starting build container")
        # Leftover from a previous failed attempt
        await self.runtime.remove_container(container)
        await self.runtime.create_container(self._build_spec())

        try:
            await self.runtime.start_container(container)

            self._progress(task, 4, "Waiting for wp-config.php")
            try:
                await self.prober.wait_for_file(
                    container,
                    f"{s.wp_path}/wp-config.php",
                    s.readiness_max_attempts,
                    s.readiness_interval_seconds,
                )
            except ReadinessTimeout:
                raise GoldenImageBuildError("wp-config.php did not appear in the build container")

            self._progress(task, 5, "Installing WP-CLI")
            await self._run(
                container,
                "install wp-cli",
                f"curl -sSL -o /usr/local/bin/wp {shlex.quote(s.wp_cli_url)} && chmod +x /usr/local/bin/wp",
            )

            self._progress(task, 6, "Installing WordPress")
            installed = await self.runtime.exec_shell(
                container, f"wp core is-installed --allow-root --path={wp_path}"
            )
            if installed.success:
                logger.info("[GOLDEN] WordPress already installed, skipping core install")
            else:
                await self._run(
                    container,
                    "wp core install",
                    "wp core install"
                    f" --url={shlex.quote(s.golden_site_url)}"
                    f" --title={shlex.quote(s.golden_site_title)}"
                    f" --admin_user={shlex.quote(s.site_admin_user)}"
                    f" --admin_password={shlex.quote(s.golden_admin_password)}"
                    f" --admin_email={shlex.quote('admin@' + s.domain_suffix)}"
                    f" --skip-email --allow-root --path={wp_path}",
                )

            self._progress(task, 7, "Installing assets")
            mounted = await self.runtime.exec_shell(container, f"test -d {ASSETS_MOUNT}")
            if s.host_assets_path and mounted.success:
                await self._install_assets(container)
            else:
                logger.info(f"[GOLDEN] No assets mounted at {ASSETS_MOUNT}, skipping")

            self._progress(task, 8, f"Committing {self.image_ref}")
            await self.runtime.stop_container(container)
            image_id = await self.runtime.commit_container(
                container, s.golden_image_repo, s.golden_image_tag
            )
            if not image_id:
                raise GoldenImageBuildError("Commit produced no image id")

            # Commit can leave the image untagged; tag explicitly by id
            try:
                await self.runtime.tag_image(image_id, s.golden_image_repo, s.golden_image_tag)
            except RuntimeGatewayError as e:
                logger.warning(f"[GOLDEN] Re-tagging {image_id[:19]} failed: {e}")

            self._progress(task, 9, "Verifying tag")
            if not await self.image_exists():
                raise GoldenImageBuildError(f"{self.image_ref} does not resolve after commit")

        finally:
            try:
                await self.runtime.remove_container(container)
            except RuntimeGatewayError as e:
                logger.warning(f"[GOLDEN] Could not remove build container {container}: {e}")

        logger.info(f"[GOLDEN] Built {self.image_ref} ({image_id[:19]})")
        return self.image_ref
