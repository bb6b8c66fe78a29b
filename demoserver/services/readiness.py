"""
Readiness Prober
Polls a running WordPress container until the application reports installed.
"""
import asyncio
import logging
import shlex
import time
from typing import Optional

import aiohttp

from ..config import get_settings
from ..errors import ContainerNotFound, ReadinessTimeout, RuntimeGatewayError
from ..runtime import RuntimeGateway
from ..utils.retry import RetryError, StillWaiting, poll_until

logger = logging.getLogger(__name__)


class ReadinessProber:
    """
    Application-level readiness checks executed inside the container.

    An attempt passes only if every check passes within that attempt:
    wp-config.php exists, the optional first-boot marker exists, and
    ``wp core is-installed`` exits zero.
    """

    def __init__(self, runtime: RuntimeGateway):
        self.runtime = runtime
        self.settings = get_settings()

    def _wp(self, args: str) -> str:
        return f"wp {args} --allow-root --path={shlex.quote(self.settings.wp_path)}"

    async def check_once(self, container: str) -> bool:
        """Run a single readiness attempt."""
        checks = [f"test -f {shlex.quote(self.settings.wp_path + '/wp-config.php')}"]
        if self.settings.install_marker_path:
            checks.append(f"test -f {shlex.quote(self.settings.install_marker_path)}")
        checks.append(self._wp("core is-installed"))

        for command in checks:
            try:
                result = await self.runtime.exec_shell(container, command)
            except ContainerNotFound:
                raise
            except RuntimeGatewayError as e:
                # Container restarting or not yet accepting exec
                logger.debug(f"[READY] {container}: exec failed: {e}")
                return False
            if not result.success:
                return False
        return True

    async def wait_for_ready(
        self,
        container: str,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        site_id: Optional[str] = None,
    ) -> bool:
        """
        Poll until WordPress is installed.

        Returns True on the first passing attempt; raises ReadinessTimeout once
        the attempt budget is exhausted. Cancelling the awaiting task stops
        the probe.
        """
        attempts = self.settings.readiness_max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError(f"Readiness needs at least one attempt, got {attempts}")
        interval = self.settings.readiness_interval_seconds if interval_seconds is None else interval_seconds

        async def attempt():
            if not await self.check_once(container):
                raise StillWaiting(container)
            return True

        logger.info(f"[READY] Waiting for {container} ({attempts} attempts, {interval}s interval)")
        try:
            await poll_until(attempt, attempts, interval)
        except RetryError:
            logger.warning(f"[READY] {container} not ready after {attempts} attempts")
            raise ReadinessTimeout(container, attempts, site_id)

        logger.info(f"[READY] {container} is ready")
        return True

    async def wait_for_file(self, container: str, path: str, max_attempts: int, interval_seconds: float) -> None:
        """Poll until a file exists in the container. Raises ReadinessTimeout."""
        async def attempt():
            result = await self.runtime.exec_shell(container, f"test -f {shlex.quote(path)}")
            if not result.success:
                raise StillWaiting(path)

        try:
            await poll_until(attempt, max_attempts, interval_seconds)
        except RetryError:
            raise ReadinessTimeout(container, max_attempts)

    async def read_login_token(self, container: str, url: str) -> Optional[str]:
        """
        Build a one-time auto-login URL from the token file the guest writes.

        The file holds the token on its first line and a unix expiry on the
        second. A missing, malformed or expired token yields None.
        """
        path = self.settings.login_token_path
        if not path:
            return None
        try:
            result = await self.runtime.exec_shell(container, f"cat {shlex.quote(path)}")
        except RuntimeGatewayError as e:
            logger.debug(f"[READY] Could not read login token from {container}: {e}")
            return None
        if not result.success:
            return None

        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        if not lines:
            return None
        token = lines[0]
        if len(lines) > 1:
            try:
                expires_at = int(lines[1])
            except ValueError:
                return None
            if expires_at <= time.time():
                return None
        return f"{url}/?auto_login_token={token}"

    async def wait_for_https(self, url: str) -> bool:
        """
        Poll the site's public URL until Traefik serves it over TLS.

        Any non-5xx response counts as reachable. Returns False on timeout;
        callers treat that as advisory.
        """
        attempts = self.settings.https_max_attempts
        timeout = aiohttp.ClientTimeout(total=self.settings.https_request_timeout_seconds)

        async def attempt():
            try:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.head(url, allow_redirects=True) as response:
                        status = response.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise StillWaiting(type(e).__name__)
            if status >= 500:
                raise StillWaiting(f"HTTP {status}")
            return status

        try:
            status = await poll_until(attempt, attempts, self.settings.https_interval_seconds)
        except RetryError:
            logger.warning(f"[READY] {url} not reachable over HTTPS after {attempts} attempts")
            return False

        logger.info(f"[READY] {url} reachable over HTTPS (HTTP {status})")
        return True
