"""
Per-site MySQL database and user management.

Databases and users are created over the orchestrator's own connection
(root account); drops run as an administrative command inside the MySQL
container so that teardown works even when the connection pool is
unhealthy.
"""
import logging
import re
import shlex
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..config import get_settings
from ..errors import DemoServerError, SiteIdCollision
from ..runtime import RuntimeGateway

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]{1,64}$")

# MySQL server error codes
ER_DB_CREATE_EXISTS = 1007
ER_CANNOT_USER = 1396  # CREATE USER for an existing account


def _check_identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"Unsafe MySQL identifier: {value!r}")
    return value


def _mysql_error_code(exc: DBAPIError) -> Optional[int]:
    args = getattr(exc.orig, "args", None)
    if args and isinstance(args[0], int):
        return args[0]
    return None


class DatabaseProvisioner:
    """Creates and drops the database + user pair owned by one site."""

    def __init__(self, runtime: RuntimeGateway, engine: Optional[AsyncEngine] = None):
        self.runtime = runtime
        if engine is None:
            from ..database import engine as default_engine
            engine = default_engine
        self.engine = engine
        self.settings = get_settings()

    def _mysql_cli(self) -> str:
        return f"mysql -uroot -p{shlex.quote(self.settings.db_root_password)}"

    async def create_database(self, db_name: str, db_user: str, db_pass: str, site_id: Optional[str] = None) -> None:
        """
        Create the site's database and a user whose grant covers only that schema.

        Raises SiteIdCollision if the database or user already exists.
        """
        _check_identifier(db_name)
        _check_identifier(db_user)
        if "'" in db_pass or "\\" in db_pass:
            raise ValueError("Database password must not contain quotes or backslashes")

        db_created = user_created = False
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text(f"CREATE DATABASE `{db_name}`"))
                db_created = True
                await conn.execute(text(f"CREATE USER '{db_user}'@'%' IDENTIFIED BY '{db_pass}'"))
                user_created = True
                await conn.execute(text(f"GRANT ALL PRIVILEGES ON `{db_name}`.* TO '{db_user}'@'%'"))
                await conn.execute(text("FLUSH PRIVILEGES"))
        except DBAPIError as e:
            # DDL commits as it runs, so the transaction does not undo what already succeeded
            await self._discard(db_name if db_created else None, db_user if user_created else None)
            code = _mysql_error_code(e)
            if code in (ER_DB_CREATE_EXISTS, ER_CANNOT_USER):
                raise SiteIdCollision(f"Database {db_name} or user {db_user} already exists", site_id) from e
            raise DemoServerError(f"Failed to create database {db_name}: {e.orig}", site_id) from e

        logger.info(f"[DB] Created database {db_name} for user {db_user}")

    async def _discard(self, db_name: Optional[str], db_user: Optional[str]) -> None:
        """Best-effort removal of what a failed create_database left behind."""
        if not db_name and not db_user:
            return
        try:
            async with self.engine.begin() as conn:
                if db_name:
                    await conn.execute(text(f"DROP DATABASE IF EXISTS `{db_name}`"))
                if db_user:
                    await conn.execute(text(f"DROP USER IF EXISTS '{db_user}'@'%'"))
        except DBAPIError as e:
            logger.error(f"[DB] Could not clean up after failed create of {db_name or db_user}: {e.orig}")

    async def clone_database(self, source: str, target: str) -> None:
        """Copy every table of ``source`` into ``target``, inside the MySQL container."""
        _check_identifier(source)
        _check_identifier(target)
        cli = self._mysql_cli()
        dump = shlex.quote(f"/tmp/{target}.sql")
        command = (
            f"mysqldump -uroot -p{shlex.quote(self.settings.db_root_password)} --single-transaction {source} > {dump}"
            f" && {cli} {target} < {dump}; status=$?; rm -f {dump}; exit $status"
        )
        result = await self.runtime.exec_shell(self.settings.mysql_container_name, command)
        if not result.success:
            raise DemoServerError(f"Failed to copy {source} into {target}: {result.output.strip()}")
        logger.info(f"[DB] Copied {source} into {target}")

    async def import_dump(self, db_name: str, dump_path: str) -> None:
        """Load a SQL dump (path inside the MySQL container) into a site database."""
        _check_identifier(db_name)
        command = f"{self._mysql_cli()} {db_name} < {shlex.quote(dump_path)}"
        result = await self.runtime.exec_shell(self.settings.mysql_container_name, command)
        if not result.success:
            raise DemoServerError(f"Failed to import {dump_path} into {db_name}: {result.output.strip()}")
        logger.info(f"[DB] Imported {dump_path} into {db_name}")

    async def drop_database(self, db_name: str, db_user: str) -> None:
        """Drop the database and its user. Both are no-ops when already absent."""
        _check_identifier(db_name)
        _check_identifier(db_user)
        sql = (
            f"DROP DATABASE IF EXISTS `{db_name}`; "
            f"DROP USER IF EXISTS '{db_user}'@'%'; "
            "FLUSH PRIVILEGES;"
        )
        command = f"{self._mysql_cli()} -e {shlex.quote(sql)}"
        result = await self.runtime.exec_shell(self.settings.mysql_container_name, command)
        if not result.success:
            raise DemoServerError(f"Failed to drop database {db_name}: {result.output.strip()}")
        logger.info(f"[DB] Dropped database {db_name} and user {db_user}")

    async def ping(self) -> None:
        """Check that MySQL accepts connections, via the MySQL container."""
        result = await self.runtime.exec_shell(
            self.settings.mysql_container_name, f'{self._mysql_cli()} -e "SHOW DATABASES;"'
        )
        if not result.success:
            raise ConnectionError(result.output.strip() or "MySQL not accepting connections")

    async def ensure_database(self, db_name: str) -> None:
        """CREATE DATABASE IF NOT EXISTS, used for the golden image database."""
        _check_identifier(db_name)
        async with self.engine.begin() as conn:
            await conn.execute(text(f"CREATE DATABASE IF NOT EXISTS `{db_name}`"))
        logger.info(f"[DB] Ensured database {db_name}")
