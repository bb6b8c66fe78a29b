"""
Test configuration and fixtures for pytest.

Fixtures include an in-memory runtime gateway, a SQLite-backed site store,
a fake database provisioner, and a fully wired orchestrator.
"""

import os
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from demoserver.runtime.base import (
    ContainerInfo,
    ContainerMount,
    ContainerSpec,
    ExecResult,
    RuntimeGateway,
)


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any settings are read
    os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
    os.environ["DB_ROOT_PASSWORD"] = "rootpw"
    os.environ["DOMAIN_SUFFIX"] = "demo.test"
    os.environ["SITE_RETENTION_MINUTES"] = "60"
    os.environ["READINESS_MAX_ATTEMPTS"] = "3"
    os.environ["READINESS_INTERVAL_SECONDS"] = "0"
    os.environ["DB_WAIT_MAX_ATTEMPTS"] = "3"
    os.environ["DB_WAIT_INTERVAL_SECONDS"] = "0"
    os.environ["HTTPS_INTERVAL_SECONDS"] = "0"
    os.environ["POOL_TARGET_SIZE"] = "2"
    os.environ["POOL_MIN_SIZE"] = "1"

    from demoserver.config import get_settings
    get_settings.cache_clear()

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "docker: mark test as requiring Docker")


# ============================================================================
# Fakes
# ============================================================================

class FakeContainer:
    def __init__(self, spec: ContainerSpec):
        self.id = uuid.uuid4().hex
        self.spec = spec
        self.name = spec.name
        self.state = "created"
        self.labels = dict(spec.labels)
        self.mounts: List[ContainerMount] = []

    def info(self) -> ContainerInfo:
        return ContainerInfo(
            id=self.id,
            name=self.name,
            state=self.state,
            labels=dict(self.labels),
            mounts=list(self.mounts),
        )


class FakeRuntime(RuntimeGateway):
    """
    In-memory runtime gateway.

    ``exec_handler(container_name, command)`` decides command results;
    by default every command succeeds with empty output.
    """

    def __init__(self):
        self.containers: Dict[str, FakeContainer] = {}
        self.images: Set[str] = set()
        self.volumes: Set[str] = set()
        self.networks: Set[str] = set()
        self.exec_log: List[Tuple[str, str]] = []
        self.removed: List[str] = []
        self.stopped: List[str] = []
        self.pulled: List[str] = []
        self.commit_id = "sha256:" + "ab" * 32
        self.exec_handler: Callable[[str, str], ExecResult] = lambda name, command: ExecResult(0, "")

    def _find(self, ref: str) -> Optional[FakeContainer]:
        if ref in self.containers:
            return self.containers[ref]
        for container in self.containers.values():
            if container.id == ref:
                return container
        return None

    async def create_container(self, spec: ContainerSpec) -> str:
        if spec.name in self.containers:
            from demoserver.errors import RuntimeGatewayError
            raise RuntimeGatewayError("create", spec.name, "name already in use")
        container = FakeContainer(spec)
        self.containers[spec.name] = container
        return container.id

    async def start_container(self, ref: str) -> None:
        container = self._find(ref)
        if container is None:
            from demoserver.errors import ContainerNotFound
            raise ContainerNotFound(ref, "start")
        container.state = "running"

    async def stop_container(self, ref: str) -> None:
        container = self._find(ref)
        if container is not None:
            container.state = "exited"
            self.stopped.append(container.name)

    async def remove_container(self, ref: str, remove_volumes: bool = True) -> None:
        container = self._find(ref)
        if container is not None:
            del self.containers[container.name]
            self.removed.append(container.name)

    async def container_exists(self, ref: str) -> bool:
        return self._find(ref) is not None

    async def inspect_container(self, ref: str) -> ContainerInfo:
        container = self._find(ref)
        if container is None:
            from demoserver.errors import ContainerNotFound
            raise ContainerNotFound(ref, "inspect")
        return container.info()

    async def list_containers(self, label: Optional[str] = None) -> List[ContainerInfo]:
        return [
            c.info() for c in self.containers.values()
            if label is None or label in c.labels
        ]

    async def exec_shell(self, ref: str, command: str) -> ExecResult:
        container = self._find(ref)
        name = container.name if container else ref
        self.exec_log.append((name, command))
        return self.exec_handler(name, command)

    async def remove_volume(self, name: str) -> None:
        self.volumes.discard(name)

    async def image_exists(self, ref: str) -> bool:
        return ref in self.images

    async def pull_image(self, ref: str) -> None:
        self.pulled.append(ref)
        self.images.add(ref)

    async def commit_container(self, ref: str, repository: str, tag: str) -> str:
        if self.commit_id:
            self.images.add(f"{repository}:{tag}")
        return self.commit_id

    async def tag_image(self, image_id: str, repository: str, tag: str) -> None:
        self.images.add(f"{repository}:{tag}")

    async def ensure_network(self, name: str) -> None:
        self.networks.add(name)

    def commands_for(self, name: str) -> List[str]:
        return [command for container, command in self.exec_log if container == name]


class FakeProvisioner:
    """Stands in for DatabaseProvisioner, tracking databases in memory."""

    def __init__(self):
        self.databases: Set[str] = set()
        self.users: Set[str] = set()
        self.dropped: List[str] = []
        self.imports: List[Tuple[str, str]] = []
        self.clones: List[Tuple[str, str]] = []
        self.ping_failures = 0
        self.fail_drop_for: Set[str] = set()

    async def create_database(self, db_name, db_user, db_pass, site_id=None):
        from demoserver.errors import SiteIdCollision
        if db_name in self.databases or db_user in self.users:
            raise SiteIdCollision(f"Database {db_name} already exists", site_id)
        self.databases.add(db_name)
        self.users.add(db_user)

    async def import_dump(self, db_name, dump_path):
        self.imports.append((db_name, dump_path))

    async def clone_database(self, source, target):
        self.clones.append((source, target))

    async def drop_database(self, db_name, db_user):
        from demoserver.errors import DemoServerError
        if db_name in self.fail_drop_for:
            raise DemoServerError(f"Failed to drop database {db_name}: access denied")
        self.databases.discard(db_name)
        self.users.discard(db_user)
        self.dropped.append(db_name)

    async def ping(self):
        if self.ping_failures > 0:
            self.ping_failures -= 1
            raise ConnectionError("Can't connect to MySQL server")

    async def ensure_database(self, db_name):
        self.databases.add(db_name)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    from demoserver.config import get_settings
    return get_settings()


@pytest.fixture
def fake_runtime(settings):
    runtime = FakeRuntime()
    runtime.images.add(settings.golden_image)
    return runtime


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()


@pytest_asyncio.fixture
async def store(tmp_path):
    """SiteStore backed by a throwaway SQLite database."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from demoserver.database import Base
    from demoserver.services.site_store import SiteStore

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield SiteStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    await engine.dispose()


@pytest.fixture
def task_manager():
    from demoserver.services.task_manager import TaskManager
    return TaskManager()


@pytest.fixture
def orchestrator(fake_runtime, store, fake_provisioner):
    from demoserver.services.golden_image import GoldenImageBuilder
    from demoserver.services.readiness import ReadinessProber
    from demoserver.services.site_orchestrator import SiteOrchestrator

    prober = ReadinessProber(fake_runtime)
    golden = GoldenImageBuilder(fake_runtime, fake_provisioner, prober)
    return SiteOrchestrator(fake_runtime, store, fake_provisioner, prober, golden)


@pytest.fixture
def pool_manager(orchestrator, task_manager):
    from demoserver.services.pool_manager import PoolManager
    return PoolManager(orchestrator, task_manager)


async def age_site(runtime: FakeRuntime, store, site_id: str, minutes: float):
    """Backdate both the container label and the store row of a site."""
    import time
    from datetime import timedelta
    from sqlalchemy import update
    from demoserver.models import PoolSite, Site
    from demoserver.services.site_labels import CREATED_AT_LABEL
    from demoserver.services.site_store import utcnow

    container = runtime.containers.get(f"wp_{site_id}")
    if container is not None:
        container.labels[CREATED_AT_LABEL] = str(int((time.time() - minutes * 60) * 1000))

    async with store._session_factory() as session:
        for model in (Site, PoolSite):
            await session.execute(
                update(model)
                .where(model.site_id == site_id)
                .values(created_at=utcnow() - timedelta(minutes=minutes))
            )
        await session.commit()


@pytest.fixture
def age(fake_runtime, store):
    """age(site_id, minutes): make a site look ``minutes`` old."""
    async def _age(site_id: str, minutes: float):
        await age_site(fake_runtime, store, site_id, minutes)
    return _age
