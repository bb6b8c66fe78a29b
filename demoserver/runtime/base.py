"""
Abstract container runtime interface.

The orchestrator only talks to the container engine through this
interface, which keeps the lifecycle code testable with an in-memory fake.
Implementations must treat "not found" as success for stop and remove
operations so that teardown can be repeated safely.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ExecResult:
    """Result of a command executed inside a container."""
    exit_code: int
    output: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class ContainerSpec:
    """Everything needed to create a container."""
    image: str
    name: str
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    network: Optional[str] = None
    mem_limit: Optional[str] = None
    # host path -> {"bind": container path, "mode": "ro"|"rw"}
    volumes: Dict[str, Dict[str, str]] = field(default_factory=dict)
    ports: List[int] = field(default_factory=list)


@dataclass
class ContainerMount:
    type: str  # "volume" or "bind"
    name: Optional[str]
    destination: str


@dataclass
class ContainerInfo:
    """Subset of container metadata the orchestrator reads."""
    id: str
    name: str
    state: str  # "running", "exited", "created", ...
    labels: Dict[str, str] = field(default_factory=dict)
    mounts: List[ContainerMount] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    @property
    def named_volumes(self) -> List[str]:
        return [m.name for m in self.mounts if m.type == "volume" and m.name]


class RuntimeGateway(ABC):
    """Capability interface over a container engine."""

    # ========================================================================
    # Containers
    # ========================================================================

    @abstractmethod
    async def create_container(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container. Returns its id."""
        pass

    @abstractmethod
    async def start_container(self, ref: str) -> None:
        pass

    @abstractmethod
    async def stop_container(self, ref: str) -> None:
        """Stop a container. Missing or already stopped containers are not an error."""
        pass

    @abstractmethod
    async def remove_container(self, ref: str, remove_volumes: bool = True) -> None:
        """Force-remove a container and its anonymous volumes. Missing is not an error."""
        pass

    @abstractmethod
    async def container_exists(self, ref: str) -> bool:
        pass

    @abstractmethod
    async def inspect_container(self, ref: str) -> ContainerInfo:
        """Raises ContainerNotFound when the container does not exist."""
        pass

    @abstractmethod
    async def list_containers(self, label: Optional[str] = None) -> List[ContainerInfo]:
        """List running and stopped containers, optionally filtered by label key."""
        pass

    @abstractmethod
    async def exec_shell(self, ref: str, command: str) -> ExecResult:
        """Run ``sh -lc <command>`` in a running container, capturing stdout and stderr."""
        pass

    # ========================================================================
    # Volumes, images and networks
    # ========================================================================

    @abstractmethod
    async def remove_volume(self, name: str) -> None:
        """Force-remove a named volume. Missing is not an error."""
        pass

    @abstractmethod
    async def image_exists(self, ref: str) -> bool:
        pass

    @abstractmethod
    async def pull_image(self, ref: str) -> None:
        pass

    @abstractmethod
    async def commit_container(self, ref: str, repository: str, tag: str) -> str:
        """Commit a container to ``repository:tag``. Returns the image id."""
        pass

    @abstractmethod
    async def tag_image(self, image_id: str, repository: str, tag: str) -> None:
        pass

    @abstractmethod
    async def ensure_network(self, name: str) -> None:
        """Create the network if it does not exist."""
        pass
