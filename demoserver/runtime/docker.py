"""
Docker implementation of the runtime gateway.

Uses the Docker SDK for Python. The SDK is synchronous, so every call is
pushed to a worker thread with ``asyncio.to_thread`` to keep the event loop
free while the engine works.
"""

import asyncio
import logging
from typing import List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from ..errors import ContainerNotFound, RuntimeGatewayError
from ..utils.retry import create_retry_decorator
from .base import ContainerInfo, ContainerMount, ContainerSpec, ExecResult, RuntimeGateway

logger = logging.getLogger(__name__)


def _to_info(container) -> ContainerInfo:
    mounts = [
        ContainerMount(
            type=m.get("Type", ""),
            name=m.get("Name"),
            destination=m.get("Destination", ""),
        )
        for m in container.attrs.get("Mounts") or []
    ]
    return ContainerInfo(
        id=container.id,
        name=container.name,
        state=container.status,
        labels=dict(container.labels or {}),
        mounts=mounts,
    )


class DockerRuntime(RuntimeGateway):
    """Runtime gateway backed by the local Docker engine."""

    def __init__(self, client: Optional["docker.DockerClient"] = None):
        self._docker_client = client

    @property
    def docker_client(self) -> "docker.DockerClient":
        """Lazy-initialize Docker client on first use."""
        if self._docker_client is None:
            self._docker_client = docker.from_env()
        return self._docker_client

    async def _get(self, ref: str, operation: str):
        try:
            return await asyncio.to_thread(self.docker_client.containers.get, ref)
        except NotFound:
            raise ContainerNotFound(ref, operation)
        except DockerException as e:
            raise RuntimeGatewayError(operation, ref, str(e))

    # ========================================================================
    # Containers
    # ========================================================================

    async def create_container(self, spec: ContainerSpec) -> str:
        kwargs = {
            "name": spec.name,
            "environment": spec.environment,
            "labels": spec.labels,
            "detach": True,
        }
        if spec.network:
            kwargs["network"] = spec.network
        if spec.mem_limit:
            kwargs["mem_limit"] = spec.mem_limit
        if spec.volumes:
            kwargs["volumes"] = spec.volumes
        if spec.ports:
            kwargs["ports"] = {f"{port}/tcp": None for port in spec.ports}

        try:
            container = await asyncio.to_thread(
                self.docker_client.containers.create, spec.image, **kwargs
            )
        except DockerException as e:
            raise RuntimeGatewayError("create", spec.name, str(e))

        logger.info(f"[DOCKER] Created container {spec.name} ({container.id[:12]})")
        return container.id

    async def start_container(self, ref: str) -> None:
        container = await self._get(ref, "start")
        try:
            await asyncio.to_thread(container.start)
        except DockerException as e:
            raise RuntimeGatewayError("start", ref, str(e))
        logger.info(f"[DOCKER] Started container {ref}")

    async def stop_container(self, ref: str) -> None:
        try:
            container = await self._get(ref, "stop")
            await asyncio.to_thread(container.stop, timeout=10)
            logger.info(f"[DOCKER] Stopped container {ref}")
        except ContainerNotFound:
            logger.info(f"[DOCKER] Container {ref} already gone, nothing to stop")
        except APIError as e:
            # 304 Not Modified: already stopped
            if e.status_code == 304:
                logger.info(f"[DOCKER] Container {ref} already stopped")
                return
            raise RuntimeGatewayError("stop", ref, str(e))

    async def remove_container(self, ref: str, remove_volumes: bool = True) -> None:
        try:
            container = await self._get(ref, "remove")
            await asyncio.to_thread(container.remove, v=remove_volumes, force=True)
            logger.info(f"[DOCKER] Removed container {ref}")
        except ContainerNotFound:
            logger.info(f"[DOCKER] Container {ref} already removed")
        except NotFound:
            # Removed by someone else between get and remove
            logger.info(f"[DOCKER] Container {ref} already removed")
        except DockerException as e:
            raise RuntimeGatewayError("remove", ref, str(e))

    async def container_exists(self, ref: str) -> bool:
        try:
            await self._get(ref, "inspect")
            return True
        except ContainerNotFound:
            return False

    async def inspect_container(self, ref: str) -> ContainerInfo:
        container = await self._get(ref, "inspect")
        return _to_info(container)

    async def list_containers(self, label: Optional[str] = None) -> List[ContainerInfo]:
        filters = {"label": label} if label else None
        try:
            containers = await asyncio.to_thread(
                self.docker_client.containers.list, all=True, filters=filters
            )
        except DockerException as e:
            raise RuntimeGatewayError("list", label or "*", str(e))
        return [_to_info(c) for c in containers]

    async def exec_shell(self, ref: str, command: str) -> ExecResult:
        container = await self._get(ref, "exec")
        try:
            result = await asyncio.to_thread(
                container.exec_run, ["sh", "-lc", command], stdout=True, stderr=True
            )
        except DockerException as e:
            raise RuntimeGatewayError("exec", ref, str(e))

        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return ExecResult(exit_code=result.exit_code, output=output)

    # ========================================================================
    # Volumes, images and networks
    # ========================================================================

    async def remove_volume(self, name: str) -> None:
        try:
            volume = await asyncio.to_thread(self.docker_client.volumes.get, name)
            await asyncio.to_thread(volume.remove, force=True)
            logger.info(f"[DOCKER] Removed volume {name}")
        except NotFound:
            logger.info(f"[DOCKER] Volume {name} already removed")
        except DockerException as e:
            raise RuntimeGatewayError("remove_volume", name, str(e))

    async def image_exists(self, ref: str) -> bool:
        try:
            await asyncio.to_thread(self.docker_client.images.get, ref)
            return True
        except NotFound:
            return False
        except DockerException as e:
            raise RuntimeGatewayError("inspect_image", ref, str(e))

    @create_retry_decorator(retryable_exceptions=(RuntimeGatewayError,), max_attempts=3, min_wait=2.0)
    async def pull_image(self, ref: str) -> None:
        logger.info(f"[DOCKER] Pulling image {ref}")
        try:
            await asyncio.to_thread(self.docker_client.images.pull, ref)
        except DockerException as e:
            raise RuntimeGatewayError("pull", ref, str(e))

    async def commit_container(self, ref: str, repository: str, tag: str) -> str:
        container = await self._get(ref, "commit")
        try:
            image = await asyncio.to_thread(container.commit, repository=repository, tag=tag)
        except DockerException as e:
            raise RuntimeGatewayError("commit", ref, str(e))
        return image.id or ""

    async def tag_image(self, image_id: str, repository: str, tag: str) -> None:
        try:
            image = await asyncio.to_thread(self.docker_client.images.get, image_id)
            await asyncio.to_thread(image.tag, repository, tag)
        except DockerException as e:
            raise RuntimeGatewayError("tag", image_id, str(e))

    async def ensure_network(self, name: str) -> None:
        try:
            existing = await asyncio.to_thread(self.docker_client.networks.list, names=[name])
            if any(n.name == name for n in existing):
                return
            await asyncio.to_thread(self.docker_client.networks.create, name, driver="bridge")
            logger.info(f"[DOCKER] Created network {name}")
        except DockerException as e:
            raise RuntimeGatewayError("network", name, str(e))
