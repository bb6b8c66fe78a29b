"""
Container runtime access.

Usage:
    from demoserver.runtime import get_runtime

    runtime = get_runtime()
    container_id = await runtime.create_container(spec)
"""

from typing import Optional

from .base import ContainerInfo, ContainerMount, ContainerSpec, ExecResult, RuntimeGateway

_runtime: Optional[RuntimeGateway] = None


def get_runtime() -> RuntimeGateway:
    """Get the process-wide runtime gateway."""
    global _runtime
    if _runtime is None:
        from .docker import DockerRuntime
        _runtime = DockerRuntime()
    return _runtime


__all__ = [
    "ContainerInfo",
    "ContainerMount",
    "ContainerSpec",
    "ExecResult",
    "RuntimeGateway",
    "get_runtime",
]
