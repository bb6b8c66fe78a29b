"""
Exception hierarchy for site provisioning and reclamation.

Every error carries enough context (site id, step, command output) to be
logged meaningfully. The HTTP layer maps these to JSON ``{"error": ...}``
bodies; see ``main.py``.
"""
from typing import Optional


class DemoServerError(Exception):
    """Base class for all orchestrator errors."""

    status_code = 500

    def __init__(self, message: str, site_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.site_id = site_id


class RuntimeGatewayError(DemoServerError):
    """The container engine rejected an operation."""

    def __init__(self, operation: str, ref: str, detail: str):
        super().__init__(f"{operation} failed for {ref}: {detail}")
        self.operation = operation
        self.ref = ref
        self.detail = detail


class ContainerNotFound(RuntimeGatewayError):
    status_code = 404

    def __init__(self, ref: str, operation: str = "lookup"):
        super().__init__(operation, ref, "no such container")


class DatabaseNotReady(DemoServerError):
    """MySQL did not accept connections within the attempt budget."""
    status_code = 503


class ReadinessTimeout(DemoServerError):
    """WordPress did not report installed within the attempt budget."""
    status_code = 504

    def __init__(self, container: str, attempts: int, site_id: Optional[str] = None):
        super().__init__(f"WordPress not ready in time ({container}, {attempts} attempts)", site_id)
        self.container = container
        self.attempts = attempts


class SiteIdCollision(DemoServerError):
    """The generated identifier is already taken; retry with a new one."""
    status_code = 409


class SiteProvisioningError(DemoServerError):
    """Site creation failed; ``stage`` is the last state reached."""

    def __init__(self, message: str, site_id: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message, site_id)
        self.stage = stage


class SiteCommandError(SiteProvisioningError):
    """An in-container configuration command exited non-zero."""

    def __init__(self, command: str, exit_code: int, output: str,
                 site_id: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(
            f"Command '{command}' failed with exit code {exit_code}: {output.strip()}",
            site_id,
            stage,
        )
        self.command = command
        self.exit_code = exit_code
        self.output = output


class GoldenImageUnavailable(DemoServerError):
    """The golden image has not been built yet; new sites cannot be created."""
    status_code = 503


class GoldenImageBuildError(DemoServerError):
    pass


class SiteNotFound(DemoServerError):
    status_code = 404
