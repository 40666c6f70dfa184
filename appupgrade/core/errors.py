"""Error taxonomy for container lifecycle and upgrade operations."""
from typing import Iterable, List, Optional, Sequence


class UpgradeError(Exception):
    """Base class for every fatal appupgrade error."""
    pass


class PreconditionError(UpgradeError):
    """Raised when an operation's preconditions are not met (no retry)."""
    pass


class InvalidTransitionError(PreconditionError):
    """Raised when a container is asked to move to a state it cannot reach."""
    pass


class ToolInvocationError(UpgradeError):
    """Raised when an external tool exits non-zero."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        super().__init__(message)
        self.command = list(command) if command else []
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        message = super().__str__()
        if self.stderr:
            return f"{message}: {self.stderr.strip()}"
        return message


class StorageOperationError(ToolInvocationError):
    """Raised when a storage mutation fails; carries the dataset or snapshot."""

    def __init__(self, message: str, target: str, **kwargs):
        super().__init__(message, **kwargs)
        self.target = target


class StorageQueryError(ToolInvocationError):
    """Raised when storage state cannot be read or has an unexpected shape."""
    pass


class StopFailedError(ToolInvocationError):
    """Raised when the service supervisor fails to stop a container."""
    pass


class ArtifactRemovalError(ToolInvocationError):
    """Raised when teardown cannot remove one of a container's artifacts."""

    def __init__(self, message: str, artifact: str, **kwargs):
        super().__init__(message, **kwargs)
        self.artifact = artifact


class NotConfiguredError(UpgradeError):
    """Raised when a container's artifact set is incomplete."""

    def __init__(self, name: str, missing: Iterable[str]):
        self.name = name
        self.missing: List[str] = list(missing)
        super().__init__(
            f"container '{name}' is not configured (missing: {', '.join(self.missing)})"
        )


class BootTimeoutError(UpgradeError):
    """Raised when a container does not reach its default target in time."""

    def __init__(self, name: str, attempts: int):
        self.name = name
        self.attempts = attempts
        super().__init__(
            f"container '{name}' did not finish booting after {attempts} attempts"
        )
