"""
Exceptions for fatal conditions.

Recoverable conditions are logged and reported through result objects;
these exceptions are reserved for cases where continuing would make the
run meaningless.
"""


class KerneltestError(Exception):
    """Base class for kerneltest errors."""


class PreconditionError(KerneltestError):
    """A required input is missing; nothing has been booted or run."""


class KernelNotFoundError(PreconditionError):
    """No installed kernel matches the requested version."""


class KernelArtifactMissingError(PreconditionError):
    """The resolved kernel's image or module tree is absent or unreadable."""


class WorkloadMissingError(PreconditionError):
    """The pre-built workload binary is not present on the workspace."""


class ToolMissingError(PreconditionError):
    """A host tool needed to boot a guest (vng, qemu) is not installed."""


class ProvisioningError(KerneltestError):
    """A fatal step of guest environment construction failed."""


class ReadinessTimeoutError(KerneltestError):
    """The workload never reported ready within its attempt budget."""

    def __init__(self, attempts: int, message: str = ""):
        self.attempts = attempts
        super().__init__(message or f"Workload not ready after {attempts} attempts")
