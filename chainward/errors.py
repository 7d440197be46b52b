"""Exception hierarchy for Chainward.

Fatal conditions surface as ``ChainwardError`` subclasses. Polling code keeps
its own private "not ready" exceptions and never lets them escape a phase.
"""

from __future__ import annotations


class ChainwardError(Exception):
    """Base class for every error raised by Chainward."""


class ConfigError(ChainwardError):
    """Resolved configuration is incomplete or invalid."""


class RequirementError(ChainwardError):
    """A required external tool is not installed."""


class TemplateError(ChainwardError):
    """Bootstrap template could not be rendered."""


class ProviderError(ChainwardError):
    """Uniform wrapper for a failed cloud provider call."""

    def __init__(self, operation: str, message: str, code: str | None = None) -> None:
        self.operation = operation
        self.code = code
        self.message = message
        detail = f"{operation} failed"
        if code:
            detail += f" ({code})"
        super().__init__(f"{detail}: {message}")


class KeyMaterialError(ChainwardError):
    """Private key material could not be retrieved or persisted."""


class ProvisioningError(ChainwardError):
    """A workflow step failed fatally."""

    def __init__(self, state: str, reason: str) -> None:
        self.state = state
        self.reason = reason
        super().__init__(f"[{state}] {reason}")


class WorkflowInterrupted(ChainwardError):
    """Raised from a signal handler to route an interrupt into teardown."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")


class DeploymentNotFoundError(ChainwardError):
    """No persisted record exists for the requested deployment."""
