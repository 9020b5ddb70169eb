"""Exception taxonomy for the release pipeline.

Fatal errors abort the run; :class:`ScanError` and :class:`NotificationError`
are raised inside their stages, logged, and never escape the pipeline.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    stage: str = ""

    def __init__(self, message: str = "", stage: str = "") -> None:
        if stage:
            self.stage = stage
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Raised for missing or invalid static options."""

    stage = "configuration"


class BuildError(PipelineError):
    """Raised when the container image could not be built."""

    stage = "build"


class PublishError(PipelineError):
    """Raised when the registry transfer failed."""

    stage = "publish"


class ScanError(PipelineError):
    """Raised when the vulnerability scanner could not produce a report."""

    stage = "scan"


class NotificationError(PipelineError):
    """Raised when a report cannot be read or the comment cannot be posted."""

    stage = "report"


class SpecificationError(PipelineError):
    """Raised for a malformed task definition template or container lookup."""

    stage = "register"


class RegistrationError(PipelineError):
    """Raised when ECS rejects the task definition registration."""

    stage = "register"


class UpdateError(PipelineError):
    """Raised when ECS rejects the service update request."""

    stage = "update"


class StabilityError(PipelineError):
    """Raised when the service fails to converge after an accepted update."""

    stage = "wait"


class StabilityTimeoutError(StabilityError):
    """Raised when the service did not reach steady state within the bound."""

    def __init__(self, cluster: str, service: str, timeout: float) -> None:
        self.cluster = cluster
        self.service = service
        self.timeout = timeout
        super().__init__(
            f"Service '{service}' in cluster '{cluster}' did not reach a steady "
            f"state within {timeout:g}s; the update was accepted but has not converged"
        )
