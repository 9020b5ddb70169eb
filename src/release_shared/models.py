"""Shared data models for the release pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from src.release_shared.constants import (
    DEFAULT_BUILD_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SCAN_TIMEOUT,
    DEFAULT_SEVERITIES,
    DEFAULT_WAIT_TIMEOUT,
    STATE_DIR,
)


class TriggerKind(str, Enum):
    """What kind of event started the run."""
    REVIEW_REQUEST = "review_request"
    DIRECT_INTEGRATION = "direct_integration"


class ScanKind(str, Enum):
    """What the scanner looks at."""
    FILESYSTEM = "filesystem"
    IMAGE = "image"


@dataclass(frozen=True)
class Trigger:
    """Metadata of the event that started the run."""
    kind: TriggerKind
    revision: str
    branch: str = ""
    change_request: int | None = None
    repository: str = ""

    @property
    def is_review(self) -> bool:
        return self.kind is TriggerKind.REVIEW_REQUEST

    @property
    def is_integration(self) -> bool:
        return self.kind is TriggerKind.DIRECT_INTEGRATION


@dataclass(frozen=True)
class ArtifactIdentity:
    """Immutable image reference: ``<registry>/<repository>:<revision>``."""
    registry: str
    repository: str
    revision: str

    @property
    def uri(self) -> str:
        return f"{self.registry}/{self.repository}:{self.revision}"

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class LocalImage:
    """Handle to an image built into the local docker daemon."""
    tag: str
    image_id: str = ""


@dataclass(frozen=True)
class PublishedImage:
    """An image the registry now serves under ``identity``."""
    identity: ArtifactIdentity
    image_id: str = ""


@dataclass(frozen=True)
class Finding:
    """A single vulnerability tied to a package and version."""
    pkg_name: str
    installed_version: str
    vulnerability_id: str
    severity: str
    fixed_version: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ScanReport:
    """Severity-filtered findings from one scanner invocation.

    ``error`` is set when the scanner failed; the report is then empty.
    """
    kind: ScanKind
    target: str
    findings: tuple[Finding, ...] = ()
    report_path: str = ""
    error: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.findings

    def severity_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for finding in self.findings:
            counts[finding.severity] = counts.get(finding.severity, 0) + 1
        return counts


@dataclass(frozen=True)
class ScanPolicy:
    """Which findings are retained, and how the scanner is invoked."""
    severities: tuple[str, ...] = tuple(DEFAULT_SEVERITIES)
    ignore_unfixed_filesystem: bool = True
    ignore_unfixed_image: bool = False
    scanner_binary: str = "trivy"
    timeout: int = DEFAULT_SCAN_TIMEOUT

    def ignore_unfixed(self, kind: ScanKind) -> bool:
        if kind is ScanKind.FILESYSTEM:
            return self.ignore_unfixed_filesystem
        return self.ignore_unfixed_image


@dataclass(frozen=True)
class DeployPolicy:
    """How the deployment coordinator talks to ECS and how long it waits."""
    wait_timeout: float = float(DEFAULT_WAIT_TIMEOUT)
    poll_interval: float = float(DEFAULT_POLL_INTERVAL)
    force_new_deployment: bool = True


@dataclass(frozen=True)
class BuildPolicy:
    """How the image is built."""
    context_dir: str = "."
    dockerfile: str = ""
    docker_binary: str = "docker"
    timeout: int = DEFAULT_BUILD_TIMEOUT


@dataclass(frozen=True)
class PipelineRun:
    """Everything one run needs, built once at start and passed explicitly."""
    trigger: Trigger
    region: str
    repository_name: str
    cluster: str
    service: str
    container_name: str
    task_definition_path: str
    role_arn: str = ""
    registry: str = ""
    scan: ScanPolicy = field(default_factory=ScanPolicy)
    build: BuildPolicy = field(default_factory=BuildPolicy)
    deploy: DeployPolicy = field(default_factory=DeployPolicy)
    output_dir: str = STATE_DIR


@dataclass(frozen=True)
class DeploymentSnapshot:
    """One entry of an ECS service's ``deployments`` list."""
    id: str
    status: str
    task_definition: str
    desired_count: int = 0
    running_count: int = 0
    pending_count: int = 0
    rollout_state: str = ""


@dataclass(frozen=True)
class ServiceDeploymentState:
    """Observed live state of the target service."""
    status: str
    desired_count: int
    running_count: int
    pending_count: int = 0
    deployments: tuple[DeploymentSnapshot, ...] = ()

    @property
    def is_steady(self) -> bool:
        """One deployment left and every desired task is running."""
        if len(self.deployments) != 1:
            return False
        if self.running_count != self.desired_count:
            return False
        only = self.deployments[0]
        return only.running_count == only.desired_count
