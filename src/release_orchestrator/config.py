"""Configuration for the release pipeline.

Two sources, merged once at startup into an immutable
:class:`~src.release_shared.models.PipelineRun`:

* environment variables (:class:`PipelineSettings`, pydantic-settings) for
  the deployment target -- the same names the CI workflow exports;
* an optional YAML file (:func:`load_release_config`) for scan, build and
  deploy tunables.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Mapping

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from src.release_shared.constants import (
    DEFAULT_BRANCHES,
    DEFAULT_BUILD_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SCAN_TIMEOUT,
    DEFAULT_SEVERITIES,
    DEFAULT_WAIT_TIMEOUT,
    GITHUB_EVENT_KINDS,
    KNOWN_SEVERITIES,
    STATE_DIR,
)
from src.release_shared.exceptions import ConfigurationError
from src.release_shared.models import (
    BuildPolicy,
    DeployPolicy,
    PipelineRun,
    ScanPolicy,
    Trigger,
    TriggerKind,
)


class PipelineSettings(BaseSettings):
    """Deployment target options read from the environment."""
    aws_region: str = Field(default="", validation_alias="AWS_REGION")
    ecr_repo_name: str = Field(default="", validation_alias="ECR_REPO_NAME")
    ecs_cluster: str = Field(default="", validation_alias="ECS_CLUSTER")
    ecs_service: str = Field(default="", validation_alias="ECS_SERVICE")
    container_name: str = Field(default="", validation_alias="CONTAINER_NAME")
    task_def_file: str = Field(default="", validation_alias="TASK_DEF_FILE")
    aws_role: str = Field(default="", validation_alias="AWS_ROLE")
    ecr_registry: str = Field(default="", validation_alias="ECR_REGISTRY")
    github_token: str = Field(default="", validation_alias="GITHUB_TOKEN")
    github_api_url: str = Field(
        default="https://api.github.com", validation_alias="GITHUB_API_URL"
    )
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    # option name -> environment variable, in the order they are reported
    REQUIRED: ClassVar[tuple[tuple[str, str], ...]] = (
        ("aws_region", "AWS_REGION"),
        ("ecr_repo_name", "ECR_REPO_NAME"),
        ("ecs_cluster", "ECS_CLUSTER"),
        ("ecs_service", "ECS_SERVICE"),
        ("container_name", "CONTAINER_NAME"),
        ("task_def_file", "TASK_DEF_FILE"),
        ("aws_role", "AWS_ROLE"),
    )

    def missing_required(self) -> list[str]:
        """Return the environment names of required options left empty."""
        return [env for attr, env in self.REQUIRED if not str(getattr(self, attr)).strip()]


@dataclass
class ScanConfig:
    """Configuration for both Trivy scans."""

    severities: list[str] = field(default_factory=lambda: list(DEFAULT_SEVERITIES))
    ignore_unfixed_fs: bool = True
    ignore_unfixed_image: bool = False
    trivy_binary: str = "trivy"
    timeout: int = DEFAULT_SCAN_TIMEOUT


@dataclass
class BuildConfig:
    """Configuration for the docker build."""

    context_dir: str = "."
    dockerfile: str = ""
    docker_binary: str = "docker"
    timeout: int = DEFAULT_BUILD_TIMEOUT


@dataclass
class DeployConfig:
    """Configuration for the ECS rollout."""

    wait_timeout: int = DEFAULT_WAIT_TIMEOUT
    poll_interval: int = DEFAULT_POLL_INTERVAL
    force_new_deployment: bool = True


@dataclass
class TriggerConfig:
    """Which branches the pipeline acts on."""

    branches: list[str] = field(default_factory=lambda: list(DEFAULT_BRANCHES))


@dataclass
class ReleaseConfig:
    """Top-level configuration composing all sub-configs."""

    scan: ScanConfig = field(default_factory=ScanConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    output_dir: str = STATE_DIR


def _pick(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter *data* to only keys accepted by *cls*."""
    valid = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in valid}


def load_release_config(path: Path | str | None = None) -> ReleaseConfig:
    """Load the pipeline configuration from a YAML file.

    Missing sections fall back to defaults. Unknown keys are ignored.

    Args:
        path: Path to config YAML. If ``None`` or the file does not exist,
              returns full defaults.

    Raises:
        ConfigurationError: If the file is not valid YAML, is not a mapping,
            or lists an unknown severity.
    """
    if path is None:
        return ReleaseConfig()

    path = Path(path)
    if not path.exists():
        return ReleaseConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")

    sections = {}
    for key in ("scan", "build", "deploy", "trigger"):
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            raise ConfigurationError(f"Section '{key}' in {path} must be a mapping")
        sections[key] = value

    cfg = ReleaseConfig(
        scan=ScanConfig(**_pick(sections["scan"], ScanConfig)),
        build=BuildConfig(**_pick(sections["build"], BuildConfig)),
        deploy=DeployConfig(**_pick(sections["deploy"], DeployConfig)),
        trigger=TriggerConfig(**_pick(sections["trigger"], TriggerConfig)),
        output_dir=str(raw.get("output_dir") or STATE_DIR),
    )

    cfg.scan.severities = [str(s).upper() for s in cfg.scan.severities]
    unknown = sorted(set(cfg.scan.severities) - KNOWN_SEVERITIES)
    if unknown:
        raise ConfigurationError(f"Unknown severities in {path}: {', '.join(unknown)}")
    if not cfg.scan.severities:
        raise ConfigurationError(f"scan.severities in {path} must not be empty")
    return cfg


def _pull_request_number(event_path: str) -> int | None:
    if not event_path:
        return None
    try:
        payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    pull_request = payload.get("pull_request")
    if isinstance(pull_request, dict) and pull_request.get("number"):
        number = pull_request["number"]
    else:
        number = payload.get("number")
    try:
        return int(number) if number else None
    except (TypeError, ValueError):
        return None


def trigger_from_env(
    environ: Mapping[str, str] | None = None,
    event: str | None = None,
    revision: str | None = None,
    branch: str | None = None,
    change_request: int | None = None,
    repository: str | None = None,
) -> Trigger:
    """Build the :class:`Trigger` from GitHub Actions variables.

    Explicit arguments override the environment.

    Raises:
        ConfigurationError: If the event is unsupported or no revision is known.
    """
    env = os.environ if environ is None else environ
    event_name = event or env.get("GITHUB_EVENT_NAME", "")
    if event_name in (k.value for k in TriggerKind):
        kind = TriggerKind(event_name)
    elif event_name in GITHUB_EVENT_KINDS:
        kind = TriggerKind(GITHUB_EVENT_KINDS[event_name])
    else:
        raise ConfigurationError(
            f"Unsupported trigger event '{event_name}' "
            f"(expected one of: {', '.join(GITHUB_EVENT_KINDS)})"
        )

    sha = (revision or env.get("GITHUB_SHA", "")).strip()
    if not sha:
        raise ConfigurationError("No source revision (set GITHUB_SHA or pass --sha)")

    if branch is None:
        # pull_request events carry the target branch in GITHUB_BASE_REF
        branch = env.get("GITHUB_BASE_REF") or env.get("GITHUB_REF_NAME", "")
    if change_request is None and kind is TriggerKind.REVIEW_REQUEST:
        change_request = _pull_request_number(env.get("GITHUB_EVENT_PATH", ""))

    return Trigger(
        kind=kind,
        revision=sha,
        branch=branch,
        change_request=change_request,
        repository=repository or env.get("GITHUB_REPOSITORY", ""),
    )


def build_pipeline_run(
    settings: PipelineSettings,
    config: ReleaseConfig,
    trigger: Trigger,
) -> PipelineRun:
    """Merge settings, file config and trigger into one :class:`PipelineRun`.

    Raises:
        ConfigurationError: Naming every required option that is missing.
    """
    missing = settings.missing_required()
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}"
        )
    return PipelineRun(
        trigger=trigger,
        region=settings.aws_region.strip(),
        repository_name=settings.ecr_repo_name.strip(),
        cluster=settings.ecs_cluster.strip(),
        service=settings.ecs_service.strip(),
        container_name=settings.container_name.strip(),
        task_definition_path=settings.task_def_file.strip(),
        role_arn=settings.aws_role.strip(),
        registry=settings.ecr_registry.strip(),
        scan=ScanPolicy(
            severities=tuple(config.scan.severities),
            ignore_unfixed_filesystem=config.scan.ignore_unfixed_fs,
            ignore_unfixed_image=config.scan.ignore_unfixed_image,
            scanner_binary=config.scan.trivy_binary,
            timeout=config.scan.timeout,
        ),
        build=BuildPolicy(
            context_dir=config.build.context_dir,
            dockerfile=config.build.dockerfile,
            docker_binary=config.build.docker_binary,
            timeout=config.build.timeout,
        ),
        deploy=DeployPolicy(
            wait_timeout=float(config.deploy.wait_timeout),
            poll_interval=float(config.deploy.poll_interval),
            force_new_deployment=config.deploy.force_new_deployment,
        ),
        output_dir=config.output_dir,
    )
