"""Shared fixtures for the release pipeline tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.release_shared.models import (
    ArtifactIdentity,
    BuildPolicy,
    DeployPolicy,
    PipelineRun,
    ScanPolicy,
    Trigger,
    TriggerKind,
)

REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"
REVISION = "3f2a9c1d0b8e7f6a5c4d3e2f1a0b9c8d7e6f5a4b"
TASK_DEF_ARN = "arn:aws:ecs:us-east-1:123456789012:task-definition/shop:42"
OLD_TASK_DEF_ARN = "arn:aws:ecs:us-east-1:123456789012:task-definition/shop:41"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def make_vulnerability(
    pkg: str = "openssl",
    version: str = "1.1.1k",
    vuln_id: str = "CVE-2023-0001",
    severity: str = "CRITICAL",
    fixed: str | None = "1.1.1t",
    description: str | None = "Buffer overflow in X.509 parsing",
) -> dict[str, Any]:
    vuln: dict[str, Any] = {
        "VulnerabilityID": vuln_id,
        "PkgName": pkg,
        "InstalledVersion": version,
        "Severity": severity,
    }
    if fixed is not None:
        vuln["FixedVersion"] = fixed
    if description is not None:
        vuln["Description"] = description
    return vuln


def make_trivy_report(
    vulnerabilities: list[dict[str, Any]] | None = None,
    artifact: str = ".",
) -> dict[str, Any]:
    return {
        "SchemaVersion": 2,
        "ArtifactName": artifact,
        "ArtifactType": "filesystem",
        "Results": [
            {
                "Target": "requirements.txt",
                "Class": "lang-pkgs",
                "Type": "pip",
                "Vulnerabilities": vulnerabilities or [],
            }
        ],
    }


def make_task_definition(web_image: str = "nginx:latest") -> dict[str, Any]:
    """A task definition as returned by ``describe-task-definition``."""
    return {
        "taskDefinitionArn": OLD_TASK_DEF_ARN,
        "family": "shop",
        "revision": 41,
        "status": "ACTIVE",
        "requiresAttributes": [{"name": "com.amazonaws.ecs.capability.ecr-auth"}],
        "compatibilities": ["EC2", "FARGATE"],
        "registeredAt": "2024-05-01T10:00:00Z",
        "registeredBy": "arn:aws:iam::123456789012:role/deployer",
        "networkMode": "awsvpc",
        "cpu": "256",
        "memory": "512",
        "requiresCompatibilities": ["FARGATE"],
        "containerDefinitions": [
            {"name": "web", "image": web_image, "essential": True},
            {"name": "db", "image": "postgres:16", "essential": True},
        ],
    }


def make_service(
    task_definition: str = TASK_DEF_ARN,
    desired: int = 2,
    running: int = 2,
    deployments: list[dict[str, Any]] | None = None,
    status: str = "ACTIVE",
) -> dict[str, Any]:
    if deployments is None:
        deployments = [
            {
                "id": "ecs-svc/1",
                "status": "PRIMARY",
                "taskDefinition": task_definition,
                "desiredCount": desired,
                "runningCount": running,
                "pendingCount": 0,
                "rolloutState": "COMPLETED",
            }
        ]
    return {
        "serviceName": "shop-web",
        "status": status,
        "desiredCount": desired,
        "runningCount": running,
        "pendingCount": 0,
        "deployments": deployments,
    }


def make_rolling_service(desired: int = 2, new_running: int = 1, old_running: int = 2) -> dict[str, Any]:
    """A service mid-rollout: new PRIMARY plus the old ACTIVE deployment."""
    return make_service(
        desired=desired,
        running=new_running + old_running,
        deployments=[
            {
                "id": "ecs-svc/2",
                "status": "PRIMARY",
                "taskDefinition": TASK_DEF_ARN,
                "desiredCount": desired,
                "runningCount": new_running,
                "rolloutState": "IN_PROGRESS",
            },
            {
                "id": "ecs-svc/1",
                "status": "ACTIVE",
                "taskDefinition": OLD_TASK_DEF_ARN,
                "desiredCount": desired,
                "runningCount": old_running,
                "rolloutState": "COMPLETED",
            },
        ],
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def identity() -> ArtifactIdentity:
    return ArtifactIdentity(registry=REGISTRY, repository="shop", revision=REVISION)


@pytest.fixture
def task_def_file(tmp_path: Path) -> Path:
    path = tmp_path / "task-definition.json"
    path.write_text(json.dumps(make_task_definition(), indent=2), encoding="utf-8")
    return path


def _run(tmp_path: Path, task_def_file: Path, kind: TriggerKind) -> PipelineRun:
    trigger = Trigger(
        kind=kind,
        revision=REVISION,
        branch="main",
        change_request=17 if kind is TriggerKind.REVIEW_REQUEST else None,
        repository="acme/shop",
    )
    return PipelineRun(
        trigger=trigger,
        region="us-east-1",
        repository_name="shop",
        cluster="prod",
        service="shop-web",
        container_name="web",
        task_definition_path=str(task_def_file),
        role_arn="arn:aws:iam::123456789012:role/deployer",
        scan=ScanPolicy(),
        build=BuildPolicy(context_dir=str(tmp_path)),
        deploy=DeployPolicy(wait_timeout=5.0, poll_interval=0.01),
        output_dir=str(tmp_path / ".release-pipeline"),
    )


@pytest.fixture
def integration_run(tmp_path: Path, task_def_file: Path) -> PipelineRun:
    """A push-to-main run."""
    return _run(tmp_path, task_def_file, TriggerKind.DIRECT_INTEGRATION)


@pytest.fixture
def review_run(tmp_path: Path, task_def_file: Path) -> PipelineRun:
    """A pull request run."""
    return _run(tmp_path, task_def_file, TriggerKind.REVIEW_REQUEST)


@pytest.fixture
def ecs_boto() -> MagicMock:
    """A boto3 ``ecs`` client whose rollout converges on the first poll."""
    client = MagicMock()
    client.register_task_definition.return_value = {
        "taskDefinition": {"taskDefinitionArn": TASK_DEF_ARN, "revision": 42}
    }
    client.update_service.return_value = {"service": make_rolling_service()}
    client.describe_services.return_value = {"services": [make_service()], "failures": []}
    return client


@pytest.fixture
def ecr_boto() -> MagicMock:
    """A boto3 ``ecr`` client returning a login token for ``AWS:secret``."""
    client = MagicMock()
    client.get_authorization_token.return_value = {
        "authorizationData": [
            {
                "authorizationToken": "QVdTOnNlY3JldA==",
                "proxyEndpoint": f"https://{REGISTRY}",
            }
        ]
    }
    return client
