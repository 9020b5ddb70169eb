"""Shared test fixtures for the release pipeline test suite."""
from __future__ import annotations

import logging
from typing import Generator

import pytest

from src.shared.logging import run_id_var


@pytest.fixture(autouse=True)
def reset_package_logging() -> Generator[None, None, None]:
    """Drop handlers installed by ``setup_logging`` and the bound run id."""
    token = run_id_var.set("")
    yield
    logging.getLogger("src").handlers.clear()
    run_id_var.reset(token)


@pytest.fixture
def mock_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set mock environment variables for config testing."""
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("ECR_REPO_NAME", "shop")
    monkeypatch.setenv("ECS_CLUSTER", "prod")
    monkeypatch.setenv("ECS_SERVICE", "shop-web")
    monkeypatch.setenv("CONTAINER_NAME", "web")
    monkeypatch.setenv("TASK_DEF_FILE", "task-definition.json")
    monkeypatch.setenv("AWS_ROLE", "arn:aws:iam::123456789012:role/deployer")
