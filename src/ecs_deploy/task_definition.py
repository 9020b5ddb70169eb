"""Task definition template mutation.

:func:`mutate_task_definition` is pure. :func:`load_task_definition` and
:func:`write_task_definition` do the file I/O around it.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

from src.release_shared.exceptions import SpecificationError
from src.release_shared.models import ArtifactIdentity
from src.release_shared.utils import atomic_write_json

logger = logging.getLogger(__name__)

# Assigned by ECS on registration; RegisterTaskDefinition rejects them.
SERVER_ASSIGNED_FIELDS: tuple[str, ...] = (
    "taskDefinitionArn",
    "revision",
    "status",
    "requiresAttributes",
    "compatibilities",
    "registeredAt",
    "registeredBy",
)


def _unwrap(template: dict[str, Any]) -> dict[str, Any]:
    # `aws ecs describe-task-definition` output wraps the document
    inner = template.get("taskDefinition")
    if isinstance(inner, dict) and "containerDefinitions" not in template:
        return inner
    return template


def strip_server_assigned(document: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *document* without the server-assigned fields."""
    return {k: v for k, v in document.items() if k not in SERVER_ASSIGNED_FIELDS}


def find_container(document: dict[str, Any], container_name: str) -> dict[str, Any]:
    """Return the single container definition named *container_name*.

    Raises:
        SpecificationError: If there is no container list, or zero or more
            than one definition carries that name.
    """
    containers = document.get("containerDefinitions")
    if not isinstance(containers, list):
        raise SpecificationError("Task definition has no 'containerDefinitions' list")
    matches = [
        c for c in containers if isinstance(c, dict) and c.get("name") == container_name
    ]
    if not matches:
        names = [c.get("name") for c in containers if isinstance(c, dict)]
        raise SpecificationError(
            f"No container definition named '{container_name}' (found: {names})"
        )
    if len(matches) > 1:
        raise SpecificationError(
            f"{len(matches)} container definitions are named '{container_name}'"
        )
    return matches[0]


def mutate_task_definition(
    template: dict[str, Any],
    container_name: str,
    identity: ArtifactIdentity,
) -> dict[str, Any]:
    """Produce a registrable task definition pointing at *identity*.

    The template is not modified. Running the function again on its own
    output removes nothing further and leaves the image unchanged.

    Raises:
        SpecificationError: If the template is not an object or the
            container lookup fails.
    """
    if not isinstance(template, dict):
        raise SpecificationError("Task definition template is not a JSON object")
    document = strip_server_assigned(copy.deepcopy(_unwrap(template)))
    container = find_container(document, container_name)
    container["image"] = identity.uri
    return document


def load_task_definition(path: Path | str) -> dict[str, Any]:
    """Read a task definition template.

    Raises:
        SpecificationError: If the file is missing or is not a JSON object.
    """
    path = Path(path)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SpecificationError(f"Cannot read task definition {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SpecificationError(f"Task definition {path} is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise SpecificationError(f"Task definition {path} is not a JSON object")
    return document


def write_task_definition(path: Path | str, document: dict[str, Any]) -> Path:
    """Write *document* back to *path* atomically."""
    path = Path(path)
    atomic_write_json(path, document)
    logger.info("Updated task definition written to %s", path)
    return path


def prepare_task_definition(
    path: Path | str, container_name: str, identity: ArtifactIdentity
) -> dict[str, Any]:
    """Load, mutate and rewrite the template in place; return the document."""
    document = mutate_task_definition(load_task_definition(path), container_name, identity)
    write_task_definition(path, document)
    return document
