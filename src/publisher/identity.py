"""Artifact identity resolution."""

from __future__ import annotations

from src.release_shared.exceptions import ConfigurationError
from src.release_shared.models import ArtifactIdentity


def resolve_artifact_identity(
    registry: str, repository: str, revision: str
) -> ArtifactIdentity:
    """Return the image reference ``<registry>/<repository>:<revision>``.

    Raises:
        ConfigurationError: If any of the three parts is empty.
    """
    parts = {"registry": registry, "repository": repository, "revision": revision}
    missing = [name for name, value in parts.items() if not (value or "").strip()]
    if missing:
        raise ConfigurationError(
            f"Cannot resolve image identity, empty: {', '.join(missing)}"
        )
    return ArtifactIdentity(
        registry=registry.strip(),
        repository=repository.strip(),
        revision=revision.strip(),
    )
