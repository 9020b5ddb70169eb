"""Docker build and push.

Builds the image tagged with the run's :class:`ArtifactIdentity` and pushes
it to the registry. All subprocess calls capture stdout and stderr.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

from src.release_shared.exceptions import BuildError, PublishError
from src.release_shared.models import ArtifactIdentity, BuildPolicy, LocalImage
from src.release_shared.utils import filtered_env

logger = logging.getLogger(__name__)


class DockerPublisher:
    """Wraps the ``docker`` CLI for the build & publish stage."""

    def __init__(self, policy: BuildPolicy | None = None) -> None:
        self.policy = policy or BuildPolicy()

    def _run_sync(self, *args: str, stdin: str | None = None) -> tuple[int, str, str]:
        """Run a docker command synchronously.

        Returns:
            Tuple of (return_code, stdout, stderr).
        """
        cmd = [self.policy.docker_binary, *args]
        # never log the password-stdin payload
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.policy.timeout,
                env=filtered_env(),
            )
        except FileNotFoundError:
            return (127, "", f"{self.policy.docker_binary}: command not found")
        except subprocess.TimeoutExpired:
            return (124, "", f"timed out after {self.policy.timeout}s")
        return (result.returncode, result.stdout, result.stderr)

    async def _run(self, *args: str, stdin: str | None = None) -> tuple[int, str, str]:
        """Async wrapper around :meth:`_run_sync` (runs in a worker thread)."""
        return await asyncio.to_thread(self._run_sync, *args, stdin=stdin)

    async def build(self, context_dir: Path | str, identity: ArtifactIdentity) -> LocalImage:
        """Build the image in *context_dir* tagged with ``identity.uri``.

        Raises:
            BuildError: If ``docker build`` fails.
        """
        args = ["build", "-t", identity.uri]
        if self.policy.dockerfile:
            args.extend(["-f", self.policy.dockerfile])
        args.append(str(context_dir))
        rc, _stdout, stderr = await self._run(*args)
        if rc != 0:
            raise BuildError(f"docker build failed (exit {rc}): {stderr.strip()[-1000:]}")

        rc, stdout, _ = await self._run("image", "inspect", "--format", "{{.Id}}", identity.uri)
        image_id = stdout.strip() if rc == 0 else ""
        logger.info("Built image %s %s", identity.uri, image_id)
        return LocalImage(tag=identity.uri, image_id=image_id)

    async def login(self, registry: str, username: str, password: str) -> None:
        """Log the docker daemon into *registry* (password on stdin).

        Raises:
            PublishError: If ``docker login`` fails.
        """
        rc, _stdout, stderr = await self._run(
            "login", "--username", username, "--password-stdin", registry,
            stdin=password,
        )
        if rc != 0:
            raise PublishError(f"docker login to {registry} failed: {stderr.strip()[:500]}")
        logger.info("Logged in to registry %s", registry)

    async def push(self, image: LocalImage, identity: ArtifactIdentity) -> None:
        """Push *image* to the registry under ``identity.uri``.

        Raises:
            PublishError: If the handle is not tagged with the identity or
                ``docker push`` fails.
        """
        if image.tag != identity.uri:
            raise PublishError(
                f"Refusing to push {image.tag}: run identity is {identity.uri}"
            )
        rc, _stdout, stderr = await self._run("push", identity.uri)
        if rc != 0:
            raise PublishError(f"docker push failed (exit {rc}): {stderr.strip()[-1000:]}")
        logger.info("Pushed %s", identity.uri)
