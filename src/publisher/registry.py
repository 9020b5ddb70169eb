"""Amazon ECR registry endpoint resolution and docker credentials."""

from __future__ import annotations

import base64
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from src.release_shared.exceptions import ConfigurationError, PublishError

logger = logging.getLogger(__name__)


def normalize_registry(endpoint: str) -> str:
    """Strip the URL scheme and trailing slashes from a registry endpoint."""
    value = (endpoint or "").strip()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.rstrip("/")


class EcrRegistry:
    """Looks up the account's ECR endpoint and a docker login token.

    Args:
        ecr_client: A boto3 ``ecr`` client.
        registry: Optional fixed endpoint; skips the API lookup when set.
    """

    def __init__(self, ecr_client: Any, registry: str = "") -> None:
        self._ecr = ecr_client
        self._registry = normalize_registry(registry)
        self._auth: dict[str, Any] | None = None

    def _authorization(self) -> dict[str, Any]:
        if self._auth is None:
            try:
                response = self._ecr.get_authorization_token()
            except (ClientError, BotoCoreError) as exc:
                raise ConfigurationError(
                    f"Cannot obtain an ECR authorization token: {exc}"
                ) from exc
            data = response.get("authorizationData") or []
            if not data:
                raise ConfigurationError("ECR returned no authorization data")
            self._auth = data[0]
        return self._auth

    def resolve_endpoint(self) -> str:
        """Return the registry host, e.g. ``123.dkr.ecr.us-east-1.amazonaws.com``."""
        if not self._registry:
            self._registry = normalize_registry(
                str(self._authorization().get("proxyEndpoint") or "")
            )
            if not self._registry:
                raise ConfigurationError("ECR authorization data has no endpoint")
            logger.info("Resolved registry endpoint %s", self._registry)
        return self._registry

    def credentials(self) -> tuple[str, str]:
        """Return the ``(username, password)`` pair for ``docker login``.

        Raises:
            PublishError: If the token cannot be decoded.
        """
        token = str(self._authorization().get("authorizationToken") or "")
        try:
            decoded = base64.b64decode(token).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise PublishError("ECR authorization token is not valid base64") from exc
        username, sep, password = decoded.partition(":")
        if not sep or not password:
            raise PublishError("ECR authorization token has no password part")
        return username, password
