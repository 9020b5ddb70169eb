"""GitHub issue-comment client (REST v3 over httpx)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.release_shared.exceptions import NotificationError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"


@dataclass(frozen=True)
class CommentDestination:
    """Comment thread of one pull request."""
    repository: str  # "owner/name"
    number: int

    @property
    def path(self) -> str:
        return f"/repos/{self.repository}/issues/{self.number}/comments"


class GitHubCommentClient:
    """Appends comments to a pull request thread.

    Args:
        token: Token with ``pull-requests: write`` (or ``issues: write``).
        api_url: GitHub API base URL (GHES installs differ).
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def create_comment(self, destination: CommentDestination, body: str) -> dict[str, Any]:
        """Post *body* as a new comment and return the created comment.

        Raises:
            NotificationError: If the request fails or GitHub rejects it.
        """
        if not self._token:
            raise NotificationError("No GitHub token configured")
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    destination.path, headers=self._headers(), json={"body": body}
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NotificationError(
                f"GitHub rejected the comment: {exc.response.status_code} "
                f"{exc.response.text[:300]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationError(f"GitHub unreachable: {exc}") from exc

        try:
            created = resp.json()
        except ValueError as exc:
            raise NotificationError("GitHub returned a non-JSON response") from exc
        logger.info(
            "Posted comment on %s#%d: %s",
            destination.repository,
            destination.number,
            created.get("html_url", ""),
        )
        return created
