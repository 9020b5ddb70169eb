"""Posts the rendered security report on the triggering pull request.

Best-effort: every failure is logged and swallowed, the run never fails
because of a notification. Each call posts a new comment; repeated runs on
the same pull request are not deduplicated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.notifier.github_comments import CommentDestination, GitHubCommentClient
from src.release_shared.exceptions import NotificationError
from src.release_shared.models import ScanReport
from src.scan_gate.report import render_security_comment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of one notify call."""
    posted: bool
    comment_url: str = ""
    error: str = ""


def _usable(report: ScanReport | None) -> ScanReport | None:
    # a failed scan counts as empty; its file may be missing or left over
    if report is None or report.error:
        return None
    return report


class ReportNotifier:
    """Renders both scan reports of the run and posts one comment."""

    def __init__(self, client: GitHubCommentClient) -> None:
        self.client = client

    async def notify(
        self,
        fs_report: ScanReport | None,
        image_report: ScanReport | None,
        destination: CommentDestination | None,
    ) -> NotificationResult:
        """Render both reports into a single comment and post it.

        A report whose scan failed is rendered as empty.

        Returns:
            A :class:`NotificationResult`; ``posted`` is False on any error.
        """
        try:
            if destination is None:
                raise NotificationError("No pull request to comment on")
            body = render_security_comment(_usable(fs_report), _usable(image_report))
            created = await self.client.create_comment(destination, body)
        except NotificationError as exc:
            logger.error("Error processing security results: %s", exc)
            return NotificationResult(posted=False, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error posting security results")
            return NotificationResult(posted=False, error=str(exc))
        return NotificationResult(posted=True, comment_url=str(created.get("html_url") or ""))
