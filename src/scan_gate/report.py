"""Security report renderer for the review comment.

Produces the Markdown body posted on a pull request from the filesystem and
image scan reports.

This module contains only pure functions -- no I/O, no side effects.
"""

from __future__ import annotations

from src.release_shared.models import Finding, ScanReport

COMMENT_TITLE = "## \U0001f512 Security Scan Results"
FILESYSTEM_HEADING = "### \U0001f4c2 Filesystem Vulnerabilities"
IMAGE_HEADING = "### \U0001f433 Container Image Vulnerabilities"
NO_ISSUES_LINE = "✅ No critical/high vulnerabilities detected."

# Markdown hard line break
_BR = "  "


def render_finding(finding: Finding) -> str:
    """Render one finding as a four-line Markdown block."""
    return "\n".join(
        [
            f"**Package:** {finding.pkg_name} ({finding.installed_version}){_BR}",
            f"**Vulnerability:** {finding.vulnerability_id} ({finding.severity}){_BR}",
            f"**Fix Version:** {finding.fixed_version or 'None'}{_BR}",
            f"**Details:** {finding.description or 'N/A'}",
        ]
    )


def render_findings(findings: tuple[Finding, ...] | list[Finding]) -> str:
    """Render findings as blocks separated by blank lines."""
    return "\n\n".join(render_finding(f) for f in findings)


def render_security_comment(
    fs_report: ScanReport | None, image_report: ScanReport | None
) -> str:
    """Compose the single comment body for both scans.

    A section is emitted only for a scan that has findings; when neither has
    any, the body carries one "no issues" line instead.
    """
    fs_findings = fs_report.findings if fs_report else ()
    image_findings = image_report.findings if image_report else ()

    parts = [COMMENT_TITLE]
    if fs_findings:
        parts.append(f"{FILESYSTEM_HEADING}\n{render_findings(fs_findings)}")
    if image_findings:
        parts.append(f"{IMAGE_HEADING}\n{render_findings(image_findings)}")
    if not fs_findings and not image_findings:
        parts.append(NO_ISSUES_LINE)
    return "\n\n".join(parts) + "\n"
