"""Trivy scanner adapter.

Invokes the ``trivy`` CLI against a source tree (``trivy fs``) or a built
image (``trivy image``), persists the JSON report in the run directory and
returns the policy-filtered :class:`ScanReport`.

The scanner is always called with ``--exit-code 0``; a failed invocation is
logged and reported as an empty report so the pipeline keeps going.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

from src.release_shared.exceptions import ScanError
from src.release_shared.models import ScanKind, ScanPolicy, ScanReport
from src.release_shared.utils import filtered_env
from src.scan_gate.findings import load_trivy_report

logger = logging.getLogger(__name__)

_SUBCOMMANDS: dict[ScanKind, str] = {
    ScanKind.FILESYSTEM: "fs",
    ScanKind.IMAGE: "image",
}


class TrivyScanner:
    """Runs Trivy and turns its JSON output into a :class:`ScanReport`."""

    def __init__(self, policy: ScanPolicy | None = None) -> None:
        self.policy = policy or ScanPolicy()

    def build_command(
        self, target: str, kind: ScanKind, output_path: Path | str
    ) -> list[str]:
        """Return the argv for one scan."""
        cmd = [
            self.policy.scanner_binary,
            _SUBCOMMANDS[kind],
            "--format", "json",
            "--exit-code", "0",
            "--severity", ",".join(self.policy.severities),
            "--output", str(output_path),
        ]
        if self.policy.ignore_unfixed(kind):
            cmd.append("--ignore-unfixed")
        cmd.append(target)
        return cmd

    def _run_sync(self, *cmd: str) -> tuple[int, str, str]:
        """Run the scanner synchronously.

        Returns:
            Tuple of (return_code, stdout, stderr).
        """
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.policy.timeout,
                env=filtered_env(),
            )
        except FileNotFoundError as exc:
            raise ScanError(f"Scanner binary not found: {cmd[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ScanError(
                f"Scanner timed out after {self.policy.timeout}s"
            ) from exc
        return (result.returncode, result.stdout, result.stderr)

    async def _run(self, *cmd: str) -> tuple[int, str, str]:
        """Async wrapper around :meth:`_run_sync` (runs in a worker thread)."""
        return await asyncio.to_thread(self._run_sync, *cmd)

    async def scan(
        self, target: str, kind: ScanKind, output_path: Path | str
    ) -> ScanReport:
        """Scan *target* and return the filtered report.

        Never raises for scanner problems: a :class:`ScanError` is logged and
        converted into an empty report whose ``error`` field says why.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        # a report left by an earlier run must never be read as this one's
        output_path.unlink(missing_ok=True)
        cmd = self.build_command(target, kind, output_path)
        try:
            rc, _stdout, stderr = await self._run(*cmd)
            if rc != 0:
                raise ScanError(
                    f"Scanner exited with {rc}: {stderr.strip()[:500]}"
                )
            report = load_trivy_report(
                output_path,
                kind=kind,
                severities=self.policy.severities,
                ignore_unfixed=self.policy.ignore_unfixed(kind),
            )
        except ScanError as exc:
            logger.error("%s scan of %s failed: %s", kind.value, target, exc)
            return ScanReport(
                kind=kind,
                target=target,
                report_path=str(output_path),
                error=str(exc),
            )

        logger.info(
            "%s scan of %s: %d finding(s) %s",
            kind.value,
            target,
            len(report.findings),
            report.severity_counts(),
        )
        return ScanReport(
            kind=kind,
            target=target,
            findings=report.findings,
            report_path=str(output_path),
        )
