"""Trivy JSON report parsing.

Pure functions: the scanner adapter and the notifier both go through
:func:`parse_trivy_report` so the two always agree on what a finding is.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from src.release_shared.exceptions import ScanError
from src.release_shared.models import Finding, ScanKind, ScanReport


def _iter_vulnerabilities(raw: dict[str, Any]) -> Iterable[dict[str, Any]]:
    results = raw.get("Results") or []
    if not isinstance(results, list):
        raise ScanError("Trivy report 'Results' is not a list")
    for result in results:
        if not isinstance(result, dict):
            continue
        for vuln in result.get("Vulnerabilities") or []:
            if isinstance(vuln, dict):
                yield vuln


def finding_from_trivy(vuln: dict[str, Any]) -> Finding:
    """Map one Trivy ``Vulnerabilities[]`` entry to a :class:`Finding`."""
    return Finding(
        pkg_name=str(vuln.get("PkgName") or ""),
        installed_version=str(vuln.get("InstalledVersion") or ""),
        vulnerability_id=str(vuln.get("VulnerabilityID") or ""),
        severity=str(vuln.get("Severity") or "UNKNOWN").upper(),
        fixed_version=vuln.get("FixedVersion") or None,
        description=vuln.get("Description") or None,
    )


def filter_findings(
    findings: Iterable[Finding],
    severities: Iterable[str],
    ignore_unfixed: bool,
) -> tuple[Finding, ...]:
    """Keep allow-listed severities; drop findings without a fix if asked."""
    allowed = {s.upper() for s in severities}
    kept: list[Finding] = []
    for finding in findings:
        if finding.severity not in allowed:
            continue
        if ignore_unfixed and not finding.fixed_version:
            continue
        kept.append(finding)
    return tuple(kept)


def parse_trivy_report(
    raw: dict[str, Any],
    kind: ScanKind,
    target: str,
    severities: Iterable[str],
    ignore_unfixed: bool = False,
    report_path: str = "",
) -> ScanReport:
    """Build a :class:`ScanReport` from a decoded Trivy JSON document.

    Raises:
        ScanError: If *raw* is not a Trivy report object.
    """
    if not isinstance(raw, dict):
        raise ScanError("Trivy report is not a JSON object")
    findings = [finding_from_trivy(v) for v in _iter_vulnerabilities(raw)]
    return ScanReport(
        kind=kind,
        target=target,
        findings=filter_findings(findings, severities, ignore_unfixed),
        report_path=report_path,
    )


def load_trivy_report(
    path: Path | str,
    kind: ScanKind,
    severities: Iterable[str],
    ignore_unfixed: bool = False,
) -> ScanReport:
    """Read and parse a persisted Trivy report file.

    Raises:
        ScanError: If the file is missing, unreadable or not valid JSON.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ScanError(f"Cannot read scan report {path}: {exc}") from exc
    target = str(raw.get("ArtifactName") or "") if isinstance(raw, dict) else ""
    return parse_trivy_report(
        raw,
        kind=kind,
        target=target,
        severities=severities,
        ignore_unfixed=ignore_unfixed,
        report_path=str(path),
    )
