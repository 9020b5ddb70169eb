"""Rich-based terminal display layer for run progress.

Provides formatted output for the run header, the stage table, scan
summaries, error panels and the final summary. Uses a module-level
:class:`~rich.console.Console` singleton for consistent output.

All functions accept a ``RunState`` or the plain dictionary stored in
``RUN_STATE.json``.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.release_orchestrator.state_machine import STAGE_FOR_STATE
from src.release_shared.constants import ALL_STAGES, DEPLOY_STAGES

# ---------------------------------------------------------------------------
# Module-level Console singleton
# ---------------------------------------------------------------------------

_console = Console()

_STAGE_DISPLAY = {
    "resolve_identity": "Resolve Identity",
    "source_scan": "Filesystem Scan",
    "build": "Build Image",
    "image_scan": "Image Scan",
    "publish": "Publish",
    "report": "Security Report",
    "register": "Register Task Definition",
    "update": "Update Service",
    "wait": "Wait For Stability",
}

_SEVERITY_ORDER = ["CRITICAL", "HIGH", "MEDIUM", "LOW", "UNKNOWN"]


# ---------------------------------------------------------------------------
# Display functions
# ---------------------------------------------------------------------------


def print_run_header(state: Any, service: str = "", cluster: str = "") -> None:
    """Print a Rich panel identifying the run.

    Parameters
    ----------
    state:
        A ``RunState`` instance or its dictionary form.
    service, cluster:
        Deployment target, shown for direct-integration runs.
    """
    header = Text()
    header.append("Release Pipeline\n", style="bold white")
    header.append("Run: ", style="bold")
    header.append(f"{_get_attr(state, 'run_id', 'unknown')}\n", style="cyan")
    header.append("Trigger: ", style="bold")
    header.append(f"{_get_attr(state, 'trigger_kind', 'unknown')}", style="green")
    branch = _get_attr(state, "branch", "")
    if branch:
        header.append(f" on {branch}", style="green")
    header.append("\nRevision: ", style="bold")
    header.append(f"{_get_attr(state, 'revision', '')}", style="yellow")
    if service:
        header.append("\nTarget: ", style="bold")
        header.append(f"{cluster}/{service}", style="magenta")

    _console.print(
        Panel(
            header,
            title="[bold]Run Overview[/bold]",
            border_style="blue",
            expand=False,
        )
    )


def print_stage_table(state: Any) -> None:
    """Print a Rich table with the status of each stage."""
    table = Table(title="Stage Status", show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="cyan", min_width=26)
    table.add_column("Status", justify="center", min_width=12)

    current_state = _get_attr(state, "current_state", "init")
    completed = _get_attr(state, "completed_stages", [])
    failed_stage = _get_attr(state, "failed_stage", "")
    review = _get_attr(state, "trigger_kind", "") == "review_request"

    for stage in ALL_STAGES:
        name = _STAGE_DISPLAY.get(stage, stage)
        if stage in completed:
            status = "[green]COMPLETE[/green]"
        elif stage == failed_stage:
            status = "[red]FAILED[/red]"
        elif STAGE_FOR_STATE.get(current_state) == stage:
            status = "[yellow]RUNNING[/yellow]"
        elif review and stage in DEPLOY_STAGES:
            status = "[dim]SKIPPED[/dim]"
        elif stage == "report" and not review and "publish" in completed:
            status = "[dim]SKIPPED[/dim]"
        else:
            status = "[dim]PENDING[/dim]"
        table.add_row(name, status)

    _console.print(table)


def print_scan_summary(state: Any) -> None:
    """Print per-severity finding counts for both scans."""
    table = Table(title="Vulnerability Findings", show_header=True, header_style="bold magenta")
    table.add_column("Scan", style="cyan")
    for severity in _SEVERITY_ORDER:
        table.add_column(severity, justify="right")
    table.add_column("Note")

    for label, counts_key, error_key in (
        ("Filesystem", "fs_scan_counts", "fs_scan_error"),
        ("Image", "image_scan_counts", "image_scan_error"),
    ):
        counts = _get_attr(state, counts_key, {}) or {}
        error = _get_attr(state, error_key, "")
        cells = []
        for severity in _SEVERITY_ORDER:
            count = counts.get(severity, 0)
            if count and severity in ("CRITICAL", "HIGH"):
                cells.append(f"[bold red]{count}[/bold red]")
            elif count:
                cells.append(str(count))
            else:
                cells.append("—")
        note = f"[yellow]scan failed: {error}[/yellow]" if error else ""
        table.add_row(label, *cells, note)

    _console.print(table)


def print_error_panel(error: str | Exception) -> None:
    """Print an error message in a red Rich panel."""
    _console.print(
        Panel(
            Text(str(error), style="bold white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            expand=False,
        )
    )


def print_final_summary(state: Any) -> None:
    """Print the final run summary.

    Parameters
    ----------
    state:
        A ``RunState`` instance or its dictionary form.
    """
    current_state = _get_attr(state, "current_state", "unknown")

    if current_state in ("complete", "stable"):
        style = "green"
        title = "Run Complete" if current_state == "complete" else "Service Stable"
    elif current_state == "failed":
        style = "red"
        title = "Run Failed"
    else:
        style = "yellow"
        title = "Run Status"

    content = Text()
    content.append("Run ID: ", style="bold")
    content.append(f"{_get_attr(state, 'run_id', 'unknown')}\n", style="cyan")
    content.append("Final State: ", style="bold")
    content.append(f"{current_state}\n", style=style)

    image_uri = _get_attr(state, "image_uri", "")
    if image_uri:
        pushed = "pushed" if _get_attr(state, "image_pushed", False) else "not pushed"
        content.append(f"Image: {image_uri} ({pushed})\n")

    comment_url = _get_attr(state, "comment_url", "")
    if comment_url:
        content.append(f"Report: {comment_url}\n")

    arn = _get_attr(state, "task_definition_arn", "")
    if arn:
        content.append(f"Task Definition: {arn}\n")
        content.append(
            f"Tasks: {_get_attr(state, 'service_running_count', 0)}"
            f"/{_get_attr(state, 'service_desired_count', 0)} running"
            f" after {_get_attr(state, 'stability_polls', 0)} poll(s)\n"
        )

    failed_stage = _get_attr(state, "failed_stage", "")
    if failed_stage:
        content.append(f"\nFailed Stage: {failed_stage}\n", style="bold red")
        content.append(f"{_get_attr(state, 'error', '')}\n", style="red")

    warnings = _get_attr(state, "warnings", []) or []
    if warnings:
        content.append("\nWarnings:\n", style="bold yellow")
        for warning in warnings:
            content.append(f"  - {warning}\n", style="yellow")

    if _get_attr(state, "interrupted", False):
        reason = _get_attr(state, "interrupt_reason", "")
        content.append(f"\nInterrupted: {reason}\n", style="yellow")

    _console.print(
        Panel(
            content,
            title=f"[bold]{title}[/bold]",
            border_style=style,
            expand=False,
        )
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_attr(obj: Any, name: str, default: Any = None) -> Any:
    """Get attribute from object or dict, with fallback to default."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)
