"""Command line interface for the release pipeline.

Exit codes: 0 when the run finished (or was skipped for an untracked
branch), 1 when a stage failed or the run was interrupted, 2 when the
configuration is missing or invalid.
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from src.release_orchestrator.config import (
    PipelineSettings,
    build_pipeline_run,
    load_release_config,
    trigger_from_env,
)
from src.release_orchestrator.display import (
    print_error_panel,
    print_final_summary,
    print_run_header,
    print_scan_summary,
    print_stage_table,
)
from src.release_orchestrator.pipeline import should_run
from src.release_orchestrator.shutdown import GracefulShutdown
from src.release_orchestrator.state import RunState
from src.release_shared import __version__
from src.release_shared.constants import DEFAULT_SEVERITIES, STATE_DIR
from src.release_shared.exceptions import ConfigurationError, PipelineError, ScanError
from src.release_shared.models import PipelineRun, ScanKind, ScanPolicy
from src.scan_gate.findings import load_trivy_report
from src.scan_gate.report import render_security_comment
from src.shared.logging import setup_logging

app = typer.Typer(
    name="release-pipeline",
    help="Build, scan, publish and roll out a container image to ECS.",
    no_args_is_help=True,
)

_console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

_DEFAULT_CONFIG_TEMPLATE = """\
# Release pipeline configuration.
# Deployment target options (AWS_REGION, ECR_REPO_NAME, ECS_CLUSTER,
# ECS_SERVICE, CONTAINER_NAME, TASK_DEF_FILE, AWS_ROLE) come from the
# environment; this file only holds tunables.

scan:
  # Severities kept in both reports
  severities:
    - CRITICAL
    - HIGH
  # Drop findings without a fixed version from the source tree scan
  ignore_unfixed_fs: true
  ignore_unfixed_image: false
  trivy_binary: trivy
  timeout: 600

build:
  context_dir: .
  # Empty means <context_dir>/Dockerfile
  dockerfile: ""
  docker_binary: docker
  timeout: 1800

deploy:
  # Upper bound for the stability wait, in seconds
  wait_timeout: 600
  poll_interval: 15
  force_new_deployment: true

trigger:
  # Runs on other branches exit without doing anything
  branches:
    - main

# Where run state and scan reports are written
output_dir: .release-pipeline
"""


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"release-pipeline {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Release pipeline."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_tool(binary: str) -> bool:
    """Return True when ``<binary> --version`` runs successfully."""
    try:
        result = subprocess.run(
            [binary, "--version"], capture_output=True, text=True, timeout=15
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


async def _run_async(run_cfg: PipelineRun, settings: PipelineSettings, resume: bool) -> RunState:
    from src.release_orchestrator.pipeline import build_collaborators, execute_pipeline

    collaborators = build_collaborators(run_cfg, settings)
    shutdown = GracefulShutdown()
    shutdown.install()
    return await execute_pipeline(run_cfg, collaborators, resume=resume, shutdown=shutdown)


def _show_state(state: RunState, run_cfg: PipelineRun | None = None) -> None:
    if run_cfg is not None and run_cfg.trigger.is_integration:
        print_run_header(state, service=run_cfg.service, cluster=run_cfg.cluster)
    else:
        print_run_header(state)
    print_stage_table(state)
    print_scan_summary(state)
    print_final_summary(state)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(
    event: Optional[str] = typer.Option(
        None, "--event", help="pull_request | push (default: GITHUB_EVENT_NAME)."
    ),
    sha: Optional[str] = typer.Option(
        None, "--sha", help="Source revision (default: GITHUB_SHA)."
    ),
    branch: Optional[str] = typer.Option(None, "--branch", help="Target branch."),
    pr: Optional[int] = typer.Option(None, "--pr", help="Pull request number."),
    repo: Optional[str] = typer.Option(None, "--repo", help="owner/name of the repository."),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to release.yaml."
    ),
    resume: bool = typer.Option(False, "--resume", help="Continue the saved run."),
) -> None:
    """Run the pipeline for one trigger."""
    settings = PipelineSettings()
    setup_logging("release-pipeline", settings.log_level)

    try:
        release_config = load_release_config(config)
        trigger = trigger_from_env(
            event=event,
            revision=sha,
            branch=branch,
            change_request=pr,
            repository=repo,
        )
    except ConfigurationError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_CONFIG)

    if not should_run(trigger, release_config.trigger.branches):
        _console.print(
            f"[dim]Branch '{trigger.branch}' is not tracked "
            f"({', '.join(release_config.trigger.branches)}); nothing to do.[/dim]"
        )
        raise typer.Exit(code=EXIT_OK)

    run_cfg: PipelineRun | None = None
    try:
        run_cfg = build_pipeline_run(settings, release_config, trigger)
        state = asyncio.run(_run_async(run_cfg, settings, resume))
    except ConfigurationError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_CONFIG)
    except PipelineError as exc:
        print_error_panel(exc)
        saved = RunState.load(release_config.output_dir)
        if saved is not None:
            _show_state(saved, run_cfg)
        raise typer.Exit(code=EXIT_FAILED)
    except (KeyboardInterrupt, asyncio.CancelledError):
        _console.print("[yellow]Interrupted.[/yellow]")
        raise typer.Exit(code=EXIT_FAILED)

    _show_state(state, run_cfg)
    if state.interrupted or state.current_state not in ("complete", "stable"):
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def init(
    output: Path = typer.Option(
        Path("release.yaml"), "--output", "-o", help="Where to write the config."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a default release.yaml and check the required tools."""
    if output.exists() and not force:
        _console.print(f"[red]{output} already exists (use --force to overwrite)[/red]")
        raise typer.Exit(code=EXIT_CONFIG)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(_DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    _console.print(f"[green]Wrote {output}[/green]")

    for tool in ("docker", "trivy"):
        if not _check_tool(tool):
            _console.print(f"[yellow]Warning: {tool} is not available on PATH[/yellow]")


@app.command()
def status(
    output_dir: Path = typer.Option(
        Path(STATE_DIR), "--output-dir", help="Run state directory."
    ),
) -> None:
    """Show the state of the last run."""
    state = RunState.load(output_dir)
    if state is None:
        _console.print(f"[red]No run state found in {output_dir}[/red]")
        raise typer.Exit(code=EXIT_FAILED)
    _show_state(state)


@app.command("render-report")
def render_report(
    fs_json: Path = typer.Argument(..., help="Trivy filesystem scan JSON."),
    image_json: Path = typer.Argument(..., help="Trivy image scan JSON."),
    severity: str = typer.Option(
        ",".join(DEFAULT_SEVERITIES), "--severity", help="Comma separated severities."
    ),
) -> None:
    """Print the pull request comment for two saved scan reports."""
    severities = tuple(s.strip().upper() for s in severity.split(",") if s.strip())
    policy = ScanPolicy(severities=severities)
    try:
        fs_report = load_trivy_report(
            fs_json,
            kind=ScanKind.FILESYSTEM,
            severities=policy.severities,
            ignore_unfixed=policy.ignore_unfixed(ScanKind.FILESYSTEM),
        )
        image_report = load_trivy_report(
            image_json,
            kind=ScanKind.IMAGE,
            severities=policy.severities,
            ignore_unfixed=policy.ignore_unfixed(ScanKind.IMAGE),
        )
    except ScanError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_FAILED)
    typer.echo(render_security_comment(fs_report, image_report), nl=False)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
