"""Release pipeline orchestration.

Drives one run through the state machine, from resolving the artifact
identity to the service reaching a steady state. Each stage is a plain
async function taking exactly the prior outputs it consumes, so stage
ordering is visible in the signatures and testable without the loop.

State is saved before and after every transition. A run interrupted by
a signal, or one that failed, can be resumed with ``resume=True``; a
task definition revision already recorded on the state is never
registered a second time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from src.ecs_deploy.coordinator import DeploymentCoordinator, WaitOutcome
from src.ecs_deploy.ecs_client import EcsClient
from src.ecs_deploy.task_definition import prepare_task_definition
from src.notifier.github_comments import CommentDestination, GitHubCommentClient
from src.notifier.report_notifier import NotificationResult, ReportNotifier
from src.publisher.docker_publisher import DockerPublisher
from src.publisher.identity import resolve_artifact_identity
from src.publisher.registry import EcrRegistry
from src.release_orchestrator.config import PipelineSettings
from src.release_orchestrator.credentials import aws_session
from src.release_orchestrator.shutdown import GracefulShutdown
from src.release_orchestrator.state import RunState
from src.release_orchestrator.state_machine import (
    STAGE_FOR_STATE,
    TERMINAL_STATES,
    create_run_machine,
)
from src.release_shared.constants import (
    FS_REPORT_FILE,
    IMAGE_REPORT_FILE,
    STAGE_BUILD,
    STAGE_IMAGE_SCAN,
    STAGE_PUBLISH,
    STAGE_REGISTER,
    STAGE_REPORT,
    STAGE_RESOLVE,
    STAGE_SOURCE_SCAN,
    STAGE_UPDATE,
    STAGE_WAIT,
)
from src.release_shared.exceptions import ConfigurationError, PipelineError, ScanError
from src.release_shared.models import (
    ArtifactIdentity,
    LocalImage,
    PipelineRun,
    PublishedImage,
    ScanKind,
    ScanReport,
    ServiceDeploymentState,
    Trigger,
    TriggerKind,
)
from src.release_shared.utils import ensure_dir
from src.scan_gate.findings import load_trivy_report
from src.scan_gate.trivy_scanner import TrivyScanner
from src.shared.logging import bind_run_id

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class Collaborators:
    """The external systems one run talks to."""

    registry: EcrRegistry
    scanner: TrivyScanner
    publisher: DockerPublisher
    notifier: ReportNotifier
    coordinator: DeploymentCoordinator


def build_collaborators(
    run: PipelineRun,
    settings: PipelineSettings,
    session: Any = None,
) -> Collaborators:
    """Wire boto3 clients, the docker and trivy CLIs, and the GitHub client.

    Raises:
        ConfigurationError: If AWS credentials cannot be set up.
    """
    session = session or aws_session(run.region, run.role_arn)
    return Collaborators(
        registry=EcrRegistry(session.client("ecr", region_name=run.region), run.registry),
        scanner=TrivyScanner(run.scan),
        publisher=DockerPublisher(run.build),
        notifier=ReportNotifier(
            GitHubCommentClient(settings.github_token, api_url=settings.github_api_url)
        ),
        coordinator=DeploymentCoordinator(
            EcsClient(session.client("ecs", region_name=run.region)),
            run.deploy,
        ),
    )


def should_run(trigger: Trigger, branches: list[str]) -> bool:
    """True when the trigger targets one of the configured branches.

    An empty branch list, or a trigger without a branch, always runs.
    """
    if not branches or not trigger.branch:
        return True
    return trigger.branch in branches


def comment_destination(trigger: Trigger) -> CommentDestination | None:
    if not trigger.repository or not trigger.change_request:
        return None
    return CommentDestination(repository=trigger.repository, number=trigger.change_request)


# ---------------------------------------------------------------------------
# State machine model
# ---------------------------------------------------------------------------


class RunModel:
    """Model object for the ``transitions`` async state machine.

    Wraps a :class:`RunState` and exposes the guard methods required by
    :data:`~src.release_orchestrator.state_machine.TRANSITIONS`.
    """

    def __init__(self, run_state: RunState) -> None:
        self._rs = run_state
        self.state: str = run_state.current_state
        # set by the waiting stage; never persisted
        self.converged = False

    def has_identity(self, *args, **kwargs) -> bool:
        return bool(self._rs.image_uri)

    def has_fs_report(self, *args, **kwargs) -> bool:
        return STAGE_SOURCE_SCAN in self._rs.completed_stages

    def has_local_image(self, *args, **kwargs) -> bool:
        return STAGE_BUILD in self._rs.completed_stages

    def has_image_report(self, *args, **kwargs) -> bool:
        return STAGE_IMAGE_SCAN in self._rs.completed_stages

    def image_pushed(self, *args, **kwargs) -> bool:
        return self._rs.image_pushed

    def is_review_request(self, *args, **kwargs) -> bool:
        return self._rs.trigger_kind == TriggerKind.REVIEW_REQUEST.value

    def is_direct_integration(self, *args, **kwargs) -> bool:
        return self._rs.trigger_kind == TriggerKind.DIRECT_INTEGRATION.value

    def has_revision(self, *args, **kwargs) -> bool:
        """True once a task definition revision ARN has been recorded."""
        return bool(self._rs.task_definition_arn)

    def service_converged(self, *args, **kwargs) -> bool:
        return self.converged


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _record_scan(state: RunState, report: ScanReport) -> None:
    if report.kind is ScanKind.FILESYSTEM:
        state.fs_report_path = report.report_path
        state.fs_scan_counts = report.severity_counts()
        state.fs_scan_error = report.error
    else:
        state.image_report_path = report.report_path
        state.image_scan_counts = report.severity_counts()
        state.image_scan_error = report.error
    if report.error:
        state.add_warning(f"{report.kind.value} scan failed: {report.error}")


async def run_resolve_identity(
    run: PipelineRun, state: RunState, collaborators: Collaborators
) -> ArtifactIdentity:
    """Fix the image address for the whole run."""
    registry = collaborators.registry.resolve_endpoint()
    identity = resolve_artifact_identity(registry, run.repository_name, run.trigger.revision)
    state.registry = identity.registry
    state.image_uri = identity.uri
    state.mark_completed(STAGE_RESOLVE)
    logger.info("Artifact identity: %s", identity.uri)
    return identity


async def run_source_scan(
    run: PipelineRun, state: RunState, collaborators: Collaborators
) -> ScanReport:
    """Scan the source tree. Findings and scanner failures never stop the run."""
    report = await collaborators.scanner.scan(
        run.build.context_dir,
        ScanKind.FILESYSTEM,
        Path(run.output_dir) / FS_REPORT_FILE,
    )
    _record_scan(state, report)
    state.mark_completed(STAGE_SOURCE_SCAN)
    return report


async def run_build(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    identity: ArtifactIdentity,
) -> LocalImage:
    image = await collaborators.publisher.build(run.build.context_dir, identity)
    state.image_id = image.image_id
    state.mark_completed(STAGE_BUILD)
    return image


async def run_image_scan(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    image: LocalImage,
) -> ScanReport:
    """Scan the built image, before it leaves the local daemon."""
    report = await collaborators.scanner.scan(
        image.tag,
        ScanKind.IMAGE,
        Path(run.output_dir) / IMAGE_REPORT_FILE,
    )
    _record_scan(state, report)
    state.mark_completed(STAGE_IMAGE_SCAN)
    return report


async def run_publish(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    image: LocalImage,
    identity: ArtifactIdentity,
    fs_report: ScanReport,
    image_report: ScanReport,
) -> PublishedImage:
    """Log in to the registry and push the image under *identity*.

    Both scan reports are required inputs: nothing is pushed before both
    scans have run, whatever they found.
    """
    logger.info(
        "Publishing %s (filesystem findings=%d, image findings=%d)",
        identity.uri,
        len(fs_report.findings),
        len(image_report.findings),
    )
    username, password = collaborators.registry.credentials()
    await collaborators.publisher.login(identity.registry, username, password)
    await collaborators.publisher.push(image, identity)
    state.image_pushed = True
    state.mark_completed(STAGE_PUBLISH)
    return PublishedImage(identity=identity, image_id=image.image_id)


async def run_report(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    published: PublishedImage,
    fs_report: ScanReport,
    image_report: ScanReport,
) -> NotificationResult | None:
    """Post the scan summary on the pull request; review runs only."""
    if not run.trigger.is_review:
        logger.info("Skipping security report for %s run", run.trigger.kind.value)
        return None
    result = await collaborators.notifier.notify(
        fs_report,
        image_report,
        comment_destination(run.trigger),
    )
    if result.posted:
        state.comment_url = result.comment_url
    else:
        state.add_warning(f"Security report not posted: {result.error}")
    state.mark_completed(STAGE_REPORT)
    logger.info("Reported scan results for %s", published.identity.uri)
    return result


async def run_register(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    published: PublishedImage,
) -> str:
    """Point the container at the published image and register a revision."""
    if state.task_definition_arn:
        logger.info("Task definition already registered: %s", state.task_definition_arn)
        return state.task_definition_arn
    document = prepare_task_definition(
        run.task_definition_path, run.container_name, published.identity
    )
    arn = await collaborators.coordinator.register(document)
    state.task_definition_arn = arn
    state.mark_completed(STAGE_REGISTER)
    return arn


async def run_update(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    task_definition_arn: str,
) -> ServiceDeploymentState:
    service = await collaborators.coordinator.update(
        run.cluster, run.service, task_definition_arn
    )
    if len(service.deployments) > 2:
        # another rollout was still in flight when ours was requested
        state.add_warning(
            f"Service {run.service} has {len(service.deployments)} deployments in flight"
        )
    state.service_desired_count = service.desired_count
    state.service_running_count = service.running_count
    state.mark_completed(STAGE_UPDATE)
    return service


async def run_wait(
    run: PipelineRun,
    state: RunState,
    collaborators: Collaborators,
    task_definition_arn: str,
    should_stop: Callable[[], bool] | None = None,
) -> WaitOutcome:
    outcome = await collaborators.coordinator.wait_for_steady_state(
        run.cluster, run.service, task_definition_arn, should_stop=should_stop
    )
    state.stability_polls += outcome.polls
    if outcome.state is not None:
        state.service_desired_count = outcome.state.desired_count
        state.service_running_count = outcome.state.running_count
    if outcome.stable:
        state.mark_completed(STAGE_WAIT)
    return outcome


# ---------------------------------------------------------------------------
# Run context and resume
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Per-run inputs plus the stage outputs produced so far."""

    run: PipelineRun
    state: RunState
    collaborators: Collaborators
    shutdown: GracefulShutdown
    identity: ArtifactIdentity | None = None
    local_image: LocalImage | None = None
    fs_report: ScanReport | None = None
    image_report: ScanReport | None = None
    published: PublishedImage | None = None


def _require(value: Any, what: str) -> Any:
    if value is None:
        raise PipelineError(f"Stage input missing: {what}")
    return value


def _reload_report(
    run: PipelineRun, kind: ScanKind, path: str, error: str
) -> ScanReport:
    target = run.build.context_dir if kind is ScanKind.FILESYSTEM else ""
    if error or not path:
        return ScanReport(kind=kind, target=target, report_path=path, error=error)
    try:
        return load_trivy_report(
            path,
            kind=kind,
            severities=run.scan.severities,
            ignore_unfixed=run.scan.ignore_unfixed(kind),
        )
    except ScanError as exc:
        logger.warning("Could not reload %s report: %s", kind.value, exc)
        return ScanReport(kind=kind, target=target, report_path=path, error=str(exc))


def restore_outputs(ctx: RunContext) -> None:
    """Rebuild stage outputs from a persisted state."""
    state, run = ctx.state, ctx.run
    if state.registry:
        ctx.identity = ArtifactIdentity(
            registry=state.registry,
            repository=run.repository_name,
            revision=run.trigger.revision,
        )
    if STAGE_SOURCE_SCAN in state.completed_stages:
        ctx.fs_report = _reload_report(
            run, ScanKind.FILESYSTEM, state.fs_report_path, state.fs_scan_error
        )
    if STAGE_BUILD in state.completed_stages and ctx.identity is not None:
        ctx.local_image = LocalImage(tag=ctx.identity.uri, image_id=state.image_id)
    if STAGE_IMAGE_SCAN in state.completed_stages:
        ctx.image_report = _reload_report(
            run, ScanKind.IMAGE, state.image_report_path, state.image_scan_error
        )
    if state.image_pushed and ctx.identity is not None:
        ctx.published = PublishedImage(identity=ctx.identity, image_id=state.image_id)


# ---------------------------------------------------------------------------
# Main pipeline loop
# ---------------------------------------------------------------------------


async def execute_pipeline(
    run: PipelineRun,
    collaborators: Collaborators,
    resume: bool = False,
    shutdown: GracefulShutdown | None = None,
) -> RunState:
    """Execute the full pipeline for one trigger.

    Parameters
    ----------
    run:
        The immutable run configuration.
    collaborators:
        Registry, scanner, publisher, notifier and deployment coordinator.
    resume:
        If ``True``, continue the run persisted in ``run.output_dir``.
    shutdown:
        Stop-request tracker. When omitted one is created and its signal
        handlers are installed.

    Returns
    -------
    RunState
        Final run state after execution.

    Raises
    ------
    PipelineError
        When a fatal stage fails. The state is saved as ``failed`` first.
    """
    output_dir = ensure_dir(run.output_dir)
    state = _load_or_create_state(run, output_dir, resume)
    bind_run_id(state.run_id)

    if state.current_state in TERMINAL_STATES:
        logger.info("Run %s already finished as '%s'", state.run_id, state.current_state)
        return state

    if shutdown is None:
        shutdown = GracefulShutdown()
        shutdown.install()
    shutdown.set_state(state)
    shutdown.set_task(asyncio.current_task())

    model = RunModel(state)
    create_run_machine(model, initial_state=state.current_state)

    ctx = RunContext(run=run, state=state, collaborators=collaborators, shutdown=shutdown)
    restore_outputs(ctx)

    try:
        await _run_pipeline_loop(ctx, model)
    except PipelineError as exc:
        await _fail(ctx, model, exc)
        raise
    except asyncio.CancelledError:
        logger.warning("Run cancelled in state '%s' -- saving state", model.state)
        state.interrupted = True
        state.interrupt_reason = "Cancelled"
        state.current_state = model.state
        state.save()
        raise
    except Exception as exc:
        logger.exception("Unexpected error in pipeline")
        error = PipelineError(f"Unexpected error: {exc}")
        await _fail(ctx, model, error)
        raise error from exc

    return state


def _load_or_create_state(run: PipelineRun, output_dir: Path, resume: bool) -> RunState:
    if not resume:
        state = RunState(
            trigger_kind=run.trigger.kind.value,
            revision=run.trigger.revision,
            branch=run.trigger.branch,
            change_request=run.trigger.change_request,
            state_dir=str(output_dir),
        )
        state.save()
        logger.info("Created new run %s for %s", state.run_id, run.trigger.revision)
        return state

    state = RunState.load(output_dir)
    if state is None:
        raise ConfigurationError("No run state to resume. Run without --resume first.")
    if state.revision != run.trigger.revision:
        raise ConfigurationError(
            f"Saved run is for revision {state.revision}, not {run.trigger.revision}"
        )
    if state.current_state == "failed" and state.previous_state:
        logger.info(
            "Retrying run %s from '%s' (failed in %s)",
            state.run_id,
            state.previous_state,
            state.failed_stage,
        )
        state.current_state = state.previous_state
        state.failed_stage = ""
        state.error = ""
    state.interrupted = False
    state.interrupt_reason = ""
    state.save()
    logger.info("Resuming run %s from state '%s'", state.run_id, state.current_state)
    return state


async def _fail(ctx: RunContext, model: RunModel, exc: PipelineError) -> None:
    state = ctx.state
    stage = STAGE_FOR_STATE.get(model.state, exc.stage)
    logger.error("Stage '%s' failed: %s", stage, exc)
    state.failed_stage = stage
    state.error = str(exc)
    if model.state not in TERMINAL_STATES:
        state.previous_state = model.state
        await model.fail()  # type: ignore[attr-defined]
    state.current_state = model.state
    state.save()


async def _run_pipeline_loop(ctx: RunContext, model: RunModel) -> None:
    """Internal loop that dispatches one stage per state."""
    phase_handlers: dict[str, Callable[[RunContext, RunModel], Awaitable[None]]] = {
        "init": _phase_resolve,
        "source_scanning": _phase_source_scan,
        "building": _phase_build,
        "image_scanning": _phase_image_scan,
        "publishing": _phase_publish,
        "reporting": _phase_report,
        "registering": _phase_register,
        "updating": _phase_update,
        "waiting": _phase_wait,
    }
    state = ctx.state

    max_iterations = 20  # Safety bound
    for _ in range(max_iterations):
        current = model.state

        if current in TERMINAL_STATES:
            logger.info("Run reached terminal state: %s", current)
            state.current_state = current
            state.save()
            return

        if ctx.shutdown.should_stop:
            logger.warning("Graceful shutdown requested at state '%s'", current)
            state.interrupted = True
            state.interrupt_reason = state.interrupt_reason or "Signal received"
            state.current_state = current
            state.save()
            return

        handler = phase_handlers.get(current)
        if handler is None:
            raise PipelineError(f"No handler for state '{current}'")
        await handler(ctx, model)

    raise PipelineError(f"Run did not finish within {max_iterations} transitions")


async def _advance(ctx: RunContext, model: RunModel, trigger: str) -> None:
    """Fire *trigger*; raise if its guard kept the machine in place."""
    state = ctx.state
    before = model.state
    state.save()
    await getattr(model, trigger)()
    if model.state == before:
        raise PipelineError(f"Transition '{trigger}' refused in state '{before}'")
    state.previous_state = before
    state.current_state = model.state
    state.save()


# ---------------------------------------------------------------------------
# Phase handlers (called from the pipeline loop)
# ---------------------------------------------------------------------------


async def _phase_resolve(ctx: RunContext, model: RunModel) -> None:
    ctx.identity = await run_resolve_identity(ctx.run, ctx.state, ctx.collaborators)
    await _advance(ctx, model, "identity_resolved")


async def _phase_source_scan(ctx: RunContext, model: RunModel) -> None:
    ctx.fs_report = await run_source_scan(ctx.run, ctx.state, ctx.collaborators)
    await _advance(ctx, model, "source_scanned")


async def _phase_build(ctx: RunContext, model: RunModel) -> None:
    ctx.local_image = await run_build(
        ctx.run, ctx.state, ctx.collaborators, _require(ctx.identity, "artifact identity")
    )
    await _advance(ctx, model, "image_built")


async def _phase_image_scan(ctx: RunContext, model: RunModel) -> None:
    ctx.image_report = await run_image_scan(
        ctx.run, ctx.state, ctx.collaborators, _require(ctx.local_image, "local image")
    )
    await _advance(ctx, model, "image_scanned")


async def _phase_publish(ctx: RunContext, model: RunModel) -> None:
    ctx.published = await run_publish(
        ctx.run,
        ctx.state,
        ctx.collaborators,
        _require(ctx.local_image, "local image"),
        _require(ctx.identity, "artifact identity"),
        _require(ctx.fs_report, "filesystem scan report"),
        _require(ctx.image_report, "image scan report"),
    )
    await _advance(ctx, model, "image_published")


async def _phase_report(ctx: RunContext, model: RunModel) -> None:
    await run_report(
        ctx.run,
        ctx.state,
        ctx.collaborators,
        _require(ctx.published, "published image"),
        _require(ctx.fs_report, "filesystem scan report"),
        _require(ctx.image_report, "image scan report"),
    )
    if ctx.run.trigger.is_review:
        await _advance(ctx, model, "review_finished")
    else:
        await _advance(ctx, model, "start_deploy")


async def _phase_register(ctx: RunContext, model: RunModel) -> None:
    await run_register(
        ctx.run, ctx.state, ctx.collaborators, _require(ctx.published, "published image")
    )
    await _advance(ctx, model, "revision_registered")


async def _phase_update(ctx: RunContext, model: RunModel) -> None:
    await run_update(ctx.run, ctx.state, ctx.collaborators, ctx.state.task_definition_arn)
    await _advance(ctx, model, "update_accepted")


async def _phase_wait(ctx: RunContext, model: RunModel) -> None:
    shutdown = ctx.shutdown
    outcome = await run_wait(
        ctx.run,
        ctx.state,
        ctx.collaborators,
        ctx.state.task_definition_arn,
        should_stop=lambda: shutdown.should_stop,
    )
    if outcome.interrupted:
        # the loop records the interrupt; the requested update stays in effect
        ctx.state.save()
        return
    model.converged = outcome.stable
    await _advance(ctx, model, "service_stable")
