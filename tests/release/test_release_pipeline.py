"""End-to-end tests for the release pipeline.

Real pipeline, state machine, scanner/publisher/notifier/coordinator
classes; only the process boundary is faked (``_run`` on the scanner and
the publisher, boto3 clients, the GitHub HTTP transport).
"""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from src.ecs_deploy.coordinator import DeploymentCoordinator
from src.ecs_deploy.ecs_client import EcsClient
from src.notifier.github_comments import GitHubCommentClient
from src.notifier.report_notifier import ReportNotifier
from src.publisher.docker_publisher import DockerPublisher
from src.publisher.registry import EcrRegistry
from src.release_orchestrator.pipeline import (
    Collaborators,
    RunContext,
    _phase_publish,
    execute_pipeline,
    should_run,
)
from src.release_orchestrator.shutdown import GracefulShutdown
from src.release_orchestrator.state import RunState
from src.release_shared.constants import FS_REPORT_FILE
from src.release_shared.exceptions import (
    BuildError,
    ConfigurationError,
    PipelineError,
    PublishError,
    RegistrationError,
    StabilityTimeoutError,
)
from src.release_shared.models import DeployPolicy, PipelineRun, Trigger, TriggerKind
from src.scan_gate.trivy_scanner import TrivyScanner
from tests.release.conftest import (
    REVISION,
    TASK_DEF_ARN,
    make_rolling_service,
    make_trivy_report,
    make_vulnerability,
)

COMMENT_URL = "https://github.com/acme/shop/pull/17#issuecomment-9"


class Harness:
    """Collaborators wired to fakes that record every external call."""

    def __init__(self, run: PipelineRun, ecs_boto: MagicMock, ecr_boto: MagicMock) -> None:
        self.run = run
        self.ecs_boto = ecs_boto
        self.ecr_boto = ecr_boto
        self.events: list[str] = []
        self.comments: list[dict[str, Any]] = []
        self.docker_results: dict[str, tuple[int, str, str]] = {}
        self.failing_scans: set[str] = set()

        scanner = TrivyScanner(run.scan)
        scanner._run = self._trivy
        publisher = DockerPublisher(run.build)
        publisher._run = self._docker
        client = GitHubCommentClient("tok", transport=httpx.MockTransport(self._github))

        self.collaborators = Collaborators(
            registry=EcrRegistry(ecr_boto, run.registry),
            scanner=scanner,
            publisher=publisher,
            notifier=ReportNotifier(client),
            coordinator=DeploymentCoordinator(EcsClient(ecs_boto), run.deploy),
        )

        ecs_boto.register_task_definition.side_effect = self._record(
            "register", ecs_boto.register_task_definition.return_value
        )
        ecs_boto.update_service.side_effect = self._record(
            "update", ecs_boto.update_service.return_value
        )

    def _record(self, name: str, value: Any):
        def side_effect(*args, **kwargs):
            self.events.append(name)
            return value

        return side_effect

    async def _trivy(self, *cmd: str) -> tuple[int, str, str]:
        kind = cmd[1]
        self.events.append(f"scan:{kind}")
        if kind in self.failing_scans:
            return (2, "", "scanner crashed")
        output = cmd[cmd.index("--output") + 1]
        vulns = (
            [make_vulnerability(pkg="requests", vuln_id="CVE-FS")]
            if kind == "fs"
            else [make_vulnerability(pkg="libssl3", vuln_id="CVE-IMG", fixed=None)]
        )
        Path(output).write_text(json.dumps(make_trivy_report(vulns)), encoding="utf-8")
        return (0, "", "")

    async def _docker(self, *args: str, stdin: str | None = None) -> tuple[int, str, str]:
        self.events.append(f"docker:{args[0]}")
        if args[0] == "image":
            return (0, "sha256:feed\n", "")
        return self.docker_results.get(args[0], (0, "", ""))

    def _github(self, request: httpx.Request) -> httpx.Response:
        self.events.append("comment")
        self.comments.append(json.loads(request.content))
        return httpx.Response(201, json={"id": 9, "html_url": COMMENT_URL})

    async def execute(self, resume: bool = False, shutdown: GracefulShutdown | None = None) -> RunState:
        return await execute_pipeline(
            self.run,
            self.collaborators,
            resume=resume,
            shutdown=shutdown or GracefulShutdown(),
        )


def _saved(run: PipelineRun) -> RunState:
    state = RunState.load(run.output_dir)
    assert state is not None
    return state


# ---------------------------------------------------------------------------
# Direct integration
# ---------------------------------------------------------------------------


class TestDirectIntegration:

    @pytest.mark.asyncio
    async def test_reaches_stable(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)

        state = await harness.execute()

        assert state.current_state == "stable"
        assert _saved(integration_run).current_state == "stable"
        assert state.task_definition_arn == TASK_DEF_ARN
        assert state.image_pushed is True
        assert state.service_running_count == 2
        assert state.completed_stages == [
            "resolve_identity",
            "source_scan",
            "build",
            "image_scan",
            "publish",
            "register",
            "update",
            "wait",
        ]

    @pytest.mark.asyncio
    async def test_stage_order(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        await harness.execute()
        assert harness.events == [
            "scan:fs",
            "docker:build",
            "docker:image",
            "scan:image",
            "docker:login",
            "docker:push",
            "register",
            "update",
        ]

    @pytest.mark.asyncio
    async def test_no_comment_on_integration(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        await harness.execute()
        assert harness.comments == []

    @pytest.mark.asyncio
    async def test_same_identity_everywhere(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        state = await harness.execute()

        expected = f"123456789012.dkr.ecr.us-east-1.amazonaws.com/shop:{REVISION}"
        assert state.image_uri == expected
        registered = ecs_boto.register_task_definition.call_args.kwargs
        web = [c for c in registered["containerDefinitions"] if c["name"] == "web"][0]
        assert web["image"] == expected
        assert "revision" not in registered
        assert "taskDefinitionArn" not in registered
        on_disk = json.loads(Path(integration_run.task_definition_path).read_text(encoding="utf-8"))
        assert on_disk["containerDefinitions"][0]["image"] == expected

    @pytest.mark.asyncio
    async def test_update_targets_registered_revision(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        await harness.execute()
        ecs_boto.update_service.assert_called_once_with(
            cluster="prod",
            service="shop-web",
            taskDefinition=TASK_DEF_ARN,
            forceNewDeployment=True,
        )

    @pytest.mark.asyncio
    async def test_findings_do_not_block(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        state = await harness.execute()
        assert state.fs_scan_counts == {"CRITICAL": 1}
        assert state.image_scan_counts == {"CRITICAL": 1}
        assert state.current_state == "stable"

    @pytest.mark.asyncio
    async def test_scanner_failure_does_not_block(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        harness.failing_scans = {"fs", "image"}

        state = await harness.execute()

        assert state.current_state == "stable"
        assert "scanner crashed" in state.fs_scan_error
        assert "scanner crashed" in state.image_scan_error
        assert len(state.warnings) == 2


# ---------------------------------------------------------------------------
# Review request
# ---------------------------------------------------------------------------


class TestReviewRequest:

    @pytest.mark.asyncio
    async def test_completes_without_deploying(self, review_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(review_run, ecs_boto, ecr_boto)

        state = await harness.execute()

        assert state.current_state == "complete"
        assert state.image_pushed is True
        ecs_boto.register_task_definition.assert_not_called()
        ecs_boto.update_service.assert_not_called()
        ecs_boto.describe_services.assert_not_called()

    @pytest.mark.asyncio
    async def test_posts_one_comment_after_push(self, review_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(review_run, ecs_boto, ecr_boto)

        state = await harness.execute()

        assert len(harness.comments) == 1
        assert harness.events.index("comment") > harness.events.index("docker:push")
        body = harness.comments[0]["body"]
        assert "CVE-FS" in body
        assert "CVE-IMG" in body
        assert state.comment_url == COMMENT_URL

    @pytest.mark.asyncio
    async def test_failed_source_scan_comments_image_findings_only(
        self, review_run, ecs_boto, ecr_boto
    ) -> None:
        stale = Path(review_run.output_dir) / FS_REPORT_FILE
        stale.parent.mkdir(parents=True, exist_ok=True)
        stale.write_text(
            json.dumps(make_trivy_report([make_vulnerability(vuln_id="CVE-STALE")])),
            encoding="utf-8",
        )
        harness = Harness(review_run, ecs_boto, ecr_boto)
        harness.failing_scans = {"fs"}

        state = await harness.execute()

        assert state.current_state == "complete"
        assert "scanner crashed" in state.fs_scan_error
        assert len(harness.comments) == 1
        body = harness.comments[0]["body"]
        assert "CVE-IMG" in body
        assert "CVE-STALE" not in body
        assert "CVE-FS" not in body
        assert state.comment_url == COMMENT_URL

    @pytest.mark.asyncio
    async def test_comment_failure_does_not_fail_run(self, review_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(review_run, ecs_boto, ecr_boto)

        def broken(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        harness.collaborators.notifier = ReportNotifier(
            GitHubCommentClient("tok", transport=httpx.MockTransport(broken))
        )

        state = await harness.execute()

        assert state.current_state == "complete"
        assert state.comment_url == ""
        assert any("not posted" in w for w in state.warnings)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:

    @pytest.mark.asyncio
    async def test_build_failure(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        harness.docker_results["build"] = (1, "", "Dockerfile not found")

        with pytest.raises(BuildError):
            await harness.execute()

        saved = _saved(integration_run)
        assert saved.current_state == "failed"
        assert saved.failed_stage == "build"
        assert "Dockerfile not found" in saved.error
        assert "docker:push" not in harness.events
        assert "scan:image" not in harness.events
        ecs_boto.register_task_definition.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_failure_stops_before_deploy(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        harness.docker_results["push"] = (1, "", "denied")

        with pytest.raises(PublishError):
            await harness.execute()

        saved = _saved(integration_run)
        assert saved.failed_stage == "publish"
        assert saved.image_pushed is False
        ecs_boto.register_task_definition.assert_not_called()

    @pytest.mark.asyncio
    async def test_bad_container_name(self, integration_run, ecs_boto, ecr_boto) -> None:
        run = dataclasses.replace(integration_run, container_name="api")
        harness = Harness(run, ecs_boto, ecr_boto)

        with pytest.raises(PipelineError):
            await harness.execute()

        saved = _saved(run)
        assert saved.failed_stage == "register"
        ecs_boto.register_task_definition.assert_not_called()

    @pytest.mark.asyncio
    async def test_registration_rejected(self, integration_run, ecs_boto, ecr_boto) -> None:
        from botocore.exceptions import ClientError

        harness = Harness(integration_run, ecs_boto, ecr_boto)
        ecs_boto.register_task_definition.side_effect = ClientError(
            {"Error": {"Code": "ClientException", "Message": "Invalid cpu"}},
            "RegisterTaskDefinition",
        )

        with pytest.raises(RegistrationError):
            await harness.execute()

        assert _saved(integration_run).failed_stage == "register"
        ecs_boto.update_service.assert_not_called()

    @pytest.mark.asyncio
    async def test_stability_timeout(self, integration_run, ecs_boto, ecr_boto) -> None:
        run = dataclasses.replace(
            integration_run, deploy=DeployPolicy(wait_timeout=0.05, poll_interval=0.01)
        )
        ecs_boto.describe_services.return_value = {
            "services": [make_rolling_service()],
            "failures": [],
        }
        harness = Harness(run, ecs_boto, ecr_boto)

        with pytest.raises(StabilityTimeoutError):
            await harness.execute()

        saved = _saved(run)
        assert saved.current_state == "failed"
        assert saved.failed_stage == "wait"
        assert saved.task_definition_arn == TASK_DEF_ARN
        assert ecs_boto.update_service.call_count == 1


# ---------------------------------------------------------------------------
# Resume and interrupt
# ---------------------------------------------------------------------------


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_after_timeout_does_not_reregister(
        self, integration_run, ecs_boto, ecr_boto
    ) -> None:
        steady = ecs_boto.describe_services.return_value
        run = dataclasses.replace(
            integration_run, deploy=DeployPolicy(wait_timeout=0.05, poll_interval=0.01)
        )
        ecs_boto.describe_services.return_value = {
            "services": [make_rolling_service()],
            "failures": [],
        }
        with pytest.raises(StabilityTimeoutError):
            await Harness(run, ecs_boto, ecr_boto).execute()

        ecs_boto.describe_services.return_value = steady
        harness = Harness(run, ecs_boto, ecr_boto)
        state = await harness.execute(resume=True)

        assert state.current_state == "stable"
        assert state.failed_stage == ""
        assert ecs_boto.register_task_definition.call_count == 1
        assert ecs_boto.update_service.call_count == 1
        assert harness.events == []

    @pytest.mark.asyncio
    async def test_resume_finished_run_is_noop(self, integration_run, ecs_boto, ecr_boto) -> None:
        await Harness(integration_run, ecs_boto, ecr_boto).execute()
        harness = Harness(integration_run, ecs_boto, ecr_boto)

        state = await harness.execute(resume=True)

        assert state.current_state == "stable"
        assert harness.events == []

    @pytest.mark.asyncio
    async def test_resume_without_state(self, integration_run, ecs_boto, ecr_boto) -> None:
        with pytest.raises(ConfigurationError, match="No run state"):
            await Harness(integration_run, ecs_boto, ecr_boto).execute(resume=True)

    @pytest.mark.asyncio
    async def test_resume_other_revision(self, integration_run, ecs_boto, ecr_boto) -> None:
        await Harness(integration_run, ecs_boto, ecr_boto).execute()
        other = dataclasses.replace(
            integration_run,
            trigger=dataclasses.replace(integration_run.trigger, revision="0000"),
        )
        with pytest.raises(ConfigurationError, match="revision"):
            await Harness(other, ecs_boto, ecr_boto).execute(resume=True)


class TestInterrupt:

    @pytest.mark.asyncio
    async def test_stop_during_wait_keeps_update(self, integration_run, ecs_boto, ecr_boto) -> None:
        shutdown = GracefulShutdown()

        def describe(**kwargs):
            shutdown.should_stop = True
            return {"services": [make_rolling_service()], "failures": []}

        ecs_boto.describe_services.side_effect = describe
        harness = Harness(integration_run, ecs_boto, ecr_boto)

        state = await harness.execute(shutdown=shutdown)

        assert state.interrupted is True
        assert state.current_state == "waiting"
        assert _saved(integration_run).current_state == "waiting"
        assert ecs_boto.update_service.call_count == 1
        assert ecs_boto.describe_services.call_count == 1

    @pytest.mark.asyncio
    async def test_stop_before_start(self, integration_run, ecs_boto, ecr_boto) -> None:
        shutdown = GracefulShutdown()
        shutdown.should_stop = True
        harness = Harness(integration_run, ecs_boto, ecr_boto)

        state = await harness.execute(shutdown=shutdown)

        assert state.current_state == "init"
        assert state.interrupted is True
        assert harness.events == []


# ---------------------------------------------------------------------------
# Stage inputs and branch filter
# ---------------------------------------------------------------------------


class TestStageInputs:

    @pytest.mark.asyncio
    async def test_publish_requires_both_reports(self, integration_run, ecs_boto, ecr_boto) -> None:
        harness = Harness(integration_run, ecs_boto, ecr_boto)
        ctx = RunContext(
            run=integration_run,
            state=RunState(state_dir=integration_run.output_dir),
            collaborators=harness.collaborators,
            shutdown=GracefulShutdown(),
        )
        with pytest.raises(PipelineError, match="Stage input missing"):
            await _phase_publish(ctx, MagicMock())
        assert "docker:push" not in harness.events


class TestShouldRun:

    def _trigger(self, branch: str) -> Trigger:
        return Trigger(kind=TriggerKind.DIRECT_INTEGRATION, revision="abc", branch=branch)

    def test_tracked_branch(self) -> None:
        assert should_run(self._trigger("main"), ["main"]) is True

    def test_untracked_branch(self) -> None:
        assert should_run(self._trigger("feature/x"), ["main"]) is False

    def test_no_filter(self) -> None:
        assert should_run(self._trigger("feature/x"), []) is True

    def test_unknown_branch_runs(self) -> None:
        assert should_run(self._trigger(""), ["main"]) is True
