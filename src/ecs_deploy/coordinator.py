"""Deployment coordinator: register, update, wait for steady state.

The pipeline drives these three steps through its state machine
(``registering`` -> ``updating`` -> ``waiting`` -> ``stable``, any step ->
``failed``). Nothing here retries, and nothing rolls back: a failed or
timed-out rollout leaves the requested update in effect.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from src.ecs_deploy.ecs_client import EcsClient
from src.release_shared.exceptions import StabilityError, StabilityTimeoutError
from src.release_shared.models import DeployPolicy, ServiceDeploymentState

logger = logging.getLogger(__name__)

_DEAD_SERVICE_STATUSES = frozenset({"INACTIVE", "DRAINING"})


@dataclass(frozen=True)
class WaitOutcome:
    """Result of :meth:`DeploymentCoordinator.wait_for_steady_state`."""
    stable: bool
    state: ServiceDeploymentState | None
    polls: int
    interrupted: bool = False


class DeploymentCoordinator:
    """Runs the ECS side of a direct-integration run."""

    def __init__(self, ecs: EcsClient, policy: DeployPolicy | None = None) -> None:
        self.ecs = ecs
        self.policy = policy or DeployPolicy()

    async def register(self, document: dict[str, Any]) -> str:
        """Register the mutated task definition; return the revision ARN."""
        return await self.ecs.register_task_definition(document)

    async def update(self, cluster: str, service: str, task_definition_arn: str) -> ServiceDeploymentState:
        """Ask ECS to roll *service* onto *task_definition_arn*."""
        return await self.ecs.update_service(
            cluster,
            service,
            task_definition_arn,
            force_new_deployment=self.policy.force_new_deployment,
        )

    @staticmethod
    def check_rollout(state: ServiceDeploymentState, task_definition_arn: str) -> None:
        """Raise if the observed state can no longer converge on our revision.

        Raises:
            StabilityError: If the service is gone, our deployment failed, or
                the service settled on a different revision.
        """
        if state.status in _DEAD_SERVICE_STATUSES:
            raise StabilityError(f"Service is {state.status}")
        for deployment in state.deployments:
            if (
                deployment.task_definition == task_definition_arn
                and deployment.rollout_state == "FAILED"
            ):
                raise StabilityError(
                    f"Deployment {deployment.id} of {task_definition_arn} failed"
                )
        if state.is_steady and state.deployments[0].task_definition != task_definition_arn:
            raise StabilityError(
                f"Service settled on {state.deployments[0].task_definition} "
                f"instead of {task_definition_arn}"
            )

    async def wait_for_steady_state(
        self,
        cluster: str,
        service: str,
        task_definition_arn: str,
        should_stop: Callable[[], bool] | None = None,
    ) -> WaitOutcome:
        """Poll the service until it is steady on *task_definition_arn*.

        Polls every ``policy.poll_interval`` seconds for at most
        ``policy.wait_timeout`` seconds. When *should_stop* returns True the
        wait ends early with ``interrupted=True``; no request is sent.

        Raises:
            StabilityTimeoutError: If the deadline passes first.
            StabilityError: If the rollout fails or the service disappears.
        """
        deadline = time.monotonic() + self.policy.wait_timeout
        polls = 0
        state: ServiceDeploymentState | None = None
        logger.info(
            "Waiting for %s/%s to stabilise (timeout=%ss, interval=%ss)",
            cluster,
            service,
            self.policy.wait_timeout,
            self.policy.poll_interval,
        )
        while True:
            if should_stop is not None and should_stop():
                logger.warning("Stability wait for %s interrupted", service)
                return WaitOutcome(stable=False, state=state, polls=polls, interrupted=True)

            state = await self.ecs.describe_service(cluster, service)
            polls += 1
            self.check_rollout(state, task_definition_arn)
            if state.is_steady:
                logger.info(
                    "Service %s is stable: %d/%d tasks running after %d poll(s)",
                    service,
                    state.running_count,
                    state.desired_count,
                    polls,
                )
                return WaitOutcome(stable=True, state=state, polls=polls)

            logger.debug(
                "Service %s not yet stable: running=%d desired=%d deployments=%d",
                service,
                state.running_count,
                state.desired_count,
                len(state.deployments),
            )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StabilityTimeoutError(cluster, service, self.policy.wait_timeout)
            await asyncio.sleep(min(self.policy.poll_interval, remaining))
