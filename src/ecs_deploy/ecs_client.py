"""Thin adapter over the boto3 ECS client.

Translates botocore errors into the pipeline's exception taxonomy and ECS
responses into :mod:`src.release_shared.models` types. No retries: boto3's
own retry configuration is the only one applied.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from src.release_shared.exceptions import RegistrationError, StabilityError, UpdateError
from src.release_shared.models import DeploymentSnapshot, ServiceDeploymentState

logger = logging.getLogger(__name__)


def service_state_from_response(service: dict[str, Any]) -> ServiceDeploymentState:
    """Map one ``describe_services`` ``services[]`` entry."""
    deployments = tuple(
        DeploymentSnapshot(
            id=str(d.get("id") or ""),
            status=str(d.get("status") or ""),
            task_definition=str(d.get("taskDefinition") or ""),
            desired_count=int(d.get("desiredCount") or 0),
            running_count=int(d.get("runningCount") or 0),
            pending_count=int(d.get("pendingCount") or 0),
            rollout_state=str(d.get("rolloutState") or ""),
        )
        for d in service.get("deployments") or []
    )
    return ServiceDeploymentState(
        status=str(service.get("status") or ""),
        desired_count=int(service.get("desiredCount") or 0),
        running_count=int(service.get("runningCount") or 0),
        pending_count=int(service.get("pendingCount") or 0),
        deployments=deployments,
    )


class EcsClient:
    """Async facade over a boto3 ``ecs`` client.

    The boto3 calls are blocking; each runs in a worker thread so the wait
    loop stays cancellable.
    """

    def __init__(self, ecs_client: Any) -> None:
        self._ecs = ecs_client

    async def register_task_definition(self, document: dict[str, Any]) -> str:
        """Register *document* as a new revision and return its ARN.

        Raises:
            RegistrationError: If ECS rejects the document.
        """
        try:
            response = await asyncio.to_thread(self._ecs.register_task_definition, **document)
        except (ClientError, BotoCoreError) as exc:
            raise RegistrationError(f"Task definition registration failed: {exc}") from exc
        arn = str((response.get("taskDefinition") or {}).get("taskDefinitionArn") or "")
        if not arn:
            raise RegistrationError("Registration response carries no taskDefinitionArn")
        logger.info("Registered new task definition: %s", arn)
        return arn

    async def update_service(
        self,
        cluster: str,
        service: str,
        task_definition_arn: str,
        force_new_deployment: bool = True,
    ) -> ServiceDeploymentState:
        """Point *service* at *task_definition_arn*.

        Raises:
            UpdateError: If ECS rejects the request.
        """
        try:
            response = await asyncio.to_thread(
                self._ecs.update_service,
                cluster=cluster,
                service=service,
                taskDefinition=task_definition_arn,
                forceNewDeployment=force_new_deployment,
            )
        except (ClientError, BotoCoreError) as exc:
            raise UpdateError(f"Service update failed: {exc}") from exc
        logger.info(
            "Service %s/%s updated to %s", cluster, service, task_definition_arn
        )
        return service_state_from_response(response.get("service") or {})

    async def describe_service(self, cluster: str, service: str) -> ServiceDeploymentState:
        """Return the live state of *service*.

        Raises:
            StabilityError: If the call fails or the service is missing.
        """
        try:
            response = await asyncio.to_thread(
                self._ecs.describe_services, cluster=cluster, services=[service]
            )
        except (ClientError, BotoCoreError) as exc:
            raise StabilityError(f"Cannot describe service {service}: {exc}") from exc
        failures = response.get("failures") or []
        if failures:
            reason = failures[0].get("reason") or "unknown"
            raise StabilityError(f"Service {service} not found in {cluster}: {reason}")
        services = response.get("services") or []
        if not services:
            raise StabilityError(f"Service {service} not found in {cluster}")
        return service_state_from_response(services[0])
