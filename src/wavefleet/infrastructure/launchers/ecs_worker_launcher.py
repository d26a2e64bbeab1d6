"""ECS worker launcher running one task per dispatched work item."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol, cast

from botocore.exceptions import BotoCoreError, ClientError

from wavefleet.domain.errors import WorkerLaunchError
from wavefleet.domain.ports import LaunchRequest, WorkerLauncher

logger = logging.getLogger(__name__)

_FARGATE = "FARGATE"
_STOP_REASON_MAX_LENGTH = 255
_STARTED_BY = "wavefleet"


class EcsClient(Protocol):
    """Subset of ECS client operations used by the launcher."""

    def run_task(self, **kwargs: Any) -> dict[str, Any]:
        """Start tasks from a task definition."""

    def stop_task(self, *, cluster: str, task: str, reason: str) -> dict[str, Any]:
        """Stop one running task."""


class EcsWorkerLauncher(WorkerLauncher):
    """Launch workers as ECS tasks.

    The worker container receives `TASK_ID`, `WAVEFLEET_SESSION_ID` and the
    storage coordinates as environment overrides.
    """

    def __init__(
        self,
        cluster: str,
        task_definition: str,
        container_name: str,
        region: str = "us-east-1",
        launch_type: str = _FARGATE,
        capacity_provider: str | None = None,
        subnets: Sequence[str] = (),
        security_groups: Sequence[str] = (),
        assign_public_ip: bool = False,
        ecs_client_factory: Callable[[str], EcsClient] | None = None,
    ) -> None:
        self._cluster = cluster
        self._task_definition = task_definition
        self._container_name = container_name
        self._region = region
        self._launch_type = launch_type.upper()
        self._capacity_provider = capacity_provider
        self._subnets = list(subnets)
        self._security_groups = list(security_groups)
        self._assign_public_ip = assign_public_ip
        self._ecs_client_factory = ecs_client_factory or _build_default_ecs_client
        self._client: EcsClient | None = None

    async def launch_worker(self, request: LaunchRequest) -> str:
        """Run one ECS task for `request.task_id` and return its ARN."""

        client = self._get_client()
        run_task_kwargs = self._run_task_kwargs(request)
        try:
            response = await asyncio.to_thread(lambda: client.run_task(**run_task_kwargs))
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise WorkerLaunchError(
                f"ECS RunTask failed for task '{request.task_id}': "
                f"{error.get('Code')}: {error.get('Message') or exc}",
                code=error.get("Code"),
                status_code=exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
            ) from exc
        except BotoCoreError as exc:
            raise WorkerLaunchError(
                f"ECS RunTask failed for task '{request.task_id}': {exc}",
                code="RequestTimeout" if "Timeout" in type(exc).__name__ else "ServiceUnavailable",
            ) from exc

        failures = response.get("failures") or []
        if failures:
            failure = failures[0]
            reason = str(failure.get("reason") or "unknown")
            raise WorkerLaunchError(
                f"ECS RunTask reported failure for task '{request.task_id}': "
                f"{reason} {failure.get('detail') or ''}".rstrip(),
                code=reason,
            )

        tasks = response.get("tasks") or []
        task_arn = tasks[0].get("taskArn") if tasks else None
        if not isinstance(task_arn, str) or not task_arn:
            raise WorkerLaunchError(
                f"ECS RunTask returned no task for '{request.task_id}'.",
                code="NoTaskStarted",
            )

        logger.info(
            "Launched ECS worker %s for task '%s' in session '%s'.",
            task_arn,
            request.task_id,
            request.session_id,
        )
        return task_arn

    async def stop_workers(self, worker_refs: list[str], reason: str) -> int:
        """Stop ECS tasks; individual failures are logged and skipped."""

        if not worker_refs:
            return 0

        client = self._get_client()
        stopped = 0
        for task_arn in worker_refs:
            try:
                await asyncio.to_thread(
                    client.stop_task,
                    cluster=self._cluster,
                    task=task_arn,
                    reason=reason[:_STOP_REASON_MAX_LENGTH],
                )
            except (ClientError, BotoCoreError) as exc:
                logger.warning("Failed to stop ECS task %s: %s", task_arn, exc)
                continue
            stopped += 1
        return stopped

    def _run_task_kwargs(self, request: LaunchRequest) -> dict[str, Any]:
        environment = {
            **request.environment,
            "TASK_ID": request.task_id,
            "WAVEFLEET_SESSION_ID": request.session_id,
            "AWS_DEFAULT_REGION": self._region,
        }
        kwargs: dict[str, Any] = {
            "cluster": self._cluster,
            "taskDefinition": self._task_definition,
            "count": 1,
            "startedBy": _STARTED_BY,
            "overrides": {
                "containerOverrides": [
                    {
                        "name": self._container_name,
                        "environment": [
                            {"name": name, "value": value}
                            for name, value in sorted(environment.items())
                        ],
                    }
                ]
            },
            "tags": [
                {"key": "wavefleet:session", "value": request.session_id},
                {"key": "wavefleet:task", "value": request.task_id},
            ],
        }
        if self._launch_type == _FARGATE or self._capacity_provider is None:
            kwargs["launchType"] = self._launch_type
        else:
            kwargs["capacityProviderStrategy"] = [
                {"capacityProvider": self._capacity_provider, "weight": 1}
            ]
        if self._subnets:
            kwargs["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": self._subnets,
                    "securityGroups": self._security_groups,
                    "assignPublicIp": "ENABLED" if self._assign_public_ip else "DISABLED",
                }
            }
        return kwargs

    def _get_client(self) -> EcsClient:
        if self._client is None:
            self._client = self._ecs_client_factory(self._region)
        return self._client


def _build_default_ecs_client(region: str) -> EcsClient:
    """Create a boto3 ECS client lazily."""

    try:
        import boto3  # type: ignore[import-not-found]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "boto3 is required for the ECS worker launcher. Install project dependencies first."
        ) from exc

    return cast(EcsClient, boto3.client("ecs", region_name=region))


__all__ = ["EcsClient", "EcsWorkerLauncher"]
