from __future__ import annotations

import asyncio
from typing import Any

import pytest
from botocore.exceptions import ClientError

from wavefleet.domain.errors import WorkerLaunchError
from wavefleet.domain.ports import LaunchRequest
from wavefleet.infrastructure.launchers import EcsWorkerLauncher, NoopWorkerLauncher


class FakeEcsClient:
    def __init__(self, response: dict[str, Any] | None = None) -> None:
        self.run_task_calls: list[dict[str, Any]] = []
        self.stop_task_calls: list[dict[str, Any]] = []
        self.response = response
        self.run_task_error: Exception | None = None
        self.failing_stops: set[str] = set()

    def run_task(self, **kwargs: Any) -> dict[str, Any]:
        self.run_task_calls.append(kwargs)
        if self.run_task_error is not None:
            raise self.run_task_error
        if self.response is not None:
            return self.response
        return {"tasks": [{"taskArn": f"arn:aws:ecs:task/{len(self.run_task_calls)}"}]}

    def stop_task(self, *, cluster: str, task: str, reason: str) -> dict[str, Any]:
        self.stop_task_calls.append({"cluster": cluster, "task": task, "reason": reason})
        if task in self.failing_stops:
            raise ClientError(
                {"Error": {"Code": "InvalidParameterException", "Message": "gone"}},
                "StopTask",
            )
        return {}


def _launcher(client: FakeEcsClient, **kwargs: Any) -> EcsWorkerLauncher:
    options: dict[str, Any] = {
        "cluster": "wavefleet",
        "task_definition": "wavefleet-worker:3",
        "container_name": "worker",
        "region": "eu-west-1",
        "subnets": ["subnet-a", "subnet-b"],
        "security_groups": ["sg-1"],
        "ecs_client_factory": lambda _: client,
    }
    options.update(kwargs)
    return EcsWorkerLauncher(**options)


def _request(task_id: str = "task-1") -> LaunchRequest:
    return LaunchRequest(
        session_id="session-1",
        task_id=task_id,
        environment={"WAVEFLEET_S3_BUCKET": "wavefleet-state"},
    )


def test_launch_worker_runs_one_fargate_task_with_overrides() -> None:
    client = FakeEcsClient()
    launcher = _launcher(client)

    worker_ref = asyncio.run(launcher.launch_worker(_request()))

    assert worker_ref == "arn:aws:ecs:task/1"
    call = client.run_task_calls[0]
    assert call["cluster"] == "wavefleet"
    assert call["taskDefinition"] == "wavefleet-worker:3"
    assert call["count"] == 1
    assert call["launchType"] == "FARGATE"
    assert "capacityProviderStrategy" not in call
    assert call["networkConfiguration"]["awsvpcConfiguration"] == {
        "subnets": ["subnet-a", "subnet-b"],
        "securityGroups": ["sg-1"],
        "assignPublicIp": "DISABLED",
    }
    override = call["overrides"]["containerOverrides"][0]
    assert override["name"] == "worker"
    assert {item["name"]: item["value"] for item in override["environment"]} == {
        "AWS_DEFAULT_REGION": "eu-west-1",
        "TASK_ID": "task-1",
        "WAVEFLEET_S3_BUCKET": "wavefleet-state",
        "WAVEFLEET_SESSION_ID": "session-1",
    }
    assert {"key": "wavefleet:task", "value": "task-1"} in call["tags"]


def test_ec2_launch_uses_capacity_provider_when_configured() -> None:
    client = FakeEcsClient()
    launcher = _launcher(
        client,
        launch_type="ec2",
        capacity_provider="wavefleet-asg",
        subnets=(),
    )

    asyncio.run(launcher.launch_worker(_request()))

    call = client.run_task_calls[0]
    assert call["capacityProviderStrategy"] == [{"capacityProvider": "wavefleet-asg", "weight": 1}]
    assert "launchType" not in call
    assert "networkConfiguration" not in call


@pytest.mark.parametrize(
    ("response", "code"),
    [
        ({"tasks": [], "failures": [{"reason": "RESOURCE:CPU", "arn": "x"}]}, "RESOURCE:CPU"),
        ({"tasks": [], "failures": []}, "NoTaskStarted"),
    ],
)
def test_launch_worker_raises_on_ecs_failures(response: dict[str, Any], code: str) -> None:
    launcher = _launcher(FakeEcsClient(response))

    with pytest.raises(WorkerLaunchError) as exc_info:
        asyncio.run(launcher.launch_worker(_request()))

    assert exc_info.value.code == code


def test_launch_worker_maps_client_errors() -> None:
    client = FakeEcsClient()
    client.run_task_error = ClientError(
        {
            "Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"},
            "ResponseMetadata": {"HTTPStatusCode": 400},
        },
        "RunTask",
    )
    launcher = _launcher(client)

    with pytest.raises(WorkerLaunchError) as exc_info:
        asyncio.run(launcher.launch_worker(_request()))

    assert exc_info.value.code == "ThrottlingException"
    assert exc_info.value.status_code == 400


def test_stop_workers_skips_individual_failures() -> None:
    client = FakeEcsClient()
    client.failing_stops = {"arn-2"}
    launcher = _launcher(client)

    stopped = asyncio.run(launcher.stop_workers(["arn-1", "arn-2", "arn-3"], "x" * 300))

    assert stopped == 2
    assert [call["task"] for call in client.stop_task_calls] == ["arn-1", "arn-2", "arn-3"]
    assert all(len(call["reason"]) == 255 for call in client.stop_task_calls)


def test_noop_launcher_has_no_worker_refs() -> None:
    launcher = NoopWorkerLauncher()

    assert asyncio.run(launcher.launch_worker(_request())) is None
    assert asyncio.run(launcher.stop_workers(["arn-1"], "cleanup")) == 0
