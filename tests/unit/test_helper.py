"""Unit tests for module chest.helper."""

from typing import Any, Callable, Dict, List

import pytest
from docker.errors import APIError
from pytest import MonkeyPatch

from chest.cleanup import CleanupRegistry
from chest.config import ChestSettings
from chest.data_structures import BindMount, MountMode, OperationSpec
from chest.engine import Engine
from chest.events import ArchiveStats, EventClassifier
from chest.helper import HELPER_LABEL, SAFETY_ENVIRONMENT, HelperRunner
from chest.binds import BindAggregator
from tests.utils.dummies import DummyDockerClient


@pytest.fixture
def runner(engine: Engine, settings: ChestSettings) -> HelperRunner:
    return HelperRunner(engine, settings, BindAggregator(environ={"SSH_AUTH_SOCK": "/tmp/agent.sock"}))


def local_spec(**kwargs: Any) -> OperationSpec:
    return OperationSpec(destination="/backups/db", command="borg list --json --log-json ::", **kwargs)


def test_compose_environment_for_local_repository(runner: HelperRunner) -> None:
    environment = runner.compose_environment(local_spec(environment={"BORG_PASSPHRASE": "label"}))

    for key, value in SAFETY_ENVIRONMENT.items():
        assert environment[key] == value
    assert environment["BORG_REPO"] == "/repository"
    assert environment["BORG_PASSPHRASE"] == "label"
    assert "SSH_AUTH_SOCK" not in environment


def test_compose_environment_for_remote_repository(runner: HelperRunner) -> None:
    spec = OperationSpec(destination="borg@host:db", command="true", interactive_passphrase="typed")

    environment = runner.compose_environment(spec)

    assert environment["BORG_REPO"] == "borg@host:db"
    assert environment["SSH_AUTH_SOCK"] == "/tmp/agent.sock"
    assert environment["BORG_PASSPHRASE"] == "typed"


def test_compose_binds_adds_missing_system_binds(runner: HelperRunner) -> None:
    spec = local_spec(binds=[BindMount("/backups/db", "/repository", MountMode.READ_WRITE)])

    binds = runner.compose_binds(spec)

    assert binds[0] == "/backups/db:/repository:rw"
    assert "/etc/hosts:/etc/hosts:ro" in binds
    assert len(binds) == len(set(binds))


async def test_run_creates_runs_and_removes_helper(
    docker_client: DummyDockerClient,
    runner: HelperRunner,
    registry: CleanupRegistry,
    json_output: Callable,
    create_stats: Dict[str, Any],
) -> None:
    docker_client.helper_output = json_output(
        stdout=[create_stats],
        stderr=[
            {"type": "progress_percent", "current": 1, "total": 2, "finished": False},
            {"type": "question_prompt", "message": "?"},
        ],
    )
    stdout: List[Any] = []
    stderr: List[Any] = []
    classifier = EventClassifier(lambda e, s: stdout.append(e), lambda e, s: stderr.append(e))

    status = await runner.run(local_spec(), registry, classifier)

    assert status == 0
    helper = docker_client.helpers[0]
    assert helper.removed
    assert not registry.pending
    assert docker_client.actions("create") == ["ceymard/borg:1.2.8"]
    assert helper.create_kwargs["entrypoint"] == "/bin/ash"
    assert helper.create_kwargs["command"] == ["-c", "borg list --json --log-json ::"]
    assert helper.create_kwargs["working_dir"] == "/data"
    assert helper.create_kwargs["labels"] == {HELPER_LABEL: "true"}
    assert isinstance(stdout[0], ArchiveStats)
    assert len(stderr) == 1


async def test_run_returns_non_zero_exit_status(
    docker_client: DummyDockerClient, runner: HelperRunner, registry: CleanupRegistry
) -> None:
    docker_client.helper_exit_code = 2

    status = await runner.run(local_spec(), registry, EventClassifier())

    assert status == 2
    assert docker_client.helpers[0].removed


async def test_run_removes_helper_when_start_fails(
    docker_client: DummyDockerClient, runner: HelperRunner, registry: CleanupRegistry
) -> None:
    docker_client.helper_fail_start = True

    with pytest.raises(APIError):
        await runner.run(local_spec(), registry, EventClassifier())

    assert docker_client.helpers[0].removed
    assert not registry.pending


async def test_run_propagates_create_failure(
    docker_client: DummyDockerClient, runner: HelperRunner, registry: CleanupRegistry
) -> None:
    docker_client.fail_create = True

    with pytest.raises(APIError):
        await runner.run(local_spec(), registry, EventClassifier())

    assert docker_client.helpers == []
    assert not registry.pending


async def test_run_survives_streaming_errors(
    docker_client: DummyDockerClient, runner: HelperRunner, registry: CleanupRegistry
) -> None:
    docker_client.helper_fail_attach = True

    status = await runner.run(local_spec(), registry, EventClassifier())

    assert status == 0
    assert docker_client.actions("wait") == [docker_client.helpers[0].name]
    assert docker_client.helpers[0].removed


async def test_run_keeps_helper_registered_when_removal_fails(
    docker_client: DummyDockerClient, runner: HelperRunner, registry: CleanupRegistry
) -> None:
    original_create = docker_client.containers.create

    def create(*args: Any, **kwargs: Any) -> Any:
        container = original_create(*args, **kwargs)
        container.fail_remove = True
        return container

    docker_client.containers.create = create

    await runner.run(local_spec(), registry, EventClassifier())

    assert list(registry.stop_delete) == [docker_client.helpers[0].id]


async def test_helpers_created_in_the_same_second_get_distinct_names(
    docker_client: DummyDockerClient, runner: HelperRunner, registry: CleanupRegistry, monkeypatch: MonkeyPatch
) -> None:
    monkeypatch.setattr("chest.helper.timestamp", lambda: "240101-030000")

    await runner.run(local_spec(), registry, EventClassifier())
    await runner.run(local_spec(), registry, EventClassifier())

    first, second = (helper.name for helper in docker_client.helpers)
    assert first != second
    assert first.startswith("chest-240101-030000-")
