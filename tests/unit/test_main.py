"""Unit tests for module chest.main."""

import io
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
from pytest import MonkeyPatch

import chest.cleanup
import chest.main
from chest.chest import Chest
from chest.cleanup import ProcessTable
from chest.config import ChestSettings
from chest.engine import Engine
from chest.events import ArchiveStats, ProgressPercent
from chest.main import ProgressLine, ask_confirmation, is_failure, main, parse_args
from tests.utils.dummies import DummyDockerClient


class TtyStream(io.StringIO):
    def isatty(self) -> bool:
        return True


@pytest.fixture
def patched_main(monkeypatch: MonkeyPatch, engine: Engine, settings: ChestSettings) -> None:
    """Makes main() use the in-memory Docker client and leaves the process' signal handlers alone."""
    monkeypatch.setattr(chest.main, "install_signal_handlers", lambda: None)
    monkeypatch.setattr(chest.cleanup, "PROCESS_TABLE", ProcessTable())
    monkeypatch.setattr(
        chest.main,
        "Chest",
        lambda confirm: Chest(engine=engine, settings=settings, confirm=confirm, environ={}, table=ProcessTable()),
    )


def test_parse_args_backup() -> None:
    args = parse_args(["backup", "-c", "db", "-r", "/srv/backups/db", "--project"])

    assert args.command == "backup"
    assert args.container == "db"
    assert args.repository == "/srv/backups/db"
    assert args.project
    assert args.keep_running is None
    assert args.archive is None


def test_parse_args_requires_command() -> None:
    with pytest.raises(SystemExit):
        parse_args([])


def test_parse_args_restore_requires_archive() -> None:
    with pytest.raises(SystemExit):
        parse_args(["restore", "-c", "db"])


def test_parse_args_extract_compose_defaults_to_cwd() -> None:
    args = parse_args(["extract-compose", "-a", "shop-1", "-r", "/srv/backups/shop"])

    assert args.output == "."
    assert args.container is None


@pytest.mark.parametrize(
    "command, result, expected",
    [
        ("backup", None, True),
        ("backup", ArchiveStats.model_validate({"archive": {"name": "db-1"}}), False),
        ("backup-all", {"success": 2, "error": 0}, False),
        ("backup-all", {"success": 1, "error": 1}, True),
        ("restore", 0, False),
        ("restore", 2, True),
        ("extract-compose", 1, True),
        ("list", [], False),
        ("cleanup", 0, False),
    ],
)
def test_is_failure(command: str, result: Any, expected: bool) -> None:
    assert is_failure(command, result) == expected


def test_progress_line_overwrites_and_terminates() -> None:
    stream = TtyStream()
    progress = ProgressLine(stream)

    progress(ProgressPercent(type="progress_percent", current=512, total=1024, finished=False), 0)
    progress(ProgressPercent(type="progress_percent", current=1024, total=1024, finished=False), 1)
    progress(ProgressPercent(type="progress_percent", finished=True), 2)

    assert stream.getvalue() == "\r\x1b[K - 512 Bytes/1 KiB\r\x1b[K - 1 KiB/1 KiB\n"


def test_progress_line_is_silent_without_terminal() -> None:
    stream = io.StringIO()
    progress = ProgressLine(stream)

    progress(ProgressPercent(type="progress_percent", current=512, total=1024), 0)

    assert stream.getvalue() == ""


@pytest.mark.parametrize("answer, expected", [("y", True), ("Y ", True), ("n", False), ("", False)])
def test_ask_confirmation(monkeypatch: MonkeyPatch, answer: str, expected: bool) -> None:
    monkeypatch.setattr("builtins.input", lambda prompt: answer)

    assert ask_confirmation("borg@host:db") == expected


def test_ask_confirmation_without_input(monkeypatch: MonkeyPatch) -> None:
    def closed(prompt: str) -> str:
        raise EOFError()

    monkeypatch.setattr("builtins.input", closed)

    assert not ask_confirmation("borg@host:db")


def test_main_backup_succeeds(
    patched_main: None,
    docker_client: DummyDockerClient,
    json_output: Callable,
    create_stats: Dict[str, Any],
) -> None:
    container = docker_client.containers.add("db", running=True)
    docker_client.helper_output = json_output(stdout=[create_stats])

    with pytest.raises(SystemExit) as error:
        main(["backup", "-c", "db"])

    assert error.value.code == 0
    assert container.running


def test_main_backup_without_stats_fails(patched_main: None, docker_client: DummyDockerClient) -> None:
    docker_client.containers.add("db", running=True)

    with pytest.raises(SystemExit) as error:
        main(["backup", "-c", "db"])

    assert error.value.code == 1


def test_main_reports_errors(patched_main: None) -> None:
    with pytest.raises(SystemExit) as error:
        main(["backup", "-c", "missing"])

    assert error.value.code == 1


def test_main_extract_compose(patched_main: None, docker_client: DummyDockerClient, tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as error:
        main(["extract-compose", "-a", "shop-1", "-r", str(tmp_path), "-o", str(tmp_path.joinpath("out"))])

    assert error.value.code == 0
    assert f"{tmp_path.joinpath('out')}:/cwd:rw" in docker_client.helpers[0].create_kwargs["volumes"]


def test_main_rejects_invalid_settings(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setattr(chest.main, "install_signal_handlers", lambda: None)
    monkeypatch.setenv("CHEST_START_GRACE", "abc")

    with pytest.raises(SystemExit) as error:
        main(["cleanup"])

    assert error.value.code == 1
