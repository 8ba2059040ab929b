#!/usr/bin/env python3

"""Testing fixtures."""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from chest.chest import Chest
from chest.cleanup import CleanupRegistry, ProcessTable
from chest.config import ChestSettings
from chest.engine import Engine
from tests.utils.dummies import DummyDockerClient


@pytest.fixture
def docker_client() -> DummyDockerClient:
    """Returns an in-memory Docker client.

    Returns:
        DummyDockerClient: Client without any container.
    """
    return DummyDockerClient()


@pytest.fixture
def engine(docker_client: DummyDockerClient) -> Engine:
    return Engine(client=docker_client)


@pytest.fixture
def registry(engine: Engine) -> CleanupRegistry:
    return CleanupRegistry(engine)


@pytest.fixture
def settings(tmp_path: Path) -> ChestSettings:
    """Returns settings with a temporary backup directory and without grace periods."""
    return ChestSettings(backups_dir=tmp_path.joinpath("backups"), start_grace_period=0.0)


@pytest.fixture
def process_table() -> ProcessTable:
    return ProcessTable()


@pytest.fixture
def chest(engine: Engine, settings: ChestSettings, process_table: ProcessTable) -> Chest:
    return Chest(engine=engine, settings=settings, confirm=lambda repository: True, environ={}, table=process_table)


@pytest.fixture
def json_output() -> Callable:
    """Returns a callable which encodes events as the (stdout, stderr) chunks of an attached container."""

    def func(stdout: List[Dict[str, Any]] = (), stderr: List[Dict[str, Any]] = ()) -> List:
        chunks = [(json.dumps(value).encode(), None) for value in stdout]
        chunks.extend((None, json.dumps(value).encode() + b"\n") for value in stderr)
        return chunks

    return func


@pytest.fixture
def create_stats() -> Dict[str, Any]:
    return {
        "archive": {
            "name": "db-240101-030000",
            "duration": 1.2345,
            "stats": {"original_size": 4096, "compressed_size": 2048, "deduplicated_size": 1024, "nfiles": 3},
        },
        "cache": {"stats": {"unique_csize": 8192, "unique_size": 16384, "total_size": 16384}},
        "repository": {"id": "abc", "location": "/repository"},
    }
