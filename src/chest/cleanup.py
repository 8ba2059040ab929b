#!/usr/bin/env python3

"""Crash safety net: restarts stopped containers and removes helper containers on every exit path.

Entries are recorded before the risky action (stopping a container, starting the helper container) and released only
once the corrective action succeeded. A registry which could not be drained keeps its entries for the next pass.
"""

import asyncio
import signal
from typing import Any, Coroutine, Dict, Iterable, List, Optional, TypeVar

from docker.errors import NotFound
from docker.models.containers import Container

from chest.data_structures import ContainerRef
from chest.engine import Engine
from chest.lifecycle import container_name, start_container, stop_container
from chest.logger import logger

T = TypeVar("T")


class CleanupRegistry:
    """Pending corrective actions of one orchestration session."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.restart: Dict[str, ContainerRef] = {}  # stopped containers, in stop order
        self.stop_delete: Dict[str, ContainerRef] = {}  # helper containers

    @property
    def pending(self) -> bool:
        return bool(self.restart or self.stop_delete)

    def track_restart(self, container: Container) -> None:
        self.restart.setdefault(container.id, ContainerRef(container.id, container_name(container)))

    def release_restart(self, container_id: str) -> None:
        self.restart.pop(container_id, None)

    def track_helper(self, container: Container) -> None:
        self.stop_delete.setdefault(container.id, ContainerRef(container.id, container_name(container)))

    def release_helper(self, container_id: str) -> None:
        self.stop_delete.pop(container_id, None)

    async def terminate(self) -> bool:
        """Starts every recorded container and stops and removes every recorded helper container.

        Failed actions are logged and their entries are retained.

        Returns:
            bool: Whether or not the registry is empty afterwards.
        """
        # reversed stop order restarts the services others depend on first
        for ref in reversed(list(self.restart.values())):
            try:
                container = await self.engine.get(ref.id)
                await start_container(self.engine, container)
                self.release_restart(ref.id)
            except Exception as error:
                logger.error(f"Failed to restart container '{ref.name}': {error}")

        for ref in list(self.stop_delete.values()):
            try:
                await self.remove_helper(ref)
            except Exception as error:
                logger.error(f"Failed to remove helper container '{ref.name}': {error}")

        return not self.pending

    async def remove_helper(self, ref: ContainerRef) -> None:
        try:
            container = await self.engine.get(ref.id)
        except NotFound:
            self.release_helper(ref.id)
            return

        await stop_container(self.engine, container)
        logger.info(f"Removing helper container '{ref.name}'...")
        await self.engine.remove(container)
        self.release_helper(ref.id)


class ProcessTable:
    """Registries of the running process, used only to clean up on abnormal termination."""

    def __init__(self) -> None:
        self.registries: List[CleanupRegistry] = []
        self.terminated = False

    def register(self, registry: CleanupRegistry) -> None:
        if registry not in self.registries:
            self.registries.append(registry)

    def unregister(self, registry: CleanupRegistry) -> None:
        if registry in self.registries:
            self.registries.remove(registry)

    async def terminate_all(self) -> None:
        """Drains every registry. Runs at most once per process."""
        if self.terminated:
            return
        self.terminated = True

        pending = [registry for registry in self.registries if registry.pending]
        if pending:
            logger.warning("Restoring container state before exiting...")

        for registry in pending:
            await registry.terminate()


PROCESS_TABLE = ProcessTable()


class TerminationRequested(SystemExit):
    def __init__(self, signum: int) -> None:
        super().__init__(128 + signum)
        self.signum = signum


def _raise_termination(signum: int, frame: Any) -> None:
    raise TerminationRequested(signum)


def install_signal_handlers(signals: Iterable[int] = (signal.SIGTERM, signal.SIGHUP)) -> None:
    """Turns termination signals into an exception, so that every pending cleanup phase runs before exiting."""
    for signum in signals:
        signal.signal(signum, _raise_termination)


def run_guarded(coroutine: Coroutine[Any, Any, T], table: Optional[ProcessTable] = None) -> T:
    """Runs the coroutine. If anything escapes it, remaining registry entries are processed once before re-raising."""
    table = PROCESS_TABLE if table is None else table

    try:
        result = asyncio.run(coroutine)
    except BaseException as error:
        if any(registry.pending for registry in table.registries):
            logger.error(f"Aborted by {type(error).__name__}: {error}")
        asyncio.run(table.terminate_all())
        raise

    # sessions which could not be drained get one more pass
    if any(registry.pending for registry in table.registries):
        asyncio.run(table.terminate_all())

    return result
