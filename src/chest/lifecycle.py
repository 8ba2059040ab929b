#!/usr/bin/env python3

"""Idempotent stop and start of single containers."""

from typing import Any, Optional

from docker.models.containers import Container

from chest.engine import Engine
from chest.logger import logger


def container_name(container: Container) -> str:
    return container.name or container.id[:12]


async def stop_container(
    engine: Engine, container: Container, registry: Optional[Any] = None, timeout: Optional[int] = None
) -> bool:
    """Stops the container if it is running and waits until it reports that it is not running anymore.

    The engine's stop call may return before the container has fully exited, so the state is inspected again after
    every stop call. There is no retry ceiling, the engine's own stop timeout bounds every attempt.

    Args:
        engine (Engine): Container engine.
        container (Container): Container to stop.
        registry (Optional[CleanupRegistry]): When given, the container is recorded for restart before it is stopped.
        timeout (Optional[int]): Seconds the engine waits before killing the container.

    Returns:
        bool: Whether or not the container was running.
    """
    if not await engine.is_running(container):
        return False

    logger.info(f"Stopping '{container_name(container)}'...")
    if registry is not None:
        registry.track_restart(container)

    while await engine.is_running(container):
        await engine.stop(container, timeout=timeout)

    return True


async def start_container(engine: Engine, container: Container) -> bool:
    """Starts the container unless it is already running.

    There is no readiness probe. Callers apply a grace period when dependents need the service to be up.

    Returns:
        bool: Whether or not a start was issued.
    """
    if await engine.is_running(container):
        return False

    logger.info(f"Starting '{container_name(container)}'...")
    await engine.start(container)
    return True
