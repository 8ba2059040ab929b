#!/usr/bin/env python3

"""Asynchronous facade over the Docker SDK.

Every call to the Docker daemon blocks, so each one is handed to the event loop's default executor. These calls
(together with explicit grace periods) are the only places where the orchestration code yields.
"""

import asyncio
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from docker import DockerClient, from_env
from docker.models.containers import Container

from chest.data_structures import ContainerState

Chunk = Tuple[Optional[bytes], Optional[bytes]]


class Engine:
    def __init__(self, client: Optional[DockerClient] = None) -> None:
        self._client = client

    @property
    def client(self) -> DockerClient:
        if self._client is None:
            self._client = from_env()
        return self._client

    async def _call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def get(self, id_or_name: str) -> Container:
        return await self._call(self.client.containers.get, id_or_name)

    async def list(self, all: bool = True, filters: Optional[Dict[str, Any]] = None) -> List[Container]:
        return await self._call(self.client.containers.list, all=all, filters=filters or {})

    async def inspect(self, container: Container) -> Dict[str, Any]:
        """Refreshes and returns the container's inspection record. Never served from a cache."""
        await self._call(container.reload)
        return container.attrs

    async def state(self, container: Container) -> ContainerState:
        return ContainerState.from_attrs(await self.inspect(container))

    async def is_running(self, container: Container) -> bool:
        return await self.state(container) is ContainerState.RUNNING

    async def create(self, image: str, **kwargs: Any) -> Container:
        return await self._call(self.client.containers.create, image, **kwargs)

    async def start(self, container: Container) -> None:
        await self._call(container.start)

    async def stop(self, container: Container, timeout: Optional[int] = None) -> None:
        if timeout is None:
            await self._call(container.stop)
        else:
            await self._call(container.stop, timeout=timeout)

    async def remove(self, container: Container, force: bool = False) -> None:
        await self._call(container.remove, force=force)

    async def attach(self, container: Container) -> Iterator[Chunk]:
        """Follows the container's output, split into (stdout, stderr) chunks."""
        return await self._call(container.attach, stdout=True, stderr=True, stream=True, logs=True, demux=True)

    async def next_chunk(self, stream: Iterator[Chunk]) -> Optional[Chunk]:
        return await self._call(next, stream, None)

    async def wait(self, container: Container) -> Dict[str, Any]:
        return await self._call(container.wait)
