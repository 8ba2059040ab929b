#!/usr/bin/env python3

"""Runs one borg invocation inside an ephemeral helper container."""

import itertools
import uuid
from typing import Any, Dict, Iterator, List, Optional

from docker.models.containers import Container

from chest.binds import BindAggregator, unique_targets
from chest.cleanup import CleanupRegistry
from chest.config import ChestSettings
from chest.data_structures import ContainerRef, OperationSpec
from chest.engine import Chunk, Engine
from chest.events import EventClassifier, JsonStream
from chest.lifecycle import container_name
from chest.logger import logger
from chest.utils import timestamp

HELPER_LABEL = "chest.helper"

SAFETY_ENVIRONMENT = {
    "BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK": "yes",
    "BORG_RELOCATED_REPO_ACCESS_IS_OK": "yes",
    "BORG_HOSTNAME_IS_UNIQUE": "no",
}


class HelperRunner:
    def __init__(self, engine: Engine, settings: ChestSettings, aggregator: Optional[BindAggregator] = None) -> None:
        self.engine = engine
        self.settings = settings
        self.aggregator = aggregator or BindAggregator(settings.workspace, settings.repository_mount)

    def compose_environment(self, spec: OperationSpec) -> Dict[str, str]:
        environment = dict(SAFETY_ENVIRONMENT)
        environment["BORG_REPO"] = spec.destination if spec.is_remote else self.settings.repository_mount

        if spec.is_remote and self.aggregator.environ.get("SSH_AUTH_SOCK"):
            environment["SSH_AUTH_SOCK"] = self.aggregator.environ["SSH_AUTH_SOCK"]

        environment.update(spec.environment)

        if spec.interactive_passphrase:
            environment["BORG_PASSPHRASE"] = spec.interactive_passphrase

        return environment

    def compose_binds(self, spec: OperationSpec) -> List[str]:
        binds = unique_targets(list(spec.binds) + self.aggregator.system_binds())
        return [bind.to_bind() for bind in binds]

    async def run(self, spec: OperationSpec, registry: CleanupRegistry, classifier: EventClassifier) -> int:
        """Runs the operation to completion exactly once.

        The helper container is recorded in the registry before it is started and released only after it was removed.
        A non-zero exit status is returned, not raised: callers inspect the emitted events.

        Args:
            spec (OperationSpec): The operation.
            registry (CleanupRegistry): Session registry.
            classifier (EventClassifier): Receives every JSON value written by the helper container.

        Returns:
            int: Exit status of the helper container.
        """
        environment = self.compose_environment(spec)
        binds = self.compose_binds(spec)
        name = f"chest-{timestamp()}-{uuid.uuid4().hex[:6]}"

        logger.info(f"Creating helper container '{name}' from '{self.settings.helper_image}'...")
        logger.debug(f"Helper binds: {binds}")
        container: Container = await self.engine.create(
            self.settings.helper_image,
            name=name,
            command=["-c", spec.command],
            entrypoint="/bin/ash",
            environment=environment,
            volumes=binds,
            working_dir=self.settings.workspace,
            labels={HELPER_LABEL: "true"},
        )
        registry.track_helper(container)

        try:
            await self.engine.start(container)
            await self._follow(container, classifier)
            result: Dict[str, Any] = await self.engine.wait(container)
        finally:
            await self._dispose(container, registry)

        status = int(result.get("StatusCode", 0))
        if status != 0:
            logger.warning(f"Helper container '{name}' exited with status {status}.")
        return status

    async def _follow(self, container: Container, classifier: EventClassifier) -> None:
        sequence = itertools.count()
        primary = JsonStream(lambda value: classifier.dispatch(value, next(sequence), primary=True))
        diagnostic = JsonStream(lambda value: classifier.dispatch(value, next(sequence), primary=False))

        try:
            stream: Iterator[Chunk] = await self.engine.attach(container)
            while True:
                chunk = await self.engine.next_chunk(stream)
                if chunk is None:
                    break
                stdout, stderr = chunk
                if stdout:
                    primary.feed(stdout)
                if stderr:
                    diagnostic.feed(stderr)
            primary.close()
            diagnostic.close()
        except Exception as error:
            logger.error(f"Failed to follow the output of helper container '{container_name(container)}': {error}")

    async def _dispose(self, container: Container, registry: CleanupRegistry) -> None:
        try:
            await registry.remove_helper(ContainerRef(container.id, container_name(container)))
        except Exception as error:
            logger.error(f"Failed to remove helper container '{container_name(container)}': {error}")
