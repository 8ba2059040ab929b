#!/usr/bin/env python3

"""Main chest class."""

import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Set

from docker.errors import DockerException

from chest.binds import BindAggregator
from chest.cleanup import PROCESS_TABLE, CleanupRegistry, ProcessTable
from chest.commands import BorgCommand, Transfer
from chest.config import ChestLabels, ChestSettings
from chest.data_structures import BindMount, DependencyNode, MountMode, OperationSpec, is_remote_destination
from chest.dependencies import DEPENDS_ON_LABEL, DependencyResolver, compose_depends_on, plan_waves
from chest.discovery import ContainerDescription, auto_backup_containers, describe, project_members
from chest.engine import Engine
from chest.errors import (
    ChestError,
    ContainerRunningError,
    NoRepositoryError,
    OperationAbortedError,
)
from chest.events import ArchiveEntry, ArchiveListing, ArchiveStats, EventCallback, EventClassifier
from chest.helper import HELPER_LABEL, HelperRunner
from chest.lifecycle import start_container, stop_container
from chest.logger import logger
from chest.utils import ensure_valid_repository

COMPOSE_PATTERNS = ("+sh:**/*.yml", "+sh:**/*.yaml", "-sh:**")
EXTRACT_MOUNT = "/cwd"


class Chest:
    """Coordinates backups and restores of containers and compose projects.

    Args:
        engine (Optional[Engine]): Container engine. Defaults to the Docker daemon of the environment.
        settings (Optional[ChestSettings]): Process settings. Defaults to the settings read from the environment.
        confirm (Optional[Callable[[str], bool]]): Asked before writing to a remote repository. Remote repositories
            are refused when no callback is given.
        environ (Optional[Mapping[str, str]]): Environment used to resolve labels and ssh settings.
        table (Optional[ProcessTable]): Process table the sessions are registered in.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        settings: Optional[ChestSettings] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        environ: Optional[Mapping[str, str]] = None,
        table: Optional[ProcessTable] = None,
    ) -> None:
        self.environ = os.environ if environ is None else environ
        self.engine = engine or Engine()
        self.settings = settings or ChestSettings()
        self.confirm = confirm
        self.table = PROCESS_TABLE if table is None else table
        self.aggregator = BindAggregator(self.settings.workspace, self.settings.repository_mount, self.environ)
        self.runner = HelperRunner(self.engine, self.settings, self.aggregator)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[CleanupRegistry]:
        """Provides the cleanup registry of one operation and drains it when the operation ends, however it ends."""
        registry = CleanupRegistry(self.engine)
        self.table.register(registry)
        try:
            yield registry
        finally:
            if await registry.terminate():
                self.table.unregister(registry)
            else:
                pending = [ref.name for ref in [*registry.restart.values(), *registry.stop_delete.values()]]
                logger.error(f"Containers left in an unexpected state, retrying before exit: {pending}")

    @asynccontextmanager
    async def quiesced(
        self, registry: CleanupRegistry, group: Sequence[ContainerDescription], keep_running: bool = False
    ) -> AsyncIterator[List[DependencyNode]]:
        """Stops the running containers of the group in dependency order and restarts them afterwards.

        Containers are stopped one after the other, dependents first. They are started again in waves: containers
        whose needs are satisfied start concurrently.

        Yields:
            List[DependencyNode]: The containers which were stopped.
        """
        resolver = DependencyResolver(self._dependency_nodes(group))
        stopped: List[DependencyNode] = []

        try:
            if not keep_running:
                for node in resolver.stop_order(only_running=True):
                    container = await self.engine.get(node.id)
                    if await stop_container(self.engine, container, registry, timeout=self.settings.stop_timeout):
                        stopped.append(node)

                if stopped and self.settings.stop_settle_period:
                    await asyncio.sleep(self.settings.stop_settle_period)

            yield stopped
        finally:
            await self._restart(registry, resolver, stopped)

    async def backup(
        self,
        name: str,
        archive: Optional[str] = None,
        repository: Optional[str] = None,
        keep_running: Optional[bool] = None,
        project: bool = False,
        on_stdout: Optional[EventCallback] = None,
        on_stderr: Optional[EventCallback] = None,
        on_progress: Optional[EventCallback] = None,
    ) -> Optional[ArchiveStats]:
        """Backs up a container, or its whole compose project, to a borg repository.

        Steps:
        1) Resolve repository and archive name from the arguments, the container's labels and the environment.
        2) Ask for confirmation if the repository is remote.
        3) Stop the running containers of the group, dependents first (unless they are kept running).
        4) Run 'borg init', 'borg create', and optionally 'borg prune' in a helper container.
        5) Start the stopped containers again, services others depend on first.

        Raises:
            NoMatchingContainersError: If the container does not exist.
            NoRepositoryError: If no repository can be determined.
            OperationAbortedError: If the remote repository was not confirmed.

        Returns:
            Optional[ArchiveStats]: Statistics of the created archive, None if borg did not report any.
        """
        description = await describe(self.engine, name, self.environ)
        labels = description.chest
        repository = self._repository(description, repository)
        archive = archive or labels.archive_name(description.id)
        keep_running = labels.keep_running if keep_running is None else keep_running
        remote = is_remote_destination(repository)

        self._confirm_remote(repository)
        if not remote:
            ensure_valid_repository(Path(repository))

        group = await project_members(self.engine, description, self.environ) if project else [description]

        command = BorgCommand(
            repository=repository if remote else self.settings.repository_mount,
            transfer=Transfer.CREATE,
            workspace=self.settings.workspace,
            archive=archive,
            encrypted=bool(labels.passphrase),
            init=True,
            ssh_setup=remote,
            prune=labels.prune_arguments(),
            prefix=labels.prefix,
            owner=None if remote else self._owner(),
        )
        spec = OperationSpec(
            destination=repository,
            command=command.render(),
            environment=self._environment(labels),
            binds=self._binds(group, repository, project),
        )

        logger.info(f"Backing up '{description.name}' to '{repository}' as '{archive}'...")
        classifier = EventClassifier(on_stdout, on_stderr, on_progress)

        async with self.session() as registry:
            async with self.quiesced(registry, group, keep_running):
                status = await self.runner.run(spec, registry, classifier)

        stats = [event for event in classifier.results if isinstance(event, ArchiveStats)]
        if not stats:
            logger.error(f"Backup of '{description.name}' did not report any statistics (exit status {status}).")
            return None

        logger.info(f"Created archive '{stats[-1].archive.name}'.")
        return stats[-1]

    async def backup_all(self, **callbacks: Optional[EventCallback]) -> Dict[str, int]:
        """Backs up every container labelled 'chest.auto-backup'.

        A failing container does not stop the others.

        Returns:
            Dict[str, int]: Number of successful and failed backups.
        """
        stats: Dict[str, int] = {"success": 0, "error": 0}

        for description in await auto_backup_containers(self.engine, self.environ):
            logger.info(f"Backing up auto-backup container '{description.name}'...")
            try:
                result = await self.backup(description.id, **callbacks)
            except (ChestError, DockerException, OSError) as error:
                logger.error(f"Failed to back up '{description.name}': {error}")
                stats["error"] += 1
                continue

            stats["success" if result is not None else "error"] += 1

        stat_message = f"{stats['success']} successful, {stats['error']} errors"
        if stats["error"] == 0:
            logger.info(stat_message)
        else:
            logger.warning(stat_message)

        return stats

    async def restore(
        self,
        name: str,
        archive: str,
        repository: Optional[str] = None,
        project: bool = False,
        on_stdout: Optional[EventCallback] = None,
        on_stderr: Optional[EventCallback] = None,
        on_progress: Optional[EventCallback] = None,
    ) -> int:
        """Extracts an archive into the container's mounts. The container (or project) has to be stopped.

        Raises:
            ContainerRunningError: If a container of the group is running.

        Returns:
            int: Exit status of borg.
        """
        description = await describe(self.engine, name, self.environ)
        repository = self._repository(description, repository)
        group = await project_members(self.engine, description, self.environ) if project else [description]

        running = [member.name for member in group if member.running]
        if running:
            raise ContainerRunningError(running[0])

        remote = is_remote_destination(repository)
        command = BorgCommand(
            repository=repository if remote else self.settings.repository_mount,
            transfer=Transfer.EXTRACT,
            workspace=self.settings.workspace,
            archive=archive,
            ssh_setup=remote,
        )
        spec = OperationSpec(
            destination=repository,
            command=command.render(),
            environment=self._environment(description.chest),
            binds=self._binds(group, repository, project),
        )

        logger.info(f"Restoring '{archive}' into '{description.name}'...")
        async with self.session() as registry:
            return await self.runner.run(spec, registry, EventClassifier(on_stdout, on_stderr, on_progress))

    async def list_archives(self, name: Optional[str] = None, repository: Optional[str] = None) -> List[ArchiveEntry]:
        """Lists the archives of a repository. Never stops any container."""
        labels = ChestLabels.resolve({}, self.environ)
        if name is not None:
            description = await describe(self.engine, name, self.environ)
            labels = description.chest
            repository = self._repository(description, repository)
        if not repository:
            raise NoRepositoryError()

        remote = is_remote_destination(repository)
        command = BorgCommand(
            repository=repository if remote else self.settings.repository_mount,
            transfer=Transfer.LIST,
            ssh_setup=remote,
        )
        spec = OperationSpec(
            destination=repository,
            command=command.render(),
            environment=self._environment(labels),
            binds=self.aggregator.destination_binds(repository),
        )

        classifier = EventClassifier()
        async with self.session() as registry:
            await self.runner.run(spec, registry, classifier)

        listings = [event for event in classifier.results if isinstance(event, ArchiveListing)]
        return listings[-1].archives if listings else []

    async def extract_compose(
        self,
        archive: str,
        target_dir: Path,
        name: Optional[str] = None,
        repository: Optional[str] = None,
        on_stderr: Optional[EventCallback] = None,
    ) -> int:
        """Extracts the compose files of an archive into target_dir. Never stops any container."""
        labels = ChestLabels.resolve({}, self.environ)
        if name is not None:
            description = await describe(self.engine, name, self.environ)
            labels = description.chest
            repository = self._repository(description, repository)
        if not repository:
            raise NoRepositoryError()

        remote = is_remote_destination(repository)
        command = BorgCommand(
            repository=repository if remote else self.settings.repository_mount,
            transfer=Transfer.EXTRACT,
            workspace=EXTRACT_MOUNT,
            archive=archive,
            ssh_setup=remote,
            patterns=COMPOSE_PATTERNS,
        )
        spec = OperationSpec(
            destination=repository,
            command=command.render(),
            environment=self._environment(labels),
            binds=[BindMount(str(target_dir), EXTRACT_MOUNT, MountMode.READ_WRITE)]
            + self.aggregator.destination_binds(repository),
        )

        async with self.session() as registry:
            return await self.runner.run(spec, registry, EventClassifier(on_stderr=on_stderr))

    async def remove_orphans(self) -> int:
        """Removes stopped helper containers left behind by killed chest processes.

        Returns:
            int: Number of removed containers.
        """
        removed = 0
        for container in await self.engine.list(all=True, filters={"label": HELPER_LABEL}):
            if await self.engine.is_running(container):
                continue
            logger.info(f"Removing orphaned helper container '{container.name}'...")
            await self.engine.remove(container)
            removed += 1
        return removed

    async def _restart(
        self, registry: CleanupRegistry, resolver: DependencyResolver, stopped: List[DependencyNode]
    ) -> None:
        if not stopped:
            return

        stopped_ids: Set[str] = {node.id for node in stopped}
        active: Set[str] = set()
        for node in resolver.nodes:
            if node.was_running and node.id not in stopped_ids:
                active.update(node.provides)

        waves = plan_waves(resolver.start_order(), stopped_ids, active, resolver.known_names)
        for index, wave in enumerate(waves):
            if index > 0 and self.settings.start_grace_period:
                await asyncio.sleep(self.settings.start_grace_period)
            await asyncio.gather(*(self._start(registry, node) for node in wave))

    async def _start(self, registry: CleanupRegistry, node: DependencyNode) -> None:
        try:
            container = await self.engine.get(node.id)
            await start_container(self.engine, container)
            registry.release_restart(node.id)
        except Exception as error:
            logger.error(f"Failed to restart container '{node.name}': {error}")

    def _dependency_nodes(self, group: Sequence[ContainerDescription]) -> List[DependencyNode]:
        fallback: Dict[str, Set[str]] = {}
        if len(group) > 1 and not any(member.labels.get(DEPENDS_ON_LABEL) for member in group):
            fallback = compose_depends_on(group[0].config_files)
        return [member.dependency_node(fallback) for member in group]

    def _repository(self, description: ContainerDescription, repository: Optional[str]) -> str:
        repository = repository or description.chest.default_repository(self.settings, description.name)
        if not repository:
            raise NoRepositoryError(description.name)
        return repository

    def _confirm_remote(self, repository: str) -> None:
        if not is_remote_destination(repository):
            return

        logger.warning(
            f"You are about to back up to the remote server '{repository}'. Make sure that this is not an existing"
            " backup of another host."
        )
        if self.confirm is None or not self.confirm(repository):
            raise OperationAbortedError(f"Backup to remote repository '{repository}' was not confirmed.")

    def _environment(self, labels: ChestLabels) -> Dict[str, str]:
        return {"BORG_PASSPHRASE": labels.passphrase} if labels.passphrase else {}

    def _binds(self, group: Sequence[ContainerDescription], repository: str, project: bool) -> List[BindMount]:
        working_dir = group[0].working_dir if project and group else None

        config_files: List[Path] = []
        for member in group:
            config_files.extend(file for file in member.config_files if file not in config_files)

        services = {member.service_name: member.mounts for member in group}
        return self.aggregator.aggregate(services, repository, working_dir, config_files)

    def _owner(self) -> Optional[str]:
        if not hasattr(os, "getuid"):
            return None
        return f"{os.getuid()}:{os.getgid()}"
