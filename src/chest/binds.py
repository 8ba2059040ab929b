#!/usr/bin/env python3

"""Computes the bind mounts of the helper container."""

import os
import posixpath
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from chest.data_structures import BindMount, Mount, MountMode, is_remote_destination

SYSTEM_FILES = ("/etc/hosts", "/etc/timezone", "/etc/localtime", "/etc/passwd", "/etc/group")
SSH_KEYS_MOUNT = "/ssh"
PROJECT_DIR_NAME = "_project"


def namespaced_target(workspace: str, service: str, destination: str) -> str:
    """Returns '<workspace>/<service>/<destination>'."""
    return posixpath.join(workspace, service, str(destination).lstrip("/"))


def is_within(path: Path, directory: Path) -> bool:
    try:
        Path(path).relative_to(directory)
    except ValueError:
        return False
    return True


class BindAggregator:
    """Collects the filesystem surface that the helper container gets to see.

    Layout inside the helper container:
        /data
          |-<service>/<original mount point>    (one directory per aggregated container)
          |-_project                            (the compose working directory, if known)
          |-<compose file name>                 (read-only)
        /repository                              (local repositories only)
    """

    def __init__(
        self,
        workspace: str = "/data",
        repository_mount: str = "/repository",
        environ: Optional[Mapping[str, str]] = None,
        home: Optional[Path] = None,
    ) -> None:
        self.workspace = workspace
        self.repository_mount = repository_mount
        self.environ = os.environ if environ is None else environ
        self.home = home or Path.home()

    def service_binds(
        self, service: str, mounts: Iterable[Mount], working_dir: Optional[Path] = None
    ) -> List[BindMount]:
        """Remaps the mounts of one container below '<workspace>/<service>'.

        Mounts whose source lies inside the working directory are skipped since the working directory is bound as a
        whole. Binds are always read-write, whatever the mode of the original mount, so that restores can write.
        """
        binds: List[BindMount] = []

        for mount in mounts:
            if working_dir is not None and is_within(mount.source, working_dir):
                continue

            binds.append(
                BindMount(
                    source=str(mount.source),
                    target=namespaced_target(self.workspace, service, str(mount.destination)),
                    mode=MountMode.READ_WRITE,
                )
            )

        return binds

    def working_dir_bind(self, working_dir: Path) -> BindMount:
        return BindMount(str(working_dir), posixpath.join(self.workspace, PROJECT_DIR_NAME), MountMode.READ_WRITE)

    def config_binds(self, config_files: Iterable[Path]) -> List[BindMount]:
        return [
            BindMount(str(file), posixpath.join(self.workspace, Path(file).name), MountMode.READ_ONLY)
            for file in config_files
        ]

    def system_binds(self) -> List[BindMount]:
        return [BindMount(file, file, MountMode.READ_ONLY) for file in SYSTEM_FILES]

    def destination_binds(self, destination: str) -> List[BindMount]:
        """Local repositories are bound read-write. Remote ones get the ssh agent socket and keys instead."""
        if not is_remote_destination(destination):
            return [BindMount(destination, self.repository_mount, MountMode.READ_WRITE)]

        binds: List[BindMount] = []
        agent_socket = self.environ.get("SSH_AUTH_SOCK")
        if agent_socket:
            binds.append(BindMount(agent_socket, agent_socket, MountMode.READ_WRITE))
        binds.append(BindMount(str(self.home.joinpath(".ssh")), SSH_KEYS_MOUNT, MountMode.READ_ONLY))

        return binds

    def aggregate(
        self,
        services: Mapping[str, Sequence[Mount]],
        destination: str,
        working_dir: Optional[Path] = None,
        config_files: Sequence[Path] = (),
    ) -> List[BindMount]:
        """Returns the complete bind list for one helper container.

        Args:
            services (Mapping[str, Sequence[Mount]]): Mounts of every aggregated container, by service name.
            destination (str): Repository location, local path or 'user@host:path'.
            working_dir (Optional[Path]): Compose working directory, bound once as a whole.
            config_files (Sequence[Path]): Compose definition files, bound read-only.

        Returns:
            List[BindMount]: Bind mounts, without duplicate targets.
        """
        binds: List[BindMount] = []

        if working_dir is not None:
            binds.append(self.working_dir_bind(working_dir))

        for service, mounts in services.items():
            binds.extend(self.service_binds(service, mounts, working_dir))

        binds.extend(self.config_binds(config_files))
        binds.extend(self.system_binds())
        binds.extend(self.destination_binds(destination))

        return unique_targets(binds)


def unique_targets(binds: Iterable[BindMount]) -> List[BindMount]:
    """Drops binds whose target is already taken by an earlier bind."""
    seen = set()
    result: List[BindMount] = []

    for bind in binds:
        if bind.target in seen:
            continue
        seen.add(bind.target)
        result.append(bind)

    return result
