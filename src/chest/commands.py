#!/usr/bin/env python3

"""Builds the shell script executed by the helper container."""

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence


class Transfer(Enum):
    CREATE = "create"
    EXTRACT = "extract"
    LIST = "list"


@dataclass
class BorgCommand:
    """Ordered steps of one helper container run.

    Steps: ssh setup, repository init, the transfer itself, prune, permission fix. Each step is present or absent
    according to the flags.
    """

    repository: str  # as seen from inside the helper container
    transfer: Transfer
    workspace: str = "/data"
    archive: Optional[str] = None
    encrypted: bool = False
    init: bool = False
    ssh_setup: bool = False
    prune: Optional[str] = None
    prefix: Optional[str] = None
    owner: Optional[str] = None  # 'uid:gid' for the permission fix
    patterns: Sequence[str] = field(default_factory=list)

    def steps(self) -> List[str]:
        steps: List[str] = []

        if self.ssh_setup:
            steps.append("mkdir -p /root/.ssh ; cp -Rf /ssh/* /root/.ssh/")
        if self.init:
            steps.append(self._init())

        steps.append(self._transfer())

        if self.prune:
            steps.append(self._prune())
        if self.owner:
            steps.append(f"chown -R {self.owner} {shlex.quote(self.repository)}/*")

        return steps

    def render(self) -> str:
        return "\n".join(self.steps()) + "\n"

    def _init(self) -> str:
        encryption = "repokey-blake2" if self.encrypted else "none"
        return f"borg init --log-json -e {encryption} {shlex.quote(self.repository)}"

    def _transfer(self) -> str:
        if self.transfer is Transfer.LIST:
            return "borg list --json --log-json ::"

        if not self.archive:
            raise ValueError(f"borg {self.transfer.value} needs an archive name.")

        archive = shlex.quote(f"::{self.archive}")
        workspace = shlex.quote(self.workspace)

        if self.transfer is Transfer.CREATE:
            return f"cd {workspace} && borg create --progress --json --log-json --stats {archive} ./*"

        patterns = "".join(f" --pattern {shlex.quote(pattern)}" for pattern in self.patterns)
        return f"cd {workspace} && borg extract --progress --log-json --list -v{patterns} {archive}"

    def _prune(self) -> str:
        prefix = f" -P {shlex.quote(self.prefix)}" if self.prefix else ""
        return f"borg prune {self.prune} --log-json{prefix} -s --list ::"
