#!/usr/bin/env python3

"""Module that provides data structures needed throughout the project."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set


class ContainerState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"

    @classmethod
    def from_attrs(cls, attrs: Dict[str, Any]) -> "ContainerState":
        return cls.RUNNING if attrs.get("State", {}).get("Running") else cls.STOPPED


class MountMode(Enum):
    READ_ONLY = "ro"
    READ_WRITE = "rw"


@dataclass
class Mount:
    source: Path  # path on host
    destination: Path  # mount point inside the container


@dataclass(frozen=True)
class BindMount:
    source: str  # path on host
    target: str  # path inside the helper container
    mode: MountMode = MountMode.READ_WRITE

    def to_bind(self) -> str:
        return f"{self.source}:{self.target}:{self.mode.value}"


@dataclass
class ContainerRef:
    id: str
    name: str


@dataclass
class DependencyNode:
    id: str
    name: str
    provides: Set[str] = field(default_factory=set)
    needs: Set[str] = field(default_factory=set)  # transitive closure once resolved
    was_running: bool = False


@dataclass
class OperationSpec:
    destination: str
    command: str
    environment: Dict[str, str] = field(default_factory=dict)
    binds: List[BindMount] = field(default_factory=list)
    interactive_passphrase: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return is_remote_destination(self.destination)


def is_remote_destination(destination: str) -> bool:
    """Repositories addressed as 'user@host:path' are reached over ssh."""
    return "@" in destination
