#!/usr/bin/env python3

"""Collects what chest needs to know about containers from their inspection records."""

import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from docker.errors import NotFound
from pydantic import BaseModel, Field

from chest.config import ChestLabels
from chest.data_structures import DependencyNode, Mount
from chest.dependencies import build_node
from chest.engine import Engine
from chest.errors import NoMatchingContainersError

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
AUTO_BACKUP_LABEL = "chest.auto-backup"


class ContainerDescription(BaseModel):
    id: str
    name: str
    running: bool
    image: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    mounts: List[Mount] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)
    project: Optional[str] = None
    service: Optional[str] = None
    working_dir: Optional[Path] = None
    config_files: List[Path] = Field(default_factory=list)
    chest: ChestLabels = Field(default_factory=ChestLabels)

    @property
    def service_name(self) -> str:
        """Directory name of this container's data inside the helper container."""
        return self.service or self.name

    @classmethod
    def from_attrs(
        cls, attrs: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None
    ) -> "ContainerDescription":
        config = attrs.get("Config") or {}
        labels: Dict[str, str] = config.get("Labels") or {}
        host_config = attrs.get("HostConfig") or {}

        mounts = [
            Mount(source=Path(mount["Source"]), destination=Path(mount["Destination"]))
            for mount in attrs.get("Mounts") or []
            if mount.get("Source") and mount.get("Destination")
        ]

        config_files = [Path(file) for file in labels.get(CONFIG_FILES_LABEL, "").split(",") if file]

        return cls(
            id=attrs["Id"],
            name=attrs.get("Name", "").lstrip("/"),
            running=bool((attrs.get("State") or {}).get("Running")),
            image=config.get("Image", ""),
            labels=labels,
            mounts=mounts,
            links=host_config.get("Links") or [],
            project=labels.get(PROJECT_LABEL),
            service=labels.get(SERVICE_LABEL),
            working_dir=Path(labels[WORKING_DIR_LABEL]) if labels.get(WORKING_DIR_LABEL) else None,
            config_files=config_files,
            chest=ChestLabels.resolve(labels, environ),
        )

    def dependency_node(self, extra_needs: Optional[Mapping[str, Any]] = None) -> DependencyNode:
        fallback = (extra_needs or {}).get(self.service or "", ())
        return build_node(self.id, self.name, self.labels, self.running, links=self.links, extra_needs=fallback)


async def describe(engine: Engine, name: str, environ: Optional[Mapping[str, str]] = None) -> ContainerDescription:
    """Inspects a container given by name or id. A trailing '.docker' is ignored."""
    name = re.sub(r"\.docker$", "", name)

    try:
        container = await engine.get(name)
    except NotFound as error:
        raise NoMatchingContainersError(name) from error

    return ContainerDescription.from_attrs(await engine.inspect(container), environ)


async def project_members(
    engine: Engine, description: ContainerDescription, environ: Optional[Mapping[str, str]] = None
) -> List[ContainerDescription]:
    """Returns every container of the description's compose project, in name order.

    A container outside of any compose project forms a group of its own.
    """
    if not description.project:
        return [description]

    containers = await engine.list(all=True, filters={"label": f"{PROJECT_LABEL}={description.project}"})
    members = [ContainerDescription.from_attrs(await engine.inspect(container), environ) for container in containers]
    return sorted(members, key=lambda member: member.name)


async def auto_backup_containers(
    engine: Engine, environ: Optional[Mapping[str, str]] = None
) -> List[ContainerDescription]:
    containers = await engine.list(all=True, filters={"label": AUTO_BACKUP_LABEL})
    descriptions = [
        ContainerDescription.from_attrs(await engine.inspect(container), environ) for container in containers
    ]
    return [description for description in descriptions if description.chest.auto_backup]
