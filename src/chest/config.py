#!/usr/bin/env python3

"""Settings of the chest process and per container settings read from labels."""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chest.utils import timestamp

PRUNE_AUTO = "--keep-daily 7 --keep-weekly 2 --keep-monthly 1"


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value is not None:
            return value
    return None


def _default_backups_dir() -> Path:
    return Path.home().joinpath("backups")


class ChestSettings(BaseSettings):
    """Process wide settings, read from 'CHEST_*' environment variables.

    Raises:
        ValidationError: If an environment variable holds an invalid value.
    """

    model_config = SettingsConfigDict(env_prefix="CHEST_", case_sensitive=False, extra="ignore", populate_by_name=True)

    backups_dir: Optional[Path] = Field(default_factory=_default_backups_dir)
    helper_image: str = Field(default="ceymard/borg:1.2.8", alias="CHEST_IMAGE")
    workspace: str = "/data"
    repository_mount: str = "/repository"
    start_grace_period: float = Field(default=1.0, ge=0, alias="CHEST_START_GRACE")  # seconds between start waves
    stop_settle_period: float = Field(default=0.0, ge=0)  # seconds to wait after the last container stopped
    stop_timeout: int = Field(default=10, ge=0)


class ChestLabels(BaseModel):
    """Backup settings of a container, taken from its labels and the environment."""

    name: Optional[str] = None
    prefix: Optional[str] = None
    repository: Optional[str] = None
    prune: Optional[str] = None
    passphrase: Optional[str] = None
    keep_running: bool = False
    auto_backup: bool = False

    @classmethod
    def resolve(cls, labels: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> "ChestLabels":
        environ = os.environ if environ is None else environ

        return cls(
            name=_first(labels.get("chest.name"), labels.get("com.docker.compose.project")),
            prefix=_first(
                labels.get("chest.prefix"), labels.get("com.docker.compose.service"), environ.get("CHEST_PREFIX")
            ),
            repository=_first(labels.get("chest.repository"), environ.get("CHEST_REPOSITORY")),
            prune=_first(labels.get("borg.prune"), environ.get("BORG_PRUNE")),
            passphrase=_first(
                labels.get("borg.passphrase"),
                labels.get("chest.passphrase"),
                environ.get("CHEST_PASSPHRASE"),
                environ.get("BORG_PASSPHRASE"),
            ),
            keep_running=bool(labels.get("chest.keep-running")) or bool(environ.get("CHEST_KEEP_RUNNING")),
            auto_backup=bool(labels.get("chest.auto-backup")),
        )

    def prune_arguments(self) -> Optional[str]:
        """Arguments for 'borg prune', or None if pruning is disabled.

        'auto' selects a default retention policy. Values without any option flag disable pruning.
        """
        if not self.prune:
            return None
        if self.prune == "auto":
            return PRUNE_AUTO
        if "-" not in self.prune:
            return None
        return self.prune

    def archive_name(self, container_id: Optional[str] = None) -> str:
        return f"{self.prefix or container_id or 'chest'}-{timestamp()}"

    def default_repository(self, settings: ChestSettings, container_name: str) -> Optional[str]:
        """Repository label, else '<backups_dir>/<name>'. Absolute or relative names are used as they are."""
        if self.repository:
            return self.repository

        name = self.name or container_name
        if name.startswith("/") or name.startswith("."):
            return str(Path(name).resolve())

        if settings.backups_dir is None:
            return None

        return str(settings.backups_dir.joinpath(name))
