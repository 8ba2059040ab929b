"""Unit tests for module chest.config."""

from pathlib import Path

import pytest
from pydantic import ValidationError
from pytest import MonkeyPatch

from chest.config import PRUNE_AUTO, ChestLabels, ChestSettings

SETTINGS_VARIABLES = ("CHEST_BACKUPS_DIR", "CHEST_IMAGE", "CHEST_START_GRACE", "CHEST_STOP_TIMEOUT", "CHEST_WORKSPACE")


@pytest.fixture
def clean_environment(monkeypatch: MonkeyPatch) -> MonkeyPatch:
    for variable in SETTINGS_VARIABLES:
        monkeypatch.delenv(variable, raising=False)
    return monkeypatch


def test_settings_from_environment(clean_environment: MonkeyPatch) -> None:
    clean_environment.setenv("CHEST_BACKUPS_DIR", "/srv/backups")
    clean_environment.setenv("CHEST_IMAGE", "borg:custom")
    clean_environment.setenv("CHEST_START_GRACE", "2.5")
    clean_environment.setenv("CHEST_STOP_TIMEOUT", "30")

    settings = ChestSettings()

    assert settings.backups_dir == Path("/srv/backups")
    assert settings.helper_image == "borg:custom"
    assert settings.start_grace_period == 2.5
    assert settings.stop_timeout == 30


def test_settings_default_to_home(clean_environment: MonkeyPatch) -> None:
    clean_environment.setenv("HOME", "/home/chest")

    settings = ChestSettings()

    assert settings.backups_dir == Path("/home/chest/backups")
    assert settings.helper_image == "ceymard/borg:1.2.8"
    assert settings.workspace == "/data"
    assert settings.repository_mount == "/repository"
    assert settings.start_grace_period == 1.0


def test_settings_arguments_by_field_name(clean_environment: MonkeyPatch) -> None:
    settings = ChestSettings(backups_dir=None, helper_image="borg:test", start_grace_period=0.0)

    assert settings.backups_dir is None
    assert settings.helper_image == "borg:test"
    assert settings.start_grace_period == 0.0


@pytest.mark.parametrize("variable, value", [("CHEST_START_GRACE", "abc"), ("CHEST_STOP_TIMEOUT", "-1")])
def test_settings_reject_invalid_values(clean_environment: MonkeyPatch, variable: str, value: str) -> None:
    clean_environment.setenv(variable, value)

    with pytest.raises(ValidationError):
        ChestSettings()


def test_labels_take_precedence_over_environment() -> None:
    labels = ChestLabels.resolve(
        {"chest.repository": "/srv/db", "borg.passphrase": "label", "chest.prefix": "nightly"},
        {"CHEST_REPOSITORY": "/srv/other", "BORG_PASSPHRASE": "env", "CHEST_PREFIX": "env"},
    )

    assert labels.repository == "/srv/db"
    assert labels.passphrase == "label"
    assert labels.prefix == "nightly"


def test_labels_fall_back_to_compose_and_environment() -> None:
    labels = ChestLabels.resolve(
        {"com.docker.compose.project": "shop", "com.docker.compose.service": "db"},
        {"CHEST_REPOSITORY": "borg@host:shop", "CHEST_PASSPHRASE": "env", "CHEST_KEEP_RUNNING": "1"},
    )

    assert labels.name == "shop"
    assert labels.prefix == "db"
    assert labels.repository == "borg@host:shop"
    assert labels.passphrase == "env"
    assert labels.keep_running
    assert not labels.auto_backup


def test_empty_label_is_not_replaced_by_environment() -> None:
    labels = ChestLabels.resolve({"borg.passphrase": ""}, {"BORG_PASSPHRASE": "env"})

    assert labels.passphrase == ""


@pytest.mark.parametrize(
    "prune, expected",
    [(None, None), ("", None), ("auto", PRUNE_AUTO), ("yes", None), ("--keep-last 3", "--keep-last 3")],
)
def test_prune_arguments(prune: str, expected: str) -> None:
    assert ChestLabels(prune=prune).prune_arguments() == expected


def test_archive_name() -> None:
    assert ChestLabels(prefix="db").archive_name("abc").startswith("db-")
    assert ChestLabels().archive_name("abc").startswith("abc-")


def test_default_repository() -> None:
    settings = ChestSettings(backups_dir=Path("/srv/backups"))

    assert ChestLabels(repository="borg@host:db").default_repository(settings, "db") == "borg@host:db"
    assert ChestLabels().default_repository(settings, "db") == "/srv/backups/db"
    assert ChestLabels(name="shop").default_repository(settings, "db") == "/srv/backups/shop"
    assert ChestLabels(name="/mnt/shop").default_repository(settings, "db") == "/mnt/shop"
    assert ChestLabels().default_repository(ChestSettings(backups_dir=None), "db") is None
