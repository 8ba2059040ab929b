#!/usr/bin/env python3

"""Main chest module, containing the main CLI entry point."""

import sys
from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Any, List, Optional, TextIO

from docker.errors import DockerException
from pydantic import ValidationError

from chest.chest import Chest
from chest.cleanup import install_signal_handlers, run_guarded
from chest.errors import ChestError
from chest.events import ArchiveProgress, ArchiveStats, ChestEvent, ProgressMessage, ProgressPercent
from chest.logger import logger
from chest.utils import format_bytes


class ProgressLine:
    """Renders progress events on a single, overwritten terminal line."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stderr
        self.enabled = self.stream.isatty()
        self.dirty = False

    def __call__(self, event: ChestEvent, sequence: int) -> None:
        if not self.enabled:
            return

        if getattr(event, "finished", False):
            if self.dirty:
                self.stream.write("\n")
                self.stream.flush()
            self.dirty = False
            return

        self.stream.write(f"\r\x1b[K - {self._text(event)}")
        self.stream.flush()
        self.dirty = True

    def _text(self, event: ChestEvent) -> str:
        if isinstance(event, ProgressPercent) and event.total:
            return f"{format_bytes(event.current)}/{format_bytes(event.total)}"
        if isinstance(event, ArchiveProgress):
            return f"{format_bytes(event.original_size)} read, {event.nfiles or 0} files {event.path or ''}"
        if isinstance(event, (ProgressPercent, ProgressMessage)):
            return event.message or ""
        return ""


def ask_confirmation(repository: str) -> bool:
    sys.stderr.write(
        f"Warning: you are about to back up to the remote server '{repository}'. You may be inadvertently backing up"
        " to an existing backup.\n"
    )
    try:
        answer = input("Continue ? y/n ")
    except EOFError:
        return False
    return answer.strip().lower() == "y"


def report_stats(stats: Optional[ArchiveStats]) -> None:
    if stats is None:
        return

    logger.info(f" * duration {round(stats.duration, 2)}s")
    logger.info(
        f" * deduplicated size {format_bytes(stats.deduplicated_size)},"
        f" uncompressed {format_bytes(stats.original_size)}"
    )
    logger.info(f" * repository size {format_bytes(stats.repository_size)}")
    logger.info(f"-> {stats.archive.name}")


def parse_args(argv: Optional[List[str]] = None) -> Namespace:
    """Parses CLI parameters.

    Returns:
        Namespace: Parsed arguments, 'command' names the sub-command.
    """
    parser = ArgumentParser(prog="chest", description="Cold backups of Docker containers with borg.")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Backup a container to a borg repository.")
    backup.add_argument("-c", "--container", required=True, help="Container name or id.")
    backup.add_argument("-a", "--archive", help="Archive name. Defaults to '<prefix>-<timestamp>'.")
    backup.add_argument("-r", "--repository", help="Repository, if not inferred from labels.")
    backup.add_argument("--keep-running", action="store_true", default=None, help="Do not stop the container.")
    backup.add_argument("-p", "--project", action="store_true", help="Backup the container's whole compose project.")

    commands.add_parser("backup-all", help="Backup all containers labelled 'chest.auto-backup'.")

    restore = commands.add_parser("restore", help="Restore a container to a preceding backup.")
    restore.add_argument("-c", "--container", required=True, help="Container name or id.")
    restore.add_argument("-a", "--archive", required=True, help="Archive name (use 'chest list' to list them).")
    restore.add_argument("-r", "--repository", help="Repository, if not inferred from labels.")
    restore.add_argument("-p", "--project", action="store_true", help="Restore the container's whole compose project.")

    list_parser = commands.add_parser("list", help="List the archives of a repository or a container.")
    list_parser.add_argument("-c", "--container", help="Container name or id.")
    list_parser.add_argument("-r", "--repository", help="Repository, if not inferred from labels.")

    extract = commands.add_parser("extract-compose", help="Extract compose files from a backup.")
    extract.add_argument("-a", "--archive", required=True, help="Archive name.")
    extract.add_argument("-c", "--container", help="Container name or id.")
    extract.add_argument("-r", "--repository", help="Repository, if not inferred from labels.")
    extract.add_argument("-o", "--output", default=".", help="Output directory. Defaults to the current directory.")

    commands.add_parser("cleanup", help="Remove helper containers left behind by killed chest processes.")

    return parser.parse_args(argv)


async def dispatch(args: Namespace, chest: Chest) -> Any:
    progress = ProgressLine()

    if args.command == "backup":
        stats = await chest.backup(
            args.container,
            archive=args.archive,
            repository=args.repository,
            keep_running=args.keep_running,
            project=args.project,
            on_progress=progress,
        )
        report_stats(stats)
        return stats

    if args.command == "backup-all":
        return await chest.backup_all(on_progress=progress)

    if args.command == "restore":
        return await chest.restore(
            args.container, args.archive, repository=args.repository, project=args.project, on_progress=progress
        )

    if args.command == "list":
        archives = await chest.list_archives(args.container, args.repository)
        for archive in archives:
            logger.info(f" * {archive.name} {archive.time or ''}")
        return archives

    if args.command == "extract-compose":
        return await chest.extract_compose(
            args.archive, Path(args.output).absolute(), name=args.container, repository=args.repository
        )

    if args.command == "cleanup":
        return await chest.remove_orphans()

    raise ValueError(f"Unknown command: '{args.command}'.")


def is_failure(command: str, result: Any) -> bool:
    if command == "backup":
        return result is None
    if command == "backup-all":
        return result["error"] > 0
    if command in ("restore", "extract-compose"):
        return result != 0
    return False


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    args = parse_args(argv)
    install_signal_handlers()

    try:
        chest = Chest(confirm=ask_confirmation)
    except ValidationError as error:
        logger.error(f"Invalid settings: {error}")
        sys.exit(1)

    try:
        result = run_guarded(dispatch(args, chest))
    except (ChestError, DockerException) as error:
        logger.error(f"Exited with an error: {error}")
        sys.exit(1)

    if is_failure(args.command, result):
        logger.error("Exited with an error.")
        sys.exit(1)

    logger.info("Exited with success.")
    sys.exit(0)


if __name__ == "__main__":
    main()
