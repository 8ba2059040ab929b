#!/usr/bin/env python3

"""Chest utility functions."""

import math
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from yaml import SafeLoader, load

BYTE_UNITS = ("Bytes", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB")


def timestamp(moment: Optional[datetime] = None) -> str:
    """Returns a timestamp like '181101-030024'.

    The format has no ':' so that it can be selected as a single word in a terminal.

    Args:
        moment (Optional[datetime], optional): Time to format. Defaults to now.

    Returns:
        str: Formatted timestamp.
    """
    return (moment or datetime.now()).strftime("%y%m%d-%H%M%S")


def format_bytes(num_bytes: Optional[float], decimals: int = 2) -> str:
    """Formats a byte count with binary prefixes, e.g. '1.5 KiB'.

    Args:
        num_bytes (Optional[float]): Number of bytes.
        decimals (int, optional): Decimal places to keep. Defaults to 2.

    Returns:
        str: Human readable size.
    """
    if not num_bytes:
        return "0 Bytes"

    exponent = min(int(math.floor(math.log(num_bytes, 1024))), len(BYTE_UNITS) - 1)
    value = round(num_bytes / math.pow(1024, exponent), max(decimals, 0))
    return f"{value:g} {BYTE_UNITS[exponent]}"


def ensure_valid_repository(repository: Path) -> Path:
    """Creates the local repository directory if necessary.

    Args:
        repository (Path): Repository directory on the host.

    Raises:
        NotADirectoryError: If the path exists but is no directory.

    Returns:
        Path: The repository directory.
    """
    if repository.exists() and not repository.is_dir():
        raise NotADirectoryError(f"Repository path exists but is no directory: '{repository}'.")

    if not repository.is_dir():
        repository.mkdir(parents=True)

    return repository


def load_yaml_file(path: Path) -> Dict:
    """Loads a docker-compose.yaml and returns it as a dictionary.

    Args:
        path (Path): Absolute path.

    Raises:
        FileNotFoundError: If the file does not exist.

    Returns:
        Dict: Components of the docker-compose.yaml.
    """
    if not path.exists():
        raise FileNotFoundError(f"Unable to load compose file '{path}': File does not exist.")

    with open(path.absolute(), "r") as file:
        content = load(file, Loader=SafeLoader)

    return content or {}
