#!/usr/bin/env python3

"""Module which sets up logging for chest."""

import logging
import os
import sys
from typing import List

LOG_FORMAT = "[%(asctime)s][%(name)s][%(levelname)-7s] %(message)s"
DEFAULT_LOG_LEVEL = logging.INFO

LOG_LEVEL = logging.getLevelName(os.environ.get("CHEST_LOG_LEVEL", "").upper() or DEFAULT_LOG_LEVEL)
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = DEFAULT_LOG_LEVEL

stdout_handler = logging.StreamHandler(stream=sys.stdout)
formatter = logging.Formatter(LOG_FORMAT)

stdout_handler.setFormatter(formatter)

handlers: List[logging.Handler] = [stdout_handler]

if os.environ.get("CHEST_LOG_FILE"):
    file_handler = logging.FileHandler(os.environ["CHEST_LOG_FILE"])
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

logger = logging.getLogger("chest")

logger.setLevel(LOG_LEVEL)

for handler in handlers:
    handler.setLevel(LOG_LEVEL)
    logger.addHandler(handler)
