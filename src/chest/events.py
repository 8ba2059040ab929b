#!/usr/bin/env python3

"""Decoding and routing of the JSON events written by borg inside the helper container.

borg writes one JSON document per event (``--log-json``, ``--json``), without an enclosing array. Documents with a
'type' field are decoded into the matching model; the final statistics and listings of ``--json`` have no 'type' and
are recognized by their keys. Everything else is kept as an OpaqueEvent.
"""

import codecs
import json
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from chest.logger import logger

BENIGN_ERROR_IDS = {"Repository.AlreadyExists"}


class Event(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class LogMessage(Event):
    levelname: str = "INFO"
    message: str = ""
    msgid: Optional[str] = None
    name: Optional[str] = None
    time: Optional[float] = None


class ProgressPercent(Event):
    current: Optional[float] = None
    total: Optional[float] = None
    finished: bool = False
    message: Optional[str] = None
    msgid: Optional[str] = None
    operation: Optional[int] = None


class ProgressMessage(Event):
    finished: bool = False
    message: Optional[str] = None
    msgid: Optional[str] = None
    operation: Optional[int] = None


class ArchiveProgress(Event):
    finished: bool = False
    original_size: Optional[int] = None
    compressed_size: Optional[int] = None
    deduplicated_size: Optional[int] = None
    nfiles: Optional[int] = None
    path: Optional[str] = None


class QuestionPrompt(Event):
    msgid: Optional[str] = None
    message: Optional[str] = None


class QuestionEnvAnswer(Event):
    msgid: Optional[str] = None
    message: Optional[str] = None


class ArchiveStatsCounters(BaseModel):
    model_config = ConfigDict(extra="allow")

    original_size: int = 0
    compressed_size: int = 0
    deduplicated_size: int = 0
    nfiles: int = 0


class ArchiveInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    duration: float = 0.0
    stats: ArchiveStatsCounters = ArchiveStatsCounters()


class CacheStatsCounters(BaseModel):
    model_config = ConfigDict(extra="allow")

    unique_csize: int = 0
    unique_size: int = 0
    total_size: int = 0


class CacheInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    stats: CacheStatsCounters = CacheStatsCounters()


class ArchiveStats(BaseModel):
    """Final record of 'borg create --json'."""

    model_config = ConfigDict(extra="allow")

    archive: ArchiveInfo
    cache: CacheInfo = CacheInfo()
    repository: Dict[str, Any] = {}

    @property
    def duration(self) -> float:
        return self.archive.duration

    @property
    def deduplicated_size(self) -> int:
        return self.archive.stats.deduplicated_size

    @property
    def original_size(self) -> int:
        return self.archive.stats.original_size

    @property
    def repository_size(self) -> int:
        return self.cache.stats.unique_csize


class ArchiveEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    time: Optional[str] = None
    id: Optional[str] = None


class ArchiveListing(BaseModel):
    """Final record of 'borg list --json'."""

    model_config = ConfigDict(extra="allow")

    archives: List[ArchiveEntry]
    repository: Dict[str, Any] = {}


class OpaqueEvent(BaseModel):
    raw: Any


ChestEvent = Union[
    LogMessage,
    ProgressPercent,
    ProgressMessage,
    ArchiveProgress,
    QuestionPrompt,
    QuestionEnvAnswer,
    ArchiveStats,
    ArchiveListing,
    OpaqueEvent,
]

EVENT_TYPES: Dict[str, Type[Event]] = {
    "log_message": LogMessage,
    "progress_percent": ProgressPercent,
    "progress_message": ProgressMessage,
    "archive_progress": ArchiveProgress,
    "question_prompt": QuestionPrompt,
    "question_env_answer": QuestionEnvAnswer,
}


def decode_event(value: Any) -> ChestEvent:
    """Decodes a parsed JSON value. Values which do not fit any known model become an OpaqueEvent."""
    if not isinstance(value, dict):
        return OpaqueEvent(raw=value)

    try:
        model = EVENT_TYPES.get(value.get("type"))
        if model is not None:
            return model.model_validate(value)
        if "type" not in value and "archive" in value:
            return ArchiveStats.model_validate(value)
        if "type" not in value and "archives" in value:
            return ArchiveListing.model_validate(value)
    except ValidationError as error:
        logger.debug(f"Unable to decode event {value}: {error}")

    return OpaqueEvent(raw=value)


class Route(Enum):
    FILTERED = "filtered"
    ERROR = "error"
    WARNING = "warning"
    LOG = "log"
    PROGRESS = "progress"
    RESULT = "result"
    PASSTHROUGH = "passthrough"


def is_benign(event: LogMessage) -> bool:
    return event.msgid in BENIGN_ERROR_IDS or "already exists" in event.message.lower()


def classify(event: ChestEvent) -> Route:
    """Returns the one handling path of an event."""
    if isinstance(event, (QuestionPrompt, QuestionEnvAnswer)):
        return Route.FILTERED
    if isinstance(event, LogMessage):
        if event.levelname == "ERROR" and not is_benign(event):
            return Route.ERROR
        if event.levelname == "WARNING":
            return Route.WARNING
        return Route.LOG
    if isinstance(event, (ProgressPercent, ProgressMessage, ArchiveProgress)):
        return Route.PROGRESS
    if isinstance(event, (ArchiveStats, ArchiveListing)):
        return Route.RESULT
    return Route.PASSTHROUGH


EventCallback = Callable[[ChestEvent, int], Any]


class EventClassifier:
    """Routes decoded events to the caller's callbacks.

    Args:
        on_stdout (Optional[EventCallback]): Receives the events of the primary channel.
        on_stderr (Optional[EventCallback]): Receives the events of the diagnostic channel.
        on_progress (Optional[EventCallback]): Receives progress events in addition, to render a transient line.
    """

    def __init__(
        self,
        on_stdout: Optional[EventCallback] = None,
        on_stderr: Optional[EventCallback] = None,
        on_progress: Optional[EventCallback] = None,
    ) -> None:
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.on_progress = on_progress
        self.results: List[ChestEvent] = []

    def dispatch(self, value: Any, sequence: int, primary: bool = False) -> Route:
        event = decode_event(value)
        route = classify(event)

        if route is Route.FILTERED:
            return route

        if route is Route.ERROR:
            logger.error(f"borg: {event.message}")
        elif route is Route.WARNING:
            logger.warning(f"borg: {event.message}")
        elif route is Route.LOG and event.levelname == "ERROR":
            logger.debug(f"borg: {event.message}")
        elif route is Route.PROGRESS and self.on_progress is not None:
            self.on_progress(event, sequence)
        elif route is Route.RESULT:
            self.results.append(event)

        callback = self.on_stdout if primary else self.on_stderr
        if callback is not None:
            callback(event, sequence)

        return route


class JsonStream:
    """Incremental parser for back-to-back JSON documents.

    Bytes are fed as they arrive, every complete document is handed to the callback. Lines which cannot start a JSON
    document (e.g. shell error messages) are handed over as plain strings.
    """

    JSON_START = set('{["-0123456789tfn')

    def __init__(self, callback: Callable[[Any], Any]) -> None:
        self._callback = callback
        self._decoder = json.JSONDecoder()
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: Union[bytes, str]) -> None:
        self._buffer += self._text.decode(data) if isinstance(data, bytes) else data
        self._drain(final=False)

    def close(self) -> None:
        self._buffer += self._text.decode(b"", final=True)
        self._drain(final=True)

    def _drain(self, final: bool) -> None:
        while True:
            self._buffer = self._buffer.lstrip()
            if not self._buffer:
                return

            if self._buffer[0] not in self.JSON_START:
                if not self._emit_line(final):
                    return
                continue

            try:
                value, end = self._decoder.raw_decode(self._buffer)
            except json.JSONDecodeError:
                if final or ("\n" in self._buffer and self._buffer[0] not in "{["):
                    if not self._emit_line(final):
                        return
                    continue
                return  # incomplete document

            if not isinstance(value, (dict, list)):
                # a text line which merely starts like a scalar, e.g. '2 files skipped'
                if self._buffer[end:].partition("\n")[0].strip():
                    if not self._emit_line(final):
                        return
                    continue

                # a scalar at the very end of the buffer may continue in the next chunk
                if end == len(self._buffer) and not isinstance(value, str) and not final:
                    return

            self._buffer = self._buffer[end:]
            self._callback(value)

    def _emit_line(self, final: bool) -> bool:
        line, newline, rest = self._buffer.partition("\n")
        if not newline and not final:
            return False

        self._buffer = rest
        self._callback(line.rstrip())
        return True
