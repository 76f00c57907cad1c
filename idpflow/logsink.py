"""Per-workflow, append-only progress log."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Deque, Dict, List

from .contracts import LogEntry, LogLevel

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000

_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class LogSink:
    """Keep an ordered history of messages for each workflow.

    Each workflow retains at most ``max_entries_per_workflow`` entries; the
    oldest are dropped first. Every entry is also written to the process log.
    """

    def __init__(self, max_entries_per_workflow: int = DEFAULT_MAX_ENTRIES) -> None:
        self._max_entries = max_entries_per_workflow
        self._entries: Dict[str, Deque[LogEntry]] = defaultdict(
            lambda: deque(maxlen=self._max_entries)
        )

    def append(
        self, workflow_id: str, message: str, level: LogLevel | str = LogLevel.INFO
    ) -> LogEntry:
        try:
            level = LogLevel(level)
        except ValueError:
            level = LogLevel.INFO
        entry = LogEntry(level=level, message=message)
        self._entries[workflow_id].append(entry)
        logger.log(
            _STDLIB_LEVELS[level], f"[{workflow_id}] [{level.value.upper()}] {message}"
        )
        return entry

    def read(self, workflow_id: str) -> List[LogEntry]:
        entries = self._entries.get(workflow_id)
        return list(entries) if entries else []
