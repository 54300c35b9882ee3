"""
STRATA MUTATION LOGGER - The Plan's Audit Trail

Every lifecycle step of a project and its change requests is recorded as a
typed MutationEvent so that a plan's history can be replayed or inspected
independently of the snapshots themselves.

Architecture:
- MutationLogger: Core logging interface used by the store and registry
- EventBuffer: In-memory ring buffer for recent events
- FileLogger: Optional newline-delimited JSON log, rotated daily

Usage:
    events = MutationLogger(LoggerConfig(enable_file_log=True, log_path=root / "logs"))
    store = ProjectStore("shop", root, mutation_logger=events)
    ...
    for event in events.get_events_for_project("shop"):
        print(f"{event.timestamp}: {event.mutation_type} {event.change_request_id}")

Diagnostics that are not lifecycle events go through the standard
``logging`` module; ``configure_logging`` sets up the ``strata`` loggers.
"""
import io
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import msgspec

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the stdlib loggers of the ``core`` and ``infrastructure`` packages."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for name in ("core", "infrastructure"):
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level.upper())
        if not package_logger.handlers:
            package_logger.addHandler(handler)


# =============================================================================
# EVENTS
# =============================================================================

class MutationType(str, Enum):
    PROJECT_CREATED = "project_created"
    PROJECT_DELETED = "project_deleted"
    CHANGE_REQUEST_CREATED = "change_request_created"
    CHANGE_REQUEST_APPLIED = "change_request_applied"
    CHANGE_REQUEST_REJECTED = "change_request_rejected"
    CHANGE_REQUEST_DELETED = "change_request_deleted"


class MutationEvent(msgspec.Struct, kw_only=True):
    timestamp: str
    sequence: int
    mutation_type: str
    project_id: str
    change_request_id: Optional[str] = None
    version: Optional[str] = None
    node_ids: List[str] = msgspec.field(default_factory=list)
    detail: Optional[str] = None


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LoggerConfig:
    """Configuration for the mutation logger."""
    enable_file_log: bool = False       # Enable JSONL logging
    log_path: Optional[Path] = None     # Directory for log files
    buffer_size: int = 10000            # In-memory buffer size


# =============================================================================
# EVENT BUFFER
# =============================================================================

class EventBuffer:
    """
    Thread-safe ring buffer for recent mutation events.

    O(1) append; queries scan the buffer.
    """

    def __init__(self, max_size: int = 10000):
        self._buffer: deque = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._sequence = 0

    def append(self, event: MutationEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def get_since(self, timestamp: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= timestamp]

    def get_last(self, n: int) -> List[MutationEvent]:
        with self._lock:
            items = list(self._buffer)
            return items[-n:] if n > 0 else []

    def get_by_project(self, project_id: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.project_id == project_id]

    def get_by_change_request(self, change_request_id: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.change_request_id == change_request_id]

    def get_by_type(self, mutation_type: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.mutation_type == mutation_type]

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# =============================================================================
# FILE LOGGER
# =============================================================================

class FileLogger:
    """
    Newline-delimited JSON event log, one file per UTC day.
    """

    def __init__(self, log_path: Path):
        self._log_path = log_path
        self._current_file: Optional[io.TextIOWrapper] = None
        self._current_date: Optional[str] = None
        self._lock = threading.Lock()
        self._encoder = msgspec.json.Encoder()
        self._decoder = msgspec.json.Decoder(type=MutationEvent)

        log_path.mkdir(parents=True, exist_ok=True)

    def write(self, event: MutationEvent) -> None:
        with self._lock:
            try:
                self._ensure_file()
                self._current_file.write(self._encoder.encode(event).decode("utf-8") + "\n")
                self._current_file.flush()
            except OSError:
                log.exception("Could not write mutation event %s", event.sequence)

    def _ensure_file(self) -> None:
        """Open today's file, closing yesterday's."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._current_date != today or self._current_file is None:
            if self._current_file:
                self._current_file.close()
            self._current_file = open(self._log_path / f"mutations_{today}.jsonl", "a", encoding="utf-8")
            self._current_date = today

    def close(self) -> None:
        with self._lock:
            if self._current_file:
                self._current_file.close()
                self._current_file = None

    def read_log(self, date: str) -> List[MutationEvent]:
        """Read events from a specific day's log; unparseable lines are skipped with a warning."""
        filepath = self._log_path / f"mutations_{date}.jsonl"
        if not filepath.exists():
            return []

        events = []
        with open(filepath, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(self._decoder.decode(line.encode()))
                except (msgspec.DecodeError, msgspec.ValidationError) as exc:
                    log.warning("Skipping %s:%d: %s", filepath.name, lineno, exc)
        return events


# =============================================================================
# MUTATION LOGGER (Main Interface)
# =============================================================================

class MutationLogger:
    """
    Main logging interface for plan mutations.

    Destinations:
    - In-memory buffer (always)
    - File-based log (configurable)
    - Subscribers (callbacks registered at runtime)

    Thread-safe for concurrent logging.
    """

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or LoggerConfig()
        self._buffer = EventBuffer(self.config.buffer_size)
        self._file_logger: Optional[FileLogger] = None
        if self.config.enable_file_log and self.config.log_path:
            self._file_logger = FileLogger(self.config.log_path)
        self._subscribers: List[Callable[[MutationEvent], None]] = []

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _emit(self, event: MutationEvent) -> None:
        self._buffer.append(event)
        if self._file_logger:
            self._file_logger.write(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                log.exception("Mutation subscriber %r failed", subscriber)

    def _record(
        self,
        mutation_type: MutationType,
        project_id: str,
        change_request_id: Optional[str] = None,
        version: Optional[str] = None,
        node_ids: Optional[List[str]] = None,
        detail: Optional[str] = None,
    ) -> MutationEvent:
        event = MutationEvent(
            timestamp=self._now(),
            sequence=self._buffer.next_sequence(),
            mutation_type=mutation_type.value,
            project_id=project_id,
            change_request_id=change_request_id,
            version=version,
            node_ids=node_ids or [],
            detail=detail,
        )
        self._emit(event)
        return event

    # =========================================================================
    # LOGGING METHODS
    # =========================================================================

    def log_project_created(self, project_id: str, detail: Optional[str] = None) -> MutationEvent:
        return self._record(MutationType.PROJECT_CREATED, project_id, version="v0", detail=detail)

    def log_project_deleted(self, project_id: str) -> MutationEvent:
        return self._record(MutationType.PROJECT_DELETED, project_id)

    def log_change_request_created(self, project_id: str, change_request_id: str,
                                   node_ids: List[str]) -> MutationEvent:
        return self._record(MutationType.CHANGE_REQUEST_CREATED, project_id, change_request_id, node_ids=node_ids)

    def log_change_request_applied(self, project_id: str, change_request_id: str, version: str,
                                   node_ids: List[str]) -> MutationEvent:
        return self._record(
            MutationType.CHANGE_REQUEST_APPLIED, project_id, change_request_id, version=version, node_ids=node_ids
        )

    def log_change_request_rejected(self, project_id: str, change_request_id: str, reason: str) -> MutationEvent:
        return self._record(MutationType.CHANGE_REQUEST_REJECTED, project_id, change_request_id, detail=reason)

    def log_change_request_deleted(self, project_id: str, change_request_id: str) -> MutationEvent:
        return self._record(MutationType.CHANGE_REQUEST_DELETED, project_id, change_request_id)

    # =========================================================================
    # QUERY METHODS
    # =========================================================================

    def get_recent_events(self, n: int = 100) -> List[MutationEvent]:
        return self._buffer.get_last(n)

    def get_events_since(self, timestamp: str) -> List[MutationEvent]:
        return self._buffer.get_since(timestamp)

    def get_events_for_project(self, project_id: str) -> List[MutationEvent]:
        return self._buffer.get_by_project(project_id)

    def get_events_for_change_request(self, change_request_id: str) -> List[MutationEvent]:
        return self._buffer.get_by_change_request(change_request_id)

    def get_events_by_type(self, mutation_type: str) -> List[MutationEvent]:
        return self._buffer.get_by_type(mutation_type)

    def subscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def close(self) -> None:
        if self._file_logger:
            self._file_logger.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
