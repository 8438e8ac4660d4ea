from __future__ import annotations

import datetime as _dt
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


def now_utc_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def append_jsonl(log_path: Path, payload: dict[str, Any]) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


class EventSink(Protocol):
    def emit(self, event: str, **fields: Any) -> None: ...


@dataclass(frozen=True)
class Event:
    name: str
    fields: dict[str, Any]
    timestamp: str


class LoggingEventSink:
    """Forwards events to the standard logging module."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self._log = log or logger
        self._level = level

    def emit(self, event: str, **fields: Any) -> None:
        level = logging.WARNING if fields.get("level") == "warning" else self._level
        details = " ".join(f"{k}={v}" for k, v in fields.items() if k != "level")
        self._log.log(level, "%s %s", event, details)


class JsonlEventSink:
    def __init__(self, log_path: Path):
        self.log_path = log_path
        self._lock = threading.Lock()

    def emit(self, event: str, **fields: Any) -> None:
        payload = {"event": event, "timestamp": now_utc_iso(), **fields}
        with self._lock:
            append_jsonl(self.log_path, payload)


@dataclass
class RecordingEventSink:
    events: list[Event] = field(default_factory=list)

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append(Event(event, dict(fields), now_utc_iso()))

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list[Event]:
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()


class MultiEventSink:
    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: str, **fields: Any) -> None:
        for sink in self.sinks:
            sink.emit(event, **fields)


def default_sink() -> EventSink:
    return LoggingEventSink()
