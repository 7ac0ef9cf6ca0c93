"""Run events and their dispatch to observers.

Observers are notified synchronously but in isolation: an observer that
raises is logged and skipped, it never interrupts the migration pipeline.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from typing_extensions import override

if TYPE_CHECKING:
    from .protocols import RunObserver

logger: logging.Logger = logging.getLogger(__name__)
# Records on this logger are not republished by EventLogHandler.
_observer_logger: logging.Logger = logging.getLogger(f"{__name__}.observers")

LogLevel = Literal["verbose", "info", "warning", "error"]


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    completed: int
    total: int


@dataclass(frozen=True)
class LogEvent:
    level: LogLevel
    message: str
    timestamp: dt.datetime = field(default_factory=_now)


@dataclass(frozen=True)
class CompleteEvent:
    success: bool
    error: str | None = None


RunEvent = ProgressEvent | LogEvent | CompleteEvent


class RunEventEmitter:
    """Fans run events out to any number of observers."""

    def __init__(self) -> None:
        self._observers: list[RunObserver] = []

    def subscribe(self, observer: RunObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: RunObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, event: RunEvent) -> None:
        for observer in list(self._observers):
            self._safe_notify(observer, event)

    def progress(self, step: str, completed: int, total: int) -> None:
        self.emit(ProgressEvent(step=step, completed=completed, total=total))

    def _safe_notify(self, observer: RunObserver, event: RunEvent) -> None:
        try:
            observer.on_event(event)
        except Exception as e:  # noqa: BLE001
            _observer_logger.warning(f"Observer {observer!r} failed on {type(event).__name__}: {e}")


def _level_name(levelno: int) -> LogLevel:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warning"
    if levelno >= logging.INFO:
        return "info"
    return "verbose"


class EventLogHandler(logging.Handler):
    """Logging handler that republishes log records as LogEvents."""

    emitter: RunEventEmitter

    def __init__(self, emitter: RunEventEmitter, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.emitter = emitter

    @override
    def emit(self, record: logging.LogRecord) -> None:
        if record.name == _observer_logger.name:
            return
        timestamp = dt.datetime.fromtimestamp(record.created, dt.UTC)
        self.emitter.emit(LogEvent(level=_level_name(record.levelno), message=record.getMessage(), timestamp=timestamp))
