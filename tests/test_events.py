"""
Tests for run events and observer dispatch.
"""

import logging
from typing import Any
from unittest.mock import Mock

import pytest

from ado_process_migrator.events import (
    CompleteEvent,
    EventLogHandler,
    LogEvent,
    ProgressEvent,
    RunEventEmitter,
)


@pytest.mark.unit
class TestRunEventEmitter:
    """Test fan-out of events to observers."""

    def test_every_observer_receives_events_in_order(self) -> None:
        first, second = Mock(), Mock()
        emitter = RunEventEmitter()
        emitter.subscribe(first)
        emitter.subscribe(second)

        emitter.progress("Planning changes", 2, 4)
        emitter.emit(CompleteEvent(success=True))

        for observer in (first, second):
            assert [c.args[0] for c in observer.on_event.call_args_list] == [
                ProgressEvent("Planning changes", 2, 4),
                CompleteEvent(success=True),
            ]

    def test_subscribe_twice_delivers_once(self) -> None:
        observer = Mock()
        emitter = RunEventEmitter()
        emitter.subscribe(observer)
        emitter.subscribe(observer)

        emitter.progress("step", 1, 1)

        observer.on_event.assert_called_once()

    def test_unsubscribe(self) -> None:
        observer = Mock()
        emitter = RunEventEmitter()
        emitter.subscribe(observer)
        emitter.unsubscribe(observer)
        emitter.unsubscribe(observer)

        emitter.progress("step", 1, 1)

        observer.on_event.assert_not_called()

    def test_raising_observer_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """An observer that raises is logged and the others still get the event."""
        broken = Mock()
        broken.on_event.side_effect = RuntimeError("boom")
        healthy = Mock()
        emitter = RunEventEmitter()
        emitter.subscribe(broken)
        emitter.subscribe(healthy)

        with caplog.at_level(logging.WARNING):
            emitter.progress("step", 1, 1)

        healthy.on_event.assert_called_once()
        assert "boom" in caplog.text


@pytest.mark.unit
class TestEventLogHandler:
    """Test republishing log records as LogEvents."""

    def _capture(self, logger_name: str) -> tuple[logging.Logger, list[Any], EventLogHandler]:
        events: list[Any] = []
        emitter = RunEventEmitter()
        emitter.subscribe(Mock(on_event=events.append))
        handler = EventLogHandler(emitter)
        logger = logging.getLogger(logger_name)
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        return logger, events, handler

    def test_levels_mapped(self) -> None:
        logger, events, handler = self._capture("ado_process_migrator.tests.levels")
        try:
            logger.debug("detail")
            logger.info("progress")
            logger.warning("degraded")
            logger.error("broken")
        finally:
            logger.removeHandler(handler)

        assert [(e.level, e.message) for e in events] == [
            ("verbose", "detail"),
            ("info", "progress"),
            ("warning", "degraded"),
            ("error", "broken"),
        ]
        assert all(isinstance(e, LogEvent) and e.timestamp.tzinfo is not None for e in events)

    def test_observer_failures_not_republished(self) -> None:
        logger, events, handler = self._capture("ado_process_migrator.events.observers")
        try:
            logger.warning("Observer failed")
        finally:
            logger.removeHandler(handler)

        assert events == []
