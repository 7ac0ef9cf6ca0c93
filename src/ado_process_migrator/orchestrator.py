"""Migration orchestrator that coordinates reading, planning and writing.

The MigrationOrchestrator is the central coordinator of a run. It:
1. Validates the configuration before any I/O
2. Reads the source snapshot (and the target snapshot, except for exports)
3. Builds the plan and refuses to write when it carries blocking issues
4. Applies the plan and turns the outcomes into a terminal RunResult
5. Publishes progress, log and completion events to subscribers

Run States
----------
    Idle -> ReadingSource -> ReadingTarget -> Planning -> Applying
                                                            |
                                  Completed / Failed / Cancelled

ReadingTarget is skipped in export mode. Any unrecoverable error moves the
run to Failed with the error message attached verbatim. Cancellation is
cooperative: it is checked between phases and between operations, so an
operation already sent to the target always finishes and is recorded.

Modes
-----
- export:  organization -> file
- import:  file -> organization
- migrate: organization -> organization

Only one run can be active per orchestrator. The run handle is claimed under
a lock at start and released when the run ends, whatever its outcome.

preview() runs the reading and planning phases only and returns the plan,
blocking issues included, without writing anything or recording history.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from . import ado_utils
from .config import ConnectionConfig, MigrationConfig, MigrationMode
from .events import CompleteEvent, EventLogHandler, RunEventEmitter
from .exceptions import AlreadyRunningError, CancelledError, NotFoundError, PlanConflictError
from .models import validate
from .planner import build_plan
from .reader import ApiSource, FileSource, SourceReader
from .writer import CANCELLED, ApiTarget, FileTarget, OperationOutcome, Outcome, TargetWriter

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from .history import RunHistoryStore
    from .models import ProcessModel
    from .planner import MigrationPlan, Operation
    from .protocols import ProcessClient, RunObserver

logger: logging.Logger = logging.getLogger(__name__)

_PACKAGE_LOGGER = "ado_process_migrator"
_LOG_LEVELS = {"verbose": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class _PackageLogLevel:
    """Lowers the package logger level while runs forward records below it.

    Runs on different orchestrators may overlap and end in any order. The
    level set before the first of them is restored when the last one ends.
    """

    def __init__(self, name: str = _PACKAGE_LOGGER) -> None:
        self._logger = logging.getLogger(name)
        self._lock = threading.Lock()
        self._active: list[int] = []
        self._saved_level = logging.NOTSET

    def acquire(self, level: int) -> None:
        with self._lock:
            if not self._active:
                self._saved_level = self._logger.level
            self._active.append(level)
            self._apply()

    def release(self, level: int) -> None:
        with self._lock:
            self._active.remove(level)
            self._apply()

    def _apply(self) -> None:
        self._logger.setLevel(self._saved_level)
        if self._active and self._logger.getEffectiveLevel() > min(self._active):
            self._logger.setLevel(min(self._active))


_package_log_level = _PackageLogLevel()


class RunState(enum.StrEnum):
    IDLE = "Idle"
    READING_SOURCE = "ReadingSource"
    READING_TARGET = "ReadingTarget"
    PLANNING = "Planning"
    APPLYING = "Applying"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class RunStatus(enum.StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


_PHASE_STEPS: dict[RunState, str] = {
    RunState.READING_SOURCE: "Reading source process",
    RunState.READING_TARGET: "Reading target process",
    RunState.PLANNING: "Planning changes",
    RunState.APPLYING: "Applying changes",
}


@dataclass(frozen=True)
class RunResult:
    """Terminal record of one run."""

    id: str
    mode: MigrationMode
    status: RunStatus
    started_at: dt.datetime
    completed_at: dt.datetime
    outcomes: tuple[OperationOutcome, ...] = ()
    error: str | None = None
    source_url: str = ""
    target_url: str = ""
    source_process_name: str = ""
    target_process_name: str = ""

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome is outcome)

    def to_history_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceUrl": self.source_url,
            "targetUrl": self.target_url,
            "sourceProcessName": self.source_process_name,
            "targetProcessName": self.target_process_name,
            "mode": str(self.mode),
            "status": str(self.status),
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "durationMs": self.duration_ms,
            "error": self.error,
        }


@dataclass
class RunHandle:
    """The single active run of an orchestrator."""

    config: MigrationConfig
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.UTC))
    state: RunState = RunState.IDLE
    cancel_event: threading.Event = field(default_factory=threading.Event)
    source_process_name: str = ""
    target_process_name: str = ""
    preview: bool = False

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            msg = "Migration cancelled by user"
            raise CancelledError(msg)


def _default_client_factory(connection: ConnectionConfig) -> ProcessClient:
    return ado_utils.get_client(connection.url, connection.token)


def _status_from_outcomes(outcomes: list[OperationOutcome]) -> tuple[RunStatus, str | None]:
    failed = [o for o in outcomes if o.outcome is Outcome.FAILED]
    if failed:
        first = failed[0]
        return RunStatus.FAILED, f"{first.operation.describe()} failed: {first.error}"
    if any(o.outcome is Outcome.SKIPPED and o.error == CANCELLED for o in outcomes):
        return RunStatus.CANCELLED, "Migration cancelled by user"
    if any(o.tolerated for o in outcomes):
        return RunStatus.PARTIAL, None
    return RunStatus.SUCCESS, None


class MigrationOrchestrator:
    """Runs export, import and migrate pipelines, one at a time.

    Usage:
        orchestrator = MigrationOrchestrator(history=RunHistoryStore(path))
        orchestrator.subscribe(observer)
        result = orchestrator.start(config)

    cancel() may be called from another thread while start() is running.
    """

    _client_factory: Callable[[ConnectionConfig], ProcessClient]
    _history: RunHistoryStore | None
    _emitter: RunEventEmitter
    _lock: threading.Lock
    _handle: RunHandle | None
    max_workers: int
    last_result: RunResult | None

    def __init__(
        self,
        client_factory: Callable[[ConnectionConfig], ProcessClient] | None = None,
        *,
        history: RunHistoryStore | None = None,
        max_workers: int = 8,
    ) -> None:
        self._client_factory = client_factory or _default_client_factory
        self._history = history
        self._emitter = RunEventEmitter()
        self._lock = threading.Lock()
        self._handle = None
        self.max_workers = max_workers
        self.last_result = None

    @property
    def state(self) -> RunState:
        handle = self._handle
        return handle.state if handle is not None else RunState.IDLE

    def subscribe(self, observer: RunObserver) -> None:
        self._emitter.subscribe(observer)

    def unsubscribe(self, observer: RunObserver) -> None:
        self._emitter.unsubscribe(observer)

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False if nothing is running."""
        with self._lock:
            handle = self._handle
        if handle is None:
            return False
        handle.cancel_event.set()
        logger.warning("Migration cancelled by user")
        return True

    def start(self, config: MigrationConfig) -> RunResult:
        """Run a migration to completion and return its result.

        Raises:
            ConfigError: If the configuration is invalid (nothing is run or recorded)
            AlreadyRunningError: If another run is active on this orchestrator
        """
        config.validate()
        handle = self._claim(config)

        try:
            with self._forwarding_logs(config):
                result = self._execute(handle)
        finally:
            self._release()

        self.last_result = result
        if self._history is not None:
            try:
                self._history.add(result)
            except OSError:
                logger.exception("Failed to record run history")
        self._emitter.emit(CompleteEvent(success=result.success, error=result.error))
        return result

    def preview(self, config: MigrationConfig) -> MigrationPlan:
        """Read both sides and build the plan without applying it.

        Blocking issues are returned on the plan instead of raised. Nothing is
        written, no history is recorded and no CompleteEvent is published.

        Raises:
            ConfigError: If the configuration is invalid
            AlreadyRunningError: If another run is active on this orchestrator
            MigrationError: If a process cannot be read, or the preview is cancelled
        """
        config.validate()
        handle = self._claim(config, preview=True)

        try:
            with self._forwarding_logs(config):
                logger.info(f"Previewing {config.mode} run {handle.id}")
                source_model, target_model, _ = self._prepare(handle)
                plan = self._plan(handle, source_model, target_model)
                phases = self._phases(handle)
                self._emitter.progress("Preview ready", len(phases), len(phases))
                return plan
        finally:
            self._release()

    def _claim(self, config: MigrationConfig, *, preview: bool = False) -> RunHandle:
        with self._lock:
            if self._handle is not None:
                msg = f"A run is already active (state: {self._handle.state})"
                raise AlreadyRunningError(msg)
            handle = RunHandle(config=config, preview=preview)
            self._handle = handle
        return handle

    def _release(self) -> None:
        with self._lock:
            self._handle = None

    @contextlib.contextmanager
    def _forwarding_logs(self, config: MigrationConfig) -> Iterator[None]:
        run_level = _LOG_LEVELS[config.log_level]
        package_logger = logging.getLogger(_PACKAGE_LOGGER)
        log_handler = EventLogHandler(self._emitter, level=run_level)
        _package_log_level.acquire(run_level)
        package_logger.addHandler(log_handler)
        try:
            yield
        finally:
            package_logger.removeHandler(log_handler)
            _package_log_level.release(run_level)

    def _phases(self, handle: RunHandle) -> list[RunState]:
        phases = [RunState.READING_SOURCE, RunState.READING_TARGET, RunState.PLANNING, RunState.APPLYING]
        if handle.config.mode is MigrationMode.EXPORT:
            phases.remove(RunState.READING_TARGET)
        if handle.preview:
            phases.remove(RunState.APPLYING)
        return phases

    def _enter(self, handle: RunHandle, state: RunState) -> None:
        handle.check_cancelled()
        handle.state = state
        phases = self._phases(handle)
        logger.info(f"{_PHASE_STEPS[state]}...")
        self._emitter.progress(_PHASE_STEPS[state], phases.index(state), len(phases))

    def _execute(self, handle: RunHandle) -> RunResult:
        config = handle.config
        outcomes: list[OperationOutcome] = []
        logger.info(f"Starting {config.mode} run {handle.id}")

        try:
            outcomes = self._run_pipeline(handle)
            status, error = _status_from_outcomes(outcomes)
        except CancelledError as e:
            status, error = RunStatus.CANCELLED, str(e)
        except PlanConflictError as e:
            logger.error(str(e))
            status, error = RunStatus.FAILED, str(e)
        except Exception as e:  # noqa: BLE001 - becomes the run's terminal error
            logger.exception("Migration failed")
            status, error = RunStatus.FAILED, str(e) or type(e).__name__

        handle.state = {
            RunStatus.SUCCESS: RunState.COMPLETED,
            RunStatus.PARTIAL: RunState.COMPLETED,
            RunStatus.FAILED: RunState.FAILED,
            RunStatus.CANCELLED: RunState.CANCELLED,
        }[status]
        phases = self._phases(handle)
        self._emitter.progress(str(handle.state), len(phases), len(phases))
        logger.info(f"Run {handle.id} finished: {status}")

        return RunResult(
            id=handle.id,
            mode=config.mode,
            status=status,
            started_at=handle.started_at,
            completed_at=dt.datetime.now(dt.UTC),
            outcomes=tuple(outcomes),
            error=error,
            source_url=config.source.url if config.source else "",
            target_url=config.target.url if config.target else "",
            source_process_name=handle.source_process_name,
            target_process_name=handle.target_process_name,
        )

    def _run_pipeline(self, handle: RunHandle) -> list[OperationOutcome]:
        source_model, target_model, target = self._prepare(handle)
        plan = self._plan(handle, source_model, target_model)
        if plan.blocking_issues:
            raise PlanConflictError(plan.blocking_issues)

        self._enter(handle, RunState.APPLYING)
        if isinstance(target, ApiTarget):
            target.ensure_process(source_model, handle.target_process_name)

        writer = TargetWriter(handle.config.options)
        return writer.apply(plan, target, cancel_event=handle.cancel_event, on_applied=self._on_applied)

    def _prepare(self, handle: RunHandle) -> tuple[ProcessModel, ProcessModel | None, ApiTarget | FileTarget]:
        config = handle.config
        reader = SourceReader(max_workers=self.max_workers)

        self._enter(handle, RunState.READING_SOURCE)
        source_model = self._read_source(reader, config)
        handle.source_process_name = config.source_process_name or source_model.name
        handle.target_process_name = config.resolved_target_process_name or source_model.name

        target_model: ProcessModel | None = None
        target: ApiTarget | FileTarget
        if config.mode is MigrationMode.EXPORT:
            target = FileTarget(config.file_path or "")
        else:
            self._enter(handle, RunState.READING_TARGET)
            assert config.target is not None  # guaranteed by validate()
            client = self._client_factory(config.target)
            target_model = self._read_target(reader, client, config.target.url, handle.target_process_name)
            target = ApiTarget(client, target_model.id if target_model else None, config.target.url)
        return source_model, target_model, target

    def _plan(
        self, handle: RunHandle, source_model: ProcessModel, target_model: ProcessModel | None
    ) -> MigrationPlan:
        self._enter(handle, RunState.PLANNING)
        for issue in validate(source_model):
            logger.warning(f"Validation: {issue.message}")
        return build_plan(source_model, target_model, handle.config.options)

    def _read_source(self, reader: SourceReader, config: MigrationConfig) -> ProcessModel:
        if config.mode is MigrationMode.IMPORT:
            return reader.read(FileSource(config.file_path or ""))
        assert config.source is not None  # guaranteed by validate()
        client = self._client_factory(config.source)
        return reader.read(ApiSource(client, config.source.url), config.source_process_name)

    def _read_target(
        self, reader: SourceReader, client: ProcessClient, url: str, process_name: str
    ) -> ProcessModel | None:
        try:
            return reader.read(ApiSource(client, url), process_name)
        except NotFoundError:
            logger.info(f"Process '{process_name}' does not exist in {url}; it will be created")
            return None

    def _on_applied(self, operation: Operation, outcome: OperationOutcome, completed: int, total: int) -> None:
        self._emitter.progress(f"{operation.describe()}: {outcome.outcome}", completed, total)


def run(
    config: MigrationConfig,
    client_factory: Callable[[ConnectionConfig], ProcessClient] | None = None,
    *,
    observers: Iterable[RunObserver] = (),
    history: RunHistoryStore | None = None,
) -> RunResult:
    """Run one migration on a fresh orchestrator."""
    orchestrator = MigrationOrchestrator(client_factory, history=history)
    for observer in observers:
        orchestrator.subscribe(observer)
    return orchestrator.start(config)
