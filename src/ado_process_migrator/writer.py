"""Apply a MigrationPlan to a live organization or write it to a file.

Operations run strictly in plan order and each one is attempted once; there
are no automatic retries. Failure policy per operation:

- IdentityResolutionError on ImportRule (or on a form contribution) is
  tolerated when continue_on_rule_import_failure is set, and on
  CreateField/UpdateField when continue_on_identity_default_value_failure is
  set. A tolerated failure is recorded as skipped and the run goes on.
- Any other failure is fatal: the operation is recorded as failed and every
  remaining operation is skipped.
- Form contributions are not attempted at all when
  skip_import_form_contributions is set.

Cancellation is checked between operations, never during one.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .config import MigrationOptions
from .exceptions import IdentityResolutionError, WriteError
from .models import LayoutItem, save_process_file
from .planner import OperationKind

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    from .models import ProcessModel
    from .planner import MigrationPlan, Operation
    from .protocols import ProcessClient

logger: logging.Logger = logging.getLogger(__name__)

ABORTED = "aborted by prior failure"
CANCELLED = "cancelled"
CONTRIBUTIONS_SKIPPED = "form contributions are skipped by configuration"


class Outcome(enum.StrEnum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationOutcome:
    """What happened to one operation.

    tolerated is set when the operation was skipped because of a failure the
    options allow; it turns a successful run into a partial one.
    """

    operation: Operation
    outcome: Outcome
    error: str | None = None
    tolerated: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "operationId": self.operation.id,
            "kind": str(self.operation.kind),
            "outcome": str(self.outcome),
            "error": self.error,
        }


class ApiTarget:
    """A live organization. process_id stays None until the target process exists."""

    client: ProcessClient
    process_id: str | None
    url: str

    def __init__(self, client: ProcessClient, process_id: str | None = None, url: str = "") -> None:
        self.client = client
        self.process_id = process_id
        self.url = url

    def ensure_process(self, source: ProcessModel, name: str) -> str:
        """Create the target process (inheriting from the source's parent) if needed."""
        if self.process_id is None:
            logger.info(f"Creating process '{name}' in {self.url or 'target organization'}")
            self.process_id = self.client.create_process(name, source.reference_process_id, source.description)
        return self.process_id


@dataclass(frozen=True)
class FileTarget:
    path: str | Path


class TargetWriter:
    """Executes plans under a failure policy."""

    options: MigrationOptions

    def __init__(self, options: MigrationOptions | None = None) -> None:
        self.options = options or MigrationOptions()

    def apply(
        self,
        plan: MigrationPlan,
        target: ApiTarget | FileTarget,
        *,
        cancel_event: threading.Event | None = None,
        on_applied: Callable[[Operation, OperationOutcome, int, int], None] | None = None,
    ) -> list[OperationOutcome]:
        """Apply a plan and return one outcome per operation, in plan order.

        Args:
            plan: The plan to execute
            target: Live organization or export file
            cancel_event: Checked before every operation
            on_applied: Called after every attempted operation with
                (operation, outcome, completed_count, total_count)

        Raises:
            WriteError: If a file target cannot be written, or the API target has no process
        """
        if isinstance(target, FileTarget):
            return self._export(plan, target, on_applied)

        if target.process_id is None:
            msg = "Target process does not exist; create it before applying the plan"
            raise WriteError(msg)

        operations = plan.operations
        total = len(operations)
        outcomes: list[OperationOutcome] = []

        for index, operation in enumerate(operations):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Cancelled with {total - index} operation(s) left")
                outcomes.extend(OperationOutcome(op, Outcome.SKIPPED, CANCELLED) for op in operations[index:])
                break

            outcome = self._apply_one(operation, target)
            outcomes.append(outcome)
            if on_applied is not None:
                on_applied(operation, outcome, index + 1, total)

            if outcome.outcome is Outcome.FAILED:
                remaining = operations[index + 1 :]
                if remaining:
                    logger.error(f"Aborting: skipping {len(remaining)} remaining operation(s)")
                outcomes.extend(OperationOutcome(op, Outcome.SKIPPED, ABORTED) for op in remaining)
                break

        return outcomes

    def _apply_one(self, operation: Operation, target: ApiTarget) -> OperationOutcome:
        if self._is_bypassed(operation):
            logger.info(f"Skipped {operation.describe()}: {CONTRIBUTIONS_SKIPPED}")
            return OperationOutcome(operation, Outcome.SKIPPED, CONTRIBUTIONS_SKIPPED)

        try:
            self._dispatch(operation, target)
        except IdentityResolutionError as e:
            if self._tolerates(operation):
                logger.warning(f"Skipped {operation.describe()}: {e}")
                return OperationOutcome(operation, Outcome.SKIPPED, str(e), tolerated=True)
            logger.error(f"Failed {operation.describe()}: {e}")
            return OperationOutcome(operation, Outcome.FAILED, str(e))
        except Exception as e:  # noqa: BLE001 - every failure ends up in an outcome
            logger.exception(f"Failed {operation.describe()}")
            return OperationOutcome(operation, Outcome.FAILED, str(e) or type(e).__name__)

        logger.info(f"Applied {operation.describe()}")
        return OperationOutcome(operation, Outcome.APPLIED)

    def _is_bypassed(self, operation: Operation) -> bool:
        return (
            self.options.skip_import_form_contributions
            and isinstance(operation.payload, LayoutItem)
            and operation.payload.is_contribution
        )

    def _tolerates(self, operation: Operation) -> bool:
        if operation.kind is OperationKind.IMPORT_RULE:
            return self.options.continue_on_rule_import_failure
        if operation.kind in (OperationKind.CREATE_FIELD, OperationKind.UPDATE_FIELD):
            return self.options.continue_on_identity_default_value_failure
        if isinstance(operation.payload, LayoutItem) and operation.payload.is_contribution:
            return self.options.continue_on_rule_import_failure
        return False

    def _dispatch(self, operation: Operation, target: ApiTarget) -> None:
        client = target.client
        process_id = target.process_id or ""
        wit_ref = operation.work_item_type
        payload = operation.payload
        kind = operation.kind

        if kind is OperationKind.CREATE_WORK_ITEM_TYPE:
            client.create_work_item_type(process_id, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.UPDATE_WORK_ITEM_TYPE:
            client.update_work_item_type(process_id, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.CREATE_FIELD:
            client.create_field(process_id, wit_ref, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.UPDATE_FIELD:
            client.update_field(process_id, wit_ref, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.ADD_PICKLIST_VALUE:
            client.add_picklist_value(operation.target_ref, str(payload))
        elif kind is OperationKind.OVERWRITE_PICKLIST:
            client.overwrite_picklist(operation.target_ref, list(payload))  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.CREATE_STATE:
            client.create_state(process_id, wit_ref, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.UPDATE_STATE:
            client.update_state(process_id, wit_ref, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.IMPORT_RULE:
            client.import_rule(process_id, wit_ref, payload)  # pyright: ignore[reportArgumentType]
        elif kind is OperationKind.IMPORT_FORM_LAYOUT:
            client.import_form_layout_item(process_id, wit_ref, payload)  # pyright: ignore[reportArgumentType]
        else:
            msg = f"Unsupported operation kind: {kind}"
            raise WriteError(msg)

    def _export(
        self,
        plan: MigrationPlan,
        target: FileTarget,
        on_applied: Callable[[Operation, OperationOutcome, int, int], None] | None,
    ) -> list[OperationOutcome]:
        try:
            save_process_file(plan.source, target.path)
        except OSError as e:
            msg = f"Failed to write process file {target.path}: {e}"
            raise WriteError(msg) from e

        outcomes = [OperationOutcome(op, Outcome.APPLIED) for op in plan.operations]
        if on_applied is not None:
            total = len(outcomes)
            for index, outcome in enumerate(outcomes):
                on_applied(outcome.operation, outcome, index + 1, total)
        return outcomes
