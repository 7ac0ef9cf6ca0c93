"""Build the ordered list of operations that aligns a target process with a source.

The builder is a pure function of two snapshots plus options: it never talks
to a live system, so identical inputs always produce identical plans.

Matching rules:
- Work item types and fields are matched by reference name.
- States are matched by name. A state whose category differs between source
  and target is a blocking StateCategoryConflict unless the options allow
  category changes; there is no automatic merge.
- Picklist additions are always planned (one AddPicklistValue per value).
  Removing values needs overwrite_picklist, otherwise the field is left out
  of the plan and a PicklistConflict is recorded instead.
- Rules and layout items are always planned; whether their failures are
  tolerated is decided by the TargetWriter.

Operations are returned in dependency order (a work item type before its
children, a field before the rules and controls that reference it), ties
broken by source declaration order.
"""

from __future__ import annotations

import enum
import heapq
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from .config import MigrationOptions
from .exceptions import MigrationError
from .models import FieldDef, LayoutItem, ProcessModel, RuleDef, StateDef, WorkItemTypeModel

if TYPE_CHECKING:
    from collections.abc import Iterable

logger: logging.Logger = logging.getLogger(__name__)


class OperationKind(enum.StrEnum):
    CREATE_WORK_ITEM_TYPE = "CreateWorkItemType"
    UPDATE_WORK_ITEM_TYPE = "UpdateWorkItemType"
    CREATE_FIELD = "CreateField"
    UPDATE_FIELD = "UpdateField"
    ADD_PICKLIST_VALUE = "AddPicklistValue"
    OVERWRITE_PICKLIST = "OverwritePicklist"
    CREATE_STATE = "CreateState"
    UPDATE_STATE = "UpdateState"
    IMPORT_RULE = "ImportRule"
    IMPORT_FORM_LAYOUT = "ImportFormLayout"

    @property
    def is_create(self) -> bool:
        return self.value.startswith("Create")


OperationPayload = WorkItemTypeModel | FieldDef | StateDef | RuleDef | LayoutItem | str | tuple[str, ...]


@dataclass(frozen=True)
class Operation:
    """A single change to apply to the target.

    target_ref names the entity the operation acts on: the work item type
    reference name, a field reference name, a state name, a rule id or a
    layout item id.
    """

    id: str
    kind: OperationKind
    work_item_type: str
    target_ref: str
    payload: OperationPayload
    depends_on: frozenset[str] = frozenset()

    def describe(self) -> str:
        if self.kind is OperationKind.ADD_PICKLIST_VALUE:
            return f"{self.kind} '{self.payload}' to {self.target_ref}"
        if self.kind in (OperationKind.CREATE_WORK_ITEM_TYPE, OperationKind.UPDATE_WORK_ITEM_TYPE):
            return f"{self.kind} {self.work_item_type}"
        return f"{self.kind} {self.target_ref} on {self.work_item_type}"


@dataclass(frozen=True)
class PlanIssue:
    """A conflict found while planning that must be resolved before any write."""

    kind: Literal["PicklistConflict", "StateCategoryConflict"]
    work_item_type: str
    target_ref: str
    message: str


@dataclass(frozen=True)
class MigrationPlan:
    """Immutable, ordered set of operations plus the blocking issues found.

    The source snapshot is kept so a file target can serialize it.
    """

    source: ProcessModel
    operations: tuple[Operation, ...]
    issues: tuple[PlanIssue, ...] = ()

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def blocking_issues(self) -> tuple[PlanIssue, ...]:
        return self.issues

    def count_by_kind(self) -> dict[OperationKind, int]:
        return dict(Counter(op.kind for op in self.operations))


def _field_metadata(field: FieldDef) -> tuple[object, ...]:
    return (field.name, field.type, field.required, field.default_value)


class _PlanBuilder:
    options: MigrationOptions
    operations: list[Operation]
    issues: list[PlanIssue]
    _ids: set[str]

    def __init__(self, options: MigrationOptions) -> None:
        self.options = options
        self.operations = []
        self.issues = []
        self._ids = set()

    def add(
        self,
        kind: OperationKind,
        wit_ref: str,
        target_ref: str,
        payload: OperationPayload,
        depends_on: Iterable[str] = (),
    ) -> str:
        base_id = f"{kind}:{wit_ref}" if target_ref == wit_ref else f"{kind}:{wit_ref}/{target_ref}"
        if kind is OperationKind.ADD_PICKLIST_VALUE:
            base_id = f"{base_id}={payload}"
        op_id = base_id
        suffix = 2
        while op_id in self._ids:
            op_id = f"{base_id}#{suffix}"
            suffix += 1
        self._ids.add(op_id)
        self.operations.append(
            Operation(
                id=op_id,
                kind=kind,
                work_item_type=wit_ref,
                target_ref=target_ref,
                payload=payload,
                depends_on=frozenset(depends_on),
            )
        )
        return op_id

    def conflict(self, kind: Literal["PicklistConflict", "StateCategoryConflict"], wit_ref: str, ref: str, msg: str) -> None:
        logger.warning(f"{kind} on {wit_ref}: {msg}")
        self.issues.append(PlanIssue(kind=kind, work_item_type=wit_ref, target_ref=ref, message=msg))

    def plan_work_item_type(self, source: WorkItemTypeModel, target: WorkItemTypeModel | None) -> None:
        wit_ref = source.reference_name
        wit_deps: set[str] = set()

        if target is None:
            wit_deps.add(self.add(OperationKind.CREATE_WORK_ITEM_TYPE, wit_ref, wit_ref, source))
        elif source.metadata() != target.metadata():
            self.add(OperationKind.UPDATE_WORK_ITEM_TYPE, wit_ref, wit_ref, source)

        created_fields = self.plan_fields(source, target, wit_deps)
        self.plan_states(source, target, wit_deps)

        for rule in source.rules:
            deps = wit_deps | {created_fields[ref] for ref in rule.referenced_fields if ref in created_fields}
            self.add(OperationKind.IMPORT_RULE, wit_ref, rule.id, rule, deps)

        self.plan_layout(source, wit_deps, created_fields)

    def plan_fields(
        self, source: WorkItemTypeModel, target: WorkItemTypeModel | None, wit_deps: set[str]
    ) -> dict[str, str]:
        """Plan field operations, returning field reference name -> CreateField operation id."""
        wit_ref = source.reference_name
        target_fields = {f.reference_name: f for f in target.fields} if target else {}
        created: dict[str, str] = {}

        for field in source.fields:
            existing = target_fields.get(field.reference_name)
            if existing is None:
                created[field.reference_name] = self.add(
                    OperationKind.CREATE_FIELD, wit_ref, field.reference_name, field, wit_deps
                )
                continue

            picklist_deps: set[str] = set()
            if field.is_picklist or existing.is_picklist:
                source_values = set(field.allowed_values)
                target_values = set(existing.allowed_values)
                removed = [v for v in existing.allowed_values if v not in source_values]
                if removed:
                    if not self.options.overwrite_picklist:
                        self.conflict(
                            "PicklistConflict",
                            wit_ref,
                            field.reference_name,
                            f"Picklist of {field.reference_name} would lose value(s) {removed}; "
                            "enable overwrite_picklist to replace it",
                        )
                        continue
                    picklist_deps.add(
                        self.add(
                            OperationKind.OVERWRITE_PICKLIST,
                            wit_ref,
                            field.reference_name,
                            field.allowed_values,
                            wit_deps,
                        )
                    )
                else:
                    picklist_deps.update(
                        self.add(OperationKind.ADD_PICKLIST_VALUE, wit_ref, field.reference_name, value, wit_deps)
                        for value in field.allowed_values
                        if value not in target_values
                    )

            if _field_metadata(field) != _field_metadata(existing):
                self.add(OperationKind.UPDATE_FIELD, wit_ref, field.reference_name, field, wit_deps | picklist_deps)

        return created

    def plan_states(self, source: WorkItemTypeModel, target: WorkItemTypeModel | None, wit_deps: set[str]) -> None:
        wit_ref = source.reference_name
        target_states = {s.name: s for s in target.states} if target else {}

        for state in source.states:
            existing = target_states.get(state.name)
            if existing is None:
                self.add(OperationKind.CREATE_STATE, wit_ref, state.name, state, wit_deps)
            elif existing.state_category != state.state_category:
                if not self.options.allow_state_category_change:
                    self.conflict(
                        "StateCategoryConflict",
                        wit_ref,
                        state.name,
                        f"State '{state.name}' is {state.state_category} in the source "
                        f"but {existing.state_category} in the target",
                    )
                    continue
                self.add(OperationKind.UPDATE_STATE, wit_ref, state.name, state, wit_deps)
            elif (state.color, state.order) != (existing.color, existing.order):
                self.add(OperationKind.UPDATE_STATE, wit_ref, state.name, state, wit_deps)

    def plan_layout(self, source: WorkItemTypeModel, wit_deps: set[str], created_fields: dict[str, str]) -> None:
        wit_ref = source.reference_name
        pages: dict[str, str] = {}
        groups: dict[tuple[str | None, str], str] = {}

        for item in source.layout.items:
            deps = set(wit_deps)
            if item.kind == "group" and item.page in pages:
                deps.add(pages[item.page])
            elif item.kind == "control":
                if (item.page, item.group or "") in groups:
                    deps.add(groups[(item.page, item.group or "")])
                if item.field_reference_name in created_fields:
                    deps.add(created_fields[item.field_reference_name])

            op_id = self.add(OperationKind.IMPORT_FORM_LAYOUT, wit_ref, item.id, item, deps)
            if item.kind == "page":
                pages[item.label] = op_id
            elif item.kind == "group":
                groups[(item.page, item.label)] = op_id


def _topological_sort(operations: list[Operation]) -> list[Operation]:
    """Order operations so dependencies come first, keeping declaration order among peers."""
    index = {op.id: i for i, op in enumerate(operations)}
    indegree = [0] * len(operations)
    dependents: dict[int, list[int]] = defaultdict(list)

    for i, op in enumerate(operations):
        for dep in sorted(op.depends_on, key=lambda d: index.get(d, -1)):
            if dep not in index:
                msg = f"Operation {op.id} depends on unknown operation {dep}"
                raise MigrationError(msg)
            indegree[i] += 1
            dependents[index[dep]].append(i)

    ready = [i for i, degree in enumerate(indegree) if degree == 0]
    heapq.heapify(ready)
    ordered: list[Operation] = []

    while ready:
        i = heapq.heappop(ready)
        ordered.append(operations[i])
        for j in dependents[i]:
            indegree[j] -= 1
            if indegree[j] == 0:
                heapq.heappush(ready, j)

    if len(ordered) != len(operations):
        stuck = [operations[i].id for i, degree in enumerate(indegree) if degree > 0]
        msg = f"Dependency cycle between operations: {stuck}"
        raise MigrationError(msg)

    return ordered


def build_plan(
    source: ProcessModel,
    target: ProcessModel | None,
    options: MigrationOptions | None = None,
) -> MigrationPlan:
    """Compute the operations that bring target in line with source.

    Args:
        source: Snapshot of the process to copy
        target: Snapshot of the existing target process, or None if it does not exist yet
        options: Migration options; only overwrite_picklist and
            allow_state_category_change influence planning

    Returns:
        MigrationPlan with operations in dependency order and any blocking issues
    """
    builder = _PlanBuilder(options or MigrationOptions())

    for wit in source.work_item_types:
        existing = target.get_work_item_type(wit.reference_name) if target else None
        builder.plan_work_item_type(wit, existing)

    plan = MigrationPlan(
        source=source,
        operations=tuple(_topological_sort(builder.operations)),
        issues=tuple(builder.issues),
    )
    logger.info(f"Planned {len(plan)} operation(s) with {len(plan.issues)} blocking issue(s)")
    return plan
