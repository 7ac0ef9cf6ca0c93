"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings, and get an in-memory ProcessClient plus sample processes
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from typing_extensions import override

import pytest

from ado_process_migrator.exceptions import NotFoundError
from ado_process_migrator.models import (
    FieldDef,
    FormLayout,
    LayoutItem,
    ProcessModel,
    RuleAction,
    RuleCondition,
    RuleDef,
    StateCategory,
    StateDef,
    WorkItemTypeModel,
)

if TYPE_CHECKING:
    from collections.abc import Generator, Iterable

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    A degraded read or a tolerated skip is acceptable when running the tool as a
    user, but against the integration organization we expect a clean run.
    """
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.
    """
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        _integration_test_warnings.pop(test_nodeid, None)


def _layout_tree(layout: FormLayout) -> dict[str, Any]:
    """Rebuild the REST page/section/group/control tree from flattened items."""
    pages: dict[str, dict[str, Any]] = {}
    groups: dict[tuple[str | None, str], dict[str, Any]] = {}

    for item in layout.items:
        if item.kind == "page":
            pages[item.label] = {
                "id": item.id,
                "label": item.label,
                "visible": item.visible,
                "sections": [{"id": "Section1", "groups": []}],
            }
        elif item.kind == "group":
            group = {"id": item.id, "label": item.label, "visible": item.visible, "controls": []}
            groups[(item.page, item.label)] = group
            pages[item.page or ""]["sections"][0]["groups"].append(group)
        else:
            control: dict[str, Any] = {
                "id": item.id,
                "label": item.label,
                "visible": item.visible,
                "isContribution": item.is_contribution,
            }
            if item.is_contribution:
                control["contribution"] = {"contributionId": item.contribution_id}
            groups[(item.page, item.group or "")]["controls"].append(control)

    return {"pages": list(pages.values())}


class FakeProcessClient:
    """In-memory ProcessClient serving ProcessModel snapshots and recording writes.

    Reads are served from the given processes. Writes are recorded in `calls`
    as (method, ref) tuples; a write raises when (method, ref) is in `failures`,
    a per-type read raises when (method, wit_ref) is in `read_failures`.
    """

    def __init__(self, processes: Iterable[ProcessModel] = ()) -> None:
        self.processes: dict[str, ProcessModel] = {p.id: p for p in processes}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.read_failures: dict[tuple[str, str], Exception] = {}
        self.created_process_id = "created-process"

    def _process(self, process_id: str) -> ProcessModel:
        if process_id not in self.processes:
            msg = f"Not found: process {process_id}"
            raise NotFoundError(msg)
        return self.processes[process_id]

    def _wit(self, process_id: str, wit_ref: str, method: str) -> WorkItemTypeModel:
        if (method, wit_ref) in self.read_failures:
            raise self.read_failures[(method, wit_ref)]
        wit = self._process(process_id).get_work_item_type(wit_ref)
        if wit is None:
            msg = f"Not found: {wit_ref}"
            raise NotFoundError(msg)
        return wit

    def _write(self, method: str, ref: str) -> None:
        self.calls.append((method, ref))
        if (method, ref) in self.failures:
            raise self.failures[(method, ref)]

    @staticmethod
    def _summary(process: ProcessModel) -> dict[str, Any]:
        return {
            "id": process.id,
            "name": process.name,
            "description": process.description,
            "isDefault": False,
            "parentProcessTypeId": process.reference_process_id,
        }

    def list_processes(self) -> list[dict[str, Any]]:
        return [self._summary(p) for p in self.processes.values()]

    def get_process(self, process_id: str) -> dict[str, Any]:
        return self._summary(self._process(process_id))

    def get_work_item_types(self, process_id: str) -> list[dict[str, Any]]:
        return [
            {
                "referenceName": w.reference_name,
                **w.metadata(),
                "inherits": w.inherits,
                "customization": "inherited" if w.inherits else "custom",
            }
            for w in self._process(process_id).work_item_types
        ]

    def get_fields(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        return [f.to_dict() for f in self._wit(process_id, wit_ref, "get_fields").fields]

    def get_states(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._wit(process_id, wit_ref, "get_states").states]

    def get_rules(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._wit(process_id, wit_ref, "get_rules").rules]

    def get_layout(self, process_id: str, wit_ref: str) -> dict[str, Any]:
        return _layout_tree(self._wit(process_id, wit_ref, "get_layout").layout)

    def create_process(self, name: str, parent_process_id: str | None, description: str = "") -> str:
        self._write("create_process", name)
        return self.created_process_id

    def create_work_item_type(self, process_id: str, wit: WorkItemTypeModel) -> None:
        self._write("create_work_item_type", wit.reference_name)

    def update_work_item_type(self, process_id: str, wit: WorkItemTypeModel) -> None:
        self._write("update_work_item_type", wit.reference_name)

    def create_field(self, process_id: str, wit_ref: str, field: FieldDef) -> None:
        self._write("create_field", field.reference_name)

    def update_field(self, process_id: str, wit_ref: str, field: FieldDef) -> None:
        self._write("update_field", field.reference_name)

    def add_picklist_value(self, field_ref: str, value: str) -> None:
        self._write("add_picklist_value", f"{field_ref}={value}")

    def overwrite_picklist(self, field_ref: str, values: list[str]) -> None:
        self._write("overwrite_picklist", field_ref)

    def create_state(self, process_id: str, wit_ref: str, state: StateDef) -> None:
        self._write("create_state", state.name)

    def update_state(self, process_id: str, wit_ref: str, state: StateDef) -> None:
        self._write("update_state", state.name)

    def import_rule(self, process_id: str, wit_ref: str, rule: RuleDef) -> None:
        self._write("import_rule", rule.id)

    def import_form_layout_item(self, process_id: str, wit_ref: str, item: LayoutItem) -> None:
        self._write("import_form_layout_item", item.id)


def make_bug_type(
    *,
    severity_values: tuple[str, ...] = ("Low", "Medium", "High"),
    active_category: StateCategory = StateCategory.IN_PROGRESS,
    color: str = "CC293D",
) -> WorkItemTypeModel:
    """A customized Bug type: two fields, three states, one rule and a small form."""
    return WorkItemTypeModel(
        reference_name="Contoso.Bug",
        name="Bug",
        description="Tracks defects",
        color=color,
        icon="icon_insect",
        fields=(
            FieldDef(
                reference_name="Custom.Severity",
                name="Severity",
                type="picklistString",
                default_value="Medium" if "Medium" in severity_values else None,
                allowed_values=severity_values,
            ),
            FieldDef(reference_name="Custom.Reviewer", name="Reviewer", type="identity"),
        ),
        states=(
            StateDef(name="New", state_category=StateCategory.PROPOSED, color="B2B2B2", order=1),
            StateDef(name="Active", state_category=active_category, color="007ACC", order=2),
            StateDef(name="Closed", state_category=StateCategory.COMPLETED, color="339933", order=3),
        ),
        rules=(
            RuleDef(
                id="rule-1",
                name="Assign high severity",
                conditions=(RuleCondition("when", field="Custom.Severity", value="High"),),
                actions=(RuleAction("setDefaultValue", target_field="Custom.Reviewer", value="lead@contoso.com"),),
            ),
        ),
        layout=FormLayout(
            items=(
                LayoutItem(id="page-details", kind="page", label="Details"),
                LayoutItem(id="group-triage", kind="group", label="Triage", page="Details"),
                LayoutItem(
                    id="Custom.Severity",
                    kind="control",
                    label="Severity",
                    page="Details",
                    group="Triage",
                    field_reference_name="Custom.Severity",
                ),
                LayoutItem(
                    id="contoso.extension.timer",
                    kind="control",
                    label="Timer",
                    page="Details",
                    group="Triage",
                    contribution_id="contoso.extension.timer",
                    is_contribution=True,
                ),
            )
        ),
    )


def make_process(*work_item_types: WorkItemTypeModel, process_id: str = "proc-1", name: str = "Contoso Agile") -> ProcessModel:
    return ProcessModel(
        id=process_id,
        name=name,
        description="Customized Agile process",
        reference_process_id="adcc42ab-9882-485e-a3ed-7678f01f66bc",
        work_item_types=work_item_types or (make_bug_type(),),
    )


@pytest.fixture
def source_process() -> ProcessModel:
    return make_process()


@pytest.fixture
def fake_client(source_process: ProcessModel) -> FakeProcessClient:
    return FakeProcessClient([source_process])
