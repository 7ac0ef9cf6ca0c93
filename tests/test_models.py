"""
Tests for process models, the process file format and validation.
"""

import json
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import make_bug_type, make_process

from ado_process_migrator.models import (
    FORMAT_VERSION,
    FieldDef,
    ProcessModel,
    RuleAction,
    RuleDef,
    StateCategory,
    StateDef,
    load_process_file,
    save_process_file,
    validate,
)


@pytest.mark.unit
class TestProcessFile:
    """Test writing and reading process files."""

    def test_export_then_import_yields_equal_model(self, tmp_path: Path, source_process: ProcessModel) -> None:
        path = tmp_path / "exports" / "process.json"

        save_process_file(source_process, path)

        assert load_process_file(path) == source_process

    def test_document_layout(self, tmp_path: Path, source_process: ProcessModel) -> None:
        path = tmp_path / "process.json"
        save_process_file(source_process, path)

        document = json.loads(path.read_text(encoding="utf-8"))

        assert document["formatVersion"] == FORMAT_VERSION
        assert document["process"]["name"] == "Contoso Agile"
        assert document["workItemTypes"][0]["referenceName"] == "Contoso.Bug"
        assert document["workItemTypes"][0]["fields"][0]["allowedValues"] == ["Low", "Medium", "High"]

    def test_unsupported_version_rejected(self, tmp_path: Path, source_process: ProcessModel) -> None:
        path = tmp_path / "process.json"
        document = source_process.to_dict() | {"formatVersion": FORMAT_VERSION + 1}
        path.write_text(json.dumps(document), encoding="utf-8")

        with pytest.raises(ValueError, match="format version"):
            load_process_file(path)

    def test_malformed_document_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "process.json"
        path.write_text(json.dumps({"workItemTypes": []}), encoding="utf-8")

        with pytest.raises(ValueError, match="Malformed"):
            load_process_file(path)

    def test_missing_file_raises_os_error(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_process_file(tmp_path / "missing.json")


@pytest.mark.unit
class TestModelHelpers:
    def test_picklist_detection(self) -> None:
        assert FieldDef("Custom.A", "A", type="picklistInteger").is_picklist
        assert FieldDef("Custom.B", "B", allowed_values=("x",)).is_picklist
        assert not FieldDef("Custom.C", "C", type="string").is_picklist

    def test_rule_referenced_fields_are_unique_and_ordered(self) -> None:
        rule = make_bug_type().rules[0]
        twice = replace(rule, actions=(*rule.actions, RuleAction("makeRequired", target_field="Custom.Severity")))

        assert twice.referenced_fields == ("Custom.Severity", "Custom.Reviewer")

    def test_get_work_item_type(self, source_process: ProcessModel) -> None:
        assert source_process.get_work_item_type("Contoso.Bug") is not None
        assert source_process.get_work_item_type("Contoso.Epic") is None

    def test_state_from_dict_parses_category(self) -> None:
        state = StateDef.from_dict({"name": "Doing", "stateCategory": "InProgress", "color": "fff", "order": "4"})

        assert state.state_category is StateCategory.IN_PROGRESS
        assert state.order == 4


@pytest.mark.unit
class TestValidate:
    """Test structural validation of process snapshots."""

    def test_valid_model_has_no_issues(self, source_process: ProcessModel) -> None:
        assert validate(source_process) == []

    def test_duplicate_field(self) -> None:
        bug = make_bug_type()
        bug = replace(bug, fields=(*bug.fields, bug.fields[0]))

        issues = validate(make_process(bug))

        assert [i.code for i in issues] == ["duplicate_field"]
        assert issues[0].work_item_type == "Contoso.Bug"

    def test_duplicate_state(self) -> None:
        bug = make_bug_type()
        bug = replace(bug, states=(*bug.states, StateDef("New", StateCategory.PROPOSED)))

        assert [i.code for i in validate(make_process(bug))] == ["duplicate_state"]

    def test_default_value_outside_picklist(self) -> None:
        bug = make_bug_type()
        severity = replace(bug.fields[0], default_value="Critical")
        bug = replace(bug, fields=(severity, *bug.fields[1:]))

        issues = validate(make_process(bug))

        assert [i.code for i in issues] == ["default_not_allowed"]
        assert "Critical" in issues[0].message

    def test_rule_referencing_unknown_field(self) -> None:
        bug = make_bug_type()
        rule = RuleDef(id="rule-2", name="Orphan", actions=(RuleAction("makeReadOnly", target_field="Custom.Gone"),))
        bug = replace(bug, rules=(*bug.rules, rule))

        issues = validate(make_process(bug))

        assert [i.code for i in issues] == ["unknown_rule_field"]
        assert "Custom.Gone" in issues[0].message

    def test_validate_does_not_mutate(self) -> None:
        bug = make_bug_type()
        model = make_process(replace(bug, fields=(*bug.fields, bug.fields[0])))
        before = model.to_dict()

        validate(model)

        assert model.to_dict() == before
