"""Data models for a work item process definition.

A ProcessModel is a read-only snapshot of one process: its work item types
and, per type, the fields, states, rules and form layout. Snapshots are built
by the SourceReader, diffed by the plan builder, and serialized as the export
file. They are never mutated after construction; every collection is a tuple.

Matching across systems uses natural keys only:
- work item types and fields by reference name
- states by name (states have no durable id across organizations)
"""

from __future__ import annotations

import enum
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

logger: logging.Logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class StateCategory(enum.StrEnum):
    """Workflow category a state belongs to."""

    PROPOSED = "Proposed"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    COMPLETED = "Completed"
    REMOVED = "Removed"


@dataclass(frozen=True)
class FieldDef:
    """A field attached to a work item type."""

    reference_name: str
    name: str
    type: str = "string"
    required: bool = False
    default_value: str | None = None
    allowed_values: tuple[str, ...] = ()

    @property
    def is_picklist(self) -> bool:
        return self.type.lower().startswith("picklist") or bool(self.allowed_values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "referenceName": self.reference_name,
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "defaultValue": self.default_value,
            "allowedValues": list(self.allowed_values),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDef:
        default_value = data.get("defaultValue")
        return cls(
            reference_name=data["referenceName"],
            name=data.get("name") or data["referenceName"],
            type=data.get("type") or "string",
            required=bool(data.get("required", False)),
            default_value=None if default_value is None else str(default_value),
            allowed_values=tuple(str(v) for v in data.get("allowedValues") or ()),
        )


@dataclass(frozen=True)
class StateDef:
    """A workflow state of a work item type."""

    name: str
    state_category: StateCategory
    color: str = ""
    order: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "stateCategory": self.state_category.value,
            "color": self.color,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateDef:
        order = data.get("order")
        return cls(
            name=data["name"],
            state_category=StateCategory(data["stateCategory"]),
            color=data.get("color") or "",
            order=None if order is None else int(order),
        )


@dataclass(frozen=True)
class RuleCondition:
    condition_type: str
    field: str | None = None
    value: str | None = None


@dataclass(frozen=True)
class RuleAction:
    action_type: str
    target_field: str | None = None
    value: str | None = None


@dataclass(frozen=True)
class RuleDef:
    """A custom rule: when all conditions hold, perform the actions.

    Action values may name identities (e.g. a default assignee) that have to
    be resolved on the target organization when the rule is imported.
    """

    id: str
    name: str
    conditions: tuple[RuleCondition, ...] = ()
    actions: tuple[RuleAction, ...] = ()
    is_disabled: bool = False

    @property
    def referenced_fields(self) -> tuple[str, ...]:
        """Field reference names used by conditions and actions, in order of appearance."""
        refs = [c.field for c in self.conditions if c.field] + [a.target_field for a in self.actions if a.target_field]
        return tuple(dict.fromkeys(refs))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "conditions": [
                {"conditionType": c.condition_type, "field": c.field, "value": c.value} for c in self.conditions
            ],
            "actions": [
                {"actionType": a.action_type, "targetField": a.target_field, "value": a.value} for a in self.actions
            ],
            "isDisabled": self.is_disabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleDef:
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            conditions=tuple(
                RuleCondition(condition_type=c["conditionType"], field=c.get("field"), value=c.get("value"))
                for c in data.get("conditions") or ()
            ),
            actions=tuple(
                RuleAction(action_type=a["actionType"], target_field=a.get("targetField"), value=a.get("value"))
                for a in data.get("actions") or ()
            ),
            is_disabled=bool(data.get("isDisabled", False)),
        )


@dataclass(frozen=True)
class LayoutItem:
    """One element of a work item form, flattened from the page/group/control tree.

    Groups name the page they live on; controls name both their page and group.
    Controls provided by an extension are contributions and carry the
    contribution id instead of (or next to) a field reference.
    """

    id: str
    kind: Literal["page", "group", "control"]
    label: str
    page: str | None = None
    group: str | None = None
    field_reference_name: str | None = None
    contribution_id: str | None = None
    is_contribution: bool = False
    visible: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "label": self.label,
            "page": self.page,
            "group": self.group,
            "fieldReferenceName": self.field_reference_name,
            "contributionId": self.contribution_id,
            "isContribution": self.is_contribution,
            "visible": self.visible,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LayoutItem:
        return cls(
            id=str(data["id"]),
            kind=data["kind"],
            label=data.get("label") or "",
            page=data.get("page"),
            group=data.get("group"),
            field_reference_name=data.get("fieldReferenceName"),
            contribution_id=data.get("contributionId"),
            is_contribution=bool(data.get("isContribution", False)),
            visible=bool(data.get("visible", True)),
        )


@dataclass(frozen=True)
class FormLayout:
    items: tuple[LayoutItem, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items]}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FormLayout:
        if not data:
            return cls()
        return cls(items=tuple(LayoutItem.from_dict(item) for item in data.get("items") or ()))


@dataclass(frozen=True)
class WorkItemTypeModel:
    """A work item type (e.g. "Bug") with everything hanging off it.

    inherits names the parent process type a derived type customizes
    (e.g. "Microsoft.VSTS.WorkItemTypes.Bug"); it is None for custom types.
    """

    reference_name: str
    name: str
    description: str = ""
    color: str = ""
    icon: str = ""
    is_disabled: bool = False
    inherits: str | None = None
    fields: tuple[FieldDef, ...] = ()
    states: tuple[StateDef, ...] = ()
    rules: tuple[RuleDef, ...] = ()
    layout: FormLayout = field(default_factory=FormLayout)

    def metadata(self) -> dict[str, Any]:
        """The attributes an UpdateWorkItemType operation can change."""
        return {
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "isDisabled": self.is_disabled,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "referenceName": self.reference_name,
            **self.metadata(),
            "inherits": self.inherits,
            "fields": [f.to_dict() for f in self.fields],
            "states": [s.to_dict() for s in self.states],
            "rules": [r.to_dict() for r in self.rules],
            "layout": self.layout.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItemTypeModel:
        return cls(
            reference_name=data["referenceName"],
            name=data.get("name") or data["referenceName"],
            description=data.get("description") or "",
            color=data.get("color") or "",
            icon=data.get("icon") or "",
            is_disabled=bool(data.get("isDisabled", False)),
            inherits=data.get("inherits"),
            fields=tuple(FieldDef.from_dict(f) for f in data.get("fields") or ()),
            states=tuple(StateDef.from_dict(s) for s in data.get("states") or ()),
            rules=tuple(RuleDef.from_dict(r) for r in data.get("rules") or ()),
            layout=FormLayout.from_dict(data.get("layout")),
        )


@dataclass(frozen=True)
class ProcessModel:
    """Snapshot of a whole process definition."""

    id: str
    name: str
    description: str = ""
    reference_process_id: str | None = None
    work_item_types: tuple[WorkItemTypeModel, ...] = ()

    def get_work_item_type(self, reference_name: str) -> WorkItemTypeModel | None:
        for wit in self.work_item_types:
            if wit.reference_name == reference_name:
                return wit
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatVersion": FORMAT_VERSION,
            "process": {
                "id": self.id,
                "name": self.name,
                "description": self.description,
                "referenceProcessId": self.reference_process_id,
            },
            "workItemTypes": [wit.to_dict() for wit in self.work_item_types],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessModel:
        version = data.get("formatVersion", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            msg = f"Unsupported process file format version: {version}"
            raise ValueError(msg)
        process = data["process"]
        return cls(
            id=str(process.get("id") or ""),
            name=process["name"],
            description=process.get("description") or "",
            reference_process_id=process.get("referenceProcessId"),
            work_item_types=tuple(WorkItemTypeModel.from_dict(w) for w in data.get("workItemTypes") or ()),
        )


def save_process_file(model: ProcessModel, path: str | Path) -> None:
    """Write a process snapshot as a JSON document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(model.to_dict(), indent=2), encoding="utf-8")
    logger.info(f"Wrote process '{model.name}' to {path}")


def load_process_file(path: str | Path) -> ProcessModel:
    """Read a process snapshot written by save_process_file().

    Raises:
        OSError: If the file cannot be read
        ValueError: If the document is not a valid process file
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        return ProcessModel.from_dict(json.loads(text))
    except (KeyError, TypeError) as e:
        msg = f"Malformed process file {path}: {e!r}"
        raise ValueError(msg) from e


@dataclass(frozen=True)
class ValidationIssue:
    work_item_type: str
    code: Literal["duplicate_field", "duplicate_state", "default_not_allowed", "unknown_rule_field"]
    message: str


def validate(model: ProcessModel) -> list[ValidationIssue]:
    """Check the structural invariants of a process snapshot.

    Validation never mutates the model; callers decide which issues are fatal.
    """
    issues: list[ValidationIssue] = []

    for wit in model.work_item_types:
        wit_ref = wit.reference_name

        field_counts = Counter(f.reference_name for f in wit.fields)
        issues.extend(
            ValidationIssue(wit_ref, "duplicate_field", f"Field {ref} is declared {count} times on {wit_ref}")
            for ref, count in field_counts.items()
            if count > 1
        )

        state_counts = Counter(s.name for s in wit.states)
        issues.extend(
            ValidationIssue(wit_ref, "duplicate_state", f"State '{name}' is declared {count} times on {wit_ref}")
            for name, count in state_counts.items()
            if count > 1
        )

        for f in wit.fields:
            if f.is_picklist and f.default_value and f.default_value not in f.allowed_values:
                issues.append(
                    ValidationIssue(
                        wit_ref,
                        "default_not_allowed",
                        f"Default value '{f.default_value}' of {f.reference_name} is not an allowed value",
                    )
                )

        for rule in wit.rules:
            unknown = [ref for ref in rule.referenced_fields if ref not in field_counts]
            issues.extend(
                ValidationIssue(
                    wit_ref,
                    "unknown_rule_field",
                    f"Rule '{rule.name or rule.id}' references {ref}, which is not a field of {wit_ref}",
                )
                for ref in unknown
            )

    return issues
