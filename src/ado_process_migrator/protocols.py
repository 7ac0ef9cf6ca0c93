"""Protocols defining the contracts the engine consumes.

The migration architecture separates concerns into three components:

1. ProcessClient: Talks to one organization's process API (read and write)
2. RunObserver: Receives progress, log and completion events of a run
3. MigrationOrchestrator: Drives reading, planning and writing

This separation allows:
- Testing the reader, writer and orchestrator with in-memory fakes
- Hosting the engine behind any UI (CLI, desktop shell) without changes
- Clear boundaries for platform-specific details (endpoints, payload shapes)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .events import RunEvent
    from .models import FieldDef, LayoutItem, RuleDef, StateDef, WorkItemTypeModel


class ProcessClient(Protocol):
    """Protocol for reading and writing process definitions in one organization.

    Read methods return platform payloads as plain dicts (camelCase keys, as
    the REST API returns them); the SourceReader normalizes them into models.
    Write methods take model objects and raise:

    - IdentityResolutionError when a referenced user or group is unknown
    - WriteError for any other failure (network, validation, permission)

    Read methods raise NotFoundError for missing resources and FetchError for
    anything else.

    Example implementations:
        - AdoProcessClient: Azure DevOps work item process REST API via requests
    """

    def list_processes(self) -> list[dict[str, Any]]:
        """Return all processes as dicts with at least id, name and isDefault."""
        ...

    def get_process(self, process_id: str) -> dict[str, Any]:
        """Return process metadata (id, name, description, parentProcessTypeId)."""
        ...

    def get_work_item_types(self, process_id: str) -> list[dict[str, Any]]:
        """Return the work item types of a process in declaration order."""
        ...

    def get_fields(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        """Return the fields of a work item type, including allowed values."""
        ...

    def get_states(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        """Return the state definitions of a work item type."""
        ...

    def get_rules(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        """Return the rules of a work item type."""
        ...

    def get_layout(self, process_id: str, wit_ref: str) -> dict[str, Any]:
        """Return the form layout (pages/sections/groups/controls) of a work item type."""
        ...

    def create_process(self, name: str, parent_process_id: str | None, description: str = "") -> str:
        """Create an inherited process and return its id."""
        ...

    def create_work_item_type(self, process_id: str, wit: WorkItemTypeModel) -> None:
        """Create a work item type (metadata only, children are separate operations)."""
        ...

    def update_work_item_type(self, process_id: str, wit: WorkItemTypeModel) -> None:
        """Update name, description, color, icon and disabled flag of a work item type."""
        ...

    def create_field(self, process_id: str, wit_ref: str, field: FieldDef) -> None:
        """Add a field to a work item type, creating it in the organization if needed."""
        ...

    def update_field(self, process_id: str, wit_ref: str, field: FieldDef) -> None:
        """Update required flag and default value of a field on a work item type."""
        ...

    def add_picklist_value(self, field_ref: str, value: str) -> None:
        """Append one value to the picklist backing a field."""
        ...

    def overwrite_picklist(self, field_ref: str, values: list[str]) -> None:
        """Replace all values of the picklist backing a field."""
        ...

    def create_state(self, process_id: str, wit_ref: str, state: StateDef) -> None:
        """Add a state to a work item type."""
        ...

    def update_state(self, process_id: str, wit_ref: str, state: StateDef) -> None:
        """Update the state with the same name on a work item type."""
        ...

    def import_rule(self, process_id: str, wit_ref: str, rule: RuleDef) -> None:
        """Create a rule on a work item type."""
        ...

    def import_form_layout_item(self, process_id: str, wit_ref: str, item: LayoutItem) -> None:
        """Create one page, group or control on a work item type's form."""
        ...


class RunObserver(Protocol):
    """Protocol for run event subscribers."""

    def on_event(self, event: RunEvent) -> None:
        """Handle a run event. Must not throw or block."""
        ...
