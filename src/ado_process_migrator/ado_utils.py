"""Azure DevOps access: token lookup and a process REST client.

AdoProcessClient implements the ProcessClient protocol against the work item
process REST API (api-version 7.1). It is a thin translation layer: payloads
are passed through as dicts, and HTTP failures are mapped onto the tool's
exception taxonomy.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import TYPE_CHECKING, Any, Final, Literal

import requests

from . import utils
from .exceptions import FetchError, IdentityResolutionError, NotFoundError, WriteError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .models import FieldDef, LayoutItem, RuleDef, StateDef, WorkItemTypeModel

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

API_VERSION: Final[str] = "7.1"
_SHARED_TOKEN_ENV_VAR: Final[str] = "AZURE_DEVOPS_EXT_PAT"  # noqa: S105
_DEFAULT_SECTION: Final[str] = "Section1"
_IDENTITY_FAILURE_HINTS: Final[tuple[str, ...]] = ("not found", "resolve", "does not exist", "unknown", "invalid")


def get_token(role: Literal["source", "target"], pass_path: str | None = None) -> str | None:
    """Get a personal access token for the source or target organization.

    Lookup order: explicit pass path, ADO_SOURCE_TOKEN / ADO_TARGET_TOKEN,
    AZURE_DEVOPS_EXT_PAT, then the default pass path azure-devops/<role>/token.
    """
    if pass_path:
        return utils.get_pass_value(pass_path)

    token: str | None = os.environ.get(f"ADO_{role.upper()}_TOKEN") or os.environ.get(_SHARED_TOKEN_ENV_VAR)
    if token:
        return token

    try:
        return utils.get_pass_value(f"azure-devops/{role}/token")
    except (ValueError, utils.PassError):
        logger.warning(f"No {role} token specified nor found")
        return None


def get_client(organization_url: str, token: str | None) -> AdoProcessClient:
    """Get a process client for an organization."""
    return AdoProcessClient(organization_url, token)


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:500]


def _is_identity_failure(message: str) -> bool:
    lowered = message.lower()
    return "identit" in lowered and any(hint in lowered for hint in _IDENTITY_FAILURE_HINTS)


def _process_summary(process: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": process.get("typeId") or process.get("id"),
        "name": process.get("name"),
        "description": process.get("description") or "",
        "isDefault": bool(process.get("isDefault", False)),
        "parentProcessTypeId": process.get("parentProcessTypeId"),
    }


class AdoProcessClient:
    """Work item process REST client for one Azure DevOps organization."""

    organization_url: str
    _session: requests.Session
    _timeout: float
    _created_refs: dict[tuple[str, str], str]

    def __init__(
        self,
        organization_url: str,
        token: str | None,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.organization_url = organization_url.rstrip("/")
        self._session = session or requests.Session()
        if token:
            self._session.auth = ("", token)
        self._session.headers.update({"Accept": "application/json"})
        self._timeout = timeout
        self._created_refs = {}

    def __repr__(self) -> str:
        return f"AdoProcessClient({self.organization_url!r})"

    def _url(self, path: str) -> str:
        return f"{self.organization_url}/_apis/{path}"

    def _get(self, path: str, params: dict[str, str] | None = None) -> Any:  # noqa: ANN401 - JSON payload
        try:
            response = self._session.get(
                self._url(path), params={"api-version": API_VERSION, **(params or {})}, timeout=self._timeout
            )
        except requests.RequestException as e:
            msg = f"GET {path} failed: {e}"
            raise FetchError(msg) from e

        if response.status_code == 404:
            msg = f"Not found: {path} ({_error_message(response)})"
            raise NotFoundError(msg)
        if not response.ok:
            msg = f"GET {path} failed with HTTP {response.status_code}: {_error_message(response)}"
            raise FetchError(msg)
        try:
            return response.json()
        except ValueError as e:
            msg = f"GET {path} returned a body that is not JSON: {e}"
            raise FetchError(msg) from e

    def _send(self, method: str, path: str, body: Any) -> Any:  # noqa: ANN401 - JSON payload
        try:
            response = self._session.request(
                method, self._url(path), params={"api-version": API_VERSION}, json=body, timeout=self._timeout
            )
        except requests.RequestException as e:
            msg = f"{method} {path} failed: {e}"
            raise WriteError(msg) from e

        if not response.ok:
            message = _error_message(response)
            msg = f"{method} {path} failed with HTTP {response.status_code}: {message}"
            if _is_identity_failure(message):
                raise IdentityResolutionError(msg)
            raise WriteError(msg)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            msg = f"{method} {path} returned a body that is not JSON: {e}"
            raise WriteError(msg) from e

    def _wit_path(self, process_id: str, wit_ref: str, suffix: str = "") -> str:
        wit_ref = self._created_refs.get((process_id, wit_ref), wit_ref)
        path = f"work/processes/{process_id}/workitemtypes/{wit_ref}"
        return f"{path}/{suffix}" if suffix else path

    # Reads

    def list_processes(self) -> list[dict[str, Any]]:
        return [_process_summary(p) for p in self._get("work/processes").get("value", [])]

    def get_process(self, process_id: str) -> dict[str, Any]:
        return _process_summary(self._get(f"work/processes/{process_id}"))

    def get_work_item_types(self, process_id: str) -> list[dict[str, Any]]:
        return self._get(f"work/processes/{process_id}/workitemtypes").get("value", [])

    def get_fields(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        return self._get(self._wit_path(process_id, wit_ref, "fields"), {"$expand": "allowedValues"}).get("value", [])

    def get_states(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        return self._get(self._wit_path(process_id, wit_ref, "states")).get("value", [])

    def get_rules(self, process_id: str, wit_ref: str) -> list[dict[str, Any]]:
        return self._get(self._wit_path(process_id, wit_ref, "rules")).get("value", [])

    def get_layout(self, process_id: str, wit_ref: str) -> dict[str, Any]:
        return self._get(self._wit_path(process_id, wit_ref, "layout"))

    # Writes

    def create_process(self, name: str, parent_process_id: str | None, description: str = "") -> str:
        created = self._send(
            "POST",
            "work/processes",
            {"name": name, "parentProcessTypeId": parent_process_id, "description": description},
        )
        logger.info(f"Created process '{name}'")
        return str(created.get("typeId") or created.get("id"))

    def create_work_item_type(self, process_id: str, wit: WorkItemTypeModel) -> None:
        body = wit.metadata()
        if wit.inherits:
            body["inheritsFrom"] = wit.inherits
        created = self._send("POST", f"work/processes/{process_id}/workitemtypes", body)
        created_ref = created.get("referenceName")
        if created_ref and created_ref != wit.reference_name:
            logger.debug(f"{wit.reference_name} was created as {created_ref}")
            self._created_refs[(process_id, wit.reference_name)] = created_ref

    def _current(self, path: str) -> dict[str, Any]:
        try:
            return self._get(path)
        except FetchError as e:
            raise WriteError(str(e)) from e

    def update_work_item_type(self, process_id: str, wit: WorkItemTypeModel) -> None:
        path = self._wit_path(process_id, wit.reference_name)
        current = self._current(path)
        if current.get("name") != wit.name:
            msg = (
                f"Renaming work item type {wit.reference_name} "
                f"('{current.get('name')}' -> '{wit.name}') is not supported"
            )
            raise WriteError(msg)
        body = {k: v for k, v in wit.metadata().items() if k != "name"}
        self._send("PATCH", path, body)

    def _get_picklist_id(self, field_ref: str) -> str:
        organization_field = self._get(f"wit/fields/{field_ref}")
        picklist_id = organization_field.get("picklistId")
        if not picklist_id:
            msg = f"Field {field_ref} is not backed by a picklist"
            raise WriteError(msg)
        return str(picklist_id)

    def _ensure_organization_field(self, field: FieldDef) -> None:
        try:
            self._get(f"wit/fields/{field.reference_name}")
        except NotFoundError:
            pass
        except FetchError as e:
            raise WriteError(str(e)) from e
        else:
            return

        body: dict[str, Any] = {"referenceName": field.reference_name, "name": field.name, "type": field.type}
        if field.is_picklist:
            picklist = self._send(
                "POST",
                "work/processes/lists",
                {"name": f"picklist_{uuid.uuid4()}", "type": "String", "items": list(field.allowed_values)},
            )
            body |= {"isPicklist": True, "picklistId": picklist.get("id")}
        self._send("POST", "wit/fields", body)
        logger.debug(f"Created organization field {field.reference_name}")

    def create_field(self, process_id: str, wit_ref: str, field: FieldDef) -> None:
        self._ensure_organization_field(field)
        self._send(
            "POST",
            self._wit_path(process_id, wit_ref, "fields"),
            {"referenceName": field.reference_name, "required": field.required, "defaultValue": field.default_value},
        )

    def update_field(self, process_id: str, wit_ref: str, field: FieldDef) -> None:
        """Update the per-type settings of a field.

        Name and type belong to the organization-wide field and cannot be
        changed through a process, so a difference in either raises.
        """
        path = self._wit_path(process_id, wit_ref, f"fields/{field.reference_name}")
        current = self._current(path)
        for attribute, wanted in (("name", field.name), ("type", field.type)):
            if str(current.get(attribute, "")).casefold() != wanted.casefold():
                msg = (
                    f"Changing the {attribute} of field {field.reference_name} on {wit_ref} "
                    f"('{current.get(attribute)}' -> '{wanted}') is not supported"
                )
                raise WriteError(msg)
        self._send("PATCH", path, {"required": field.required, "defaultValue": field.default_value})

    def _replace_picklist(self, field_ref: str, build_items: Callable[[list[str]], list[str]]) -> None:
        try:
            picklist_id = self._get_picklist_id(field_ref)
            picklist = self._get(f"work/processes/lists/{picklist_id}")
        except FetchError as e:
            raise WriteError(str(e)) from e
        items = build_items(list(picklist.get("items") or []))
        self._send("PUT", f"work/processes/lists/{picklist_id}", picklist | {"items": items})

    def add_picklist_value(self, field_ref: str, value: str) -> None:
        self._replace_picklist(field_ref, lambda items: [*items, value] if value not in items else items)

    def overwrite_picklist(self, field_ref: str, values: list[str]) -> None:
        self._replace_picklist(field_ref, lambda _items: list(values))

    def create_state(self, process_id: str, wit_ref: str, state: StateDef) -> None:
        body = {"name": state.name, "stateCategory": state.state_category.value, "color": state.color}
        if state.order is not None:
            body["order"] = state.order
        self._send("POST", self._wit_path(process_id, wit_ref, "states"), body)

    def update_state(self, process_id: str, wit_ref: str, state: StateDef) -> None:
        try:
            existing = {s["name"]: s for s in self.get_states(process_id, wit_ref)}
        except FetchError as e:
            raise WriteError(str(e)) from e
        if state.name not in existing:
            msg = f"State '{state.name}' does not exist on {wit_ref}"
            raise WriteError(msg)
        body = {"stateCategory": state.state_category.value, "color": state.color}
        if state.order is not None:
            body["order"] = state.order
        self._send("PATCH", self._wit_path(process_id, wit_ref, f"states/{existing[state.name]['id']}"), body)

    def import_rule(self, process_id: str, wit_ref: str, rule: RuleDef) -> None:
        body = rule.to_dict()
        del body["id"]
        self._send("POST", self._wit_path(process_id, wit_ref, "rules"), body)

    def import_form_layout_item(self, process_id: str, wit_ref: str, item: LayoutItem) -> None:
        if item.kind == "page":
            self._send(
                "POST",
                self._wit_path(process_id, wit_ref, "layout/pages"),
                {"label": item.label, "visible": item.visible, "pageType": "custom"},
            )
            return

        try:
            layout = self.get_layout(process_id, wit_ref)
        except FetchError as e:
            raise WriteError(str(e)) from e
        page = next((p for p in layout.get("pages", []) if p.get("label") == item.page), None)
        if page is None:
            msg = f"Page '{item.page}' not found on the form of {wit_ref}"
            raise WriteError(msg)

        if item.kind == "group":
            self._send(
                "POST",
                self._wit_path(process_id, wit_ref, f"layout/pages/{page['id']}/sections/{_DEFAULT_SECTION}/groups"),
                {"label": item.label, "visible": item.visible},
            )
            return

        groups = [g for section in page.get("sections", []) for g in section.get("groups", [])]
        group = next((g for g in groups if g.get("label") == item.group), None)
        if group is None:
            msg = f"Group '{item.group}' not found on page '{item.page}' of {wit_ref}"
            raise WriteError(msg)

        control: dict[str, Any] = {
            "id": item.field_reference_name or item.contribution_id or item.id,
            "label": item.label,
            "visible": item.visible,
            "isContribution": item.is_contribution,
        }
        if item.is_contribution:
            control["contribution"] = {"contributionId": item.contribution_id}
        self._send("POST", self._wit_path(process_id, wit_ref, f"layout/groups/{group['id']}/controls"), control)
