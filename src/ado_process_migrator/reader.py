"""Read a process definition from a live organization or from a file.

The reader produces a self-contained ProcessModel snapshot. For live systems
the work item types are listed first, then the fields, states, rules and
layout of every type are fetched concurrently. A failure on one of those
per-type endpoints is not fatal: that part of that type is left empty, a
warning is recorded, and the scan goes on.

Only customizations are kept. Unmodified system types, and the fields,
states, rules and form elements a derived type inherits from its parent,
already exist on any process created from the same parent.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import FetchError, NotFoundError
from .models import (
    FieldDef,
    FormLayout,
    LayoutItem,
    ProcessModel,
    RuleDef,
    StateDef,
    WorkItemTypeModel,
    load_process_file,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .protocols import ProcessClient

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ApiSource:
    """A live organization reached through a ProcessClient."""

    client: ProcessClient
    url: str = ""


@dataclass(frozen=True)
class FileSource:
    """A process file written by an earlier export."""

    path: str | Path


def find_process(client: ProcessClient, process_identifier: str) -> dict[str, Any] | None:
    """Find a process by id, or by name ignoring case."""
    processes = client.list_processes()
    for process in processes:
        if process.get("id") == process_identifier:
            return process
    wanted = process_identifier.casefold()
    for process in processes:
        if str(process.get("name", "")).casefold() == wanted:
            return process
    return None


def _is_custom(payload: dict[str, Any], key: str = "customization") -> bool:
    # Payloads without the marker (process files, older servers) count as custom
    return payload.get(key, "custom") == "custom"


def flatten_layout(layout: dict[str, Any]) -> FormLayout:
    """Flatten the page/section/group/control tree into LayoutItems.

    Inherited elements are left out: they exist on any process derived from
    the same parent and cannot be imported.
    """
    items: list[LayoutItem] = []

    for page in layout.get("pages") or []:
        page_label = page.get("label") or ""
        if not page.get("inherited"):
            items.append(LayoutItem(id=str(page["id"]), kind="page", label=page_label, visible=page.get("visible", True)))

        for section in page.get("sections") or []:
            for group in section.get("groups") or []:
                group_label = group.get("label") or ""
                if not group.get("inherited"):
                    items.append(
                        LayoutItem(
                            id=str(group["id"]),
                            kind="group",
                            label=group_label,
                            page=page_label,
                            visible=group.get("visible", True),
                        )
                    )

                for control in group.get("controls") or []:
                    if control.get("inherited"):
                        continue
                    is_contribution = bool(control.get("isContribution", False))
                    contribution = control.get("contribution") or {}
                    items.append(
                        LayoutItem(
                            id=str(control["id"]),
                            kind="control",
                            label=control.get("label") or "",
                            page=page_label,
                            group=group_label,
                            field_reference_name=None if is_contribution else control["id"],
                            contribution_id=contribution.get("contributionId"),
                            is_contribution=is_contribution,
                            visible=control.get("visible", True),
                        )
                    )

    return FormLayout(items=tuple(items))


class SourceReader:
    """Builds ProcessModel snapshots from an ApiSource or a FileSource."""

    max_workers: int
    warnings: list[str]

    def __init__(self, *, max_workers: int = 8) -> None:
        self.max_workers = max_workers
        self.warnings = []

    def read(self, source: ApiSource | FileSource, process_identifier: str | None = None) -> ProcessModel:
        """Read a process snapshot.

        Args:
            source: Where to read from
            process_identifier: Process id or name; ignored for file sources,
                which always hold exactly one process

        Returns:
            The process snapshot. Warnings about degraded work item types are
            available in self.warnings afterwards.

        Raises:
            NotFoundError: If the process (or the file) does not exist
            FetchError: If the process cannot be read
        """
        self.warnings = []
        if isinstance(source, FileSource):
            return self._read_file(source)
        if not process_identifier:
            msg = "A process name or id is required to read from an organization"
            raise NotFoundError(msg)
        return self._read_api(source, process_identifier)

    def _read_file(self, source: FileSource) -> ProcessModel:
        try:
            model = load_process_file(source.path)
        except FileNotFoundError as e:
            msg = f"Process file not found: {source.path}"
            raise NotFoundError(msg) from e
        except (OSError, ValueError) as e:
            msg = f"Cannot read process file {source.path}: {e}"
            raise FetchError(msg) from e
        logger.info(f"Read process '{model.name}' from {source.path}")
        return model

    def _read_api(self, source: ApiSource, process_identifier: str) -> ProcessModel:
        client = source.client
        summary = find_process(client, process_identifier)
        if summary is None:
            where = f" in {source.url}" if source.url else ""
            msg = f"Process '{process_identifier}' not found{where}"
            raise NotFoundError(msg)

        process_id = str(summary["id"])
        details = client.get_process(process_id)
        wit_payloads = [w for w in client.get_work_item_types(process_id) if w.get("customization") != "system"]
        logger.info(f"Reading {len(wit_payloads)} work item type(s) of process '{details.get('name')}'")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="process-reader") as pool:
            futures = [pool.submit(self._read_work_item_type, client, process_id, payload) for payload in wit_payloads]
            results = [future.result() for future in futures]

        for _, warnings in results:
            self.warnings.extend(warnings)

        return ProcessModel(
            id=process_id,
            name=details.get("name") or summary.get("name") or process_identifier,
            description=details.get("description") or "",
            reference_process_id=details.get("parentProcessTypeId"),
            work_item_types=tuple(wit for wit, _ in results),
        )

    def _read_work_item_type(
        self, client: ProcessClient, process_id: str, payload: dict[str, Any]
    ) -> tuple[WorkItemTypeModel, list[str]]:
        wit_ref: str = payload.get("referenceName") or payload["id"]
        warnings: list[str] = []

        def fetch_soft(what: str, fetch: Callable[[], T], default: T) -> T:
            try:
                return fetch()
            except (FetchError, KeyError, ValueError) as e:
                message = f"Failed to get {what} for {wit_ref}: {e}"
                logger.warning(message)
                warnings.append(message)
                return default

        fields = fetch_soft(
            "fields",
            lambda: tuple(FieldDef.from_dict(f) for f in client.get_fields(process_id, wit_ref) if _is_custom(f)),
            (),
        )
        states = fetch_soft(
            "states",
            lambda: tuple(
                StateDef.from_dict(s)
                for s in client.get_states(process_id, wit_ref)
                if _is_custom(s, "customizationType")
            ),
            (),
        )
        rules = fetch_soft(
            "rules",
            lambda: tuple(
                RuleDef.from_dict(r)
                for r in client.get_rules(process_id, wit_ref)
                if r.get("customizationType") != "system"
            ),
            (),
        )
        layout = fetch_soft("layout", lambda: flatten_layout(client.get_layout(process_id, wit_ref)), FormLayout())

        wit = WorkItemTypeModel(
            reference_name=wit_ref,
            name=payload.get("name") or wit_ref,
            description=payload.get("description") or "",
            color=payload.get("color") or "",
            icon=payload.get("icon") or "",
            is_disabled=bool(payload.get("isDisabled", False)),
            inherits=payload.get("inherits") or None,
            fields=fields,
            states=states,
            rules=rules,
            layout=layout,
        )
        logger.debug(
            f"Read {wit_ref}: {len(fields)} field(s), {len(states)} state(s), "
            f"{len(rules)} rule(s), {len(layout.items)} layout item(s)"
        )
        return wit, warnings


def read(
    source: ApiSource | FileSource, process_identifier: str | None = None, *, max_workers: int = 8
) -> ProcessModel:
    """Read a process snapshot with a throwaway SourceReader."""
    return SourceReader(max_workers=max_workers).read(source, process_identifier)
