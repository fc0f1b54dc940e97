"""Runtime lookups over the loaded catalog."""

from __future__ import annotations

from andon_board.catalog.models import (
    AssetEntry,
    AssetOption,
    CatalogConfig,
    Cell,
    Department,
    DepartmentKind,
)
from andon_board.errors import NotFoundError
from andon_board.utils.text import clean_text, name_key


def normalize_asset_options(entries: list[AssetEntry]) -> list[AssetOption]:
    """Turn raw asset entries into selectable options.

    Entries without a name, or with neither a positive id nor a code, are
    dropped. An id wins over a code when both are present.
    """
    options: list[AssetOption] = []
    for entry in entries:
        label = clean_text(entry.name)
        if not label:
            continue
        raw_id = clean_text(entry.id)
        if raw_id:
            try:
                id_num = int(float(raw_id))
            except ValueError:
                continue
            if id_num <= 0:
                continue
            options.append(AssetOption(value=str(id_num), label=label, kind="id"))
            continue
        code = clean_text(entry.code)
        if code:
            options.append(AssetOption(value=code, label=label, kind="code"))
    return options


class Catalog:
    """Immutable view of departments, cells and maintenance metadata."""

    def __init__(self, config: CatalogConfig) -> None:
        self._config = config
        self._departments = {d.id: d for d in config.departments}
        self._cells = {c.id: c for c in config.cells}
        self._users = {
            name_key(name): int(user_id) for name, user_id in config.maintenance.users.items()
        }

    @property
    def departments(self) -> list[Department]:
        return list(self._config.departments)

    @property
    def cells(self) -> list[Cell]:
        return list(self._config.cells)

    def department(self, dept_id: str | None) -> Department:
        dept = self._departments.get(dept_id or "")
        if dept is None:
            raise NotFoundError(f"Unknown department: {dept_id!r}")
        return dept

    def cell(self, cell_id: str | None) -> Cell:
        cell = self._cells.get(cell_id or "")
        if cell is None:
            raise NotFoundError(f"Unknown cell: {cell_id!r}")
        return cell

    def has_department(self, dept_id: str | None) -> bool:
        return (dept_id or "") in self._departments

    def has_cell(self, cell_id: str | None) -> bool:
        return (cell_id or "") in self._cells

    def departments_of_kind(self, kind: DepartmentKind) -> list[Department]:
        return [d for d in self._config.departments if d.kind is kind]

    def ticket_department(self) -> Department:
        """The department that runs the multi-ticket queue."""
        depts = self.departments_of_kind(DepartmentKind.MULTI_TICKET)
        if not depts:
            raise NotFoundError("Catalog has no multi-ticket department")
        return depts[0]

    def asset_options(self, cell_id: str) -> list[AssetOption]:
        return normalize_asset_options(self._config.maintenance.assets.get(cell_id, []))

    def all_asset_options(self) -> list[AssetOption]:
        seen: set[str] = set()
        options: list[AssetOption] = []
        for cell in self._config.cells:
            for option in self.asset_options(cell.id):
                key = option.label.lower()
                if key in seen:
                    continue
                seen.add(key)
                options.append(option)
        options.sort(key=lambda o: o.label.lower())
        return options

    def find_asset(self, cell_id: str, value: str) -> AssetOption | None:
        wanted = clean_text(value)
        for option in self.asset_options(cell_id):
            if option.value == wanted:
                return option
        return None

    def site_id(self, cell_id: str) -> int | None:
        return self._config.maintenance.sites.get(cell_id)

    def cmms_user_id(self, responder: str | None) -> int | None:
        """Resolve a responder display name to a CMMS user id, or ``None``."""
        return self._users.get(name_key(responder))

    def to_public(self) -> dict[str, object]:
        return {
            "departments": [
                {"id": d.id, "name": d.name, "kind": d.kind.value}
                for d in self._config.departments
            ],
            "cells": [{"id": c.id, "name": c.name} for c in self._config.cells],
        }
