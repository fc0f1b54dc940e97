"""Catalog configuration models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


def _ensure_dict(v: Any) -> dict:
    if v is None:
        return {}
    return v


class DepartmentKind(str, Enum):
    """How a department tracks requests at a cell."""

    SINGLE_SLOT = "single_slot"
    MULTI_TICKET = "multi_ticket"


class Department(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str
    kind: DepartmentKind = DepartmentKind.SINGLE_SLOT
    requires_part_number: bool = Field(
        default=False,
        description="Completions must carry a traceable part number.",
    )
    bar_label: str | None = Field(default=None, description="Short timeline bar label.")

    @property
    def label(self) -> str:
        return self.bar_label or self.name


class Cell(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str


class AssetEntry(BaseModel):
    """Raw asset entry: either a CMMS asset id or a lookup code."""

    name: str = ""
    id: int | str | None = None
    code: str | None = None


class AssetOption(BaseModel):
    model_config = {"frozen": True}

    value: str
    label: str
    kind: Literal["id", "code"]


class MaintenanceCatalog(BaseModel):
    assets: dict[str, list[AssetEntry]] = Field(default_factory=dict)
    sites: dict[str, int] = Field(default_factory=dict)
    users: dict[str, int] = Field(
        default_factory=dict,
        description="Responder display name -> CMMS user id.",
    )

    @field_validator("assets", mode="before")
    @classmethod
    def _validate_assets(cls, v: Any) -> dict:
        v = _ensure_dict(v)
        if isinstance(v, dict):
            return {k: _ensure_list(val) for k, val in v.items()}
        return v

    @field_validator("sites", mode="before")
    @classmethod
    def _validate_sites(cls, v: Any) -> dict:
        return _ensure_dict(v)

    @field_validator("users", mode="before")
    @classmethod
    def _validate_users(cls, v: Any) -> dict:
        # Accepts either {name: id} or [{name, fiixUserId}].
        if v is None:
            return {}
        if isinstance(v, list):
            users: dict[str, int] = {}
            for row in v:
                if not isinstance(row, dict):
                    continue
                name = row.get("name")
                user_id = row.get("fiixUserId", row.get("user_id"))
                if name and user_id is not None:
                    users[str(name)] = user_id
            return users
        return v


class CatalogConfig(BaseModel):
    version: int = Field(default=1)
    departments: list[Department] = Field(default_factory=list)
    cells: list[Cell] = Field(default_factory=list)
    maintenance: MaintenanceCatalog = Field(default_factory=MaintenanceCatalog)

    @field_validator("departments", "cells", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("maintenance", mode="before")
    @classmethod
    def _validate_maintenance(cls, v: Any) -> Any:
        return _ensure_dict(v)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "CatalogConfig":
        for label, items in (("department", self.departments), ("cell", self.cells)):
            seen: set[str] = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f"Duplicate {label} id: {item.id}")
                seen.add(item.id)
        if not self.departments:
            raise ValueError("Catalog must define at least one department")
        if not self.cells:
            raise ValueError("Catalog must define at least one cell")
        return self
