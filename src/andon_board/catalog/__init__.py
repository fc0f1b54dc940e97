"""Fixed catalog of departments, cells and maintenance assets."""

from andon_board.catalog.models import (
    AssetOption,
    CatalogConfig,
    Cell,
    Department,
    DepartmentKind,
)
from andon_board.catalog.registry import Catalog

__all__ = [
    "AssetOption",
    "Catalog",
    "CatalogConfig",
    "Cell",
    "Department",
    "DepartmentKind",
]
