"""Catalog loader for catalog.yaml."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from andon_board.catalog.models import CatalogConfig

logger = logging.getLogger(__name__)

DEFAULT_CATALOG: dict[str, Any] = {
    "version": 1,
    "departments": [
        {"id": "quality", "name": "Quality", "requires_part_number": True},
        {"id": "mfg-eng", "name": "Manufacturing Engineering", "bar_label": "Mfg Eng"},
        {"id": "supervisor", "name": "Supervisor / Leads"},
        {"id": "safety", "name": "Safety"},
        {
            "id": "maintenance",
            "name": "Maintenance",
            "kind": "multi_ticket",
            "bar_label": "Maint",
        },
    ],
    "cells": [
        {"id": "machine-shop", "name": "Machine Shop"},
        {"id": "clean-seal", "name": "Clean Seal"},
        {"id": "extension-hose", "name": "Extension Hose"},
        {"id": "end-element", "name": "End Element"},
        {"id": "robot-finishing", "name": "Robot Finishing"},
        {"id": "large-ball-testing", "name": "Large Ball Testing"},
        {"id": "small-ball-testing", "name": "Small Ball Testing"},
        {"id": "small-ball-assembly", "name": "Small Ball Assembly"},
        {"id": "large-ball-assembly", "name": "Large Ball Assembly"},
        {"id": "discrete", "name": "Discrete"},
        {"id": "tubes-inserts", "name": "Tubes & Inserts"},
        {"id": "poly-lift-line", "name": "Poly Lift Line"},
        {"id": "taniq-robot-1", "name": "Taniq Robot #1"},
        {"id": "taniq-robot-2", "name": "Taniq Robot #2"},
        {"id": "autoclave", "name": "Autoclave"},
        {"id": "waterjet-rubber", "name": "Waterjet Rubber"},
        {"id": "baking", "name": "Baking"},
    ],
    "maintenance": {"assets": {}, "sites": {}, "users": {}},
}


def default_catalog() -> CatalogConfig:
    return CatalogConfig.model_validate(DEFAULT_CATALOG)


def load_catalog(path: str | None) -> CatalogConfig:
    """Load the catalog file, falling back to the built-in plant catalog."""
    if not path:
        return default_catalog()
    catalog_path = Path(path)
    if not catalog_path.exists():
        logger.info("Catalog file %s not found, using built-in catalog", catalog_path)
        return default_catalog()
    with catalog_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return CatalogConfig.model_validate(data)
