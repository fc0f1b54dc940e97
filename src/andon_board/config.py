"""Configuration management for the andon board server."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./data/andon.sqlite")
    sqlite_wal: bool = Field(default=True)
    log_read_limit: int = Field(
        default=20_000,
        ge=100,
        le=5_000_000,
        description="How many trailing log entries timeline reconstruction scans.",
    )


class CatalogSettings(BaseModel):
    path: str = Field(default="./catalog.yaml")


class CMMSSettings(BaseModel):
    """Fiix CMMS connection and field mapping.

    The integration is disabled (work orders are simply not created) unless
    all three of ``app_key``, ``access_key`` and ``secret_key`` are set.
    """

    base_url: str = Field(default="https://example.macmms.com")
    ui_base_url: str | None = Field(default=None)
    app_key: str = Field(default="")
    access_key: str = Field(default="")
    secret_key: str = Field(default="")
    timeout_seconds: float = Field(default=15.0, ge=0.5, le=120.0)
    operation_timeout_seconds: float = Field(
        default=45.0,
        ge=1.0,
        le=600.0,
        description="Upper bound for one multi-request work order operation.",
    )
    debug: bool = Field(default=False)

    priority_id_high: int | None = Field(default=None)
    priority_id_medium: int | None = Field(default=None)
    priority_id_low: int | None = Field(default=None)

    status_id_requested: int = Field(default=28696)
    status_id_closed_complete: int = Field(default=28702)
    status_id_cancelled: int | None = Field(default=None)

    work_order_class: str = Field(default="WorkOrder")
    field_summary: str = Field(default="strDescription")
    field_details: str = Field(default="strWorkInstructions")
    field_priority: str = Field(default="intPriorityID")
    field_status: str = Field(default="intWorkOrderStatusID")
    field_site: str = Field(default="intSiteID")
    field_number: str = Field(default="strCode")

    @field_validator("base_url")
    @classmethod
    def _strip_api_version(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value.endswith("/2"):
            value = value[:-2]
        return value

    @property
    def enabled(self) -> bool:
        return bool(self.app_key and self.access_key and self.secret_key)

    @property
    def resolved_ui_base_url(self) -> str:
        return (self.ui_base_url or self.base_url).rstrip("/")


class NotifySettings(BaseModel):
    webhooks: dict[str, str] = Field(
        default_factory=dict,
        description="Department id -> webhook URL.",
    )
    force_power_automate: bool = Field(default=False)
    timeout_seconds: float = Field(default=10.0, ge=0.5, le=60.0)


class TimelineSettings(BaseModel):
    departments: tuple[str, ...] = Field(default=("maintenance", "mfg-eng"))
    padding_days: int = Field(default=7, ge=0, le=60)
    max_range_days: int = Field(default=31, ge=1, le=366)


class MoldSettings(BaseModel):
    refresh_seconds: float = Field(default=60.0, ge=5.0, le=3600.0)


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, ge=1024, le=65535)
    http_allowed_origins: tuple[str, ...] = Field(default=())
    http_enable_cors: bool = Field(default=False)
    push_queue_size: int = Field(default=16, ge=1, le=1024)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    cmms: CMMSSettings = Field(default_factory=CMMSSettings)
    notify: NotifySettings = Field(default_factory=NotifySettings)
    timeline: TimelineSettings = Field(default_factory=TimelineSettings)
    molds: MoldSettings = Field(default_factory=MoldSettings)


ENV_KEYS = {
    "host": "HOST",
    "port": "PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "sqlite_path": "SQLITE_PATH",
    "catalog_path": "CATALOG_PATH",
    "cmms_base": "FIIX_BASE",
    "cmms_ui_base": "FIIX_UI_BASE",
    "cmms_app_key": "FIIX_APP_KEY",
    "cmms_access_key": "FIIX_ACCESS_KEY",
    "cmms_secret_key": "FIIX_SECRET_KEY",
    "cmms_timeout": "FIIX_TIMEOUT_SECONDS",
    "cmms_debug": "DEBUG_FIIX",
}

_WEBHOOK_PREFIX = "WEBHOOK_"
_WEBHOOK_RESERVED = frozenset({"WEBHOOK_TIMEOUT_SECONDS"})
_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate.resolve())
    return str((_project_root() / candidate).resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_optional_int(key: str) -> int | None:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        _config_logger.warning("Invalid integer value for %s: %r, ignoring", key, value)
        return None


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _webhooks_from_env() -> dict[str, str]:
    """Collect ``WEBHOOK_<DEPT>`` variables, e.g. ``WEBHOOK_MFG_ENG`` -> ``mfg-eng``."""
    webhooks: dict[str, str] = {}
    for key, value in os.environ.items():
        if key in _WEBHOOK_RESERVED or not key.startswith(_WEBHOOK_PREFIX):
            continue
        if not value.strip():
            continue
        dept = key[len(_WEBHOOK_PREFIX):].lower().replace("_", "-")
        if dept:
            webhooks[dept] = value.strip()
    return webhooks


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    timeline_departments = _split_csv_preserve_case(os.getenv("TIMELINE_DEPARTMENTS"))

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "http_allowed_origins": tuple(
                _split_csv_preserve_case(os.getenv("HTTP_ALLOWED_ORIGINS"))
            ),
            "http_enable_cors": _env_bool("HTTP_ENABLE_CORS", ServerSettings().http_enable_cors),
            "push_queue_size": _env_int("PUSH_QUEUE_SIZE", ServerSettings().push_queue_size),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
            "log_read_limit": _env_int("LOG_READ_LIMIT", StorageSettings().log_read_limit),
        },
        "catalog": {
            "path": _resolve_path(os.getenv(ENV_KEYS["catalog_path"], CatalogSettings().path)),
        },
        "cmms": {
            "base_url": os.getenv(ENV_KEYS["cmms_base"], CMMSSettings().base_url),
            "ui_base_url": os.getenv(ENV_KEYS["cmms_ui_base"]) or None,
            "app_key": os.getenv(ENV_KEYS["cmms_app_key"], ""),
            "access_key": os.getenv(ENV_KEYS["cmms_access_key"], ""),
            "secret_key": os.getenv(ENV_KEYS["cmms_secret_key"], ""),
            "timeout_seconds": _env_float(
                ENV_KEYS["cmms_timeout"], CMMSSettings().timeout_seconds
            ),
            "operation_timeout_seconds": _env_float(
                "FIIX_OPERATION_TIMEOUT_SECONDS", CMMSSettings().operation_timeout_seconds
            ),
            "debug": _env_bool(ENV_KEYS["cmms_debug"], CMMSSettings().debug),
            "priority_id_high": _env_optional_int("FIIX_PRIORITY_ID_HIGH"),
            "priority_id_medium": _env_optional_int("FIIX_PRIORITY_ID_MEDIUM"),
            "priority_id_low": _env_optional_int("FIIX_PRIORITY_ID_LOW"),
            "status_id_requested": _env_int(
                "FIIX_WO_STATUS_ID_REQUESTED", CMMSSettings().status_id_requested
            ),
            "status_id_closed_complete": _env_int(
                "FIIX_WO_STATUS_ID_CLOSED_COMPLETE", CMMSSettings().status_id_closed_complete
            ),
            "status_id_cancelled": _env_optional_int("FIIX_WO_STATUS_ID_CANCELLED"),
            "work_order_class": os.getenv("FIIX_WO_CLASS", CMMSSettings().work_order_class),
            "field_summary": os.getenv("FIIX_FIELD_SUMMARY", CMMSSettings().field_summary),
            "field_details": os.getenv("FIIX_FIELD_DETAILS", CMMSSettings().field_details),
            "field_priority": os.getenv("FIIX_FIELD_PRIORITY", CMMSSettings().field_priority),
            "field_status": os.getenv("FIIX_FIELD_STATUS", CMMSSettings().field_status),
            "field_site": os.getenv("FIIX_FIELD_SITE", CMMSSettings().field_site),
            "field_number": os.getenv("FIIX_WO_NUMBER_FIELD", CMMSSettings().field_number),
        },
        "notify": {
            "webhooks": _webhooks_from_env(),
            "force_power_automate": _env_bool(
                "FORCE_POWERAUTOMATE_MODE", NotifySettings().force_power_automate
            ),
            "timeout_seconds": _env_float(
                "WEBHOOK_TIMEOUT_SECONDS", NotifySettings().timeout_seconds
            ),
        },
        "timeline": {
            "departments": tuple(timeline_departments) or TimelineSettings().departments,
            "padding_days": _env_int("TIMELINE_PADDING_DAYS", TimelineSettings().padding_days),
            "max_range_days": _env_int(
                "TIMELINE_MAX_RANGE_DAYS", TimelineSettings().max_range_days
            ),
        },
        "molds": {
            "refresh_seconds": _env_float(
                "MOLD_REFRESH_SECONDS", MoldSettings().refresh_seconds
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
