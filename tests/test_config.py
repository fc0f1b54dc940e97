from __future__ import annotations

import pytest

from andon_board import config


@pytest.fixture
def fresh_settings(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "data" / "andon.sqlite"))
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


def test_split_csv_preserve_case() -> None:
    values = config._split_csv_preserve_case(" A, B ,,C ")
    assert values == ["A", "B", "C"]


def test_env_int_uses_default_for_blank(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VALUE", "")
    assert config._env_int("TEST_INT_VALUE", 7) == 7


def test_env_int_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_INVALID", "not_a_number")
    assert config._env_int("TEST_INT_INVALID", 42) == 42


def test_env_float_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_FLOAT_INVALID", "fast")
    assert config._env_float("TEST_FLOAT_INVALID", 2.5) == 2.5


def test_env_optional_int(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_OPT_INT", "28705")
    assert config._env_optional_int("TEST_OPT_INT") == 28705
    monkeypatch.setenv("TEST_OPT_INT", "x")
    assert config._env_optional_int("TEST_OPT_INT") is None
    monkeypatch.delenv("TEST_OPT_INT")
    assert config._env_optional_int("TEST_OPT_INT") is None


def test_env_bool(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_BOOL", "Yes")
    assert config._env_bool("TEST_BOOL", False) is True
    monkeypatch.setenv("TEST_BOOL", "off")
    assert config._env_bool("TEST_BOOL", True) is False


def test_webhooks_from_env_maps_department_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_MFG_ENG", " https://hooks.example/mfg ")
    monkeypatch.setenv("WEBHOOK_QUALITY", "   ")
    monkeypatch.setenv("WEBHOOK_TIMEOUT_SECONDS", "5")

    webhooks = config._webhooks_from_env()

    assert webhooks["mfg-eng"] == "https://hooks.example/mfg"
    assert "quality" not in webhooks
    assert "timeout-seconds" not in webhooks


def test_cmms_settings_strip_api_version_and_enabled() -> None:
    settings = config.CMMSSettings(
        base_url="https://plant.macmms.com/2/",
        app_key="a",
        access_key="b",
        secret_key="c",
    )
    assert settings.base_url == "https://plant.macmms.com"
    assert settings.enabled is True
    assert settings.resolved_ui_base_url == "https://plant.macmms.com"
    assert config.CMMSSettings().enabled is False


def test_load_settings_reads_environment(
    monkeypatch: pytest.MonkeyPatch, fresh_settings, tmp_path
) -> None:
    monkeypatch.setenv("PORT", "3100")
    monkeypatch.setenv("FIIX_TIMEOUT_SECONDS", "20")
    monkeypatch.setenv("FIIX_WO_STATUS_ID_CANCELLED", "28705")
    monkeypatch.setenv("TIMELINE_DEPARTMENTS", "maintenance,quality")
    monkeypatch.setenv("MOLD_REFRESH_SECONDS", "30")

    settings = config.load_settings()

    assert settings.server.port == 3100
    assert settings.cmms.timeout_seconds == 20.0
    assert settings.cmms.status_id_cancelled == 28705
    assert settings.timeline.departments == ("maintenance", "quality")
    assert settings.molds.refresh_seconds == 30.0
    assert (tmp_path / "data").is_dir()
    assert config.load_settings() is settings


def test_load_settings_invalid_values_raise(
    monkeypatch: pytest.MonkeyPatch, fresh_settings
) -> None:
    monkeypatch.setenv("PORT", "80")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()
