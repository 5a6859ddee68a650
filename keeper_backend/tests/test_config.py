from __future__ import annotations

import pytest

from keeper_backend.config.loaders import (
    CompositeConfigLoader,
    ConfigParser,
    DefaultConfigLoader,
    EnvironmentConfigLoader,
    YamlConfigLoader,
)
from keeper_backend.config.settings import (
    Settings,
    get_settings,
    load_settings,
    reset_settings,
)
from keeper_backend.scheduling import OverlapPolicy


@pytest.fixture(autouse=True)
def fixture_clean_env(monkeypatch, tmp_path):
    for key in (
        "KEEPER_TIMER_BACKEND",
        "KEEPER_OVERLAP_POLICY",
        "KEEPER_TIMEZONE",
        "KEEPER_INTERVAL_MS",
        "KEEPER_ENABLED",
        "KEEPER_LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    # 避免读取仓库中的 keeper.yaml
    monkeypatch.setenv("KEEPER_CONFIG", str(tmp_path / "missing.yaml"))
    reset_settings()
    yield
    reset_settings()


def test_defaults():
    settings = load_settings()

    assert settings.scheduler.timer_backend == "asyncio"
    assert settings.scheduler.overlap_policy is OverlapPolicy.Allow
    assert settings.keeper.enabled is True
    assert settings.keeper.interval_ms == 120_000
    assert settings.keeper.task_id == "keeper.cycle"
    assert settings.logging.level == "INFO"


def test_yaml_overrides_defaults(tmp_path):
    path = tmp_path / "keeper.yaml"
    path.write_text(
        "scheduler:\n"
        "  timer_backend: apscheduler\n"
        "  overlap_policy: skip\n"
        "keeper:\n"
        "  interval_ms: 30000\n",
        encoding="utf-8",
    )

    settings = Settings.from_yaml(path)

    assert settings.scheduler.timer_backend == "apscheduler"
    assert settings.scheduler.overlap_policy is OverlapPolicy.Skip
    assert settings.keeper.interval_ms == 30000
    # 未设置的字段保留默认值
    assert settings.keeper.run_on_start is True
    assert settings.scheduler.misfire_grace_seconds == 30


def test_environment_overrides_yaml(tmp_path, monkeypatch):
    path = tmp_path / "keeper.yaml"
    path.write_text("keeper:\n  interval_ms: 30000\n  enabled: true\n", encoding="utf-8")
    monkeypatch.setenv("KEEPER_CONFIG", str(path))
    monkeypatch.setenv("KEEPER_INTERVAL_MS", "5000")
    monkeypatch.setenv("KEEPER_ENABLED", "false")
    monkeypatch.setenv("KEEPER_LOG_LEVEL", "DEBUG")

    settings = load_settings()

    assert settings.keeper.interval_ms == 5000
    assert settings.keeper.enabled is False
    assert settings.logging.level == "DEBUG"


def test_invalid_section_falls_back_to_defaults():
    settings = ConfigParser.parse(
        {
            "keeper": {"interval_ms": 0},
            "scheduler": {"timer_backend": "threads"},
            "logging": "verbose",
        }
    )

    assert settings.keeper.interval_ms == 120_000
    assert settings.scheduler.timer_backend == "asyncio"
    assert settings.logging.level == "INFO"


def test_invalid_yaml_is_ignored(tmp_path):
    path = tmp_path / "keeper.yaml"
    path.write_text("keeper: [unclosed\n", encoding="utf-8")

    assert YamlConfigLoader(path).load() == {}

    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert YamlConfigLoader(path).load() == {}


def test_composite_loader_deep_merges(monkeypatch):
    monkeypatch.setenv("KEEPER_OVERLAP_POLICY", "skip")

    merged = CompositeConfigLoader(
        [DefaultConfigLoader(), EnvironmentConfigLoader()]
    ).load()

    assert merged["scheduler"]["overlap_policy"] == "skip"
    assert merged["scheduler"]["timer_backend"] == "asyncio"
    assert merged["keeper"]["interval_ms"] == 120_000


def test_get_settings_is_cached():
    first = get_settings()
    assert get_settings() is first

    reset_settings()
    assert get_settings() is not first
