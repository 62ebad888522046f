"""
配置加载测试
"""

from pathlib import Path

import pytest

from ecoquest.core.config import ENV_OVERRIDES, Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:

    def test_defaults_without_files(self, tmp_path):
        config = load_config(tmp_path)
        assert config == Config()
        assert config.quests.max_active_quests == 3

    def test_local_overrides_default(self, tmp_path):
        (tmp_path / "default.yaml").write_text(
            "quests:\n  max_active_quests: 3\n  throttle_seconds: 10\nweb:\n  port: 8888\n"
        )
        (tmp_path / "local.yaml").write_text("quests:\n  max_active_quests: 5\n")
        config = load_config(tmp_path)
        assert config.quests.max_active_quests == 5
        assert config.quests.throttle_seconds == 10
        assert config.web.port == 8888

    def test_environment_wins(self, tmp_path, monkeypatch):
        (tmp_path / "default.yaml").write_text("storage:\n  database: data/a.db\n")
        monkeypatch.setenv("ECOQUEST_DATABASE", ":memory:")
        monkeypatch.setenv("ECOQUEST_LOG_LEVEL", "debug")
        config = load_config(tmp_path)
        assert config.storage.database == ":memory:"
        assert config.logging.level == "debug"

    def test_shipped_default_config(self):
        config = load_config(Path(__file__).parent.parent / "config")
        assert config.system.name == "EcoQuest"
        assert config.quests.max_active_quests == 3
