"""Tests for settings loading."""

import pytest

from stepwise.config import AgentConfig, default_config_dir, default_data_dir, load_settings


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.delenv("STEPWISE_CONFIG", raising=False)
    for name in ("STEPWISE_DATA_DIR", "STEPWISE_LOG_LEVEL", "STEPWISE_AGENT__MAX_TOOL_CALLS_PER_STEP"):
        monkeypatch.delenv(name, raising=False)


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings()
        assert settings.agent == AgentConfig()
        assert settings.agent.max_total_llm_turns == 12
        assert settings.agent.approval_timeout_ms == 300_000
        assert settings.history.max_chars == 48_000
        assert settings.log_level == "INFO"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "stepwise.yaml"
        path.write_text(
            "agent:\n"
            "  max_total_llm_turns: 4\n"
            "history:\n"
            "  recent_tail_messages: 6\n"
            f"data_dir: {tmp_path / 'data'}\n"
        )
        settings = load_settings(path)
        assert settings.agent.max_total_llm_turns == 4
        assert settings.agent.max_tool_calls_per_step == 8
        assert settings.history.recent_tail_messages == 6
        assert settings.sessions_db_path() == tmp_path / "data" / "sessions.db"
        assert settings.outputs_db_path() == tmp_path / "data" / "tool_outputs.db"

    def test_default_config_dir_file(self, tmp_path):
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.yaml").write_text("log_level: DEBUG\n")
        assert load_settings().log_level == "DEBUG"

    def test_env_nesting(self, monkeypatch):
        monkeypatch.setenv("STEPWISE_AGENT__MAX_TOOL_CALLS_PER_STEP", "3")
        assert load_settings().agent.max_tool_calls_per_step == 3

    def test_overrides_merge_into_yaml(self, tmp_path):
        path = tmp_path / "stepwise.yaml"
        path.write_text("agent:\n  max_total_llm_turns: 4\n")
        settings = load_settings(path, overrides={"agent": {"approval_timeout_ms": 10}})
        assert settings.agent.max_total_llm_turns == 4
        assert settings.agent.approval_timeout_ms == 10

    def test_missing_file_is_ignored(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.agent == AgentConfig()

    def test_limits_are_validated(self):
        with pytest.raises(ValueError):
            AgentConfig(max_tool_calls_per_step=0)


class TestDefaultDirs:
    def test_explicit_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STEPWISE_DATA_DIR", str(tmp_path / "d"))
        assert default_data_dir() == tmp_path / "d"
        assert default_config_dir() == tmp_path / "config"

    def test_xdg_on_linux(self, tmp_path, monkeypatch):
        monkeypatch.setattr("stepwise.config.sys.platform", "linux")
        monkeypatch.delenv("STEPWISE_CONFIG_DIR")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        assert default_config_dir() == tmp_path / "xdg" / "stepwise"
