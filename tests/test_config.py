"""Tests for query-stream config loading."""

import pytest
import yaml

from query_stream.config import (
    ConfigError,
    QueryStreamConfig,
    RetrySpec,
    load_config,
)


class TestDefaults:
    def test_defaults(self):
        cfg = QueryStreamConfig()
        assert cfg.endpoint.stream_path == "/.netlify/functions/ai-assistant-stream"
        assert cfg.timeouts.stream == 60
        assert cfg.stream.throttle_interval == 0.035
        assert cfg.stream.history_limit == 12
        assert cfg.retry.max_attempts == 3
        assert cfg.daily_actions.once_per_day == ["plan_my_day"]
        assert cfg.max_pending_signals == 20

    def test_backoff(self):
        r = RetrySpec(backoff_base=0.5, backoff_max=3.0)
        assert r.delay_for(0) == 0.5
        assert r.delay_for(1) == 1.0
        assert r.delay_for(2) == 2.0
        assert r.delay_for(5) == 3.0


class TestLoadConfig:
    def test_defaults_when_no_file(self, tmp_path):
        cfg = load_config(tmp_path / "does_not_exist.yaml")
        assert cfg.retry.max_attempts == 3

    def test_load_from_yaml(self, tmp_path):
        data = {
            "endpoint": {"base_url": "https://crm.example.com"},
            "timeouts": {"stream": 15},
            "retry": {"max_attempts": 2},
            "providers": {"connected": ["openai", "anthropic"], "primary": "anthropic"},
            "signals": {"max_pending": 5},
            "daily_actions": {"ledger_path": str(tmp_path / "ledger.json")},
        }
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump(data))

        cfg = load_config(config_path)
        assert cfg.endpoint.base_url == "https://crm.example.com"
        assert cfg.endpoint.stream_path == "/.netlify/functions/ai-assistant-stream"
        assert cfg.timeouts.stream == 15
        assert cfg.timeouts.connect == 10
        assert cfg.retry.max_attempts == 2
        assert cfg.providers.primary == "anthropic"
        assert cfg.max_pending_signals == 5
        assert cfg.daily_actions.once_per_day == ["plan_my_day"]

    def test_load_empty_yaml(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("")
        cfg = load_config(config_path)
        assert cfg.stream.history_limit == 12

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"stream": {"history_limit": 6, "colour": "red"}}))
        cfg = load_config(config_path)
        assert cfg.stream.history_limit == 6
        assert "colour" in caplog.text

    def test_invalid_yaml_raises(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("stream: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_path)

    def test_non_mapping_root_raises(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path)
