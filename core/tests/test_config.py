"""Tests for AgentTraceConfig and the component configs it aggregates."""

from pathlib import Path

from agenttrace.anomaly.config import AnomalyConfig
from agenttrace.config import AgentTraceConfig
from agenttrace.correlation.costs import ModelRate
from agenttrace.replay.live import DEFAULT_LIVE_MODEL, LiveLLMConfig
from agenttrace.replay.schemas import ReplayOptions, SideEffectCategory


class TestAgentTraceConfig:
    def test_defaults(self):
        config = AgentTraceConfig()
        assert config.storage_path is None
        assert config.anomaly.outlier_sigma == 3.0
        assert config.notifications.queue_size == 1000
        assert config.live.default_model == DEFAULT_LIVE_MODEL
        assert config.side_effects.rule_for(SideEffectCategory.PAYMENT).reversible is False

    def test_partial_dict_keeps_defaults(self):
        config = AgentTraceConfig.from_dict(
            {
                "storage_path": "/var/lib/agenttrace",
                "anomaly": {"min_samples": 10, "cost_budget": 2.5},
                "rates": {"rates": {"house": {"input_per_1k": 0.1, "output_per_1k": 0.1}}, "default_model": "house"},
            }
        )
        assert config.storage_path == "/var/lib/agenttrace"
        assert config.anomaly.min_samples == 10
        assert config.anomaly.cost_budget == 2.5
        assert config.anomaly.outlier_sigma == 3.0
        assert config.rates.rate_for("anything") == ModelRate(0.1, 0.1)
        assert config.notifications.webhook_url is None

    def test_save_and_load(self, tmp_path: Path):
        config = AgentTraceConfig()
        config.anomaly = AnomalyConfig.relaxed()
        config.notifications.webhook_url = "https://hooks.example.com/x"

        path = config.save(tmp_path / "nested" / "agenttrace.json")
        loaded = AgentTraceConfig.load(path)

        assert loaded.anomaly.repeated_call_threshold == 5
        assert loaded.anomaly.antonym_groups == config.anomaly.antonym_groups
        assert loaded.notifications.webhook_url == "https://hooks.example.com/x"
        assert loaded.side_effects.to_dict() == config.side_effects.to_dict()

    def test_from_env_overrides(self, tmp_path: Path, monkeypatch):
        base = AgentTraceConfig(storage_path="/from/file")
        base.live.system_prompt = "Be terse."
        config_path = base.save(tmp_path / "agenttrace.json")

        monkeypatch.setenv("AGENTTRACE_CONFIG", str(config_path))
        monkeypatch.setenv("AGENTTRACE_WEBHOOK_URL", "https://hooks.example.com/env")
        monkeypatch.setenv("AGENTTRACE_LIVE_MODEL", "claude-3-haiku")
        monkeypatch.delenv("AGENTTRACE_STORAGE_PATH", raising=False)
        monkeypatch.delenv("AGENTTRACE_LIVE_API_BASE", raising=False)
        monkeypatch.delenv("AGENTTRACE_LIVE_TIMEOUT", raising=False)

        config = AgentTraceConfig.from_env()
        assert config.storage_path == "/from/file"
        assert config.notifications.webhook_url == "https://hooks.example.com/env"
        assert config.live.default_model == "claude-3-haiku"
        assert config.live.system_prompt == "Be terse."


class TestComponentConfigs:
    def test_live_config_from_env(self, monkeypatch):
        monkeypatch.setenv("AGENTTRACE_LIVE_TIMEOUT", "12.5")
        monkeypatch.setenv("AGENTTRACE_LIVE_API_BASE", "http://localhost:4000")
        config = LiveLLMConfig.from_env()
        assert config.timeout_seconds == 12.5
        assert config.api_base == "http://localhost:4000"

    def test_replay_options_from_dict(self):
        options = ReplayOptions.from_dict({"live": True, "max_nodes": 3})
        assert options.live is True
        assert options.max_nodes == 3
        assert options.temperature == 0.7
        assert ReplayOptions.from_dict(options.to_dict()) == options

    def test_presets_order(self):
        sensitive, default, relaxed = AnomalyConfig.sensitive(), AnomalyConfig(), AnomalyConfig.relaxed()
        assert sensitive.outlier_sigma < default.outlier_sigma < relaxed.outlier_sigma
        assert sensitive.repeated_call_threshold < default.repeated_call_threshold < relaxed.repeated_call_threshold
