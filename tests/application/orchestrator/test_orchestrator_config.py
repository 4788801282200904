"""Unit tests for OrchestratorConfig and the settings it is built from.

Tests cover:
- Defaults and validation
- Construction from Settings
- Provider and tool server JSON settings parsing
"""

import pytest

from application.orchestrator import OrchestratorConfig, ToolDispatchMode, ToolTimeoutPolicy
from application.settings import Settings


class TestOrchestratorConfig:
    def test_defaults(self):
        config = OrchestratorConfig()

        assert config.max_tool_calls == 10
        assert config.max_model_calls == 8
        assert config.tool_timeout_policy == ToolTimeoutPolicy.PER_CALL
        assert config.tool_dispatch_mode == ToolDispatchMode.PARALLEL

    @pytest.mark.parametrize(
        "field,value",
        [("max_tool_calls", -1), ("max_model_calls", 0), ("context_max_messages", 0)],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValueError):
            OrchestratorConfig(**{field: value})

    def test_zero_tool_budget_allowed(self):
        assert OrchestratorConfig(max_tool_calls=0).max_tool_calls == 0

    def test_from_settings(self):
        settings = Settings(
            agent_system_prompt="",
            agent_max_tool_calls=4,
            agent_turn_timeout_seconds=0,
            tool_timeout_policy="shared",
            tool_dispatch_mode="sequential",
            default_max_tokens=256,
        )

        config = OrchestratorConfig.from_settings(settings)

        assert config.system_prompt is None
        assert config.max_tool_calls == 4
        assert config.turn_timeout is None
        assert config.tool_timeout_policy == ToolTimeoutPolicy.SHARED
        assert config.tool_dispatch_mode == ToolDispatchMode.SEQUENTIAL
        assert config.max_tokens == 256


class TestSettingsJsonLists:
    def test_default_providers(self):
        configs = Settings().get_provider_configs()

        assert [config["provider_type"] for config in configs] == ["openai", "anthropic", "ollama"]

    def test_invalid_json_yields_empty_list(self):
        assert Settings(providers="[not json").get_provider_configs() == []

    def test_non_list_yields_empty_list(self):
        assert Settings(tool_servers='{"name": "x"}').get_tool_server_configs() == []

    def test_non_dict_entries_skipped(self):
        settings = Settings(tool_servers='[{"name": "weather", "url": "http://weather:9000"}, "junk"]')

        assert settings.get_tool_server_configs() == [{"name": "weather", "url": "http://weather:9000"}]
