"""Pytest configuration and shared fixtures for all tests.

This module provides:
- Test configuration and markers
- An in-memory message store
- Provider credentials and failover targets over scripted adapters
- Tool registries with built-in and test tools
"""

import asyncio
from typing import Any

import pytest
from _pytest.config import Config

from application.services import CancellationToken, FailoverTarget, RetryFailoverController, RetryPolicy
from application.tools import ToolRegistry, register_builtin_tools
from domain.models import ProviderCredential
from integration.repositories import InMemoryMessageStore
from tests.fixtures.factories import CredentialFactory, RecordingSink, ScriptedProviderAdapter

# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================


def pytest_configure(config: Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (may use external services)")
    config.addinivalue_line("markers", "slow: Slow tests (may take several seconds)")
    config.addinivalue_line("markers", "asyncio: Async tests")
    config.addinivalue_line("markers", "provider: Provider adapter tests")
    config.addinivalue_line("markers", "repository: Repository layer tests")
    config.addinivalue_line("markers", "query: Query handler tests")


# ============================================================================
# PERSISTENCE FIXTURES
# ============================================================================


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    """Provide an empty in-memory message store."""
    return InMemoryMessageStore()


# ============================================================================
# PROVIDER FIXTURES
# ============================================================================


@pytest.fixture
def credential() -> ProviderCredential:
    """Primary OpenAI-style credential."""
    return CredentialFactory.create()


@pytest.fixture
def fallback_credential() -> ProviderCredential:
    """Fallback Anthropic-style credential."""
    return CredentialFactory.create(provider_id="anthropic-fallback", provider_type="anthropic", model="claude-test", priority=10)


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    """Retry policy without delays."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter_ratio=0.0, default_cooldown=0.0)


@pytest.fixture
def retry_controller(fast_retry_policy: RetryPolicy) -> RetryFailoverController:
    return RetryFailoverController(fast_retry_policy)


@pytest.fixture
def make_targets(credential: ProviderCredential, fallback_credential: ProviderCredential):
    """Build failover targets: one scripted adapter per credential."""

    def _make(*adapters: ScriptedProviderAdapter) -> list[FailoverTarget]:
        credentials = [credential, fallback_credential]
        return [FailoverTarget(credential=credentials[index], adapter=adapter) for index, adapter in enumerate(adapters)]

    return _make


# ============================================================================
# TURN FIXTURES
# ============================================================================


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def tool_registry() -> ToolRegistry:
    """Registry with the built-in tools and two simple test tools."""
    registry = ToolRegistry()
    register_builtin_tools(registry)

    def get_weather(arguments: dict[str, Any]) -> dict[str, Any]:
        return {"city": arguments["city"], "temperature_c": 18}

    async def slow_lookup(arguments: dict[str, Any]) -> str:
        await asyncio.sleep(float(arguments.get("seconds", 1.0)))
        return "finished"

    registry.register_function(
        name="get_weather",
        description="Current weather for a city",
        schema={"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
        handler=get_weather,
    )
    registry.register_function(
        name="slow_lookup",
        description="Takes a while",
        schema={"type": "object", "properties": {"seconds": {"type": "number"}}},
        handler=slow_lookup,
    )
    return registry
