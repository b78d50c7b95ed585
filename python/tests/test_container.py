"""Tests for the dependency injection container."""

import pytest
from unittest.mock import AsyncMock

import switchboard.container as container_module
from switchboard.config import Settings
from switchboard.container import SwitchboardContainer, get_container, shutdown_container
from switchboard.delegation import ToolSpec
from switchboard.resilience import JsonFileBreakerStore


def _settings(**overrides):
    values = dict(_env_file=None, degradation_enable_auto_recovery=False)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_global_container(monkeypatch):
    monkeypatch.setattr(container_module, "_container", None)


# ===== Lazy wiring =====


def test_nothing_is_built_up_front():
    container = SwitchboardContainer(_settings())
    assert not any(container.status().values())


def test_services_are_singletons():
    container = SwitchboardContainer(_settings())
    assert container.coordinator is container.coordinator
    assert container.coordinator.registry is container.registry
    assert container.coordinator.communication is container.communication
    assert container.routing_engine.router is container.connection_router
    assert container.connection_router.store is container.card_store


def test_settings_flow_into_services(tmp_path):
    state_file = tmp_path / "breakers.json"
    container = SwitchboardContainer(_settings(
        rate_limit_max_requests=7,
        circuit_breaker_failure_threshold=2,
        circuit_breaker_state_file=str(state_file),
        timeout_tool_execution_ms=1500,
        department_max_turns=9,
        routing_fallback_node_id="clarify",
    ))
    assert container.rate_limiter.default_config.max_requests == 7
    assert container.breakers.default_config.failure_threshold == 2
    assert isinstance(container.breakers._store, JsonFileBreakerStore)
    assert container.coordinator.config.tool_timeout_ms == 1500
    assert container.coordinator.config.department_max_turns == 9
    assert container.routing_engine.fallback_node_id == "clarify"


def test_scorer_uses_llm_only_with_credentials():
    assert SwitchboardContainer(_settings()).scorer.llm is None
    with_key = SwitchboardContainer(_settings(llm_api_key="sk-test"))
    assert with_key.scorer.llm is with_key.llm_client
    assert with_key.llm_client.api_key == "sk-test"


# ===== Lifecycle =====


async def test_startup_attaches_agents_and_event_log():
    container = SwitchboardContainer(_settings())

    async def handler(args):
        return {"ok": True}

    container.registry.register_tool(ToolSpec("t_echo", "echo", handler))
    await container.startup()
    assert container.started
    assert container.communication.router.has_handler("t_echo")
    assert container.event_log.attached

    await container.startup()
    await container.shutdown()
    assert not container.started
    assert not container.event_log.attached
    assert not container.communication.router.has_handler("t_echo")


async def test_shutdown_closes_event_log_file(tmp_path):
    path = tmp_path / "events.jsonl"
    container = SwitchboardContainer(_settings(event_log_path=str(path)))
    await container.startup()
    container.coordinator.register_tool(ToolSpec("t_echo", "echo", AsyncMock(return_value={"ok": True})))
    await container.communication.flush()
    assert container.event_log._file is not None

    await container.shutdown()
    assert container.event_log._file is None
    assert path.read_text().strip()


async def test_shutdown_before_use_is_safe():
    await SwitchboardContainer(_settings()).shutdown()


async def test_global_container(monkeypatch):
    monkeypatch.setattr(container_module, "get_settings", lambda: _settings())
    first = get_container()
    assert get_container() is first
    await shutdown_container()
    assert get_container() is not first
