import asyncio

import pytest
from conftest import FakeExecutor, FakeRulesProvider, make_request, wait_for_state

from querygate.core.context import ContextRegistry
from querygate.core.schemas import QueryKind, QueryState


def make_registry(max_contexts: int, database_executor=None) -> ContextRegistry:
    return ContextRegistry(
        rules_provider=FakeRulesProvider(),
        file_executor=FakeExecutor(),
        database_executor=database_executor or FakeExecutor(),
        max_contexts=max_contexts,
    )


def test_same_user_gets_same_context():
    registry = make_registry(10)
    first = registry.get("alice")
    assert registry.get("alice") is first
    assert registry.get("bob") is not first
    assert len(registry) == 2


def test_least_recently_used_context_is_evicted():
    registry = make_registry(2)
    alice = registry.get("alice")
    registry.get("bob")
    # Touching alice makes bob the oldest
    assert registry.get("alice") is alice

    registry.get("carol")
    assert len(registry) == 2
    assert "bob" not in registry
    assert registry.get("alice") is alice


@pytest.mark.asyncio
async def test_busy_context_is_not_evicted():
    executor = FakeExecutor()
    executor.gate = asyncio.Event()
    registry = make_registry(1, database_executor=executor)

    alice = registry.get("alice")
    task = asyncio.create_task(alice.orchestrator.submit(make_request()))
    await wait_for_state(alice.orchestrator, QueryKind.DATABASE, QueryState.EXECUTING)

    registry.get("bob")
    assert "alice" in registry
    assert len(registry) == 2

    executor.gate.set()
    await task
    registry.get("carol")
    assert "alice" not in registry
    assert "bob" not in registry
    assert len(registry) == 1
