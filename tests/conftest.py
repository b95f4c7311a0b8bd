import asyncio
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from querygate.main import app
from querygate.core.context import QueryContext, get_context
from querygate.core.governance.history import HistoryLedger
from querygate.core.governance.orchestrator import QueryOrchestrator
from querygate.core.schemas import QueryKind, QueryRequest, QueryState

TEST_USER_ID = "user-1"


# Fake collaborators: plain async classes that record their calls
class FakeRulesProvider:
    def __init__(self, text: str = ""):
        self.text = text
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls = 0

    async def get_rules(self, user_id: str) -> str:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.text


class FakeExecutor:
    def __init__(self, result=None):
        self.result = result if result is not None else {"kind": "rows", "rows": []}
        self.error: Optional[Exception] = None
        # Set to an asyncio.Event to hold the call until the test releases it
        self.gate: Optional[asyncio.Event] = None
        self.calls = []

    async def execute(self, target: str, query: str, params: dict):
        self.calls.append((target, query, params))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def make_request(
    query: str = "SELECT * FROM orders LIMIT 10",
    kind: QueryKind = QueryKind.DATABASE,
    target: str = "db-1",
    **kwargs,
) -> QueryRequest:
    return QueryRequest(
        kind=kind, raw_query=query, user_id=TEST_USER_ID, target=target, **kwargs
    )


async def wait_for_state(orchestrator, kind: QueryKind, state: QueryState):
    # Let the submit task run up to its next suspension point
    for _ in range(100):
        if orchestrator.state(kind) == state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{kind.value} slot never reached {state.value}")


@pytest.fixture
def rules_provider():
    return FakeRulesProvider()


@pytest.fixture
def file_executor():
    return FakeExecutor(
        {"kind": "document", "answer": "Revenue grew 12%", "sources": ["q3.pdf"]}
    )


@pytest.fixture
def database_executor():
    return FakeExecutor()


@pytest.fixture
def history():
    return HistoryLedger(limit=100)


@pytest.fixture
def orchestrator(rules_provider, file_executor, database_executor, history):
    return QueryOrchestrator(
        rules_provider,
        file_executor,
        database_executor,
        history,
        execution_timeout=5,
    )


@pytest.fixture
def context(rules_provider, file_executor, database_executor):
    return QueryContext(
        TEST_USER_ID,
        rules_provider,
        file_executor,
        database_executor,
        execution_timeout=5,
    )


# Client bound to one session context
@pytest_asyncio.fixture(scope="function")
async def client(context: QueryContext):
    app.dependency_overrides[get_context] = lambda: context

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
