import asyncio

import pytest
from httpx import AsyncClient

from querygate.core.schemas import QueryKind, QueryState


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_submit_successful_query(client: AsyncClient, database_executor):
    """Valid query runs and lands in history"""
    database_executor.result = {"kind": "rows", "rows": [{"id": 1}, {"id": 2}]}
    payload = {"kind": "database", "query": "SELECT id FROM orders LIMIT 2", "target": 7}

    response = await client.post("/queries", json=payload)

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "succeeded"
    assert data["verdict"] is None
    assert data["result"]["payload"]["kind"] == "rows"
    assert data["result"]["metadata"]["row_count"] == 2
    assert database_executor.calls[0][0] == "7"

    history = await client.get("/history/database")
    assert history.status_code == 200
    assert len(history.json()) == 1
    assert history.json()[0]["row_count"] == 2


@pytest.mark.asyncio
async def test_submit_blocked_query(client: AsyncClient, rules_provider, database_executor):
    rules_provider.text = "Forbidden statements: DELETE\nRestricted tables: orders"
    payload = {"kind": "database", "query": "DELETE FROM orders", "target": "db-1"}

    response = await client.post("/queries", json=payload)

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "blocked"
    assert data["verdict"]["valid"] is False
    assert len(data["verdict"]["violations"]) == 2
    assert database_executor.calls == []


@pytest.mark.asyncio
async def test_submit_with_broken_rules_is_unprocessable(client: AsyncClient, rules_provider):
    rules_provider.text = "Max rows: a lot"
    payload = {"kind": "database", "query": "SELECT 1", "target": "db-1"}

    response = await client.post("/queries", json=payload)
    assert response.status_code == 422
    assert "Line 1" in response.json()["detail"]


@pytest.mark.asyncio
async def test_submit_while_in_flight_conflicts(client: AsyncClient, context, database_executor):
    database_executor.gate = asyncio.Event()
    orchestrator = context.orchestrator
    first = asyncio.create_task(
        client.post("/queries", json={"kind": "database", "query": "SELECT 1", "target": "db-1"})
    )
    for _ in range(200):
        if orchestrator.state(QueryKind.DATABASE) == QueryState.EXECUTING:
            break
        await asyncio.sleep(0)

    response = await client.post(
        "/queries", json={"kind": "database", "query": "SELECT 2", "target": "db-1"}
    )
    assert response.status_code == 409

    database_executor.gate.set()
    assert (await first).status_code == 200


@pytest.mark.asyncio
async def test_reset_and_status(client: AsyncClient):
    await client.post("/queries", json={"kind": "file", "query": "summary", "target": "f1"})

    status_response = await client.get("/queries/file/status")
    assert status_response.json()["state"] == "succeeded"

    reset_response = await client.post("/queries/file/reset")
    assert reset_response.status_code == 200
    assert reset_response.json()["state"] == "idle"


@pytest.mark.asyncio
async def test_history_filter_stats_and_clear(client: AsyncClient, database_executor):
    await client.post("/queries", json={"kind": "database", "query": "SELECT 1", "target": "d"})
    database_executor.error = RuntimeError("backend down")
    await client.post("/queries", json={"kind": "database", "query": "SELECT 2", "target": "d"})
    await client.post("/queries", json={"kind": "file", "query": "summary", "target": "f"})

    everything = await client.get("/history")
    assert len(everything.json()) == 3

    failed = await client.get("/history/database", params={"status": "error"})
    assert [e["raw_query"] for e in failed.json()] == ["SELECT 2"]

    stats = await client.get("/history/stats", params={"kind": "database"})
    assert stats.json()["total"] == 2
    assert stats.json()["failed"] == 1

    export = await client.get("/history/export")
    assert export.headers["content-type"].startswith("application/json")
    assert len(export.json()) == 3

    cleared = await client.delete("/history", params={"kind": "file"})
    assert cleared.status_code == 200
    assert len((await client.get("/history")).json()) == 2


@pytest.mark.asyncio
async def test_remove_history_entries(client: AsyncClient):
    response = await client.post(
        "/queries", json={"kind": "database", "query": "SELECT 1", "target": "d"}
    )
    request_id = response.json()["request_id"]

    removed = await client.post("/history/remove", json={"ids": [request_id]})
    assert removed.json() == {"removed": 1}
    assert (await client.get("/history")).json() == []


@pytest.mark.asyncio
async def test_saved_query_crud(client: AsyncClient):
    payload = {
        "name": "Weekly revenue",
        "query": "SELECT SUM(total) FROM orders WHERE week = 1",
        "kind": "database",
        "tags": ["finance", " finance "],
    }
    created = await client.post("/saved-queries", json=payload)
    assert created.status_code == 201
    saved = created.json()
    assert saved["tags"] == ["finance"]

    patched = await client.patch(
        f"/saved-queries/{saved['id']}", json={"description": "Used in Monday review"}
    )
    assert patched.status_code == 200
    assert patched.json()["name"] == "Weekly revenue"
    assert patched.json()["description"] == "Used in Monday review"

    listed = await client.get("/saved-queries", params={"tag": "finance"})
    assert [q["id"] for q in listed.json()] == [saved["id"]]
    assert (await client.get("/saved-queries/tags")).json() == ["finance"]

    assert (await client.delete(f"/saved-queries/{saved['id']}")).status_code == 200
    # Deleting again is not an error
    assert (await client.delete(f"/saved-queries/{saved['id']}")).status_code == 200
    assert (await client.get(f"/saved-queries/{saved['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_update_unknown_saved_query(client: AsyncClient):
    response = await client.patch("/saved-queries/missing", json={"name": "x"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_rules_preview(client: AsyncClient):
    parsed = await client.post("/rules/parse", json={"text": "Max rows: 100\nBe kind"})
    assert parsed.status_code == 200
    assert parsed.json()["rules"][0]["kind"] == "row-limit-max"
    assert parsed.json()["annotations"] == ["Be kind"]

    broken = await client.post("/rules/parse", json={"text": "Max rows: many"})
    assert broken.status_code == 422

    verdict = await client.post(
        "/rules/validate",
        json={"query": "SELECT * FROM users LIMIT 500", "rules_text": "Max rows: 100"},
    )
    assert verdict.json()["valid"] is False
