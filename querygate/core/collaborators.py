import logging
from typing import Any, Dict, Optional, Protocol, Union

import httpx

from querygate.core.config import settings
from querygate.core.exceptions import ExecutionError
from querygate.core.schemas import DocumentPayload, RowsPayload

logger = logging.getLogger(__name__)


# =========================
# Contracts
# =========================
class RulesProvider(Protocol):
    async def get_rules(self, user_id: str) -> str:
        """Current business-rules text for the user ("" = no restrictions)."""
        ...


class FileExecutor(Protocol):
    async def execute(self, file_id: str, query: str, params: Dict[str, Any]) -> Any:
        ...


class DatabaseExecutor(Protocol):
    async def execute(
        self, database_id: str, query: str, params: Dict[str, Any]
    ) -> Any:
        ...


# =========================
# HTTP helpers
# =========================
def extract_error_message(response: httpx.Response) -> str:
    """Prefer the backend's own detail/message over a bare status code."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"Backend returned HTTP {response.status_code}"


def unwrap(body: Any) -> Any:
    # Backends wrap results as {"payload": {...}} or {"statusCode": .., "payload": [...]}
    if isinstance(body, dict) and "payload" in body:
        return body["payload"]
    return body


def to_payload(body: Any) -> Union[RowsPayload, DocumentPayload]:
    """
    Convert a raw backend response into the tagged payload union.

    Handles:
        - [{"id": 1, ...}, ...]                 → rows
        - {"data": [...]} / {"results": [...]}  → rows
        - {"answer": "...", "sources": [...]}   → document
    """
    body = unwrap(body)

    if isinstance(body, dict) and "answer" in body:
        sources = body.get("sources") or body.get("chunks") or []
        return DocumentPayload(answer=str(body["answer"] or ""), sources=list(sources))

    rows = body
    if isinstance(body, dict):
        rows = body.get("data")
        if rows is None:
            rows = body.get("results")
        if isinstance(rows, dict) and "data" in rows:
            rows = rows["data"]

    if isinstance(rows, list) and all(isinstance(row, dict) for row in rows):
        return RowsPayload(rows=rows)

    raise ExecutionError(f"Unexpected backend response format: {type(body).__name__}")


class _HttpCollaborator:
    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as error:
            raise ExecutionError(
                extract_error_message(error.response), error.response.status_code
            ) from error
        except httpx.HTTPError as error:
            raise ExecutionError(f"Could not reach {url}: {error}") from error

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        response = await self._request("POST", path, json=payload)
        try:
            return response.json()
        except ValueError as error:
            raise ExecutionError("Backend returned a non-JSON response") from error


# =========================
# Implementations
# =========================
class HttpRulesProvider(_HttpCollaborator):
    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.RULES_API_URL, **kwargs)

    async def get_rules(self, user_id: str) -> str:
        try:
            response = await self._request("GET", f"/users/{user_id}/business-rules")
        except ExecutionError as error:
            # No configuration yet simply means no restrictions
            if error.status_code == 404:
                return ""
            raise

        body = unwrap(response.json())
        if isinstance(body, str):
            return body
        if isinstance(body, dict):
            return body.get("business_rule") or body.get("business_rules") or ""
        raise ExecutionError("Unexpected business rules response format")


class HttpFileExecutor(_HttpCollaborator):
    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.FILE_API_URL, **kwargs)

    async def execute(self, file_id: str, query: str, params: Dict[str, Any]):
        payload = {
            "query": query,
            "file_id": file_id,
            "intent_top_k": 20,
            "chunk_top_k": 40,
            "max_chunks_for_answer": 40,
            **params,
        }
        logger.info(f"Searching file {file_id}")
        return to_payload(await self._post_json("/search", payload))


class HttpDatabaseExecutor(_HttpCollaborator):
    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.DATABASE_API_URL, **kwargs)

    async def execute(self, database_id: str, query: str, params: Dict[str, Any]):
        payload = {"question": query, "database_id": database_id, **params}
        logger.info(f"Querying database {database_id}")
        return to_payload(await self._post_json("/query", payload))
