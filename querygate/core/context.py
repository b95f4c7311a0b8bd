import logging
from collections import OrderedDict
from typing import Annotated, Optional

from fastapi import Header, Request

from querygate.core.collaborators import (
    DatabaseExecutor,
    FileExecutor,
    HttpDatabaseExecutor,
    HttpFileExecutor,
    HttpRulesProvider,
    RulesProvider,
)
from querygate.core.governance.history import HistoryLedger
from querygate.core.governance.orchestrator import QueryOrchestrator
from querygate.core.governance.registry import SavedQueryRegistry
from querygate.core.config import settings
from querygate.core.governance.rules import RuleBook
from querygate.core.schemas import QueryKind

logger = logging.getLogger(__name__)


class QueryContext:
    """Everything one user session owns: history, saved queries, rules and slots."""

    def __init__(
        self,
        user_id: str,
        rules_provider: RulesProvider,
        file_executor: FileExecutor,
        database_executor: DatabaseExecutor,
        history_limit: Optional[int] = None,
        execution_timeout: Optional[float] = None,
    ):
        self.user_id = user_id
        self.history = HistoryLedger(limit=history_limit)
        self.registry = SavedQueryRegistry()
        self.rule_book = RuleBook()
        self.orchestrator = QueryOrchestrator(
            rules_provider,
            file_executor,
            database_executor,
            self.history,
            rule_book=self.rule_book,
            execution_timeout=execution_timeout,
        )

    @property
    def busy(self) -> bool:
        return any(self.orchestrator.state(kind).is_in_flight for kind in QueryKind)


class ContextRegistry:
    """
    Builds one QueryContext per user id on first use and shares the collaborators.

    At most max_contexts sessions are kept. Creating one more evicts the least
    recently used idle session, whose history and saved queries are lost. Sessions
    with a query in flight are never evicted, so the map can briefly run over.
    """

    def __init__(
        self,
        rules_provider: Optional[RulesProvider] = None,
        file_executor: Optional[FileExecutor] = None,
        database_executor: Optional[DatabaseExecutor] = None,
        max_contexts: Optional[int] = None,
    ):
        self.rules_provider = rules_provider or HttpRulesProvider()
        self.file_executor = file_executor or HttpFileExecutor()
        self.database_executor = database_executor or HttpDatabaseExecutor()
        self.max_contexts = max_contexts or settings.MAX_SESSIONS
        self._contexts: "OrderedDict[str, QueryContext]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._contexts

    def get(self, user_id: str) -> QueryContext:
        context = self._contexts.get(user_id)
        if context is not None:
            self._contexts.move_to_end(user_id)
        else:
            self._evict()
            context = QueryContext(
                user_id,
                self.rules_provider,
                self.file_executor,
                self.database_executor,
            )
            self._contexts[user_id] = context
            logger.info(f"Created query context for user {user_id}")
        return context

    def drop(self, user_id: str) -> None:
        self._contexts.pop(user_id, None)

    def _evict(self):
        # Oldest first; make room for the context about to be created
        for user_id in list(self._contexts):
            if len(self._contexts) < self.max_contexts:
                return
            if self._contexts[user_id].busy:
                continue
            del self._contexts[user_id]
            logger.info(f"Evicted idle query context for user {user_id}")


# This is the "Bridge" that gives routes access to the caller's session
async def get_context(
    request: Request, x_user_id: Annotated[str, Header(min_length=1)]
) -> QueryContext:
    registry = getattr(request.app.state, "contexts", None)
    if registry is None:
        registry = ContextRegistry()
        request.app.state.contexts = registry
    return registry.get(x_user_id)
