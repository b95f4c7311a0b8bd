import asyncio
import logging
import time
from functools import partial
from typing import Dict, List, Optional, Union

from pydantic import TypeAdapter, ValidationError

from querygate.core.collaborators import DatabaseExecutor, FileExecutor, RulesProvider
from querygate.core.config import settings
from querygate.core.exceptions import ExecutionError, InvalidStateError, ParseError
from querygate.core.governance.history import HistoryLedger
from querygate.core.governance.rules import RuleBook
from querygate.core.governance.validator import validate
from querygate.core.schemas import (
    DocumentPayload,
    HistoryEntry,
    QueryKind,
    QueryPayload,
    QueryRequest,
    QueryResult,
    QueryState,
    QueryStatus,
    ResultMetadata,
    RowsPayload,
    RuleSet,
    SlotStatus,
    TransitionRecord,
    Verdict,
    Violation,
    utc_now,
)


# -----------------------------------------------------------------------------
# ORCHESTRATOR MODULE
# Purpose: run validate -> execute -> record for at most one query per kind,
#          discard results that arrive after a reset, and write history.
# Why: an invalid query must never reach a backend, and every finished query
#      leaves exactly one history entry.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

RULES_UNAVAILABLE = "rules-unavailable"

PAYLOAD_ADAPTER = TypeAdapter(QueryPayload)

Outcome = Union[Verdict, QueryResult]


class TransitionLog:
    """State transitions of one request, mirrored to the module logger."""

    def __init__(self, request: QueryRequest):
        self.request_id = request.id
        self.kind = request.kind
        self.user_id = request.user_id
        self.start_time = utc_now()
        self.records: List[TransitionRecord] = []

    def log(self, state: QueryState, message: str, level: str = "info"):
        now = utc_now()
        self.records.append(
            TransitionRecord(
                timestamp=now,
                state=state,
                message=message,
                elapsed_seconds=(now - self.start_time).total_seconds(),
            )
        )

        line = f"[User {self.user_id}] {self.kind.value} query {self.request_id} -> {state.value}: {message}"
        if level == "error":
            logger.error(line)
        elif level == "warning":
            logger.warning(line)
        else:
            logger.info(line)

    def states(self) -> List[QueryState]:
        return [record.state for record in self.records]


class _Slot:
    def __init__(self, kind: QueryKind):
        self.kind = kind
        self.state = QueryState.IDLE
        self.request: Optional[QueryRequest] = None
        self.log: Optional[TransitionLog] = None


def parse_payload(raw) -> Union[RowsPayload, DocumentPayload]:
    """Validate executor output into the tagged payload union."""
    if isinstance(raw, (RowsPayload, DocumentPayload)):
        return raw
    try:
        return PAYLOAD_ADAPTER.validate_python(raw)
    except ValidationError as error:
        raise ExecutionError(
            f"Malformed executor response ({error.error_count()} validation errors)"
        ) from error


def build_metadata(
    payload: Union[RowsPayload, DocumentPayload], execution_time_ms: float
) -> ResultMetadata:
    if isinstance(payload, RowsPayload):
        columns = list(payload.rows[0].keys()) if payload.rows else []
        return ResultMetadata(
            row_count=len(payload.rows),
            columns=columns,
            execution_time_ms=execution_time_ms,
        )
    return ResultMetadata(
        row_count=len(payload.sources), execution_time_ms=execution_time_ms
    )


def error_message(error: BaseException) -> str:
    if isinstance(error, ExecutionError):
        return error.message
    return str(error) or type(error).__name__


class QueryOrchestrator:
    """
    Lifecycle of submitted queries, one slot per query kind:

        idle -> validating -> blocked
                           -> executing -> succeeded | failed

    All transitions run on the event loop thread. The in-flight check in
    submit() happens before the first await, so two submissions of the same
    kind can never both get past it.

    Cancellation is soft: reset() forgets the tracked request, and whatever
    the executor returns for it later is dropped. The execution timeout works
    the same way: the slot fails early and the backend call keeps running.
    """

    def __init__(
        self,
        rules_provider: RulesProvider,
        file_executor: FileExecutor,
        database_executor: DatabaseExecutor,
        history: HistoryLedger,
        rule_book: Optional[RuleBook] = None,
        execution_timeout: Optional[float] = None,
    ):
        self.rules_provider = rules_provider
        self.file_executor = file_executor
        self.database_executor = database_executor
        self.history = history
        self.rule_book = rule_book or RuleBook()
        self.execution_timeout = (
            execution_timeout
            if execution_timeout is not None
            else settings.EXECUTION_TIMEOUT_SECONDS
        )
        self._slots: Dict[QueryKind, _Slot] = {kind: _Slot(kind) for kind in QueryKind}

    # =========================
    # State inspection
    # =========================
    def state(self, kind: QueryKind) -> QueryState:
        return self._slots[kind].state

    def status(self, kind: QueryKind) -> SlotStatus:
        slot = self._slots[kind]
        return SlotStatus(
            kind=kind,
            state=slot.state,
            request_id=slot.request.id if slot.request else None,
            transitions=list(slot.log.records) if slot.log else [],
        )

    def reset(self, kind: QueryKind) -> None:
        """Return a slot to idle; an in-flight request's result will be discarded."""
        slot = self._slots[kind]
        if slot.log is not None and slot.state != QueryState.IDLE:
            level = "warning" if slot.state.is_in_flight else "info"
            slot.log.log(QueryState.IDLE, f"Reset from {slot.state.value}", level)
        slot.state = QueryState.IDLE
        slot.request = None
        slot.log = None

    # =========================
    # Submission
    # =========================
    async def submit(self, request: QueryRequest) -> Optional[Outcome]:
        """
        Validate a query and, when allowed, execute it.

        Returns:
            Verdict when the query was blocked,
            QueryResult when it ran (status success or error),
            None when the request was reset before it finished

        Raises:
            InvalidStateError: a query of the same kind is still in flight
            ParseError: the rules text is malformed and no earlier RuleSet exists
        """
        slot = self._slots[request.kind]
        if slot.state.is_in_flight:
            raise InvalidStateError(request.kind.value, slot.state.value)

        slot.request = request
        slot.log = TransitionLog(request)
        self._transition(slot, QueryState.VALIDATING, "Checking business rules")

        # STEP 1: VALIDATE
        try:
            rule_set = await self._load_rules(request)
        except ParseError as error:
            if self._is_current(slot, request):
                self._transition(
                    slot, QueryState.IDLE, f"Business rules rejected: {error}", "error"
                )
                slot.request = None
            raise
        except asyncio.CancelledError:
            self._abandon(slot, request, "Submission cancelled during validation")
            raise

        if not self._is_current(slot, request):
            logger.info(f"Request {request.id} was reset during validation; dropping it")
            return None

        if rule_set is None:
            verdict = Verdict(
                valid=False,
                violations=(
                    Violation(
                        rule_id=RULES_UNAVAILABLE,
                        message="Business rules could not be loaded",
                    ),
                ),
            )
        else:
            verdict = validate(request.raw_query, rule_set)

        if not verdict.valid:
            message = f"Query blocked by business rules: {verdict.summary}"
            self._finish(
                slot,
                QueryState.BLOCKED,
                self._history_entry(request, QueryStatus.ERROR, message=message),
                "warning",
            )
            return verdict

        # STEP 2: EXECUTE
        self._transition(
            slot,
            QueryState.EXECUTING,
            f"Sending query to {request.kind.value} executor {request.target}",
        )
        started = time.perf_counter()
        task = asyncio.ensure_future(self._call_executor(request))
        timeout = self.execution_timeout or None
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            # asyncio.wait leaves the executor task running
            self._discard_when_done(request.id, task)
            self._abandon(slot, request, "Submission cancelled during execution")
            raise
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

        if not self._is_current(slot, request) or slot.state != QueryState.EXECUTING:
            logger.info(f"Request {request.id} was reset during execution; dropping its result")
            self._discard_when_done(request.id, task)
            return None

        # STEP 3: RECORD
        if not done:
            self._discard_when_done(request.id, task)
            return self._fail(slot, request, f"Query timed out after {timeout:g}s", elapsed_ms)

        try:
            payload = task.result()
        except Exception as error:
            return self._fail(slot, request, error_message(error), elapsed_ms)

        metadata = build_metadata(payload, elapsed_ms)
        self._finish(
            slot,
            QueryState.SUCCEEDED,
            self._history_entry(
                request,
                QueryStatus.SUCCESS,
                execution_time_ms=elapsed_ms,
                row_count=metadata.row_count,
            ),
            message=f"{metadata.row_count} rows in {elapsed_ms:.1f} ms",
        )
        return QueryResult(
            request_id=request.id,
            status=QueryStatus.SUCCESS,
            payload=payload,
            metadata=metadata,
        )

    # =========================
    # Internals
    # =========================
    async def _load_rules(self, request: QueryRequest) -> Optional[RuleSet]:
        """
        Current RuleSet for the requesting user.

        A provider failure falls back to the last RuleSet seen for the user;
        None means there is nothing to fall back to.
        """
        try:
            raw_text = await self.rules_provider.get_rules(request.user_id)
        except Exception as error:
            cached = self.rule_book.current(request.user_id)
            if cached is None:
                logger.error(f"Could not load business rules for user {request.user_id}: {error}")
                return None
            logger.warning(
                f"Could not load business rules for user {request.user_id} ({error}); "
                f"using cached version {cached.version}"
            )
            return cached

        return self.rule_book.refresh(request.user_id, raw_text)

    async def _call_executor(self, request: QueryRequest):
        params = {**request.params, "user_id": request.user_id}
        if request.kind == QueryKind.FILE:
            raw = await self.file_executor.execute(request.target, request.raw_query, params)
        else:
            raw = await self.database_executor.execute(
                request.target, request.raw_query, params
            )
        return parse_payload(raw)

    def _is_current(self, slot: _Slot, request: QueryRequest) -> bool:
        return slot.request is not None and slot.request.id == request.id

    def _transition(self, slot: _Slot, state: QueryState, message: str, level: str = "info"):
        slot.state = state
        slot.log.log(state, message, level)

    def _finish(
        self,
        slot: _Slot,
        state: QueryState,
        entry: HistoryEntry,
        level: str = "info",
        message: Optional[str] = None,
    ):
        # One terminal transition, one history entry
        self._transition(slot, state, message or entry.message or state.value, level)
        self.history.append(entry, slot.kind)

    def _fail(
        self, slot: _Slot, request: QueryRequest, message: str, elapsed_ms: float
    ) -> QueryResult:
        self._finish(
            slot,
            QueryState.FAILED,
            self._history_entry(
                request,
                QueryStatus.ERROR,
                message=message,
                execution_time_ms=elapsed_ms,
            ),
            "error",
        )
        return QueryResult(
            request_id=request.id,
            status=QueryStatus.ERROR,
            metadata=ResultMetadata(execution_time_ms=elapsed_ms),
            error_message=message,
        )

    def _abandon(self, slot: _Slot, request: QueryRequest, message: str):
        """Free a slot whose caller went away; no history entry is written."""
        if self._is_current(slot, request):
            self._transition(slot, QueryState.IDLE, message, "warning")
            slot.request = None

    def _discard_when_done(self, request_id: str, task: asyncio.Future):
        if task.done():
            self._discard_late(request_id, task)
        else:
            task.add_done_callback(partial(self._discard_late, request_id))

    @staticmethod
    def _discard_late(request_id: str, task: asyncio.Future):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.info(f"Discarded late failure for request {request_id}: {error}")
        else:
            logger.info(f"Discarded late result for request {request_id}")

    @staticmethod
    def _history_entry(
        request: QueryRequest,
        status: QueryStatus,
        message: Optional[str] = None,
        execution_time_ms: Optional[float] = None,
        row_count: Optional[int] = None,
    ) -> HistoryEntry:
        return HistoryEntry(
            id=request.id,
            kind=request.kind,
            raw_query=request.raw_query,
            user_id=request.user_id,
            status=status,
            execution_time_ms=execution_time_ms,
            row_count=row_count,
            message=message,
        )
