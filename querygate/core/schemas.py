import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    """Trim tags, drop empty ones and keep the first occurrence of duplicates."""
    if tags is None:
        return None
    seen = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


# =========================
# Enums
# =========================
class QueryKind(str, Enum):
    FILE = "file"
    DATABASE = "database"


class RuleKind(str, Enum):
    FORBIDDEN_KEYWORD = "forbidden-keyword"
    REQUIRED_CLAUSE = "required-clause"
    ROW_LIMIT_MAX = "row-limit-max"
    TABLE_RESTRICTION = "table-restriction"
    COLUMN_RESTRICTION = "column-restriction"


class QueryStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class QueryState(str, Enum):
    """Lifecycle of a submitted query."""

    IDLE = "idle"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueryState.BLOCKED, QueryState.SUCCEEDED, QueryState.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in (QueryState.VALIDATING, QueryState.EXECUTING)


class HistorySortField(str, Enum):
    TIMESTAMP = "timestamp"
    EXECUTION_TIME = "execution_time_ms"
    ROW_COUNT = "row_count"


class DateWindow(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


# =========================
# RULES
# =========================
class Rule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: RuleKind
    pattern: str
    message: str
    line: int = 0


class RuleSet(BaseModel):
    """
    Parsed form of a business-rules document.
    Never edited after construction; a new document text means a new RuleSet.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    source_text: str
    rules: Tuple[Rule, ...] = ()
    annotations: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.rules

    def rules_of(self, *kinds: RuleKind) -> Tuple[Rule, ...]:
        return tuple(rule for rule in self.rules if rule.kind in kinds)


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    message: str


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    violations: Tuple[Violation, ...] = ()
    warnings: Tuple[str, ...] = ()
    rule_set_version: Optional[str] = None

    @property
    def summary(self) -> str:
        return ", ".join(violation.message for violation in self.violations)


# =========================
# QUERY REQUEST / RESULT
# =========================
class QueryRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: QueryKind
    raw_query: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    target: str  # file id or database id
    params: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("target", "user_id", mode="before")
    @classmethod
    def _as_string(cls, value):
        return str(value) if isinstance(value, int) else value


class RowsPayload(BaseModel):
    kind: Literal["rows"] = "rows"
    rows: List[Dict[str, Any]] = []


class DocumentPayload(BaseModel):
    kind: Literal["document"] = "document"
    answer: str = ""
    sources: List[Any] = []


QueryPayload = Annotated[
    Union[RowsPayload, DocumentPayload], Field(discriminator="kind")
]


class ResultMetadata(BaseModel):
    row_count: int = 0
    columns: List[str] = []
    execution_time_ms: float = 0.0


class QueryResult(BaseModel):
    request_id: str
    status: QueryStatus
    payload: Optional[QueryPayload] = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    error_message: Optional[str] = None


# =========================
# HISTORY
# =========================
class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: QueryKind
    raw_query: str
    user_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    status: QueryStatus
    execution_time_ms: Optional[float] = None
    row_count: Optional[int] = None
    message: Optional[str] = None


class HistoryFilter(BaseModel):
    search: Optional[str] = None
    status: Optional[QueryStatus] = None
    kind: Optional[QueryKind] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    window: Optional[DateWindow] = None
    sort_by: Optional[HistorySortField] = None
    descending: bool = True


class HistoryStats(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    success_rate: float = 0.0
    avg_execution_time_ms: Optional[float] = None


class RemoveHistoryRequest(BaseModel):
    ids: List[str] = Field(min_length=1)


# =========================
# SAVED QUERIES
# =========================
class SavedQueryBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    query: str = Field(min_length=1)
    kind: QueryKind
    tags: List[str] = []

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value):
        return normalize_tags(value)


class SavedQueryCreate(SavedQueryBase):
    pass


class SavedQueryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    query: Optional[str] = Field(default=None, min_length=1)
    kind: Optional[QueryKind] = None
    tags: Optional[List[str]] = None

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value):
        return normalize_tags(value)


class SavedQuery(SavedQueryBase):
    id: str = Field(default_factory=new_id)
    owner_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SavedQueryFilter(BaseModel):
    kind: Optional[QueryKind] = None
    tag: Optional[str] = None
    search: Optional[str] = None
    owner_id: Optional[str] = None


# =========================
# ORCHESTRATION / API
# =========================
class TransitionRecord(BaseModel):
    timestamp: datetime
    state: QueryState
    message: str
    elapsed_seconds: float


class SlotStatus(BaseModel):
    kind: QueryKind
    state: QueryState
    request_id: Optional[str] = None
    transitions: List[TransitionRecord] = []


class SubmitQueryRequest(BaseModel):
    kind: QueryKind
    query: str = Field(min_length=1)
    target: str
    params: Dict[str, Any] = {}

    @field_validator("target", mode="before")
    @classmethod
    def _as_string(cls, value):
        return str(value) if isinstance(value, int) else value


class SubmissionResponse(BaseModel):
    request_id: str
    state: QueryState
    verdict: Optional[Verdict] = None
    result: Optional[QueryResult] = None


class ParseRulesRequest(BaseModel):
    text: str = ""


class ValidateQueryRequest(BaseModel):
    query: str = Field(min_length=1)
    rules_text: str = ""
