from typing import Optional


class QueryGovernanceError(Exception):
    """Base class for every error raised by the governance layer."""


class ParseError(QueryGovernanceError):
    """A recognised rule directive carries a structurally invalid parameter."""

    def __init__(self, line: int, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Line {line}: {reason}")


class ExecutionError(QueryGovernanceError):
    """Backend or network failure reported by an executor collaborator."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InvalidStateError(QueryGovernanceError):
    """A request of the same kind is still validating or executing."""

    def __init__(self, kind: str, state: str):
        self.kind = kind
        self.state = state
        super().__init__(
            f"A {kind} query is already {state}; wait for it to finish or reset it"
        )


class SavedQueryNotFoundError(QueryGovernanceError, LookupError):
    def __init__(self, query_id: str):
        self.query_id = query_id
        super().__init__(f"Saved query {query_id} not found")
