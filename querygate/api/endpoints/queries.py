from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from querygate.core import schemas
from querygate.core.context import QueryContext, get_context
from querygate.core.exceptions import InvalidStateError, ParseError

router = APIRouter(prefix="/queries", tags=["Queries"])

context_dep = Annotated[QueryContext, Depends(get_context)]


# Submit a query: validate, then execute if allowed
@router.post("", response_model=schemas.SubmissionResponse)
async def submit_query(payload: schemas.SubmitQueryRequest, context: context_dep):
    request = schemas.QueryRequest(
        kind=payload.kind,
        raw_query=payload.query,
        user_id=context.user_id,
        target=payload.target,
        params=payload.params,
    )
    orchestrator = context.orchestrator

    try:
        outcome = await orchestrator.submit(request)
    except InvalidStateError as error:
        raise HTTPException(status.HTTP_409_CONFLICT, str(error))
    except ParseError as error:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            f"Business rules could not be parsed: {error}",
        )

    if outcome is None:
        raise HTTPException(
            status.HTTP_409_CONFLICT, "Query was reset before it finished"
        )

    state = orchestrator.state(request.kind)
    if isinstance(outcome, schemas.Verdict):
        return schemas.SubmissionResponse(
            request_id=request.id, state=state, verdict=outcome
        )
    return schemas.SubmissionResponse(request_id=request.id, state=state, result=outcome)


@router.post("/{kind}/reset", response_model=schemas.SlotStatus)
async def reset_query(kind: schemas.QueryKind, context: context_dep):
    context.orchestrator.reset(kind)
    return context.orchestrator.status(kind)


@router.get("/{kind}/status", response_model=schemas.SlotStatus)
async def get_query_status(kind: schemas.QueryKind, context: context_dep):
    return context.orchestrator.status(kind)
