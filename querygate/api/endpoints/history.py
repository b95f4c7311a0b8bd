from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from querygate.core import schemas
from querygate.core.context import QueryContext, get_context

router = APIRouter(prefix="/history", tags=["History"])

context_dep = Annotated[QueryContext, Depends(get_context)]
filter_dep = Annotated[schemas.HistoryFilter, Query()]


@router.get("/stats", response_model=schemas.HistoryStats)
async def get_history_stats(
    context: context_dep, kind: Optional[schemas.QueryKind] = None
):
    return context.history.stats(kind)


# Download the (filtered) history as a JSON file
@router.get("/export")
async def export_history(context: context_dep, history_filter: filter_dep):
    return Response(
        content=context.history.export_json(history_filter),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="query-history.json"'},
    )


@router.get("", response_model=List[schemas.HistoryEntry])
async def list_history(context: context_dep, history_filter: filter_dep):
    return context.history.query(history_filter).to_list()


@router.get("/{kind}", response_model=List[schemas.HistoryEntry])
async def list_history_by_kind(
    kind: schemas.QueryKind, context: context_dep, history_filter: filter_dep
):
    return context.history.query(history_filter, kind=kind).to_list()


@router.delete("", status_code=status.HTTP_200_OK)
async def clear_history(context: context_dep, kind: Optional[schemas.QueryKind] = None):
    context.history.clear(kind)
    scope = kind.value if kind else "all"
    return {"message": f"Cleared {scope} history"}


# Remove selected entries
@router.post("/remove")
async def remove_history_entries(
    payload: schemas.RemoveHistoryRequest, context: context_dep
):
    removed = context.history.remove(payload.ids)
    return {"removed": removed}
