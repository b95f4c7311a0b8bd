import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from querygate.core import schemas
from querygate.core.context import QueryContext, get_context
from querygate.core.exceptions import SavedQueryNotFoundError

router = APIRouter(prefix="/saved-queries", tags=["Saved Queries"])

context_dep = Annotated[QueryContext, Depends(get_context)]


# Save a query
@router.post(
    "",
    response_model=schemas.SavedQuery,
    status_code=status.HTTP_201_CREATED,
)
async def create_saved_query(data: schemas.SavedQueryCreate, context: context_dep):
    return context.registry.create(data, owner_id=context.user_id)


# List saved queries, optionally filtered by kind/tag/search
@router.get("", response_model=List[schemas.SavedQuery])
async def list_saved_queries(
    context: context_dep,
    query_filter: Annotated[schemas.SavedQueryFilter, Query()],
):
    return context.registry.list(query_filter)


@router.get("/tags", response_model=List[str])
async def list_tags(context: context_dep):
    return context.registry.tags()


@router.get("/{query_id}", response_model=schemas.SavedQuery)
async def get_saved_query(query_id: str, context: context_dep):
    try:
        return context.registry.get(query_id)
    except SavedQueryNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Saved query not found")


# Update only the fields that were sent
@router.patch("/{query_id}", response_model=schemas.SavedQuery)
async def update_saved_query(
    query_id: str, patch: schemas.SavedQueryUpdate, context: context_dep
):
    try:
        return context.registry.update(query_id, patch)
    except SavedQueryNotFoundError:
        logging.error(f"Update of unknown saved query {query_id}")
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Saved query not found")


# Deleting twice is fine
@router.delete("/{query_id}", status_code=status.HTTP_200_OK)
async def delete_saved_query(query_id: str, context: context_dep):
    deleted = context.registry.delete(query_id)
    return {"deleted": deleted, "message": f"Deleted saved query {query_id}"}
