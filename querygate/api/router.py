from fastapi import APIRouter
from querygate.api.endpoints import history, queries, rules, saved_queries

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(queries.router)
api_router.include_router(history.router)
api_router.include_router(saved_queries.router)
api_router.include_router(rules.router)
