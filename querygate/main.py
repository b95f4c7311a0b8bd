import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from querygate.api.router import api_router
from querygate.core.config import settings
from querygate.core.context import ContextRegistry

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# One context registry for the lifetime of the app
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.contexts = ContextRegistry()
    logger.info(
        f"Query governance ready (rules: {settings.RULES_API_URL}, "
        f"files: {settings.FILE_API_URL}, databases: {settings.DATABASE_API_URL})"
    )
    yield
    logger.info(f"Shutting down with {len(app.state.contexts)} active sessions")


app = FastAPI(title="Query Governance API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the Query Governance API"}
