"""FastAPI entry-point exposing the clinical agent pipeline."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from careflow.api.routes import agents_router, pipelines_router
from careflow.core.logger import configure_logging, get_logger
from careflow.runtime import get_agent_catalog, get_llm_pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    configure_logging()
    # Fail at startup rather than on the first request if an agent is misconfigured.
    catalog = get_agent_catalog()
    get_logger("careflow.main").info("Loaded %d agents.", len(catalog))
    yield
    await get_llm_pool().aclose()


app = FastAPI(title="Careflow Agent Pipeline", lifespan=lifespan)
app.include_router(pipelines_router)
app.include_router(agents_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
