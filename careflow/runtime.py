"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from careflow.agents.catalog import AgentCatalog, build_default_catalog
from careflow.config import config
from careflow.orchestration.orchestrator import Orchestrator
from careflow.orchestration.store import PipelineStore
from careflow.services.llm_client import OpenAIToolClient
from careflow.services.llm_pool import LLMPool
from careflow.services.records import ClinicalRecords, InMemoryClinicalRecords
from careflow.services.transport import RetryingTransport


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Register the model service if configured
    if config.model_service:
        pool.register(config.model, config.model_service)

    return pool


@lru_cache
def get_transport() -> RetryingTransport:
    return RetryingTransport(OpenAIToolClient(get_llm_pool()), config.retry)


@lru_cache
def get_records() -> ClinicalRecords:
    return InMemoryClinicalRecords()


@lru_cache
def get_agent_catalog() -> AgentCatalog:
    return build_default_catalog(get_records(), config.model)


@lru_cache
def get_pipeline_store() -> PipelineStore:
    return PipelineStore(config.store)


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator(
        catalog=get_agent_catalog(),
        transport=get_transport(),
        store=get_pipeline_store(),
    )
