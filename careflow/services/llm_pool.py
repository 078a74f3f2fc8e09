"""LLM client pool for shared model access with concurrency control."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from openai import AsyncAzureOpenAI, AsyncOpenAI

from careflow.config import ModelServiceConfig


class LLMPool:
    """Manages shared LLM clients with concurrency limiting."""

    def __init__(self) -> None:
        self._configs: Dict[str, ModelServiceConfig] = {}
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def register(self, model_name: str, config: ModelServiceConfig) -> None:
        """Register a model served by the given service configuration."""
        self._configs[model_name] = config
        self._semaphores[model_name] = asyncio.Semaphore(config.max_concurrent)

    def register_client(self, model_name: str, client: Any, *, max_concurrent: int = 50) -> None:
        """Register an already constructed client, e.g. a preconfigured SDK instance."""
        self._clients[model_name] = client
        self._semaphores[model_name] = asyncio.Semaphore(max_concurrent)

    def is_registered(self, model_name: str) -> bool:
        return model_name in self._semaphores

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[Any]:
        """Acquire access to a model client with concurrency control."""
        if model_name not in self._semaphores:
            raise KeyError(f"Model '{model_name}' not registered in LLM pool")

        semaphore = self._semaphores[model_name]
        await semaphore.acquire()

        try:
            if model_name not in self._clients:
                self._clients[model_name] = self._build_client(self._configs[model_name])
            yield self._clients[model_name]
        finally:
            semaphore.release()

    async def aclose(self) -> None:
        """Close every client that was lazily created."""
        built = [name for name in self._clients if name in self._configs]
        for name in built:
            client = self._clients.pop(name)
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    @staticmethod
    def _build_client(config: ModelServiceConfig) -> Any:
        # Retries are owned by the transport layer, so the SDK must not retry on its own.
        if config.is_azure:
            return AsyncAzureOpenAI(
                api_key=config.api_key,
                api_version=config.api_version,
                azure_endpoint=config.endpoint,
                max_retries=0,
            )
        return AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.endpoint,
            max_retries=0,
        )
