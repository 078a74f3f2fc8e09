"""Configuration management for the agent pipeline."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ModelServiceConfig:
    """Remote model service configuration (Azure OpenAI or OpenAI-compatible)."""

    api_key: str
    endpoint: Optional[str] = None
    api_version: Optional[str] = None
    deployment_name: str = "gpt-4o"
    max_concurrent: int = 50

    @property
    def is_azure(self) -> bool:
        return self.api_version is not None


@dataclass(frozen=True)
class RetryConfig:
    """Timeout and retry policy applied to every remote model call."""

    request_timeout_seconds: float = 90.0
    max_retries: int = 2
    base_delay_seconds: float = 2.0
    max_jitter_seconds: float = 0.5


@dataclass(frozen=True)
class PipelineStoreConfig:
    """Retention policy for pipeline states kept in memory."""

    ttl_seconds: float = 24 * 60 * 60
    max_entries: int = 100


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    model_service: Optional[ModelServiceConfig] = None
    model: str = "gpt-4o"
    retry: RetryConfig = field(default_factory=RetryConfig)
    store: PipelineStoreConfig = field(default_factory=PipelineStoreConfig)
    log_level: str = "INFO"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        openai_key = os.getenv("OPENAI_API_KEY")

        service = None
        if azure_key and azure_endpoint:
            service = ModelServiceConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-06-01"),
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"),
                max_concurrent=int(os.getenv("AZURE_OPENAI_MAX_CONCURRENT", "50")),
            )
        elif openai_key:
            service = ModelServiceConfig(
                api_key=openai_key,
                endpoint=os.getenv("OPENAI_BASE_URL"),
                deployment_name=os.getenv("CAREFLOW_MODEL", "gpt-4o"),
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
            )

        retry = RetryConfig(
            request_timeout_seconds=float(os.getenv("MODEL_REQUEST_TIMEOUT_SECONDS", "90")),
            max_retries=int(os.getenv("MODEL_MAX_RETRIES", "2")),
            base_delay_seconds=float(os.getenv("MODEL_RETRY_BASE_DELAY_SECONDS", "2")),
            max_jitter_seconds=float(os.getenv("MODEL_RETRY_MAX_JITTER_SECONDS", "0.5")),
        )
        store = PipelineStoreConfig(
            ttl_seconds=float(os.getenv("PIPELINE_TTL_SECONDS", str(24 * 60 * 60))),
            max_entries=int(os.getenv("PIPELINE_MAX_STORED", "100")),
        )

        return cls(
            model_service=service,
            model=os.getenv("CAREFLOW_MODEL") or (service.deployment_name if service else "gpt-4o"),
            retry=retry,
            store=store,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
