# config.py
"""Configuration settings for the TaleTrail orchestration core.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class TrailSettings(BaseSettings):
    """Full configuration for the orchestration core."""

    # Pipeline timeouts and retry policy
    PIPELINE_GENERATION_TIMEOUT_SECS: int = 120
    PIPELINE_VALIDATION_TIMEOUT_SECS: int = 60
    PIPELINE_RETRY_MAX_ATTEMPTS: int = 3
    PIPELINE_RETRY_BASE_DELAY_SECS: float = 0.1
    PIPELINE_RETRY_MAX_DELAY_SECS: float = 5.0
    # Overall wall-clock budget for one request; None disables it
    PIPELINE_REQUEST_DEADLINE_SECS: float | None = None

    # Node batching
    BATCH_SIZE_MIN: int = 4
    BATCH_SIZE_MAX: int = 6
    BATCH_CONCURRENT_BATCHES: int = 3
    BATCH_CONCURRENT_BATCHES_MAX: int = 8

    # DAG structure
    DAG_DEFAULT_NODE_COUNT: int = 16
    DAG_MIN_NODE_COUNT: int = 4
    DAG_MAX_NODE_COUNT: int = 64
    DAG_MAX_DEPTH: int = 10
    # None means pure branching: the convergence ratio is not enforced
    DAG_CONVERGENCE_POINT_RATIO: float | None = 0.25
    DAG_CONVERGENCE_TOLERANCE: float = 0.2

    # Negotiation loop
    NEGOTIATION_MAX_ROUNDS: int = 3

    # Service discovery
    DISCOVERY_TTL_SECS: float = 300.0
    DISCOVERY_TIMEOUT_SECS: float = 5.0
    DISCOVERY_EVICT_AFTER_FAILURES: int = 3
    DISCOVERY_REQUIRED_SERVICES: list[str] = ["prompt-helper", "story-generator"]
    DISCOVERY_OPTIONAL_SERVICES: list[str] = [
        "quality-control",
        "constraint-enforcer",
    ]

    # Message bus
    SUBJECT_PREFIX: str = "mcp"
    PROTOCOL_VERSION: str = "1.0"
    DISPATCH_MAX_CONCURRENCY: int = 100
    BUS_GATEWAY_URL: str = "http://127.0.0.1:8222/bus"
    BUS_GATEWAY_TOKEN: str | None = None

    # Pipeline progress events
    EVENTS_ENABLED: bool = True
    EVENTS_SUBJECT: str = "mcp.events.pipeline"

    # Tracing
    TRACE_MAX_ENTRIES: int = 10000

    # Used when neither the prompt package nor the prompt service names a model
    DEFAULT_MODEL_ID: str = "default"
    MODEL_CACHE_SIZE: int = 64

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="TRAIL_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = None
    LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_FILE_BACKUPS: int = 5
    LOG_JSON: bool = False
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def check_batch_bounds(self) -> TrailSettings:
        if self.BATCH_SIZE_MIN < 1:
            raise ValueError("BATCH_SIZE_MIN must be at least 1")
        if self.BATCH_SIZE_MIN > self.BATCH_SIZE_MAX:
            raise ValueError("BATCH_SIZE_MIN must not exceed BATCH_SIZE_MAX")
        if self.BATCH_CONCURRENT_BATCHES < 1:
            raise ValueError("BATCH_CONCURRENT_BATCHES must be at least 1")
        if self.BATCH_CONCURRENT_BATCHES > self.BATCH_CONCURRENT_BATCHES_MAX:
            raise ValueError(
                "BATCH_CONCURRENT_BATCHES must not exceed BATCH_CONCURRENT_BATCHES_MAX"
            )
        return self

    @model_validator(mode="after")
    def check_dag_bounds(self) -> TrailSettings:
        if self.DAG_MIN_NODE_COUNT > self.DAG_MAX_NODE_COUNT:
            raise ValueError("DAG_MIN_NODE_COUNT must not exceed DAG_MAX_NODE_COUNT")
        if not (
            self.DAG_MIN_NODE_COUNT
            <= self.DAG_DEFAULT_NODE_COUNT
            <= self.DAG_MAX_NODE_COUNT
        ):
            raise ValueError(
                "DAG_DEFAULT_NODE_COUNT must lie within "
                f"[{self.DAG_MIN_NODE_COUNT}, {self.DAG_MAX_NODE_COUNT}]"
            )
        ratio = self.DAG_CONVERGENCE_POINT_RATIO
        if ratio is not None and not 0.0 <= ratio <= 1.0:
            raise ValueError("DAG_CONVERGENCE_POINT_RATIO must lie within [0, 1]")
        if self.DAG_MAX_DEPTH < 1:
            raise ValueError("DAG_MAX_DEPTH must be at least 1")
        return self

    @model_validator(mode="after")
    def check_loop_bounds(self) -> TrailSettings:
        if self.NEGOTIATION_MAX_ROUNDS < 0:
            raise ValueError("NEGOTIATION_MAX_ROUNDS must not be negative")
        if self.PIPELINE_RETRY_MAX_ATTEMPTS < 1:
            raise ValueError("PIPELINE_RETRY_MAX_ATTEMPTS must be at least 1")
        if self.PIPELINE_RETRY_BASE_DELAY_SECS > self.PIPELINE_RETRY_MAX_DELAY_SECS:
            logger.warning(
                "Retry base delay exceeds the cap; every backoff will use the cap.",
                base=self.PIPELINE_RETRY_BASE_DELAY_SECS,
                cap=self.PIPELINE_RETRY_MAX_DELAY_SECS,
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", extra="ignore", populate_by_name=True
    )


settings = TrailSettings()
