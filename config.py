# config.py
"""Configuration settings for the MedGuard generation pipeline.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class PipelineSettings(BaseSettings):
    """Full configuration for the generation-and-validation pipeline."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"

    GENERATION_MODEL: str = "Qwen3-14B"
    CORRECTION_MODEL: str | None = None

    # Temperature Settings
    TEMPERATURE_GENERATION: float = 0.4
    TEMPERATURE_CORRECTION: float = 0.2
    LLM_TOP_P: float = 0.8

    # Generation Parameters
    MAX_GENERATION_TOKENS: int = 4096
    MAX_CONTEXT_TOKENS: int = 8192
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10

    # LLM Call Settings
    LLM_ATTEMPT_TIMEOUT_SECONDS: float = 60.0
    LLM_RETRY_ATTEMPTS: int = 3
    LLM_RETRY_DELAY_SECONDS: float = 1.0
    LLM_RETRY_MAX_DELAY_SECONDS: float = 8.0
    LLM_RETRY_JITTER_RATIO: float = 0.25
    MAX_CONCURRENT_LLM_CALLS: int = 8

    # Overall per-request deadline (derived when unset)
    REQUEST_DEADLINE_SECONDS: float | None = None
    # Headroom for audit writes, cache IO and scheduling delays
    REQUEST_DEADLINE_MARGIN_SECONDS: float = 15.0

    # Guard Agent
    ACCURACY_APPROVAL_THRESHOLD: float = 0.7
    UNCERTAINTY_THRESHOLD: float = 0.85
    MAX_CORRECTION_ATTEMPTS: int = 1
    DOC_QA_MIN_GROUNDING: float = 0.35

    # Caching
    CACHE_TTL_SECONDS: float = 3600.0
    CACHE_MAX_ENTRIES: int = 1024

    # Rate Limiting (token bucket per role)
    RATE_LIMIT_STUDENT_CAPACITY: int = 10
    RATE_LIMIT_STUDENT_REFILL_PER_SECOND: float = 0.5
    RATE_LIMIT_FACULTY_CAPACITY: int = 30
    RATE_LIMIT_FACULTY_REFILL_PER_SECOND: float = 2.0
    RATE_LIMIT_MAX_WAITERS: int = 64

    # Output and File Paths
    BASE_OUTPUT_DIR: str = "pipeline_output"
    AUDIT_LOG_FILE: str = "guard_audit.jsonl"

    # Logging
    LOG_LEVEL_STR: str = Field("INFO", alias="PIPELINE_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "pipeline_run.log"
    ENABLE_RICH_LOGGING: bool = True

    @model_validator(mode="after")
    def set_dynamic_defaults(self) -> PipelineSettings:
        if self.OPENAI_API_KEY == "nope":
            logger.warning(
                "OPENAI_API_KEY is unset; only keyless local providers will accept requests."
            )
        if self.CORRECTION_MODEL is None:
            self.CORRECTION_MODEL = self.GENERATION_MODEL
        if self.UNCERTAINTY_THRESHOLD < self.ACCURACY_APPROVAL_THRESHOLD:
            raise ValueError(
                "UNCERTAINTY_THRESHOLD must not be lower than ACCURACY_APPROVAL_THRESHOLD"
            )
        if self.REQUEST_DEADLINE_SECONDS is None:
            self.REQUEST_DEADLINE_SECONDS = self.derived_request_deadline()
        return self

    def derived_request_deadline(self) -> float:
        """Worst case for the generation call and every correction call, plus margin.

        Each model call gets its own retry budget, so one call may spend every
        attempt timeout and the longest backoff waits between them.
        """
        per_call = self.LLM_RETRY_ATTEMPTS * self.LLM_ATTEMPT_TIMEOUT_SECONDS
        for attempt in range(1, self.LLM_RETRY_ATTEMPTS):
            delay = min(
                self.LLM_RETRY_DELAY_SECONDS * (2 ** (attempt - 1)),
                self.LLM_RETRY_MAX_DELAY_SECONDS,
            )
            per_call += delay * (1 + self.LLM_RETRY_JITTER_RATIO)
        model_calls = 1 + self.MAX_CORRECTION_ATTEMPTS
        return model_calls * per_call + self.REQUEST_DEADLINE_MARGIN_SECONDS

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = PipelineSettings()


AUDIT_LOG_PATH = (
    settings.AUDIT_LOG_FILE
    if os.path.isabs(settings.AUDIT_LOG_FILE)
    else os.path.join(settings.BASE_OUTPUT_DIR, settings.AUDIT_LOG_FILE)
)
