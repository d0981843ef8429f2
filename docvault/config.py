"""Runtime configuration for the docvault storage and analysis layer.

Values come from the environment (or a local ``.env``). Any string field may
hold an ``sm://secret[:version]`` reference which is resolved through Secret
Manager after the model is built.

Backends (``BACKEND_MODE``):
 - ``gcp``: Cloud Storage, Cloud KMS, Document AI, Redis
 - ``memory``: in-process implementations for local runs and tests
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from docvault.errors import ConfigurationError
from docvault.utils.secrets import resolve_secret


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class AppConfig(BaseSettings):
    backend_mode: str = Field("memory", validation_alias="BACKEND_MODE")
    project_id: str = Field("", validation_alias=AliasChoices("PROJECT_ID", "GOOGLE_CLOUD_PROJECT"))
    region: str = Field("us", validation_alias="REGION")

    # Key management
    kms_key_name: str = Field("", validation_alias=AliasChoices("KMS_KEY_NAME", "CMEK_KEY_NAME"))
    kms_timeout_seconds: float = Field(10.0, validation_alias="KMS_TIMEOUT_SECONDS")
    key_max_concurrency: int = Field(10, validation_alias="KEY_MAX_CONCURRENCY")
    key_acquire_timeout_seconds: float = Field(5.0, validation_alias="KEY_ACQUIRE_TIMEOUT_SECONDS")

    # Object storage
    document_bucket: str = Field("", validation_alias="DOCUMENT_BUCKET")
    replica_bucket: str | None = Field(None, validation_alias="REPLICA_BUCKET")
    enable_replication_raw: str | bool | None = Field(False, validation_alias="ENABLE_REPLICATION")
    storage_cmek_key_name: str | None = Field(None, validation_alias="STORAGE_CMEK_KEY_NAME")
    storage_timeout_seconds: float = Field(10.0, validation_alias="STORAGE_TIMEOUT_SECONDS")
    upload_lock_timeout_seconds: float = Field(30.0, validation_alias="UPLOAD_LOCK_TIMEOUT_SECONDS")
    max_document_bytes: int = Field(100 * 1024 * 1024, validation_alias="MAX_DOCUMENT_BYTES")

    # Retry and circuit breaking, shared by every remote dependency
    retry_attempts: int = Field(3, validation_alias="RETRY_ATTEMPTS")
    retry_initial_seconds: float = Field(1.0, validation_alias="RETRY_INITIAL_SECONDS")
    retry_max_seconds: float = Field(8.0, validation_alias="RETRY_MAX_SECONDS")
    breaker_failure_threshold: int = Field(5, validation_alias="BREAKER_FAILURE_THRESHOLD")
    breaker_window_seconds: float = Field(60.0, validation_alias="BREAKER_WINDOW_SECONDS")
    breaker_cooldown_seconds: float = Field(30.0, validation_alias="BREAKER_COOLDOWN_SECONDS")

    # Cache
    redis_url: str | None = Field(None, validation_alias=AliasChoices("REDIS_URL", "CACHE_URL"))
    cache_timeout_seconds: float = Field(0.5, validation_alias="CACHE_TIMEOUT_SECONDS")
    cache_compression_threshold: int = Field(100 * 1024, validation_alias="CACHE_COMPRESSION_THRESHOLD")
    analysis_cache_ttl_seconds: int = Field(24 * 60 * 60, validation_alias="ANALYSIS_CACHE_TTL_SECONDS")
    metadata_cache_ttl_seconds: int = Field(30 * 60, validation_alias="METADATA_CACHE_TTL_SECONDS")

    # Analysis
    doc_ai_processor_id: str = Field("", validation_alias=AliasChoices("DOC_AI_PROCESSOR_ID", "DOC_AI_OCR_PROCESSOR_ID"))
    doc_ai_location: str = Field("us", validation_alias=AliasChoices("DOC_AI_LOCATION", "REGION"))
    staging_bucket: str = Field("", validation_alias="STAGING_BUCKET")
    analysis_output_bucket: str = Field("", validation_alias="ANALYSIS_OUTPUT_BUCKET")
    analysis_timeout_seconds: float = Field(300.0, validation_alias="ANALYSIS_TIMEOUT_SECONDS")
    analysis_min_confidence: float = Field(0.98, validation_alias="ANALYSIS_MIN_CONFIDENCE")
    analysis_block_confidence_floor: float = Field(0.5, validation_alias="ANALYSIS_BLOCK_CONFIDENCE_FLOOR")
    analysis_processing_budget_ms: int = Field(3000, validation_alias="ANALYSIS_PROCESSING_BUDGET_MS")
    poll_initial_seconds: float = Field(2.0, validation_alias="POLL_INITIAL_SECONDS")
    poll_multiplier: float = Field(2.0, validation_alias="POLL_MULTIPLIER")
    poll_max_seconds: float = Field(30.0, validation_alias="POLL_MAX_SECONDS")
    poll_jitter_seconds: float = Field(0.5, validation_alias="POLL_JITTER_SECONDS")
    poll_timeout_seconds: float = Field(10.0, validation_alias="POLL_TIMEOUT_SECONDS")
    max_poll_failures: int = Field(3, validation_alias="MAX_POLL_FAILURES")

    google_application_credentials: str | None = Field(None, validation_alias="GOOGLE_APPLICATION_CREDENTIALS")
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False, populate_by_name=True
    )

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        """Resolve ``sm://`` references once pydantic has populated the fields."""
        project_hint = resolve_secret(self.project_id, project_id=None)
        if isinstance(project_hint, str) and project_hint:
            self.project_id = project_hint
        project_hint = self.project_id or os.getenv("PROJECT_ID")

        secret_fields = (
            "kms_key_name",
            "redis_url",
            "doc_ai_processor_id",
            "storage_cmek_key_name",
        )
        for field_name in secret_fields:
            value = getattr(self, field_name, None)
            resolved = resolve_secret(value, project_id=project_hint)
            if resolved is not None:
                setattr(self, field_name, resolved)

    @property
    def enable_replication(self) -> bool:
        raw = self.enable_replication_raw
        if isinstance(raw, bool):
            return raw
        return parse_bool(str(raw))

    @property
    def processor_name(self) -> str:
        return (
            f"projects/{self.project_id}/locations/{self.doc_ai_location}"
            f"/processors/{self.doc_ai_processor_id}"
        )

    def validate_required(self) -> None:
        """Fail fast when the selected backend mode lacks required values."""
        mode = (self.backend_mode or "").strip().lower()
        if mode not in {"gcp", "memory"}:
            raise ConfigurationError(f"Unsupported BACKEND_MODE '{self.backend_mode}'")

        numeric_checks = [
            ("retry_attempts", self.retry_attempts >= 1),
            ("breaker_failure_threshold", self.breaker_failure_threshold >= 1),
            ("key_max_concurrency", self.key_max_concurrency >= 1),
            ("max_poll_failures", self.max_poll_failures >= 0),
            ("analysis_timeout_seconds", self.analysis_timeout_seconds > 0),
            ("poll_initial_seconds", self.poll_initial_seconds > 0),
            ("poll_max_seconds", self.poll_max_seconds >= self.poll_initial_seconds),
            ("analysis_min_confidence", 0.0 <= self.analysis_min_confidence <= 1.0),
            ("cache_compression_threshold", self.cache_compression_threshold >= 0),
        ]
        invalid = [name for name, ok in numeric_checks if not ok]
        if invalid:
            raise ConfigurationError("Invalid configuration values: " + ", ".join(sorted(invalid)))

        if mode == "memory":
            return

        required_pairs = [
            ("project_id", self.project_id),
            ("kms_key_name", self.kms_key_name),
            ("document_bucket", self.document_bucket),
            ("redis_url", self.redis_url),
            ("doc_ai_processor_id", self.doc_ai_processor_id),
            ("staging_bucket", self.staging_bucket),
            ("analysis_output_bucket", self.analysis_output_bucket),
        ]
        missing = [name for name, value in required_pairs if not value]
        if self.enable_replication and not self.replica_bucket:
            missing.append("replica_bucket")
        if missing:
            raise ConfigurationError("Missing required configuration values: " + ", ".join(sorted(missing)))


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return AppConfig()


def reset_config_cache() -> None:
    get_config.cache_clear()


__all__ = ["AppConfig", "get_config", "parse_bool", "reset_config_cache"]
