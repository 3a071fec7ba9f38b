"""
Application configuration management using Pydantic settings.

Each concern gets its own settings group with an environment prefix; the
groups are aggregated by ApplicationSettings and cached by get_settings().
"""
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


class ClaudeSettings(BaseSettings):
    """Claude API configuration (LLM document tier and schema extraction)"""

    api_key: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("CLAUDE_API_KEY", "ANTHROPIC_API_KEY"),
    )
    model: str = Field("claude-sonnet-4-5-20250929")

    # Request configuration
    max_tokens: int = Field(16000, ge=256, le=64000)
    temperature: float = Field(0.0, ge=0.0, le=1.0)
    timeout_seconds: float = Field(60.0, ge=5, le=600)
    large_document_timeout_seconds: float = Field(120.0, ge=5, le=900)
    large_document_bytes: int = Field(1024 * 1024, ge=1)

    # Retry policy
    max_retries: int = Field(3, ge=1, le=6)
    rate_limit_base_delay_seconds: float = Field(5.0, ge=0.0)
    timeout_retry_delay_seconds: float = Field(2.0, ge=0.0)

    use_prompt_cache: bool = Field(True)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v):
        """Treat blank keys as not configured"""
        if v is not None and not v.strip():
            return None
        return v

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    model_config = ConfigDict(env_prefix="CLAUDE_", populate_by_name=True)


class DocumentAISettings(BaseSettings):
    """Google Document AI configuration (OCR and custom extractor tiers)"""

    project_id: Optional[str] = Field(None)
    location: str = Field("eu")
    ocr_processor_id: Optional[str] = Field(None)
    custom_extractor_processor_id: Optional[str] = Field(None)
    credentials_path: Optional[str] = Field(None)

    # Timeouts
    ocr_timeout_seconds: float = Field(120.0, ge=5, le=900)
    custom_timeout_seconds: float = Field(180.0, ge=5, le=900)
    download_timeout_seconds: float = Field(60.0, ge=5, le=600)
    token_refresh_margin_seconds: int = Field(300, ge=0, le=1800)

    # Retry policy
    max_retries: int = Field(2, ge=1, le=6)
    rate_limit_base_delay_seconds: float = Field(5.0, ge=0.0)
    timeout_retry_delay_seconds: float = Field(2.0, ge=0.0)

    # Pricing (USD)
    ocr_cost_per_page: float = Field(0.0015, ge=0.0)
    custom_extractor_cost_per_document: float = Field(0.10, ge=0.0)

    @field_validator("location")
    @classmethod
    def validate_location(cls, v):
        """Document AI is served from the eu and us multi-regions"""
        if v not in ("eu", "us"):
            raise ValueError('Document AI location must be "eu" or "us"')
        return v

    @property
    def ocr_configured(self) -> bool:
        return bool(self.project_id and self.ocr_processor_id and self.credentials_path)

    @property
    def custom_extractor_configured(self) -> bool:
        return bool(
            self.project_id
            and self.custom_extractor_processor_id
            and self.credentials_path
        )

    model_config = ConfigDict(env_prefix="DOCUMENT_AI_")


class PipelineSettings(BaseSettings):
    """Pipeline processing configuration"""

    # Concurrency
    max_concurrent_documents: int = Field(3, ge=1, le=32)
    tier_timeout_seconds: float = Field(240.0, ge=5, le=1800)

    # Similarity thresholds
    variant_similarity_threshold: float = Field(0.75, ge=0.5, le=1.0)
    vehicle_merge_threshold: float = Field(0.80, ge=0.5, le=1.0)

    # Document intake
    max_pdfs_per_page: int = Field(3, ge=0, le=20)
    min_batch_chars: int = Field(100, ge=0)

    # Feature flags
    enable_custom_extractor: bool = Field(True)
    enable_llm_document_tier: bool = Field(True)
    iterative_variant_clustering: bool = Field(False)

    @field_validator("vehicle_merge_threshold")
    @classmethod
    def validate_merge_threshold(cls, v, info):
        """Vehicle-level variant merging is never looser than plain dedup"""
        variant_threshold = info.data.get("variant_similarity_threshold", 0.75)
        if v < variant_threshold:
            raise ValueError(
                "Vehicle merge threshold must be at least the variant similarity threshold"
            )
        return v

    model_config = ConfigDict(env_prefix="PIPELINE_")


class MonitoringSettings(BaseSettings):
    """Logging and diagnostics configuration"""

    log_level: str = Field("INFO")
    log_format: str = Field("json")  # json, text
    attempt_log_size: int = Field(50, ge=1, le=10000)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format"""
        if v not in ["json", "text"]:
            raise ValueError('Log format must be "json" or "text"')
        return v

    model_config = ConfigDict(env_prefix="MONITORING_")


class ApplicationSettings(BaseSettings):
    """Main application configuration"""

    app_name: str = Field("Vehicle Catalog Reconciliation")
    app_version: str = Field("1.0.0")
    environment: str = Field("development")

    # Component settings
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    document_ai: DocumentAISettings = Field(default_factory=DocumentAISettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name"""
        valid_environments = ["development", "staging", "production"]
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of {valid_environments}")
        return v

    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment == "production"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> ApplicationSettings:
    """
    Get application settings with caching.
    Uses LRU cache to avoid re-reading environment on every call.
    """
    return ApplicationSettings()


def get_environment_info() -> dict:
    """Get current environment information for debugging"""
    settings = get_settings()

    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "environment": settings.environment,
        "claude_configured": settings.claude.configured,
        "claude_model": settings.claude.model,
        "document_ai_ocr_configured": settings.document_ai.ocr_configured,
        "document_ai_custom_configured": settings.document_ai.custom_extractor_configured,
        "document_ai_location": settings.document_ai.location,
        "pipeline": {
            "max_concurrent_documents": settings.pipeline.max_concurrent_documents,
            "variant_similarity_threshold": settings.pipeline.variant_similarity_threshold,
            "vehicle_merge_threshold": settings.pipeline.vehicle_merge_threshold,
            "custom_extractor_enabled": settings.pipeline.enable_custom_extractor,
            "iterative_variant_clustering": settings.pipeline.iterative_variant_clustering,
        },
        "log_level": settings.monitoring.log_level,
        "log_format": settings.monitoring.log_format,
    }


__all__ = [
    "ApplicationSettings",
    "ClaudeSettings",
    "DocumentAISettings",
    "MonitoringSettings",
    "PipelineSettings",
    "get_settings",
    "get_environment_info",
]
