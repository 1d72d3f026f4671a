from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ink2md.core.models import Prompts, ProviderKind
from ink2md.core.prompts import (
    DEFAULT_CLEANUP_PROMPT,
    DEFAULT_EXTRACTION_PROMPT,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TITLE_PROMPT,
)


REPO_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )

    provider: ProviderKind = Field(default=ProviderKind.OPENAI, alias="INK2MD_PROVIDER")

    openai_api_key: str | None = Field(default=None, alias="INK2MD_OPENAI_API_KEY")
    openai_api_key_env: str = Field(default="OPENAI_API_KEY", alias="INK2MD_OPENAI_API_KEY_ENV")
    openai_model: str = Field(default="gpt-5.2", alias="INK2MD_OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="INK2MD_OPENAI_BASE_URL")

    azure_endpoint: str = Field(default="", alias="INK2MD_AZURE_ENDPOINT")
    azure_deployment: str = Field(default="", alias="INK2MD_AZURE_DEPLOYMENT")
    azure_api_version: str = Field(default="", alias="INK2MD_AZURE_API_VERSION")
    azure_api_key: str | None = Field(default=None, alias="INK2MD_AZURE_API_KEY")
    azure_api_key_env: str = Field(default="AZURE_OPENAI_API_KEY", alias="INK2MD_AZURE_API_KEY_ENV")

    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="INK2MD_SYSTEM_PROMPT")
    extraction_prompt: str = Field(default=DEFAULT_EXTRACTION_PROMPT, alias="INK2MD_EXTRACTION_PROMPT")
    cleanup_prompt: str = Field(default=DEFAULT_CLEANUP_PROMPT, alias="INK2MD_CLEANUP_PROMPT")
    title_prompt: str = Field(default=DEFAULT_TITLE_PROMPT, alias="INK2MD_TITLE_PROMPT")

    max_concurrency: int = Field(default=3, ge=1, le=8, alias="INK2MD_MAX_CONCURRENCY")
    max_requests_per_second: int = Field(default=3, ge=1, le=20, alias="INK2MD_MAX_REQUESTS_PER_SECOND")
    http_max_attempts: int = Field(default=2, ge=1, le=6, alias="INK2MD_HTTP_MAX_ATTEMPTS")
    max_line_retries: int = Field(default=1, ge=0, le=4, alias="INK2MD_MAX_LINE_RETRIES")
    max_page_retries: int = Field(default=1, ge=0, le=3, alias="INK2MD_MAX_PAGE_RETRIES")

    segmentation_cache_size: int = Field(default=20, ge=0, le=100, alias="INK2MD_SEGMENTATION_CACHE_SIZE")
    max_image_dimension: int = Field(default=2400, ge=600, le=5000, alias="INK2MD_MAX_IMAGE_DIMENSION")
    image_export_format: Literal["png", "jpeg"] = Field(default="png", alias="INK2MD_IMAGE_EXPORT_FORMAT")
    image_jpeg_quality: float = Field(default=0.9, ge=0.2, le=1.0, alias="INK2MD_IMAGE_JPEG_QUALITY")
    enable_worker_segmentation: bool = Field(default=True, alias="INK2MD_ENABLE_WORKER_SEGMENTATION")

    enable_response_cache: bool = Field(default=True, alias="INK2MD_ENABLE_RESPONSE_CACHE")
    response_cache_ttl_seconds: float = Field(default=600.0, ge=10.0, le=86_400.0, alias="INK2MD_RESPONSE_CACHE_TTL_SECONDS")
    response_cache_max_entries: int = Field(default=200, ge=10, le=2000, alias="INK2MD_RESPONSE_CACHE_MAX_ENTRIES")
    response_cache_max_bytes_mb: int = Field(default=100, ge=10, le=1024, alias="INK2MD_RESPONSE_CACHE_MAX_BYTES_MB")

    memory_sample_interval_seconds: float = Field(default=2.0, ge=0.5, le=60.0, alias="INK2MD_MEMORY_SAMPLE_INTERVAL_SECONDS")
    memory_leak_warn_mb: int = Field(default=64, ge=16, le=2048, alias="INK2MD_MEMORY_LEAK_WARN_MB")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", alias="INK2MD_LOG_LEVEL")
    log_file: str | None = Field(default=None, alias="INK2MD_LOG_FILE")

    @property
    def response_cache_max_bytes(self) -> int:
        return self.response_cache_max_bytes_mb * 1024 * 1024

    @property
    def memory_leak_warn_bytes(self) -> int:
        return self.memory_leak_warn_mb * 1024 * 1024

    def prompts(self) -> Prompts:
        return Prompts(
            system_prompt=self.system_prompt,
            extraction_prompt=self.extraction_prompt,
            cleanup_prompt=self.cleanup_prompt,
        )


def validate_settings(settings: Settings) -> str | None:
    """Return a user-facing message when provider settings are incomplete."""
    from ink2md.runtime.openai_client import lookup_api_key_env

    if settings.provider == ProviderKind.OPENAI:
        if not (settings.openai_api_key or "").strip() and not lookup_api_key_env(settings.openai_api_key_env):
            return "Missing OpenAI API key."
        if not settings.openai_model.strip():
            return "Missing OpenAI model selection."
        return None

    if not settings.azure_endpoint.strip():
        return "Missing Azure endpoint."
    if not settings.azure_deployment.strip():
        return "Missing Azure deployment name."
    if not settings.azure_api_version.strip():
        return "Missing Azure API version."
    if not (settings.azure_api_key or "").strip() and not lookup_api_key_env(settings.azure_api_key_env):
        return "Missing Azure API key."
    return None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
