from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


PROVIDER_LABELS = {"openai": "OpenAI", "azure": "Azure OpenAI"}

_MAX_TOKENS_PATTERN = re.compile(r"(^|[^a-z])max[_\s-]?tokens?([^a-z]|$)", re.IGNORECASE)
_MAX_TOKENS_HINT_PATTERN = re.compile(r"higher|increase|could not finish|ran out|too low", re.IGNORECASE)


class ConversionCancelled(Exception):
    def __init__(self, message: str = "Conversion cancelled.") -> None:
        super().__init__(message)


class ProviderError(Exception):
    """Failure reported by (or while reaching) a model provider.

    ``status`` carries the HTTP status when the provider answered; it is ``None``
    for network failures and timeouts.
    """

    def __init__(self, provider: str, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status = status


class ProviderResponseError(Exception):
    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider


class ImageSourceError(Exception):
    pass


class ConfigurationError(Exception):
    pass


class AppError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    recoverable: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


def is_retryable_status(status: int | None) -> bool:
    if not status:
        return True
    return status == 429 or status >= 500


def is_azure_max_tokens_error(error: BaseException) -> bool:
    if not isinstance(error, ProviderError):
        return False
    if error.provider != "azure" or error.status != 400:
        return False

    message = error.message.lower()
    if not _MAX_TOKENS_PATTERN.search(message):
        return False
    return bool(_MAX_TOKENS_HINT_PATTERN.search(message))


def _format_provider_error(error: ProviderError) -> str:
    status = f" (HTTP {error.status})" if error.status else ""
    label = PROVIDER_LABELS.get(error.provider, error.provider)
    return f"{label} error{status}: {error.message}"


def to_app_error(error: BaseException) -> AppError:
    if isinstance(error, ConversionCancelled):
        return AppError(code="CANCELLED", message="Conversion cancelled.", recoverable=True)

    if isinstance(error, ProviderError):
        recoverable = is_retryable_status(error.status) or is_azure_max_tokens_error(error)
        return AppError(
            code="PROVIDER_ERROR",
            message=_format_provider_error(error),
            details={"provider": error.provider, "status": error.status},
            recoverable=recoverable,
        )

    return AppError(
        code="UNEXPECTED_ERROR",
        message=str(error) or "Unexpected error.",
        details={"name": type(error).__name__},
        recoverable=False,
    )


def format_error(error: BaseException) -> str:
    return to_app_error(error).message


def is_recoverable_error(error: BaseException) -> bool:
    return to_app_error(error).recoverable
