from ink2md.core.errors import (
    ConversionCancelled,
    ProviderError,
    ProviderResponseError,
    format_error,
    is_azure_max_tokens_error,
    is_recoverable_error,
    to_app_error,
)


def test_rate_limit_and_server_errors_are_recoverable() -> None:
    assert is_recoverable_error(ProviderError("openai", "slow down", status=429))
    assert is_recoverable_error(ProviderError("openai", "bad gateway", status=502))
    assert is_recoverable_error(ProviderError("azure", "Request timed out."))


def test_client_errors_are_not_recoverable() -> None:
    assert not is_recoverable_error(ProviderError("openai", "bad request", status=400))
    assert not is_recoverable_error(ProviderError("azure", "unauthorized", status=401))


def test_azure_max_tokens_400_is_recoverable() -> None:
    higher = ProviderError("azure", "Please use a higher max_tokens value.", status=400)
    unfinished = ProviderError("azure", "Could not finish the message because max_tokens was reached.", status=400)
    unrelated = ProviderError("azure", "max_tokens is invalid", status=400)
    openai = ProviderError("openai", "Please use a higher max_tokens value.", status=400)

    assert is_azure_max_tokens_error(higher)
    assert is_azure_max_tokens_error(unfinished)
    assert not is_azure_max_tokens_error(unrelated)
    assert not is_azure_max_tokens_error(openai)
    assert is_recoverable_error(higher)
    assert not is_recoverable_error(openai)


def test_to_app_error_codes() -> None:
    cancelled = to_app_error(ConversionCancelled())
    assert cancelled.code == "CANCELLED"
    assert cancelled.recoverable is True

    provider = to_app_error(ProviderError("openai", "slow down", status=429))
    assert provider.code == "PROVIDER_ERROR"
    assert provider.details == {"provider": "openai", "status": 429}

    unexpected = to_app_error(ValueError("boom"))
    assert unexpected.code == "UNEXPECTED_ERROR"
    assert unexpected.recoverable is False
    assert unexpected.details == {"name": "ValueError"}


def test_missing_output_text_is_not_retried() -> None:
    error = ProviderResponseError("openai", "OpenAI response did not include output text.")
    assert to_app_error(error).code == "UNEXPECTED_ERROR"
    assert not is_recoverable_error(error)


def test_format_error_labels_provider_and_status() -> None:
    assert format_error(ProviderError("openai", "slow down", status=429)) == "OpenAI error (HTTP 429): slow down"
    assert format_error(ProviderError("azure", "Network error while contacting provider.")) == (
        "Azure OpenAI error: Network error while contacting provider."
    )
    assert format_error(RuntimeError("")) == "Unexpected error."
