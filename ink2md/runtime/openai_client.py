from __future__ import annotations

import os
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import quote

from dotenv import dotenv_values
from openai import APIConnectionError, APIStatusError, APITimeoutError
from openai import AsyncAzureOpenAI, AsyncOpenAI

from ink2md.core.cancellation import CancellationToken
from ink2md.core.config import REPO_ROOT, Settings
from ink2md.core.constants import REQUEST_TIMEOUT_SECONDS
from ink2md.core.errors import ConfigurationError, ProviderError
from ink2md.core.models import ProviderKind
from ink2md.runtime.parsers import extract_azure_output_text, extract_openai_output_text
from ink2md.runtime.rate_limiter import RateLimiter
from ink2md.runtime.request_pipeline import ProviderRequest, RequestPipeline, RequestPolicy, ResponseCache


class TranscriptionProvider(Protocol):
    kind: str

    async def transcribe_line(
        self, image_data_url: str, system_prompt: str, prompt: str, token: CancellationToken
    ) -> str: ...

    async def judge_line(
        self,
        image_data_url: str,
        system_prompt: str,
        prompt: str,
        candidate_a: str,
        candidate_b: str,
        token: CancellationToken,
    ) -> str: ...

    async def format_transcription(
        self, markdown: str, system_prompt: str, prompt: str, token: CancellationToken
    ) -> str: ...

    async def generate_title(self, markdown: str, prompt: str, token: CancellationToken) -> str: ...

    async def test_connection(self, token: CancellationToken) -> None: ...


def lookup_api_key_env(api_key_env: str | None) -> str | None:
    if not api_key_env:
        return None

    env_value = os.getenv(api_key_env)
    if env_value:
        return env_value

    env_path = REPO_ROOT / ".env"
    try:
        env_map = dotenv_values(env_path)
    except Exception:  # noqa: BLE001
        return None

    fallback = env_map.get(api_key_env)
    if isinstance(fallback, str) and fallback.strip():
        return fallback
    return None


def resolve_api_key(api_key: str | None, api_key_env: str | None) -> str:
    if api_key and api_key.strip():
        return api_key.strip()
    if api_key_env:
        env_value = lookup_api_key_env(api_key_env)
        if env_value:
            return env_value.strip()
    raise ConfigurationError(
        f"Missing API key. Set inline key or environment variable: {api_key_env or '<unset>'}"
    )


async def _call_sdk(provider: str, factory: Callable[[], Awaitable[Any]]) -> dict[str, Any]:
    """Run one SDK call and translate its failures into ``ProviderError``."""
    try:
        completion = await factory()
    except APIStatusError as exc:
        raise ProviderError(provider, exc.message, status=exc.status_code) from exc
    except APITimeoutError as exc:
        raise ProviderError(provider, "Request timed out.") from exc
    except APIConnectionError as exc:
        raise ProviderError(provider, "Network error while contacting provider.") from exc

    if hasattr(completion, "model_dump"):
        return completion.model_dump()
    return completion


def _text_part(text: str, kind: str) -> dict[str, Any]:
    return {"type": kind, "text": text}


class OpenAIResponsesProvider:
    """OpenAI backend on the Responses API."""

    kind = ProviderKind.OPENAI.value

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        pipeline: RequestPipeline,
        policy: RequestPolicy,
        base_url: str = "https://api.openai.com/v1",
        client: Any | None = None,
    ):
        self.api_key = api_key.strip()
        self.model = model.strip()
        self.base_url = base_url.rstrip("/")
        self.pipeline = pipeline
        self.policy = policy
        self.client = client or AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )

    @staticmethod
    def _user_input(*content: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"role": "user", "content": list(content)}]

    async def transcribe_line(
        self, image_data_url: str, system_prompt: str, prompt: str, token: CancellationToken
    ) -> str:
        body = {
            "model": self.model,
            "instructions": system_prompt,
            "input": self._user_input(
                _text_part(prompt, "input_text"),
                {"type": "input_image", "image_url": image_data_url},
            ),
        }
        return extract_openai_output_text(await self._request(body, token))

    async def judge_line(
        self,
        image_data_url: str,
        system_prompt: str,
        prompt: str,
        candidate_a: str,
        candidate_b: str,
        token: CancellationToken,
    ) -> str:
        body = {
            "model": self.model,
            "instructions": system_prompt,
            "input": self._user_input(
                _text_part(prompt, "input_text"),
                _text_part(f"Candidate A:\n{candidate_a}", "input_text"),
                _text_part(f"Candidate B:\n{candidate_b}", "input_text"),
                {"type": "input_image", "image_url": image_data_url},
            ),
        }
        return extract_openai_output_text(await self._request(body, token))

    async def format_transcription(
        self, markdown: str, system_prompt: str, prompt: str, token: CancellationToken
    ) -> str:
        body = {
            "model": self.model,
            "instructions": system_prompt,
            "input": self._user_input(
                _text_part(prompt, "input_text"),
                _text_part(markdown, "input_text"),
            ),
        }
        return extract_openai_output_text(await self._request(body, token))

    async def generate_title(self, markdown: str, prompt: str, token: CancellationToken) -> str:
        body = {
            "model": self.model,
            "instructions": prompt,
            "input": self._user_input(_text_part(markdown, "input_text")),
        }
        return extract_openai_output_text(await self._request(body, token))

    async def test_connection(self, token: CancellationToken) -> None:
        await self._request({"model": self.model, "input": "ping"}, token)

    async def _request(self, body: dict[str, Any], token: CancellationToken) -> Any:
        request = ProviderRequest(
            provider=self.kind,
            url=f"{self.base_url}/responses",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            body=body,
        )
        return await self.pipeline.call(
            request,
            lambda: _call_sdk(self.kind, lambda: self.client.responses.create(**body)),
            token,
            self.policy,
        )

    async def close(self) -> None:
        await self.client.close()


class AzureChatProvider:
    """Azure OpenAI backend on a chat-completions deployment."""

    kind = ProviderKind.AZURE.value

    def __init__(
        self,
        *,
        endpoint: str,
        deployment: str,
        api_version: str,
        api_key: str,
        pipeline: RequestPipeline,
        policy: RequestPolicy,
        client: Any | None = None,
    ):
        self.endpoint = endpoint.strip().rstrip("/")
        self.deployment = deployment.strip()
        self.api_version = api_version.strip()
        self.api_key = api_key.strip()
        self.pipeline = pipeline
        self.policy = policy
        self.client = client or AsyncAzureOpenAI(
            api_key=self.api_key,
            azure_endpoint=self.endpoint,
            api_version=self.api_version,
            timeout=REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )

    @property
    def url(self) -> str:
        deployment = quote(self.deployment, safe="")
        api_version = quote(self.api_version, safe="")
        return f"{self.endpoint}/openai/deployments/{deployment}/chat/completions?api-version={api_version}"

    @staticmethod
    def _image_part(image_data_url: str) -> dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": image_data_url}}

    async def transcribe_line(
        self, image_data_url: str, system_prompt: str, prompt: str, token: CancellationToken
    ) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": [_text_part(prompt, "text"), self._image_part(image_data_url)]},
        ]
        return extract_azure_output_text(await self._request(messages, token))

    async def judge_line(
        self,
        image_data_url: str,
        system_prompt: str,
        prompt: str,
        candidate_a: str,
        candidate_b: str,
        token: CancellationToken,
    ) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    _text_part(prompt, "text"),
                    _text_part(f"Candidate A:\n{candidate_a}", "text"),
                    _text_part(f"Candidate B:\n{candidate_b}", "text"),
                    self._image_part(image_data_url),
                ],
            },
        ]
        return extract_azure_output_text(await self._request(messages, token))

    async def format_transcription(
        self, markdown: str, system_prompt: str, prompt: str, token: CancellationToken
    ) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": [_text_part(prompt, "text"), _text_part(markdown, "text")]},
        ]
        return extract_azure_output_text(await self._request(messages, token))

    async def generate_title(self, markdown: str, prompt: str, token: CancellationToken) -> str:
        messages = [
            {"role": "system", "content": prompt},
            {"role": "user", "content": [_text_part(markdown, "text")]},
        ]
        return extract_azure_output_text(await self._request(messages, token))

    async def test_connection(self, token: CancellationToken) -> None:
        await self._request([{"role": "user", "content": "ping"}], token)

    async def _request(self, messages: list[dict[str, Any]], token: CancellationToken) -> Any:
        request = ProviderRequest(
            provider=self.kind,
            url=self.url,
            headers={"api-key": self.api_key, "Content-Type": "application/json"},
            body={"messages": messages},
        )
        return await self.pipeline.call(
            request,
            lambda: _call_sdk(
                self.kind,
                lambda: self.client.chat.completions.create(model=self.deployment, messages=messages),
            ),
            token,
            self.policy,
        )

    async def close(self) -> None:
        await self.client.close()


def build_request_policy(settings: Settings) -> RequestPolicy:
    return RequestPolicy(
        max_attempts=settings.http_max_attempts,
        rate_limiter=RateLimiter(settings.max_requests_per_second),
        use_cache=settings.enable_response_cache,
        cache_ttl_seconds=settings.response_cache_ttl_seconds,
    )


def create_provider(settings: Settings, pipeline: RequestPipeline | None = None) -> TranscriptionProvider:
    """Build the backend selected by ``settings.provider`` with its own rate limiter."""
    if pipeline is None:
        pipeline = RequestPipeline(
            ResponseCache(
                max_entries=settings.response_cache_max_entries,
                max_bytes=settings.response_cache_max_bytes,
            )
        )
    policy = build_request_policy(settings)

    if settings.provider == ProviderKind.OPENAI:
        return OpenAIResponsesProvider(
            api_key=resolve_api_key(settings.openai_api_key, settings.openai_api_key_env),
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            pipeline=pipeline,
            policy=policy,
        )

    return AzureChatProvider(
        endpoint=settings.azure_endpoint,
        deployment=settings.azure_deployment,
        api_version=settings.azure_api_version,
        api_key=resolve_api_key(settings.azure_api_key, settings.azure_api_key_env),
        pipeline=pipeline,
        policy=policy,
    )
