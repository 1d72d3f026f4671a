from __future__ import annotations

from typing import Any

from ink2md.core.errors import ProviderResponseError


OPENAI_NO_OUTPUT = "OpenAI response did not include output text."
AZURE_NO_OUTPUT = "Azure response did not include output text."


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_openai_output_text(response: Any) -> str:
    data = _as_dict(response)
    output_text = data.get("output_text")
    if isinstance(output_text, str):
        return output_text

    output = data.get("output")
    if not isinstance(output, list):
        raise ProviderResponseError("openai", OPENAI_NO_OUTPUT)

    chunks: list[str] = []
    for item in output:
        message = _as_dict(item)
        content = message.get("content")
        if message.get("type") != "message" or not isinstance(content, list):
            continue
        for part in content:
            block = _as_dict(part)
            if block.get("type") == "output_text" and isinstance(block.get("text"), str):
                chunks.append(block["text"])

    text = "".join(chunks)
    if not text:
        raise ProviderResponseError("openai", OPENAI_NO_OUTPUT)
    return text


def extract_azure_output_text(response: Any) -> str:
    choices = _as_dict(response).get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderResponseError("azure", AZURE_NO_OUTPUT)

    message = _as_dict(_as_dict(choices[0]).get("message"))
    content = message.get("content")
    if not isinstance(content, str):
        raise ProviderResponseError("azure", AZURE_NO_OUTPUT)
    return content
