from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class ProviderKind(str, Enum):
    OPENAI = "openai"
    AZURE = "azure"


class Prompts(BaseModel):
    system_prompt: str
    extraction_prompt: str
    cleanup_prompt: str


@dataclass(frozen=True)
class LineSlice:
    """A full-width horizontal band of a page presumed to hold one text line."""

    image: bytes
    mime_type: str
    top: int
    bottom: int

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def data_url(self) -> str:
        encoded = base64.b64encode(self.image).decode("utf-8")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class LineTranscription:
    text: str
    confidence: float
    unresolved: bool


class ConversionResult(BaseModel):
    markdown: str
    page_count: int = Field(ge=0)
    note_path: str | None = None
    title: str | None = None


class MemoryReport(BaseModel):
    label: str
    sample_count: int
    duration_seconds: float
    start_rss: int
    end_rss: int
    peak_rss: int
    growth_bytes: int
    growth_percent: float
    leak_suspected: bool


def as_path(value: str | Path) -> Path:
    if isinstance(value, Path):
        return value
    return Path(value)
