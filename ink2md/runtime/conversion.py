from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable

from ink2md.core.cancellation import CancellationToken
from ink2md.core.config import Settings, validate_settings
from ink2md.core.errors import ConfigurationError, ImageSourceError, to_app_error
from ink2md.core.logging_config import get_logger
from ink2md.core.markdown_utils import append_at_end, find_image_embeds, insert_below_frontmatter
from ink2md.core.models import ConversionResult, as_path
from ink2md.core.page_sources import expand_image_inputs, load_pages, resolve_embed_path
from ink2md.core.text_utils import normalize_title, sanitize_title
from ink2md.runtime.memory_monitor import MemoryMonitor
from ink2md.runtime.openai_client import TranscriptionProvider, create_provider
from ink2md.runtime.request_pipeline import RequestPipeline, ResponseCache
from ink2md.runtime.segmentation import LineSegmenter
from ink2md.runtime.transcription import PageTranscriber, run_bounded, transcribe_page_with_recovery


logger = get_logger(__name__)

ProgressFn = Callable[[int, int, float | None], None]


def estimate_seconds_remaining(started_at: float, completed: int, total: int, now: float | None = None) -> float | None:
    if completed <= 0 or total <= completed:
        return None
    elapsed = (time.monotonic() if now is None else now) - started_at
    return (elapsed / completed) * (total - completed)


def build_available_note_path(note_path: Path, title: str) -> Path:
    """``Title.md`` beside the note, or ``Title N.md`` when that name is taken."""
    safe_title = sanitize_title(title) or "Untitled"
    candidate = note_path.with_name(f"{safe_title}.md")
    if candidate == note_path or not candidate.exists():
        return candidate

    counter = 1
    while True:
        candidate = note_path.with_name(f"{safe_title} {counter}.md")
        if not candidate.exists():
            return candidate
        counter += 1


def _available_attachment_path(folder: Path, name: str) -> Path:
    candidate = folder / name
    counter = 1
    while candidate.exists():
        candidate = folder / f"{Path(name).stem} {counter}{Path(name).suffix}"
        counter += 1
    return candidate


class NoteConverter:
    def __init__(
        self,
        settings: Settings,
        provider: TranscriptionProvider | None = None,
        segmenter: LineSegmenter | None = None,
    ):
        self.settings = settings
        self.pipeline = RequestPipeline(
            ResponseCache(
                max_entries=settings.response_cache_max_entries,
                max_bytes=settings.response_cache_max_bytes,
            )
        )
        self.segmenter = segmenter or LineSegmenter.from_settings(settings)
        self._provider = provider
        self._transcriber: PageTranscriber | None = None

    @property
    def provider(self) -> TranscriptionProvider:
        if self._provider is None:
            self._provider = create_provider(self.settings, pipeline=self.pipeline)
        return self._provider

    @property
    def transcriber(self) -> PageTranscriber:
        if self._transcriber is None:
            self._transcriber = PageTranscriber(
                self.provider,
                self.segmenter,
                max_line_retries=self.settings.max_line_retries,
            )
        return self._transcriber

    def _require_valid_settings(self) -> None:
        config_error = validate_settings(self.settings)
        if config_error:
            raise ConfigurationError(config_error)

    def _record_error(self, error: BaseException, message: str) -> None:
        app_error = to_app_error(error)
        logger.error(
            "%s: code=%s recoverable=%s detail=%s",
            message,
            app_error.code,
            app_error.recoverable,
            app_error.message,
        )

    async def convert_pages(
        self,
        pages: list[bytes],
        token: CancellationToken,
        on_progress: ProgressFn | None = None,
        monitor: MemoryMonitor | None = None,
    ) -> str:
        """Transcribe every page with bounded concurrency and join them in input order."""
        total = len(pages)
        started_at = time.monotonic()
        completed = 0
        prompts = self.settings.prompts()

        def page_task(index: int, page_image: bytes) -> Callable[[], Awaitable[str]]:
            async def run() -> str:
                nonlocal completed
                token.raise_if_cancelled()
                logger.info("Processing page %s of %s", index + 1, total)

                markdown = await transcribe_page_with_recovery(
                    self.transcriber,
                    page_image,
                    prompts,
                    token,
                    max_page_retries=self.settings.max_page_retries,
                    on_line_progress=lambda done, lines: logger.debug(
                        "Page %s/%s: line %s/%s", index + 1, total, done, lines
                    ),
                    on_segmentation_progress=lambda phase, fraction: logger.debug(
                        "Page %s/%s: %s (%s%%)", index + 1, total, phase, round(fraction * 100)
                    ),
                )
                if not markdown.strip():
                    logger.warning("Page %s of %s produced empty output", index + 1, total)

                completed += 1
                if monitor is not None:
                    monitor.sample(f"after-page-{index + 1}")
                if on_progress is not None:
                    on_progress(completed, total, estimate_seconds_remaining(started_at, completed, total))
                return markdown

            return run

        tasks = [page_task(index, page) for index, page in enumerate(pages)]
        page_markdown = await run_bounded(tasks, self.settings.max_concurrency, token)
        token.raise_if_cancelled()
        return "\n\n".join(page_markdown)

    async def _run_conversion(
        self,
        sources: list[Path],
        token: CancellationToken,
        on_progress: ProgressFn | None = None,
    ) -> tuple[str, int]:
        monitor = MemoryMonitor(
            sample_interval_seconds=self.settings.memory_sample_interval_seconds,
            leak_warn_bytes=self.settings.memory_leak_warn_bytes,
        )
        monitor.start("conversion")
        try:
            pages: list[bytes] = []
            for source in sources:
                pages.extend(await asyncio.to_thread(load_pages, source))
            markdown = await self.convert_pages(pages, token, on_progress=on_progress, monitor=monitor)
            token.raise_if_cancelled()
            return markdown.strip(), len(pages)
        except Exception as exc:
            token.cancel()
            self._record_error(exc, "Conversion failed")
            raise
        finally:
            report = monitor.stop()
            if report is not None and report.leak_suspected:
                self.clear_caches()
                logger.warning(
                    "Memory growth threshold exceeded; caches cleared (growth=%s bytes, %.2f%%)",
                    report.growth_bytes,
                    report.growth_percent,
                )

    async def convert_note(
        self,
        note_path: str | Path,
        token: CancellationToken,
        *,
        auto_title: bool = False,
        on_progress: ProgressFn | None = None,
    ) -> ConversionResult | None:
        """Transcribe a note's embedded images and insert the text below its frontmatter.

        The note is written only when every page succeeds and the output is non-empty.
        """
        path = as_path(note_path).expanduser().resolve()
        note_text = path.read_text(encoding="utf-8")
        embeds = find_image_embeds(note_text)
        if not embeds:
            logger.warning("No embedded images found in %s", path)
            return None

        self._require_valid_settings()
        sources = [resolve_embed_path(path, linkpath) for linkpath in embeds]

        combined, page_count = await self._run_conversion(sources, token, on_progress=on_progress)
        if not combined:
            logger.warning("Conversion produced empty transcription for %s (%s images)", path, len(embeds))
            return None

        token.raise_if_cancelled()
        path.write_text(insert_below_frontmatter(note_text, combined), encoding="utf-8")
        logger.info("Inserted transcription into %s", path)
        result = ConversionResult(markdown=combined, page_count=page_count, note_path=str(path))

        if auto_title:
            title_token = CancellationToken()
            try:
                title = await self.generate_title(combined, title_token)
            except Exception as exc:  # noqa: BLE001
                title_token.cancel()
                self._record_error(exc, "Title generation failed")
                return result
            if title:
                renamed = self.apply_title(path, title)
                result = result.model_copy(update={"title": title, "note_path": str(renamed)})
            else:
                logger.warning("Title generation returned an empty title")
        return result

    async def convert_images(
        self,
        paths: list[str | Path],
        token: CancellationToken,
        on_progress: ProgressFn | None = None,
    ) -> ConversionResult:
        sources: list[Path] = []
        for raw in paths:
            path = as_path(raw).expanduser().resolve()
            expanded = expand_image_inputs(path)
            if not expanded:
                raise ImageSourceError(f"No images or PDFs found at: {path}")
            sources.extend(expanded)

        self._require_valid_settings()
        combined, page_count = await self._run_conversion(sources, token, on_progress=on_progress)
        if not combined:
            logger.warning("Conversion produced empty transcription (%s pages)", page_count)
        return ConversionResult(markdown=combined, page_count=page_count)

    async def generate_title(self, markdown: str, token: CancellationToken) -> str:
        self._require_valid_settings()
        raw_title = await self.provider.generate_title(markdown, self.settings.title_prompt, token)
        return normalize_title(raw_title)

    def apply_title(self, note_path: str | Path, title: str) -> Path:
        path = as_path(note_path)
        target = build_available_note_path(path, title)
        if target == path:
            return path
        path.rename(target)
        logger.info("Renamed note to %s", target.name)
        return target

    def embed_images(self, note_path: str | Path, images: list[str | Path]) -> list[str]:
        """Copy images beside the note and append a ``![[name]]`` embed for each."""
        path = as_path(note_path)
        note_text = path.read_text(encoding="utf-8") if path.exists() else ""
        embeds: list[str] = []
        for raw in images:
            image = as_path(raw).expanduser().resolve()
            if not image.is_file():
                raise ImageSourceError(f"Image not found: {image}")
            if image.parent != path.parent.resolve():
                target = _available_attachment_path(path.parent, image.name)
                shutil.copy2(image, target)
                image = target
            embed = f"![[{image.name}]]"
            note_text = append_at_end(note_text, embed)
            embeds.append(embed)
        path.write_text(note_text, encoding="utf-8")
        return embeds

    async def test_connection(self, token: CancellationToken) -> None:
        self._require_valid_settings()
        try:
            await self.provider.test_connection(token)
        except Exception as exc:
            self._record_error(exc, "Connection test failed")
            raise
        logger.info("Connection successful")

    def clear_caches(self) -> None:
        self.segmenter.clear_cache()
        self.pipeline.clear_cache()
        logger.info("Cleared segmentation and response caches")

    async def close(self) -> None:
        self.segmenter.close()
        close = getattr(self._provider, "close", None)
        if close is not None:
            await close()
