from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from ink2md.core.cancellation import CancellationToken
from ink2md.core.constants import (
    LINE_CONSENSUS_SIMILARITY,
    LINE_RETRY_BACKOFF_SECONDS,
    PAGE_RETRY_BACKOFF_SECONDS,
)
from ink2md.core.errors import ConversionCancelled, is_recoverable_error
from ink2md.core.logging_config import get_logger
from ink2md.core.models import LineSlice, LineTranscription, Prompts
from ink2md.core.prompts import (
    FINAL_FORMAT_PROMPT,
    LINE_JUDGE_PROMPT,
    LINE_TRANSCRIPTION_PROMPT_A,
    LINE_TRANSCRIPTION_PROMPT_B,
    build_line_prompt,
)
from ink2md.core.text_utils import (
    has_illegible_token,
    line_similarity,
    normalize_line_output,
    normalize_multiline_output,
    pick_better_line,
    preserves_word_sequence,
)
from ink2md.runtime.openai_client import TranscriptionProvider
from ink2md.runtime.segmentation import LineSegmenter, ProgressFn


logger = get_logger(__name__)

T = TypeVar("T")

LineProgressFn = Callable[[int, int], None]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    token: CancellationToken | None = None,
    backoff_seconds: float = LINE_RETRY_BACKOFF_SECONDS,
) -> T:
    """Run ``operation`` up to ``max_retries + 1`` times while failures stay recoverable."""
    attempts = max(0, max_retries) + 1
    for attempt in range(attempts):
        try:
            return await operation()
        except ConversionCancelled:
            raise
        except Exception as exc:
            if attempt + 1 >= attempts or not is_recoverable_error(exc):
                raise
            if token is not None and token.cancelled:
                raise
            await asyncio.sleep(backoff_seconds * (attempt + 1))

    raise RuntimeError("Retry loop exited without a result")


class LineConsensusResolver:
    """Two independent transcriptions per line, arbitrated by a judge call when they disagree."""

    def __init__(
        self,
        provider: TranscriptionProvider,
        *,
        max_line_retries: int = 1,
        consensus_similarity: float = LINE_CONSENSUS_SIMILARITY,
        retry_backoff_seconds: float = LINE_RETRY_BACKOFF_SECONDS,
    ):
        self.provider = provider
        self.max_line_retries = max_line_retries
        self.consensus_similarity = consensus_similarity
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _retrying(self, operation: Callable[[], Awaitable[str]], token: CancellationToken) -> str:
        return await with_retry(operation, self.max_line_retries, token, self.retry_backoff_seconds)

    async def resolve_line(
        self,
        line_slice: LineSlice,
        system_prompt: str,
        extraction_prompt: str,
        token: CancellationToken,
    ) -> LineTranscription:
        image_url = line_slice.data_url()
        prompt_a = build_line_prompt(extraction_prompt, LINE_TRANSCRIPTION_PROMPT_A)
        prompt_b = build_line_prompt(extraction_prompt, LINE_TRANSCRIPTION_PROMPT_B)

        candidate_a = normalize_line_output(
            await self._retrying(
                lambda: self.provider.transcribe_line(image_url, system_prompt, prompt_a, token), token
            )
        )
        candidate_b = normalize_line_output(
            await self._retrying(
                lambda: self.provider.transcribe_line(image_url, system_prompt, prompt_b, token), token
            )
        )

        similarity = line_similarity(candidate_a, candidate_b)
        if similarity >= self.consensus_similarity:
            chosen = pick_better_line(candidate_a, candidate_b)
            confidence = similarity
        else:
            chosen = normalize_line_output(
                await self._retrying(
                    lambda: self.provider.judge_line(
                        image_url,
                        system_prompt,
                        LINE_JUDGE_PROMPT,
                        candidate_a,
                        candidate_b,
                        token,
                    ),
                    token,
                )
            )
            if not chosen:
                chosen = pick_better_line(candidate_a, candidate_b)
            confidence = max(
                similarity,
                line_similarity(chosen, candidate_a),
                line_similarity(chosen, candidate_b),
            )

        return LineTranscription(text=chosen, confidence=confidence, unresolved=has_illegible_token(chosen))


class PageTranscriber:
    def __init__(
        self,
        provider: TranscriptionProvider,
        segmenter: LineSegmenter,
        *,
        max_line_retries: int = 1,
        resolver: LineConsensusResolver | None = None,
        retry_backoff_seconds: float = LINE_RETRY_BACKOFF_SECONDS,
    ):
        self.provider = provider
        self.segmenter = segmenter
        self.max_line_retries = max_line_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.resolver = resolver or LineConsensusResolver(
            provider,
            max_line_retries=max_line_retries,
            retry_backoff_seconds=retry_backoff_seconds,
        )

    async def transcribe_page(
        self,
        page_image: bytes,
        prompts: Prompts,
        token: CancellationToken,
        on_line_progress: LineProgressFn | None = None,
        on_segmentation_progress: ProgressFn | None = None,
    ) -> str:
        slices = await self.segmenter.segment(page_image, on_progress=on_segmentation_progress)
        total = len(slices)

        lines: list[LineTranscription] = []
        for completed, line_slice in enumerate(slices, start=1):
            token.raise_if_cancelled()
            line = await self.resolver.resolve_line(
                line_slice,
                prompts.system_prompt,
                prompts.extraction_prompt,
                token,
            )
            if line.text:
                lines.append(line)
            if on_line_progress is not None:
                on_line_progress(completed, total)

        raw_page = "\n".join(line.text for line in lines).rstrip()
        if not raw_page:
            return ""

        formatting_prompt = build_line_prompt(prompts.cleanup_prompt, FINAL_FORMAT_PROMPT)
        formatted = normalize_multiline_output(
            await with_retry(
                lambda: self.provider.format_transcription(
                    raw_page, prompts.system_prompt, formatting_prompt, token
                ),
                self.max_line_retries,
                token,
                self.retry_backoff_seconds,
            )
        )
        if not formatted:
            return raw_page
        if not preserves_word_sequence(raw_page, formatted):
            logger.debug("Rejected reformatted page that changed the word sequence")
            return raw_page
        return formatted


async def transcribe_page_with_recovery(
    transcriber: PageTranscriber,
    page_image: bytes,
    prompts: Prompts,
    token: CancellationToken,
    *,
    max_page_retries: int = 1,
    on_line_progress: LineProgressFn | None = None,
    on_segmentation_progress: ProgressFn | None = None,
    backoff_seconds: float = PAGE_RETRY_BACKOFF_SECONDS,
) -> str:
    attempts = max(0, max_page_retries) + 1
    for attempt in range(attempts):
        try:
            return await transcriber.transcribe_page(
                page_image,
                prompts,
                token,
                on_line_progress=on_line_progress,
                on_segmentation_progress=on_segmentation_progress,
            )
        except ConversionCancelled:
            raise
        except Exception as exc:
            if attempt + 1 >= attempts or not is_recoverable_error(exc) or token.cancelled:
                raise
            logger.warning(
                "Retrying page transcription (attempt %s/%s): %s",
                attempt + 1,
                max_page_retries,
                exc,
            )
            await asyncio.sleep(backoff_seconds * (attempt + 1))

    raise RuntimeError("Page retry loop exited without a result")


async def run_bounded(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
    token: CancellationToken,
) -> list[T]:
    """Run task factories with at most ``limit`` in flight; results keep input order.

    The first failure cancels ``token`` and every task still running, then propagates.
    """
    token.raise_if_cancelled()
    limit = max(1, int(limit))

    results: list[Any] = [None] * len(tasks)
    pending: dict[asyncio.Future[T], int] = {}
    next_index = 0

    try:
        while next_index < len(tasks) or pending:
            while next_index < len(tasks) and len(pending) < limit:
                token.raise_if_cancelled()
                pending[asyncio.ensure_future(tasks[next_index]())] = next_index
                next_index += 1

            done, _ = await asyncio.wait(pending.keys(), return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                results[pending[future]] = future.result()
                del pending[future]
    except BaseException:
        token.cancel()
        raise
    finally:
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    return results
