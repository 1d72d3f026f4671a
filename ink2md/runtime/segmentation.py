from __future__ import annotations

import asyncio
import hashlib
from collections import OrderedDict
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from io import BytesIO
from typing import Callable, Literal, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ink2md.core.config import Settings
from ink2md.core.constants import (
    LINE_BRIGHTNESS_THRESHOLD,
    LINE_MERGE_GAP_PX,
    LINE_MIN_HEIGHT_PX,
    LINE_MIN_INK_PIXELS_FLOOR,
    LINE_MIN_INK_PIXELS_RATIO,
    LINE_VERTICAL_PADDING_PX,
)
from ink2md.core.errors import ImageSourceError
from ink2md.core.logging_config import get_logger
from ink2md.core.models import LineSlice


logger = get_logger(__name__)

ProgressFn = Callable[[str, float], None]
Span = tuple[int, int]

MIN_MAX_IMAGE_DIMENSION = 600


def row_ink_counts(pixels: np.ndarray, brightness_threshold: int = LINE_BRIGHTNESS_THRESHOLD) -> np.ndarray:
    """Count dark pixels per row of an ``(height, width, 3)`` RGB array."""
    rgb = pixels.astype(np.float64)
    luminance = 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]
    return np.count_nonzero(luminance <= brightness_threshold, axis=1).astype(np.int64)


def smooth_row_ink(rows: np.ndarray) -> np.ndarray:
    smoothed = np.array(rows, dtype=np.int64, copy=True)
    if len(smoothed) <= 2:
        return smoothed
    window = rows[:-2] + rows[1:-1] + rows[2:]
    # Thirds never land on .5, so this matches round-half-up.
    smoothed[1:-1] = (window + 1) // 3
    return smoothed


def merge_nearby_spans(spans: list[Span], gap: int = LINE_MERGE_GAP_PX) -> list[Span]:
    merged: list[Span] = []
    for start, end in spans:
        if merged and start - merged[-1][1] <= gap:
            last_start, last_end = merged[-1]
            merged[-1] = (last_start, max(last_end, end))
            continue
        merged.append((start, end))
    return merged


def find_ink_spans(
    rows: np.ndarray,
    width: int,
    min_ink_ratio: float = LINE_MIN_INK_PIXELS_RATIO,
    merge_gap: int = LINE_MERGE_GAP_PX,
    min_height: int = LINE_MIN_HEIGHT_PX,
) -> list[Span]:
    min_ink_pixels = max(LINE_MIN_INK_PIXELS_FLOOR, int(width * min_ink_ratio))
    spans: list[Span] = []
    start = -1
    for y, count in enumerate(rows):
        has_ink = count >= min_ink_pixels
        if has_ink and start == -1:
            start = y
        elif not has_ink and start != -1:
            spans.append((start, y))
            start = -1
    if start != -1:
        spans.append((start, len(rows)))

    return [(s, e) for s, e in merge_nearby_spans(spans, merge_gap) if e - s >= min_height]


def detect_ink_spans(pixels: np.ndarray) -> list[Span]:
    """Full span detection over an RGB array. Runs in worker processes too."""
    height, width = pixels.shape[:2]
    if height == 0 or width == 0:
        return []
    return find_ink_spans(smooth_row_ink(row_ink_counts(pixels)), width)


class SpanDetector(Protocol):
    async def detect(self, pixels: np.ndarray) -> list[Span]: ...

    def close(self) -> None: ...


class InlineSpanDetector:
    async def detect(self, pixels: np.ndarray) -> list[Span]:
        return detect_ink_spans(pixels)

    def close(self) -> None:
        return None


class ProcessPoolSpanDetector:
    """Span detection in a separate worker process, falling back to inline on failure.

    A failed call never shuts down the shared pool; only a broken pool is replaced.
    """

    def __init__(self, max_workers: int = 1):
        self.max_workers = max_workers
        self._executor: ProcessPoolExecutor | None = None

    def _get_executor(self) -> ProcessPoolExecutor:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
        return self._executor

    def _discard(self, executor: ProcessPoolExecutor) -> None:
        if self._executor is executor:
            self._executor = None
        executor.shutdown(wait=False)

    async def detect(self, pixels: np.ndarray) -> list[Span]:
        loop = asyncio.get_running_loop()
        executor = self._get_executor()
        try:
            return await loop.run_in_executor(executor, detect_ink_spans, pixels)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # The pool dropped the queued work (closed while we waited).
            logger.warning("Worker span detection was cancelled, detecting inline")
        except BrokenProcessPool as exc:
            logger.warning("Worker pool broke, detecting inline: %s", exc)
            self._discard(executor)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Worker span detection failed, detecting inline: %s", exc)
        return detect_ink_spans(pixels)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


def _decode(page_image: bytes, max_image_dimension: int) -> Image.Image:
    if not page_image:
        raise ImageSourceError("Image data is empty.")
    try:
        image = Image.open(BytesIO(page_image))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageSourceError("Failed to decode image.") from exc

    # Phone photos store rotation as an EXIF tag rather than in the pixels.
    rgb = ImageOps.exif_transpose(image).convert("RGB")
    width, height = rgb.size
    scale = min(1.0, max_image_dimension / max(width, height))
    if scale < 1.0:
        target = (max(1, round(width * scale)), max(1, round(height * scale)))
        rgb = rgb.resize(target, Image.Resampling.LANCZOS)
    return rgb


def _encode(image: Image.Image, export_format: str, jpeg_quality: float) -> tuple[bytes, str]:
    buffer = BytesIO()
    if export_format == "jpeg":
        image.save(buffer, format="JPEG", quality=int(round(jpeg_quality * 100)))
        return buffer.getvalue(), "image/jpeg"
    image.save(buffer, format="PNG")
    return buffer.getvalue(), "image/png"


class LineSegmenter:
    def __init__(
        self,
        *,
        max_image_dimension: int = 2400,
        export_format: Literal["png", "jpeg"] = "png",
        jpeg_quality: float = 0.9,
        cache_size: int = 20,
        detector: SpanDetector | None = None,
    ):
        self.max_image_dimension = max(MIN_MAX_IMAGE_DIMENSION, int(round(max_image_dimension)))
        self.export_format = "jpeg" if export_format == "jpeg" else "png"
        self.jpeg_quality = min(1.0, max(0.2, float(jpeg_quality)))
        self.cache_size = max(0, int(round(cache_size)))
        self.detector: SpanDetector = detector or InlineSpanDetector()
        self._cache: OrderedDict[str, list[LineSlice]] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "LineSegmenter":
        detector = ProcessPoolSpanDetector() if settings.enable_worker_segmentation else InlineSpanDetector()
        return cls(
            max_image_dimension=settings.max_image_dimension,
            export_format=settings.image_export_format,
            jpeg_quality=settings.image_jpeg_quality,
            cache_size=settings.segmentation_cache_size,
            detector=detector,
        )

    def cache_key(self, page_image: bytes) -> str:
        digest = hashlib.sha256(page_image).hexdigest()
        return f"{digest}|{self.max_image_dimension}|{self.export_format}|{self.jpeg_quality}"

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    def close(self) -> None:
        self.detector.close()

    async def segment(self, page_image: bytes, on_progress: ProgressFn | None = None) -> list[LineSlice]:
        """Split a page into full-width line slices ordered top to bottom."""
        report = on_progress or (lambda _phase, _fraction: None)

        key = self.cache_key(page_image)
        if self.cache_size > 0 and key in self._cache:
            report("Using cached segmentation", 1.0)
            return list(self._cache[key])

        report("Decoding image", 0.05)
        prepared = await asyncio.to_thread(_decode, page_image, self.max_image_dimension)

        report("Preprocessing image", 0.2)
        width, height = prepared.size
        pixels = np.asarray(prepared, dtype=np.uint8)

        report("Detecting text regions", 0.4)
        spans = await self.detector.detect(pixels)

        slices: list[LineSlice] = []
        if spans:
            report("Extracting line slices", 0.6)
        for index, (start, end) in enumerate(spans):
            top = max(0, start - LINE_VERTICAL_PADDING_PX)
            bottom = min(height, end + LINE_VERTICAL_PADDING_PX)
            if bottom - top < LINE_MIN_HEIGHT_PX:
                continue
            data, mime_type = _encode(
                prepared.crop((0, top, width, bottom)),
                self.export_format,
                self.jpeg_quality,
            )
            slices.append(LineSlice(image=data, mime_type=mime_type, top=top, bottom=bottom))
            report("Extracting line slices", 0.6 + ((index + 1) / len(spans)) * 0.4)

        if not slices:
            data, mime_type = _encode(prepared, "png", self.jpeg_quality)
            slices = [LineSlice(image=data, mime_type=mime_type, top=0, bottom=height)]

        self._remember(key, slices)
        report("Completed", 1.0)
        return list(slices)

    def _remember(self, key: str, slices: list[LineSlice]) -> None:
        if self.cache_size <= 0:
            return
        self._cache[key] = list(slices)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
