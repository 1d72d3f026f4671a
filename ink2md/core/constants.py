from __future__ import annotations

# Line segmentation tuning.
LINE_BRIGHTNESS_THRESHOLD = 205
LINE_MIN_INK_PIXELS_RATIO = 0.008
LINE_MIN_INK_PIXELS_FLOOR = 6
LINE_MIN_HEIGHT_PX = 6
LINE_VERTICAL_PADDING_PX = 8
LINE_MERGE_GAP_PX = 8

# Two candidate lines at or above this similarity skip arbitration.
LINE_CONSENSUS_SIMILARITY = 0.96

ILLEGIBLE_MARKER = "==ILLEGIBLE=="

DEFAULT_CONCURRENCY = 3
REQUEST_TIMEOUT_SECONDS = 60.0

# Backoff multipliers, in seconds.
HTTP_RETRY_BACKOFF_SECONDS = 0.4
LINE_RETRY_BACKOFF_SECONDS = 0.2
PAGE_RETRY_BACKOFF_SECONDS = 0.25

DEFAULT_CACHE_MAX_ENTRIES = 200
DEFAULT_CACHE_MAX_BYTES = 50 * 1024 * 1024
UNSIZED_CACHE_ENTRY_BYTES = 8 * 1024

IMAGE_MIME_BY_EXT: dict[str, str] = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
}

PDF_SUFFIXES = {".pdf"}
