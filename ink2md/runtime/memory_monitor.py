from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import psutil

from ink2md.core.logging_config import get_logger
from ink2md.core.models import MemoryReport


logger = get_logger(__name__)

LEAK_GROWTH_PERCENT = 20.0
LEAK_MIN_SAMPLES = 3


@dataclass(frozen=True)
class MemorySample:
    timestamp: float
    rss: int
    label: str | None = None


def read_process_rss() -> int:
    return psutil.Process().memory_info().rss


def format_bytes(value: int) -> str:
    sign = "-" if value < 0 else ""
    size = abs(value)
    if size < 1024:
        return f"{sign}{size} B"

    scaled = size / 1024
    units = ["KB", "MB", "GB"]
    index = 0
    while scaled >= 1024 and index < len(units) - 1:
        scaled /= 1024
        index += 1
    return f"{sign}{scaled:.1f} {units[index]}"


class MemoryMonitor:
    """Samples process RSS while a conversion runs and flags sustained growth."""

    def __init__(
        self,
        sample_interval_seconds: float = 2.0,
        leak_warn_bytes: int = 64 * 1024 * 1024,
        read_rss: Callable[[], int] = read_process_rss,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sample_interval_seconds = sample_interval_seconds
        self.leak_warn_bytes = leak_warn_bytes
        self._read_rss = read_rss
        self._clock = clock
        self._samples: list[MemorySample] = []
        self._task: asyncio.Task[None] | None = None
        self._started_at = 0.0
        self._label = ""

    @property
    def samples(self) -> list[MemorySample]:
        return list(self._samples)

    def start(self, label: str) -> None:
        self._cancel_timer()
        self._samples.clear()
        self._label = label
        self._started_at = self._clock()
        self.sample("start")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._sample_periodically())

    def sample(self, label: str | None = None) -> None:
        self._samples.append(MemorySample(timestamp=self._clock(), rss=self._read_rss(), label=label))

    async def _sample_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.sample_interval_seconds)
            self.sample()

    def _cancel_timer(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def stop(self) -> MemoryReport | None:
        self._cancel_timer()
        self.sample("end")

        if len(self._samples) < 2:
            return None

        first = self._samples[0]
        last = self._samples[-1]
        growth_bytes = last.rss - first.rss
        growth_percent = (growth_bytes / first.rss) * 100 if first.rss > 0 else 0.0
        report = MemoryReport(
            label=self._label,
            sample_count=len(self._samples),
            duration_seconds=max(0.0, self._clock() - self._started_at),
            start_rss=first.rss,
            end_rss=last.rss,
            peak_rss=max(sample.rss for sample in self._samples),
            growth_bytes=growth_bytes,
            growth_percent=growth_percent,
            leak_suspected=(
                growth_bytes >= self.leak_warn_bytes
                and growth_percent >= LEAK_GROWTH_PERCENT
                and len(self._samples) >= LEAK_MIN_SAMPLES
            ),
        )

        logger.info(
            "Memory report for %s: samples=%s start=%s end=%s peak=%s growth=%s (%.2f%%) leak_suspected=%s",
            report.label,
            report.sample_count,
            format_bytes(report.start_rss),
            format_bytes(report.end_rss),
            format_bytes(report.peak_rss),
            format_bytes(report.growth_bytes),
            report.growth_percent,
            report.leak_suspected,
        )
        return report
