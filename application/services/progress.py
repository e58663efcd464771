"""Aggregate per-part byte progress into one upload-wide figure."""
from __future__ import annotations

import math
from typing import Callable

from core.logging_config import get_logger
from domain.upload import UploadProgress

logger = get_logger(__name__)

ProgressListener = Callable[[UploadProgress], None]


def compute_percentage(transferred: int, total: int) -> int:
    if total <= 0:
        return 0
    pct = math.floor(transferred / total * 100 + 0.5)
    return max(0, min(100, pct))


class ProgressAggregator:
    """Sums per-part high-water marks so the total never moves backwards,
    whatever order parts report in and even when a part is retried from zero.
    """

    def __init__(self, bytes_total: int):
        self.bytes_total = max(0, int(bytes_total))
        self._high_water: dict[int, int] = {}
        self._transferred = 0
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def on_part_progress(self, part_number: int, bytes_loaded: int, bytes_total_for_part: int) -> None:
        loaded = max(0, min(int(bytes_loaded), int(bytes_total_for_part)))
        previous = self._high_water.get(part_number, 0)
        if loaded <= previous:
            return
        self._high_water[part_number] = loaded
        self._transferred += loaded - previous
        self._emit()

    def mark_part_complete(self, part_number: int, part_size: int) -> None:
        self.on_part_progress(part_number, part_size, part_size)

    def current_progress(self) -> UploadProgress:
        transferred = min(self._transferred, self.bytes_total) if self.bytes_total else self._transferred
        return UploadProgress(
            bytes_transferred=transferred,
            bytes_total=self.bytes_total,
            percentage=compute_percentage(transferred, self.bytes_total),
        )

    def _emit(self) -> None:
        if not self._listeners:
            return
        snapshot = self.current_progress()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logger.warning("progress_listener_failed", error=str(exc))
