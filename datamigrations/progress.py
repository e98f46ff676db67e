"""
Progress tracking for long-running migrations.

A migration holds one ProgressTracker and advances it from its chunk
helpers. Lines go to the output sink (any ``write(line)`` callable) when
one is attached; without a sink the tracker only counts.
"""

import time
from typing import Callable, Optional

BAR_WIDTH = 28


class ProgressTracker:
    """Counts processed items and renders a coarse text progress bar."""

    def __init__(self, output: Optional[Callable[[str], None]] = None, step_percent: int = 10):
        self.output = output
        self.step_percent = step_percent
        self.total = 0
        self.current = 0
        self.active = False
        self._started_at: Optional[float] = None
        self._last_rendered = -1

    def start(self, total: int, message: str = "Processing...") -> None:
        self.total = max(total, 0)
        self.current = 0
        self.active = True
        self._started_at = time.monotonic()
        self._last_rendered = -1
        self._write(message)
        self._render()

    def advance(self, amount: int = 1) -> None:
        self.current += amount
        if self.active:
            self._render()

    def set(self, current: int) -> None:
        self.current = current
        if self.active:
            self._render()

    def finish(self) -> None:
        if self.active:
            self._render(force=True)
        self.active = False

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.current / self.total * 100, 2)

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    def _render(self, force: bool = False) -> None:
        if self.output is None:
            return

        if self.total == 0:
            if force:
                self._write(f" {self.current} processed ({self.elapsed:.1f}s)")
            return

        bucket = int(min(self.percentage, 100) // self.step_percent)
        if not force and bucket == self._last_rendered:
            return
        self._last_rendered = bucket

        filled = int(BAR_WIDTH * min(self.current, self.total) / self.total)
        bar = "=" * filled + "-" * (BAR_WIDTH - filled)
        self._write(
            f" {self.current}/{self.total} [{bar}] {self.percentage:5.1f}% {self.elapsed:.1f}s"
        )

    def _write(self, line: str) -> None:
        if self.output is not None:
            self.output(line)
