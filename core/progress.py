import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional


def format_progress(current: int, total: int, percentage: float) -> str:
    """'1,000/2,000 (50.0%)'"""
    return f"{current:,}/{total:,} ({percentage:.1f}%)"


def estimate_minutes(processed: int, total: int, elapsed: float) -> Optional[int]:
    """Minutes left at the average rate so far, rounded up"""
    if processed <= 0 or elapsed <= 0:
        return None
    rate = processed / elapsed
    remaining = max(total - processed, 0)
    return math.ceil(remaining / rate / 60)


@dataclass
class TransferProgress:
    """Per-table counters, recomputed after every window"""
    table: str
    total_rows: int
    transferred: int = 0
    failed: int = 0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    started_at: float = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = self.clock()

    @property
    def processed(self) -> int:
        return self.transferred + self.failed

    @property
    def elapsed(self) -> float:
        return max(self.clock() - self.started_at, 0.0)

    @property
    def percentage(self) -> float:
        if self.total_rows <= 0:
            return 100.0
        return self.processed / self.total_rows * 100

    @property
    def rows_per_second(self) -> float:
        elapsed = self.elapsed
        return self.transferred / elapsed if elapsed > 0 else 0.0

    @property
    def eta_minutes(self) -> Optional[int]:
        return estimate_minutes(self.processed, self.total_rows, self.elapsed)

    def record(self, transferred: int, failed: int = 0):
        self.transferred += transferred
        self.failed += failed

    def format_line(self) -> str:
        eta = self.eta_minutes
        eta_text = f"{eta}min" if eta is not None else "n/a"
        line = (f"{format_progress(self.processed, self.total_rows, self.percentage)} | "
                f"Speed: {round(self.rows_per_second):,} rows/sec | ETA: {eta_text}")
        if self.failed:
            line += f" | Failed rows: {self.failed:,}"
        return line
