"""
Per-sample stage timing for ingest runs.

One CSV row per processed sample:

    sample_read_micros,sample_encrypt_micros,sample_ingest_micros

The file is opened once in append mode at run start and named after the run
configuration so repeated runs never collide:

    ingest_int-<interval>ms_c-<count>_ingest-<gateway|iot>_auth-<gateway|iot>_time-<epoch ms>.txt
"""

import csv
import statistics
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from mpc_ingest.dispatch import AuthMode, DispatchMode
from mpc_ingest.logging_utils import get_logger

logger = get_logger("mpc_ingest.benchmark")

HEADER = ("sample_read_micros", "sample_encrypt_micros", "sample_ingest_micros")
STAGES = ("read", "encrypt", "ingest")


@dataclass
class AggregateStats:
    count: int
    mean_us: float
    median_us: float
    stdev_us: float
    min_us: int
    max_us: int
    p95_us: int

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "mean_us": self.mean_us,
            "median_us": self.median_us,
            "stdev_us": self.stdev_us,
            "min_us": self.min_us,
            "max_us": self.max_us,
            "p95_us": self.p95_us,
        }


def compute_stats(timings: List[int]) -> AggregateStats:
    """Compute aggregate statistics from a list of timing values (µs)."""
    if not timings:
        return AggregateStats(0, 0.0, 0.0, 0.0, 0, 0, 0)

    timings_sorted = sorted(timings)
    count = len(timings)
    p95_idx = int(count * 0.95)
    return AggregateStats(
        count=count,
        mean_us=statistics.mean(timings),
        median_us=statistics.median(timings),
        stdev_us=statistics.stdev(timings) if count > 1 else 0.0,
        min_us=timings_sorted[0],
        max_us=timings_sorted[-1],
        p95_us=timings_sorted[min(p95_idx, count - 1)],
    )


def bench_file_name(interval_ms: int, count: int, dispatch_mode: DispatchMode,
                    auth_mode: AuthMode, started_ms: int) -> str:
    ingest = "gateway" if dispatch_mode is DispatchMode.GATEWAY else "iot"
    auth = "gateway" if auth_mode is AuthMode.GATEWAY else "iot"
    return f"ingest_int-{interval_ms}ms_c-{count}_ingest-{ingest}_auth-{auth}_time-{started_ms}.txt"


class StageTimer:
    """Microsecond lap timer over perf_counter_ns."""

    def __init__(self):
        self._mark = time.perf_counter_ns()

    def lap(self) -> int:
        now = time.perf_counter_ns()
        elapsed = (now - self._mark) // 1_000
        self._mark = now
        return elapsed


class BenchmarkRecorder:
    """Append-only writer of per-sample stage durations."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "a", newline="", encoding="utf-8")
        self._writer = csv.writer(self._fh, lineterminator="\n")
        self._writer.writerow(HEADER)
        self._fh.flush()
        self._timings: Dict[str, List[int]] = {stage: [] for stage in STAGES}
        self.rows = 0

    @classmethod
    def open(cls, directory, interval_ms: int, count: int, dispatch_mode: DispatchMode,
             auth_mode: AuthMode, started_ms: Optional[int] = None) -> "BenchmarkRecorder":
        if started_ms is None:
            started_ms = time.time_ns() // 1_000_000
        path = Path(directory) / bench_file_name(interval_ms, count, dispatch_mode, auth_mode, started_ms)
        logger.info("Benchmark log opened", extra={"path": str(path)})
        return cls(path)

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def record(self, sample_index: int, read_micros: int, encrypt_micros: int, ingest_micros: int) -> None:
        if self._fh.closed:
            raise ValueError("benchmark log is closed")
        row = (int(read_micros), int(encrypt_micros), int(ingest_micros))
        self._writer.writerow(row)
        self._fh.flush()
        for stage, value in zip(STAGES, row):
            self._timings[stage].append(value)
        self.rows += 1
        logger.debug("Benchmark row", extra={"sample": sample_index, "micros": list(row)})

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {stage: compute_stats(values).to_dict() for stage, values in self._timings.items()}

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
