"""Transfer measurements and results files.

Each requestor keeps one :class:`FetchRecord` per drained identifier and a
:class:`TransferReport` for the whole transfer phase. :class:`ResultsWriter`
appends records to a flat CSV (one row per fetch) and writes a summary JSON
next to it. Append-only: the CSV is never rewritten.
"""

from __future__ import annotations

import csv
import json
import logging
import statistics
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

COLUMNS = [
    "run_id",
    "instance_seq",
    "position",
    "cid",
    "outcome",
    "seconds",
    "size",
    "error",
]


class FetchOutcome(str, Enum):
    """How a single drained item ended."""

    OK = "ok"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    NOT_PUBLISHED = "not_published"


@dataclass
class FetchRecord:
    """Latency and outcome of one fetch attempt."""

    position: int
    cid: str | None
    outcome: FetchOutcome
    seconds: float | None = None
    size: int | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == FetchOutcome.OK


@dataclass
class TransferReport:
    """All fetch records of one requestor plus the aggregate duration."""

    records: list[FetchRecord] = field(default_factory=list)
    total_seconds: float | None = None

    @property
    def successes(self) -> list[FetchRecord]:
        return [r for r in self.records if r.ok]

    @property
    def failures(self) -> list[FetchRecord]:
        return [r for r in self.records if not r.ok]

    @property
    def latencies(self) -> list[float]:
        return [r.seconds for r in self.successes if r.seconds is not None]

    @property
    def cids(self) -> list[str | None]:
        return [r.cid for r in self.records]

    def summary(self) -> dict[str, Any]:
        lat = self.latencies
        outcomes = {o.value: 0 for o in FetchOutcome}
        for r in self.records:
            outcomes[r.outcome.value] += 1
        return {
            "fetches": len(self.records),
            "outcomes": outcomes,
            "total_seconds": self.total_seconds,
            "sum_latency_seconds": sum(lat),
            "mean_latency_seconds": statistics.fmean(lat) if lat else None,
            "median_latency_seconds": statistics.median(lat) if lat else None,
            "max_latency_seconds": max(lat) if lat else None,
            "bytes": sum(r.size or 0 for r in self.successes),
        }


class ResultsWriter:
    """Writes fetch records to CSV and the final summary to JSON.

    Usage::

        writer = ResultsWriter("out/results.csv", run_id="r1", instance_seq=2)
        writer.record(fetch_record)
        writer.finalize(report)
    """

    def __init__(self, csv_path: str | Path, run_id: str = "", instance_seq: int = 0) -> None:
        self._csv_path = Path(csv_path)
        self._summary_path = self._csv_path.with_suffix(".summary.json")
        self._run_id = run_id
        self._instance_seq = instance_seq
        self._lock = threading.Lock()

        self._csv_path.parent.mkdir(parents=True, exist_ok=True)
        if not self._csv_path.exists() or self._csv_path.stat().st_size == 0:
            with open(self._csv_path, "w", newline="") as f:
                csv.writer(f).writerow(COLUMNS)

    @property
    def csv_path(self) -> Path:
        return self._csv_path

    @property
    def summary_path(self) -> Path:
        return self._summary_path

    def record(self, rec: FetchRecord) -> None:
        row = {
            "run_id": self._run_id,
            "instance_seq": self._instance_seq,
            "position": rec.position,
            "cid": rec.cid or "",
            "outcome": rec.outcome.value,
            "seconds": "" if rec.seconds is None else f"{rec.seconds:.9f}",
            "size": "" if rec.size is None else rec.size,
            "error": rec.error,
        }
        with self._lock:
            with open(self._csv_path, "a", newline="") as f:
                csv.DictWriter(f, fieldnames=COLUMNS).writerow(row)

    def finalize(self, report: TransferReport) -> dict[str, Any]:
        summary = {
            "run_id": self._run_id,
            "instance_seq": self._instance_seq,
            **report.summary(),
        }
        with self._lock:
            with open(self._summary_path, "w") as f:
                json.dump(summary, f, indent=2)
        logger.info("Results written to %s", self._csv_path)
        return summary
