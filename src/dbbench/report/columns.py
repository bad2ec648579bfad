"""Ordered column tables for report artifacts and their CSV serialization.

Column labels and number formats are consumed by downstream plotting and
comparison tooling; keep them stable.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from rich.filesize import decimal

from dbbench.report.stats import HistogramBucket, KeyWindowPoint, Summary, TimeSeriesPoint

logger = logging.getLogger(__name__)

Columns = Dict[str, List[str]]

SUMMARY_COLUMNS = (
    "TOTAL-SECONDS",
    "REQUESTS-PER-SECOND",
    "SLOWEST-LATENCY-MS",
    "FASTEST-LATENCY-MS",
    "AVERAGE-LATENCY-MS",
    "STDDEV-LATENCY-MS",
)
PERCENTILE_COLUMNS = ("LATENCY-PERCENTILE", "LATENCY-MS")
HISTOGRAM_COLUMNS = ("LATENCY-MS", "COUNT")
TIME_SERIES_COLUMNS = (
    "UNIX-SECOND",
    "CONTROL-CLIENT-NUM",
    "MIN-LATENCY-MS",
    "AVG-LATENCY-MS",
    "MAX-LATENCY-MS",
    "AVG-THROUGHPUT",
)
KEY_WINDOW_COLUMNS = ("KEYS", "MIN-LATENCY-MS", "AVG-LATENCY-MS", "MAX-LATENCY-MS")
DATASIZE_COLUMNS = ("INDEX", "DATABASE-ENDPOINT", "TOTAL-DATA-SIZE", "TOTAL-DATA-SIZE-BYTES-NUM")
AGENT_STATUS_COLUMNS = ("INDEX", "DATABASE-ENDPOINT", "STATUS", "DETAIL")


def to_ms(seconds: float) -> float:
    return 1000 * seconds


def percentile_label(marker: float) -> str:
    label = f"p{marker:.1f}"
    if label.endswith(".0"):
        label = label[:-2]
    return label


def summary_columns(summary: Summary) -> Columns:
    values = (
        summary.total_seconds,
        summary.requests_per_second,
        to_ms(summary.slowest),
        to_ms(summary.fastest),
        to_ms(summary.average),
        to_ms(summary.stddev),
    )
    columns: Columns = {label: [f"{value:4.4f}"] for label, value in zip(SUMMARY_COLUMNS, values)}
    if summary.errors:
        for kind, count in sorted(summary.errors.items()):
            columns[f'ERROR: "{kind}"'] = [str(count)]
    else:
        columns["ERROR"] = ["0"]
    return columns


def percentile_columns(curve: Sequence[Tuple[float, float]]) -> Columns:
    labels, millis = PERCENTILE_COLUMNS
    return {
        labels: [percentile_label(marker) for marker, _ in curve],
        millis: [f"{to_ms(latency):f}" for _, latency in curve],
    }


def histogram_columns(buckets: Sequence[HistogramBucket]) -> Columns:
    floors, counts = HISTOGRAM_COLUMNS
    return {
        floors: [str(bucket.floor_ms) for bucket in buckets],
        counts: [str(bucket.count) for bucket in buckets],
    }


def time_series_columns(points: Sequence[TimeSeriesPoint]) -> Columns:
    second, clients, low, avg, high, throughput = TIME_SERIES_COLUMNS
    return {
        second: [str(point.timestamp) for point in points],
        clients: [str(point.client_count) for point in points],
        low: [f"{to_ms(point.min_latency):f}" for point in points],
        avg: [f"{to_ms(point.avg_latency):f}" for point in points],
        high: [f"{to_ms(point.max_latency):f}" for point in points],
        throughput: [str(point.throughput) for point in points],
    }


def key_window_columns(points: Sequence[KeyWindowPoint]) -> Columns:
    keys, low, avg, high = KEY_WINDOW_COLUMNS
    return {
        keys: [str(point.keys) for point in points],
        low: [f"{to_ms(point.min_latency):f}" for point in points],
        avg: [f"{to_ms(point.avg_latency):f}" for point in points],
        high: [f"{to_ms(point.max_latency):f}" for point in points],
    }


def datasize_columns(endpoints: Sequence[str], sizes: Mapping[int, Optional[int]]) -> Columns:
    index, endpoint, human, raw = DATASIZE_COLUMNS
    columns: Columns = {index: [], endpoint: [], human: [], raw: []}
    for idx, address in enumerate(endpoints):
        size = sizes.get(idx) or 0
        columns[index].append(str(idx))
        columns[endpoint].append(address)
        columns[human].append(decimal(size))
        columns[raw].append(str(size))
    return columns


def agent_status_columns(rows: Sequence[Tuple[str, str, str]]) -> Columns:
    index, endpoint, status, detail = AGENT_STATUS_COLUMNS
    columns: Columns = {index: [], endpoint: [], status: [], detail: []}
    for idx, (address, state, message) in enumerate(rows):
        columns[index].append(str(idx))
        columns[endpoint].append(address)
        columns[status].append(state)
        columns[detail].append(message)
    return columns


def write_csv(columns: Mapping[str, Sequence[str]], path: Path, *, horizontal: bool = False) -> Path:
    """Write columns with a header row, or one ``label,value...`` row per column."""
    lengths = {len(values) for values in columns.values()}
    if len(lengths) > 1:
        raise ValueError(f"columns have different lengths: {sorted(lengths)}")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        if horizontal:
            for label, values in columns.items():
                writer.writerow([label, *values])
        else:
            writer.writerow(list(columns))
            writer.writerows(zip(*columns.values()))
    logger.info("Wrote %s", path)
    return path
