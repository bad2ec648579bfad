"""Batch transforms from raw latency samples to summaries, curves and series.

All functions are pure: they never mutate their input and accept unsorted,
possibly empty sample collections. Latencies are carried in seconds and
converted to milliseconds only where a bucket width is defined in
milliseconds. Samples tagged with an error are counted per error kind and
excluded from every latency statistic.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from itertools import chain
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

PERCENTILE_MARKERS: Tuple[float, ...] = (10, 25, 50, 75, 90, 95, 99, 99.9)
BUCKET_WIDTH_MS = 10
DEFAULT_KEY_WINDOW = 1000


@dataclass(frozen=True)
class LatencySample:
    latency: float
    timestamp: int
    error: Optional[str] = None


@dataclass
class Summary:
    total_seconds: float
    requests_per_second: float
    slowest: float
    fastest: float
    average: float
    stddev: float
    count: int = 0
    errors: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class HistogramBucket:
    floor_ms: int
    count: int


@dataclass(frozen=True)
class TimeSeriesPoint:
    timestamp: int
    client_count: int
    min_latency: float
    avg_latency: float
    max_latency: float
    throughput: int


@dataclass(frozen=True)
class KeyWindowPoint:
    keys: int
    min_latency: float
    avg_latency: float
    max_latency: float


def merge(batches: Iterable[Sequence[LatencySample]]) -> List[LatencySample]:
    """Concatenate fully collected per-agent batches into one sample list."""
    return list(chain.from_iterable(batches))


def latencies(samples: Iterable[LatencySample]) -> List[float]:
    """Successful latencies, sorted ascending, negatives clamped to zero."""
    return sorted(max(0.0, float(sample.latency)) for sample in samples if not sample.error)


def elapsed_seconds(samples: Sequence[LatencySample]) -> float:
    if not samples:
        return 0.0
    stamps = [sample.timestamp for sample in samples]
    return float(max(stamps) - min(stamps) + 1)


def summarize(samples: Sequence[LatencySample], total_seconds: Optional[float] = None) -> Summary:
    errors = dict(sorted(Counter(sample.error for sample in samples if sample.error).items()))
    if total_seconds is None:
        total_seconds = elapsed_seconds(samples)

    lats = latencies(samples)
    if not lats:
        return Summary(
            total_seconds=float(total_seconds),
            requests_per_second=0.0,
            slowest=0.0,
            fastest=0.0,
            average=0.0,
            stddev=0.0,
            count=0,
            errors=errors,
        )

    count = len(lats)
    average = math.fsum(lats) / count
    variance = math.fsum((lat - average) ** 2 for lat in lats) / count
    return Summary(
        total_seconds=float(total_seconds),
        requests_per_second=count / total_seconds if total_seconds > 0 else 0.0,
        slowest=lats[-1],
        fastest=lats[0],
        average=average,
        stddev=math.sqrt(variance),
        count=count,
        errors=errors,
    )


def percentiles(
    samples: Sequence[LatencySample],
    markers: Sequence[float] = PERCENTILE_MARKERS,
) -> List[Tuple[float, float]]:
    """Nearest-rank percentiles as ``(marker, latency_seconds)`` pairs."""
    lats = latencies(samples)
    if not lats:
        return []
    count = len(lats)
    curve: List[Tuple[float, float]] = []
    for marker in sorted(markers):
        # round away float noise such as 99.9 * 1000 / 100 == 999.0000000000001
        rank = math.ceil(round(marker * count / 100.0, 9))
        index = min(max(rank, 1), count) - 1
        curve.append((marker, lats[index]))
    return curve


def bucket_floor(latency: float) -> int:
    """Truncate a latency in seconds to its 10 ms bucket floor (125.11 ms -> 120)."""
    millis = round(max(0.0, latency) * 1000, 6)
    return int(millis // BUCKET_WIDTH_MS) * BUCKET_WIDTH_MS


def histogram(samples: Sequence[LatencySample]) -> List[HistogramBucket]:
    """Gap-free 10 ms histogram from the smallest to the largest bucket."""
    lats = latencies(samples)
    if not lats:
        return []
    counts = Counter(bucket_floor(lat) for lat in lats)
    low, high = min(counts), max(counts)
    return [
        HistogramBucket(floor_ms=floor, count=counts.get(floor, 0))
        for floor in range(low, high + BUCKET_WIDTH_MS, BUCKET_WIDTH_MS)
    ]


def time_series(
    samples: Sequence[LatencySample],
    client_counts: Optional[Mapping[int, int]] = None,
    default_clients: int = 0,
) -> List[TimeSeriesPoint]:
    """One point per observed completion second, in chronological order.

    ``client_counts`` maps a unix second to the number of concurrent clients
    at that second; when it is empty every point carries ``default_clients``.
    """
    by_second: Dict[int, List[float]] = {}
    for sample in samples:
        if sample.error:
            continue
        by_second.setdefault(int(sample.timestamp), []).append(max(0.0, float(sample.latency)))

    points: List[TimeSeriesPoint] = []
    for second in sorted(by_second):
        lats = by_second[second]
        if client_counts:
            clients = int(client_counts.get(second, 0))
        else:
            clients = default_clients
        points.append(
            TimeSeriesPoint(
                timestamp=second,
                client_count=clients,
                min_latency=min(lats),
                avg_latency=math.fsum(lats) / len(lats),
                max_latency=max(lats),
                throughput=len(lats),
            )
        )
    return points


def key_windows(series: Sequence[TimeSeriesPoint], window: int = DEFAULT_KEY_WINDOW) -> List[KeyWindowPoint]:
    """Aggregate latency per ``window`` completed requests.

    Seconds are walked chronologically while accumulating request counts.
    Each time the running count reaches the next multiple of ``window`` the
    seconds that contributed to it are folded into one point labelled with
    that multiple. A second that straddles a boundary also opens the next
    window. The trailing partial window is dropped.
    """
    if window <= 0:
        raise ValueError("window must be positive")

    points: List[KeyWindowPoint] = []
    members: List[TimeSeriesPoint] = []
    cumulative = 0
    boundary = window
    for point in sorted(series, key=lambda item: item.timestamp):
        if point.throughput <= 0:
            continue
        cumulative += point.throughput
        members.append(point)
        if cumulative < boundary:
            continue
        while cumulative >= boundary:
            points.append(_fold_window(boundary, members))
            boundary += window
        members = [point] if cumulative > boundary - window else []
    return points


def _fold_window(keys: int, members: Sequence[TimeSeriesPoint]) -> KeyWindowPoint:
    total = sum(member.throughput for member in members)
    weighted = math.fsum(member.avg_latency * member.throughput for member in members)
    return KeyWindowPoint(
        keys=keys,
        min_latency=min(member.min_latency for member in members),
        avg_latency=weighted / total,
        max_latency=max(member.max_latency for member in members),
    )
