"""Aggregate per-agent latency samples into report artifacts."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

from dbbench.report import columns as cols
from dbbench.report import stats
from dbbench.report.stats import (
    HistogramBucket,
    KeyWindowPoint,
    LatencySample,
    Summary,
    TimeSeriesPoint,
)

if TYPE_CHECKING:  # pragma: no cover - type check helper
    from dbbench.coordinator import BenchmarkGroup, GroupOutcome
    from dbbench.storage import ArtifactUploader


logger = logging.getLogger(__name__)

SUMMARY_FILE = "client-latency-distribution-summary.csv"
PERCENTILE_FILE = "client-latency-distribution-percentile.csv"
HISTOGRAM_FILE = "client-latency-distribution-all.csv"
TIME_SERIES_FILE = "client-latency-throughput-timeseries.csv"
KEY_WINDOW_FILE = "client-latency-by-key-number.csv"
DATASIZE_FILE = "server-datasize-on-disk-summary.csv"
AGENT_STATUS_FILE = "agent-status.csv"


def load_samples(path: Path) -> List[LatencySample]:
    """Read ``{"timestamp", "latency", "error"}`` JSON lines, skipping bad lines."""
    samples: List[LatencySample] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
                samples.append(
                    LatencySample(
                        latency=float(record["latency"]),
                        timestamp=int(record["timestamp"]),
                        error=record.get("error") or None,
                    )
                )
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid sample at %s:%d: %s", path, lineno, exc)
    return samples


@dataclass
class Report:
    summary: Summary
    percentiles: List[Tuple[float, float]]
    histogram: List[HistogramBucket]
    time_series: List[TimeSeriesPoint]
    key_windows: List[KeyWindowPoint]
    agent_rows: List[Tuple[str, str, str]]
    datasizes: Dict[int, Optional[int]] = field(default_factory=dict)

    @property
    def contributing_agents(self) -> int:
        return len([row for row in self.agent_rows if row[1] in ("ok", "exited")])

    def tables(self, endpoints: Sequence[str]) -> Dict[str, Tuple[cols.Columns, bool]]:
        """Artifact file name -> (columns, written horizontally)."""
        tables: Dict[str, Tuple[cols.Columns, bool]] = {
            SUMMARY_FILE: (cols.summary_columns(self.summary), True),
            PERCENTILE_FILE: (cols.percentile_columns(self.percentiles), False),
            HISTOGRAM_FILE: (cols.histogram_columns(self.histogram), False),
            TIME_SERIES_FILE: (cols.time_series_columns(self.time_series), False),
            KEY_WINDOW_FILE: (cols.key_window_columns(self.key_windows), False),
            AGENT_STATUS_FILE: (cols.agent_status_columns(self.agent_rows), False),
        }
        if self.datasizes:
            tables[DATASIZE_FILE] = (cols.datasize_columns(endpoints, self.datasizes), False)
        return tables


class ReportBuilder:
    """Build, write and upload the report of one benchmark group."""

    def __init__(
        self,
        group: "BenchmarkGroup",
        results_root: Path,
        *,
        uploader: Optional["ArtifactUploader"] = None,
        key_window: int = stats.DEFAULT_KEY_WINDOW,
    ) -> None:
        self.group = group
        self.results_dir = (Path(results_root) / group.database_id).resolve()
        self._uploader = uploader
        self._key_window = key_window

    def build(
        self,
        batches: Mapping[str, Optional[Sequence[LatencySample]]],
        *,
        start_outcome: Optional["GroupOutcome"] = None,
        stop_outcome: Optional["GroupOutcome"] = None,
        total_seconds: Optional[float] = None,
        client_counts: Optional[Mapping[int, int]] = None,
    ) -> Report:
        """Aggregate the batches of every agent that started and delivered samples.

        ``batches`` maps an agent endpoint to its complete sample batch, or to
        None when the agent delivered nothing.
        """
        failed: Dict[int, str] = {}
        if start_outcome is not None:
            failed = {outcome.index: outcome.detail for outcome in start_outcome.failures}
        exited: Dict[int, str] = {}
        if stop_outcome is not None:
            exited = {outcome.index: outcome.detail for outcome in stop_outcome.anomalies}

        agent_rows: List[Tuple[str, str, str]] = []
        contributing: List[Sequence[LatencySample]] = []
        for idx, endpoint in enumerate(self.group.agent_endpoints):
            batch = batches.get(endpoint)
            if idx in failed:
                agent_rows.append((endpoint, "failed", failed[idx]))
            elif batch is None:
                agent_rows.append((endpoint, "missing", "no samples collected"))
            else:
                contributing.append(batch)
                if idx in exited:
                    agent_rows.append((endpoint, "exited", f"{len(batch)} sample(s); {exited[idx]}"))
                else:
                    agent_rows.append((endpoint, "ok", f"{len(batch)} sample(s)"))

        samples = stats.merge(contributing)
        if len(contributing) < len(self.group.agent_endpoints):
            logger.warning(
                "Report for %s built from %d of %d agent(s)",
                self.group.database_id,
                len(contributing),
                len(self.group.agent_endpoints),
            )

        series = stats.time_series(samples, client_counts, default_clients=self.group.client_number)
        return Report(
            summary=stats.summarize(samples, total_seconds),
            percentiles=stats.percentiles(samples),
            histogram=stats.histogram(samples),
            time_series=series,
            key_windows=stats.key_windows(series, self._key_window),
            agent_rows=agent_rows,
            datasizes=stop_outcome.datasizes() if stop_outcome is not None else {},
        )

    def write(self, report: Report) -> Dict[str, Path]:
        self.results_dir.mkdir(parents=True, exist_ok=True)
        written: Dict[str, Path] = {}
        for filename, (columns, horizontal) in report.tables(self.group.database_endpoints).items():
            written[filename] = cols.write_csv(columns, self.results_dir / filename, horizontal=horizontal)
        logger.info("Report for %s written to %s", self.group.database_id, self.results_dir)
        return written

    def upload(self, paths: Mapping[str, Path]) -> Dict[Path, Optional[Exception]]:
        if self._uploader is None:
            logger.info("No uploader configured; keeping artifacts local")
            return {}
        return self._uploader.upload_many(paths.values(), self.group.database_tag)
