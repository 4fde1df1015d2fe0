# pgcleanup/services/cleanup/reporter.py
"""
Stage outcome reporting.

The engine hands every stage result to a Reporter, which forwards it to
logging and to any number of sinks (Prometheus textfile by default). The
Reporter only observes: sink failures are logged and never reach the engine.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

if TYPE_CHECKING:
    from pgcleanup.services.cleanup.engine import MigrationResult

logger = logging.getLogger(__name__)


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass
class StageEvent:
    """Outcome of one pipeline stage."""

    stage: str
    status: StageStatus = StageStatus.SUCCESS
    row_counts: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0
    error_detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "row_counts": dict(self.row_counts),
            "duration_ms": self.duration_ms,
            "error_detail": self.error_detail,
        }


# -----------------------------------------------------------------------------
# Sinks
# -----------------------------------------------------------------------------


class ReportSink:
    """Receives stage events and the final run result. Default no-ops."""

    def on_stage(self, event: StageEvent) -> None:
        pass

    def on_finish(self, result: "MigrationResult") -> None:
        pass


class PrometheusTextfileSink(ReportSink):
    """
    Write last-run metrics for the node_exporter textfile collector.

    Skipped silently when the collector directory does not exist, so hosts
    without node_exporter still run the pipeline. Dry runs write nothing:
    the file always describes the last real run.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def on_finish(self, result: "MigrationResult") -> None:
        if result.dry_run:
            logger.debug("Dry run, leaving last-run metrics untouched")
            return
        if not self.path.parent.is_dir():
            logger.debug(f"Metrics directory {self.path.parent} missing, not emitting metrics")
            return

        registry = CollectorRegistry()
        Gauge(
            "postgres_cleanup_status",
            "Last cleanup run status (0=success, 1=failure)",
            registry=registry,
        ).set(0 if result.outcome.succeeded else 1)
        Gauge(
            "postgres_cleanup_runtime_seconds",
            "Runtime of last cleanup operation",
            registry=registry,
        ).set(result.duration_seconds)
        Gauge(
            "postgres_cleanup_last_run_timestamp",
            "Unix timestamp of last cleanup run",
            registry=registry,
        ).set_to_current_time()
        Gauge(
            "postgres_cleanup_exit_code",
            "Exit code of last cleanup run",
            registry=registry,
        ).set(result.outcome.exit_code)
        Gauge(
            "postgres_cleanup_outcome",
            "Outcome of last cleanup run (1 for the reported outcome)",
            ["outcome"],
            registry=registry,
        ).labels(outcome=result.outcome.value).set(1)

        rows = Gauge(
            "postgres_cleanup_rows",
            "Rows handled by the last run per stage and table",
            ["stage", "table"],
            registry=registry,
        )
        for stage, counts in (
            ("copied", result.rows_copied),
            ("deleted", result.rows_deleted),
            ("purged", result.rows_purged),
        ):
            for table, count in counts.items():
                rows.labels(stage=stage, table=table).set(count)

        write_to_textfile(str(self.path), registry)
        logger.info(f"Metrics emitted to {self.path}")


# -----------------------------------------------------------------------------
# Reporter
# -----------------------------------------------------------------------------


class Reporter:
    """Collects stage events for one run and forwards them."""

    def __init__(self, sinks: list[ReportSink] | None = None):
        self.sinks = list(sinks or [])
        self.events: list[StageEvent] = []
        self._logger = logging.getLogger("pgcleanup.cleanup")

    def report(self, event: StageEvent) -> None:
        self.events.append(event)

        level = logging.ERROR if event.status == StageStatus.FAILURE else logging.INFO
        counts = ", ".join(f"{k}={v}" for k, v in event.row_counts.items()) or "no rows"
        message = f"{event.stage} {event.status.value} ({counts}, {event.duration_ms}ms)"
        if event.error_detail:
            message += f": {event.error_detail}"
        self._logger.log(
            level,
            message,
            extra={
                "event": "stage_report",
                "stage": event.stage,
                "rows": event.row_counts,
                "duration_ms": event.duration_ms,
            },
        )

        for sink in self.sinks:
            try:
                sink.on_stage(event)
            except Exception as e:
                self._logger.warning(f"Report sink {type(sink).__name__} failed on stage event: {e}")

    def finish(self, result: "MigrationResult") -> None:
        self._logger.log(
            logging.INFO if result.outcome.succeeded else logging.ERROR,
            f"Run finished: {result.outcome.value} in {result.duration_seconds:.1f}s",
            extra={
                "event": "run_complete",
                "outcome": result.outcome.value,
                "exit_code": result.outcome.exit_code,
                "duration_ms": int(result.duration_seconds * 1000),
            },
        )
        for sink in self.sinks:
            try:
                sink.on_finish(result)
            except Exception as e:
                self._logger.warning(f"Report sink {type(sink).__name__} failed on run result: {e}")
