# tests/unit/test_cleanup/test_reporter.py
"""Unit tests for stage reporting and metrics output."""

import logging
from datetime import datetime
from unittest.mock import MagicMock

NOW = datetime(2024, 3, 15, 2, 0, 0)


def make_result(outcome=None, **kwargs):
    from pgcleanup.services.cleanup.engine import MigrationResult, MigrationState
    from pgcleanup.services.cleanup.errors import Outcome
    from pgcleanup.services.cleanup.windows import compute_windows

    return MigrationResult(
        run_id="abc123",
        outcome=outcome or Outcome.SUCCESS,
        final_state=MigrationState.DONE,
        windows=compute_windows(NOW, 7, 14, 14),
        duration_seconds=12.5,
        **kwargs,
    )


class TestStageEvent:
    """Tests for StageEvent."""

    def test_defaults(self):
        from pgcleanup.services.cleanup.reporter import StageEvent, StageStatus

        event = StageEvent(stage="copying")

        assert event.status == StageStatus.SUCCESS
        assert event.row_counts == {}
        assert event.error_detail is None

    def test_to_dict(self):
        from pgcleanup.services.cleanup.reporter import StageEvent, StageStatus

        event = StageEvent(
            stage="validating",
            status=StageStatus.FAILURE,
            row_counts={"metadata": 3},
            duration_ms=15,
            error_detail="row count mismatch",
        )

        assert event.to_dict() == {
            "stage": "validating",
            "status": "failure",
            "row_counts": {"metadata": 3},
            "duration_ms": 15,
            "error_detail": "row count mismatch",
        }


class TestReporter:
    """Tests for Reporter."""

    def test_keeps_events_in_order(self):
        from pgcleanup.services.cleanup.reporter import Reporter, StageEvent

        reporter = Reporter()
        reporter.report(StageEvent(stage="verifying_target"))
        reporter.report(StageEvent(stage="checking_idempotency"))

        assert [e.stage for e in reporter.events] == ["verifying_target", "checking_idempotency"]

    def test_forwards_to_sinks(self):
        from pgcleanup.services.cleanup.reporter import Reporter, ReportSink, StageEvent

        sink = MagicMock(spec=ReportSink)
        reporter = Reporter([sink])
        event = StageEvent(stage="copying", row_counts={"metadata": 5})
        result = make_result()

        reporter.report(event)
        reporter.finish(result)

        sink.on_stage.assert_called_once_with(event)
        sink.on_finish.assert_called_once_with(result)

    def test_sink_failure_is_swallowed(self, caplog):
        """A failing sink should be logged and not affect the caller or other sinks."""
        from pgcleanup.services.cleanup.reporter import Reporter, ReportSink, StageEvent

        broken = MagicMock(spec=ReportSink)
        broken.on_stage.side_effect = OSError("disk full")
        broken.on_finish.side_effect = OSError("disk full")
        healthy = MagicMock(spec=ReportSink)
        reporter = Reporter([broken, healthy])

        with caplog.at_level(logging.WARNING, logger="pgcleanup.cleanup"):
            reporter.report(StageEvent(stage="purging"))
            reporter.finish(make_result())

        healthy.on_stage.assert_called_once()
        healthy.on_finish.assert_called_once()
        assert "disk full" in caplog.text

    def test_failure_logged_at_error(self, caplog):
        from pgcleanup.services.cleanup.reporter import Reporter, StageEvent, StageStatus

        with caplog.at_level(logging.INFO, logger="pgcleanup.cleanup"):
            Reporter().report(StageEvent(stage="copying", status=StageStatus.FAILURE, error_detail="boom"))

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.event == "stage_report"
        assert "copying failure" in record.getMessage()
        assert "boom" in record.getMessage()


class TestPrometheusTextfileSink:
    """Tests for PrometheusTextfileSink."""

    def test_writes_gauges(self, tmp_path):
        from pgcleanup.services.cleanup.reporter import PrometheusTextfileSink

        path = tmp_path / "postgres_cleanup.prom"
        result = make_result(rows_copied={"metadata": 50, "signals": 50}, rows_purged={"fills": 25})

        PrometheusTextfileSink(path).on_finish(result)

        text = path.read_text()
        assert "postgres_cleanup_status 0.0" in text
        assert "postgres_cleanup_runtime_seconds 12.5" in text
        assert "postgres_cleanup_last_run_timestamp" in text
        assert "postgres_cleanup_exit_code 0.0" in text
        assert 'postgres_cleanup_outcome{outcome="success"} 1.0' in text
        assert 'postgres_cleanup_rows{stage="copied",table="metadata"} 50.0' in text
        assert 'postgres_cleanup_rows{stage="purged",table="fills"} 25.0' in text

    def test_failure_status(self, tmp_path):
        from pgcleanup.services.cleanup.errors import Outcome
        from pgcleanup.services.cleanup.reporter import PrometheusTextfileSink

        path = tmp_path / "postgres_cleanup.prom"

        PrometheusTextfileSink(path).on_finish(make_result(Outcome.ABORTED_COPY_FAILED))

        text = path.read_text()
        assert "postgres_cleanup_status 1.0" in text
        assert "postgres_cleanup_exit_code 21.0" in text

    def test_skips_missing_directory(self, tmp_path):
        from pgcleanup.services.cleanup.reporter import PrometheusTextfileSink

        path = tmp_path / "missing" / "postgres_cleanup.prom"

        PrometheusTextfileSink(path).on_finish(make_result())

        assert not path.exists()

    def test_dry_run_keeps_last_real_run(self, tmp_path):
        """A dry run after a failed run must not reset the failure status."""
        from pgcleanup.services.cleanup.errors import Outcome
        from pgcleanup.services.cleanup.reporter import PrometheusTextfileSink

        path = tmp_path / "postgres_cleanup.prom"
        sink = PrometheusTextfileSink(path)
        sink.on_finish(make_result(Outcome.ABORTED_TARGET_UNREACHABLE))
        before = path.read_text()

        sink.on_finish(make_result(Outcome.SUCCESS, dry_run=True))

        assert path.read_text() == before
        assert "postgres_cleanup_status 1.0" in before

    def test_dry_run_engine_leaves_failed_status(self, store_pair, tmp_path):
        from pgcleanup.database import create_store_engine
        from pgcleanup.services.cleanup import MigrationEngine, Outcome, StoreClient
        from pgcleanup.services.cleanup.reporter import PrometheusTextfileSink, Reporter

        main, archive = store_pair
        path = tmp_path / "postgres_cleanup.prom"
        missing = StoreClient(create_store_engine(f"sqlite:///{tmp_path / 'no-tables.db'}"), "archive")

        def reporter_factory():
            return Reporter([PrometheusTextfileSink(path)])

        failed = MigrationEngine(main, missing, reporter_factory=reporter_factory).run(now=NOW)
        dry = MigrationEngine(main, archive, reporter_factory=reporter_factory).run(now=NOW, dry_run=True)

        assert failed.outcome == Outcome.ABORTED_TARGET_UNREACHABLE
        assert dry.outcome == Outcome.SUCCESS
        assert "postgres_cleanup_status 1.0" in path.read_text()


class TestOutcome:
    """Tests for the outcome/exit code contract."""

    def test_exit_codes_are_distinct(self):
        from pgcleanup.services.cleanup.errors import Outcome

        codes = [outcome.exit_code for outcome in Outcome]
        assert len(codes) == len(set(codes))

    def test_bands(self):
        from pgcleanup.services.cleanup.errors import Outcome

        assert Outcome.SUCCESS.exit_code == 0
        assert Outcome.SKIPPED_ALREADY_MIGRATED.succeeded
        assert Outcome.DEGRADED_PURGE_FAILED.succeeded
        assert not Outcome.ABORTED_LOCK_HELD.succeeded
        assert Outcome.ABORTED_VALIDATION_FAILED.retry_safe
        assert not Outcome.FATAL_DELETE_MISMATCH.retry_safe
        assert Outcome.FATAL_DELETE_MISMATCH.exit_code >= 30
