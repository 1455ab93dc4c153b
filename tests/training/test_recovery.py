"""Tests for the recovery supervisor."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.db.models import TrainingRunRecord
from src.db.repo import Repository
from src.training.config import RecoveryConfig
from src.training.recovery import RecoverySupervisor

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    repo = Repository(db_path)
    repo.connect()
    yield repo
    repo.close()
    db_path.unlink()


def _running(repo, name, started_ago=None, active_ago=None) -> int:
    return repo.insert_training_run(
        TrainingRunRecord(
            name=name,
            status="running",
            started_at=NOW - started_ago if started_ago is not None else None,
            last_activity_at=NOW - active_ago if active_ago is not None else None,
        )
    )


def _supervisor(repo, **config):
    return RecoverySupervisor(repo, RecoveryConfig(**config), clock=lambda: NOW)


class TestRecoverStuckRuns:
    def test_stale_run_failed_once(self, repo):
        stale = _running(repo, "stale", timedelta(hours=1), timedelta(minutes=10))
        fresh = _running(repo, "fresh", timedelta(hours=1), timedelta(minutes=2))
        supervisor = _supervisor(repo, heartbeat_stale_seconds=300)

        report = supervisor.recover_stuck_runs()

        assert report.count == 1
        assert report.runs == [(stale, "stale")]
        run = repo.get_training_run(stale)
        assert run.status == "failed"
        assert run.completed_at == NOW
        assert run.failure_reason.startswith(
            "Training process died or became unresponsive. Last activity: 10 minutes ago."
        )
        assert repo.get_training_run(fresh).status == "running"

        assert supervisor.recover_stuck_runs().count == 0

    def test_falls_back_to_started_at(self, repo):
        run_id = _running(repo, "no heartbeat", started_ago=timedelta(minutes=30))

        assert _supervisor(repo).recover_stuck_runs().count == 1
        assert "30 minutes ago" in repo.get_training_run(run_id).failure_reason

    def test_no_timestamps_is_stale(self, repo):
        run_id = _running(repo, "blank")

        assert _supervisor(repo).recover_stuck_runs().count == 1
        assert "Last activity: unknown minutes ago" in repo.get_training_run(run_id).failure_reason

    def test_terminal_runs_ignored(self, repo):
        repo.insert_training_run(TrainingRunRecord(name="done", status="completed"))

        assert _supervisor(repo).recover_stuck_runs().count == 0

    def test_internal_error_reports_zero(self, repo, monkeypatch):
        _running(repo, "stale", active_ago=timedelta(hours=1))

        def broken(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(repo, "list_training_runs", broken)
        report = _supervisor(repo).recover_stuck_runs()

        assert report.count == 0
        assert report.runs == []


class TestCheckRunTimeouts:
    def test_long_running_run_failed(self, repo):
        old = _running(repo, "old", timedelta(hours=25), timedelta(seconds=5))
        young = _running(repo, "young", timedelta(hours=2), timedelta(seconds=5))
        supervisor = _supervisor(repo, run_timeout_seconds=24 * 3600)

        report = supervisor.check_run_timeouts()

        assert report.runs == [(old, "old")]
        reason = repo.get_training_run(old).failure_reason
        assert reason.startswith("Training exceeded maximum runtime limit of 24 hours.")
        assert "running for 25 hours" in reason
        assert repo.get_training_run(young).status == "running"
        assert supervisor.check_run_timeouts().count == 0

    def test_unstarted_run_skipped(self, repo):
        _running(repo, "never started", active_ago=timedelta(seconds=5))

        assert _supervisor(repo, run_timeout_seconds=1).check_run_timeouts().count == 0


class TestRecoverAll:
    def test_runs_both_scans(self, repo):
        _running(repo, "stale", timedelta(hours=1), timedelta(hours=1))
        _running(repo, "old", timedelta(hours=30), timedelta(seconds=1))

        reports = _supervisor(repo).recover_all()

        assert reports["stuck"].count == 1
        assert reports["timed_out"].count == 1
        assert reports["stuck"].to_dict()["runs"][0]["name"] == "stale"

    def test_periodic_mode(self, repo):
        run_id = _running(repo, "stale", timedelta(hours=1), timedelta(hours=1))
        supervisor = _supervisor(repo)

        thread = supervisor.start_periodic(interval_seconds=0.05)
        assert supervisor.start_periodic(interval_seconds=0.05) is thread
        thread.join(0.5)
        supervisor.stop_periodic()

        assert not thread.is_alive()
        assert repo.get_training_run(run_id).status == "failed"
