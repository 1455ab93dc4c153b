"""Tests for the training service."""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from src.db.models import EpochResultRecord, HeuristicRecord, TrainingRunRecord
from src.db.repo import Repository, utc_now
from src.training.config import CreateRunRequest, RecoveryConfig
from src.training.dataset import SampleRow
from src.training.errors import DatasetError, InvalidRunStateError, RunNotFoundError
from src.training.service import TrainingService, is_run_active


@pytest.fixture
def repo():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    repo = Repository(db_path)
    repo.connect()
    repo.seed_baseline_heuristics([HeuristicRecord("suicide-001", "suicide", "Plan = CRITICAL risk.", "CRITICAL")])
    yield repo
    repo.close()
    db_path.unlink()


class ConstantPipeline:
    """Persists every epoch with the same F1."""

    def __init__(self, repo, f1=0.5):
        self.repo = repo
        self.f1 = f1

    def run(self, run_id, epoch_number):
        f1 = self.f1
        self.repo.insert_epoch_result(
            EpochResultRecord(run_id, epoch_number, f1, f1, f1, f1, 1, 0)
        )


def _rows(n, category="nssi", risk="HIGH"):
    return [SampleRow(text=f"sample {i}", true_category=category, true_risk=risk) for i in range(n)]


def _create(service, **kwargs):
    request = CreateRunRequest(name="run", **kwargs)
    return service.create_run(request, _rows(3), _rows(2))


class TestCreateRun:
    def test_creates_pending_run_with_samples(self, repo):
        service = TrainingService(repo)

        run = _create(service, max_epochs=4)

        assert run.status == "pending"
        assert run.max_epochs == 4
        assert repo.count_training_samples(run.id) == {"train": 3, "eval": 2}

    def test_empty_eval_rejected(self, repo):
        service = TrainingService(repo)

        with pytest.raises(DatasetError):
            service.create_run(CreateRunRequest(name="x"), _rows(1), [])
        assert repo.list_training_runs() == []


class TestLifecycle:
    def test_run_sync(self, repo):
        service = TrainingService(repo, pipeline_factory=ConstantPipeline)
        run = _create(service, max_epochs=2)

        outcome = service.run_sync(run.id)

        assert outcome.status == "completed"
        assert outcome.epochs_completed == 2

    def test_start_run_in_background(self, repo):
        service = TrainingService(repo, pipeline_factory=ConstantPipeline)
        run = _create(service, max_epochs=3)

        thread = service.start_run(run.id)
        thread.join(5)

        assert not thread.is_alive()
        assert not is_run_active(run.id)
        status = service.get_run_status(run.id)
        assert status["status"] == "completed"
        assert status["progress"]["current_epoch"] == 3

    def test_start_twice_rejected(self, repo):
        service = TrainingService(repo, pipeline_factory=ConstantPipeline)
        run = _create(service, max_epochs=1)
        service.start_run(run.id).join(5)

        with pytest.raises(InvalidRunStateError):
            service.start_run(run.id)

    def test_start_without_factory(self, repo):
        service = TrainingService(repo)
        run = _create(service)

        with pytest.raises(RuntimeError):
            service.start_run(run.id)
        assert repo.get_training_run(run.id).status == "pending"

    def test_stop_running_run(self, repo):
        service = TrainingService(repo)
        run_id = repo.insert_training_run(TrainingRunRecord(name="x", status="running"))

        run = service.stop_run(run_id)

        assert run.status == "running"
        assert run.stop_requested_at is not None
        assert service.get_run_status(run_id)["stop_requested"] is True

    def test_stop_non_running_rejected(self, repo):
        service = TrainingService(repo)
        run = _create(service)

        with pytest.raises(InvalidRunStateError):
            service.stop_run(run.id)

    def test_recover_now(self, repo):
        service = TrainingService(repo, recovery_config=RecoveryConfig(heartbeat_stale_seconds=60))
        stale_at = utc_now() - timedelta(minutes=5)
        run_id = repo.insert_training_run(
            TrainingRunRecord(name="stale", status="running", started_at=stale_at, last_activity_at=stale_at)
        )

        result = service.recover_now()

        assert result["recovered"] == 1
        assert result["timed_out"] == 0
        assert result["stuck_runs"] == [{"run_id": run_id, "name": "stale"}]


class TestQueries:
    def test_status_for_missing_run(self, repo):
        with pytest.raises(RunNotFoundError):
            TrainingService(repo).get_run_status(42)

    def test_status_reports_best_epoch_and_plateau(self, repo):
        service = TrainingService(repo)
        run = _create(service, max_epochs=4)
        for number, f1 in enumerate([0.2, 0.6, 0.4], start=1):
            repo.insert_epoch_result(EpochResultRecord(run.id, number, f1, f1, f1, f1, 1, 0))

        status = service.get_run_status(run.id)

        assert status["best_epoch"]["epoch_number"] == 2
        assert status["progress"]["progress_percent"] == 75
        assert status["plateau_status"]["best_epoch"] == 2
        assert status["dataset"] == {"training_samples": 3, "eval_samples": 2}

    def test_status_without_epochs(self, repo):
        service = TrainingService(repo)
        run = _create(service)

        status = service.get_run_status(run.id)

        assert status["best_epoch"] is None
        assert status["plateau_status"] is None
        assert status["epochs"] == []

    def test_heuristics_flag_baseline(self, repo):
        service = TrainingService(repo)
        run = _create(service)
        repo.insert_heuristic(HeuristicRecord("nssi-r1-e1-001", "nssi", "new", "HIGH", run_id=run.id, epoch_number=1))

        heuristics = service.list_heuristics(run.id)

        assert {h["bullet_id"]: h["is_baseline"] for h in heuristics} == {
            "suicide-001": True,
            "nssi-r1-e1-001": False,
        }
        assert [h["bullet_id"] for h in service.list_heuristics(run.id, include_baseline=False)] == [
            "nssi-r1-e1-001"
        ]

    def test_playbook_snapshot(self, repo):
        service = TrainingService(repo)
        run = _create(service)
        repo.insert_heuristic(HeuristicRecord("nssi-r1-e1-001", "nssi", "new", "HIGH", run_id=run.id, epoch_number=1))

        epoch_one = service.get_playbook_snapshot(run.id, 1)
        epoch_two = service.get_playbook_snapshot(run.id, 2)

        assert epoch_one["playbook_size"] == 1
        assert epoch_two["playbook_size"] == 2
        assert "[ID: nssi-r1-e1-001] [nssi] new" in epoch_two["playbook_context"]
        assert epoch_two["prompt_length"] == len(epoch_two["full_prompt"])
        assert epoch_two["token_count"] == -(-epoch_two["prompt_length"] // 4)

    def test_list_runs_serializes_timestamps(self, repo):
        service = TrainingService(repo)
        _create(service)

        [run] = service.list_runs()

        assert isinstance(run["created_at"], str)
        assert run["status"] == "pending"
