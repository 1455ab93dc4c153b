"""Tests for the persistence layer."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.db.models import (
    AgentLogRecord,
    EpochResultRecord,
    HeuristicRecord,
    ReflectionRecord,
    TrainingRunRecord,
    TrainingSampleRecord,
)
from src.db.repo import Repository


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


def _make_run(repo, name="run", status="pending", **kwargs) -> int:
    return repo.insert_training_run(TrainingRunRecord(name=name, status=status, **kwargs))


class TestTrainingRunOperations:
    def test_insert_and_get_run_round_trip(self, repo):
        started = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        run = TrainingRunRecord(
            name="round trip",
            max_epochs=7,
            plateau_threshold=0.05,
            plateau_patience=2,
            status="running",
            started_at=started,
            last_activity_at=started + timedelta(minutes=1),
            created_at=started - timedelta(minutes=5),
        )
        run_id = repo.insert_training_run(run)

        loaded = repo.get_training_run(run_id)
        run.id = run_id
        assert loaded == run

    def test_get_missing_run_returns_none(self, repo):
        assert repo.get_training_run(999) is None

    def test_transition_is_conditional(self, repo):
        run_id = _make_run(repo)

        assert repo.transition_run_status(run_id, "pending", "running", started_at=datetime.now(timezone.utc))
        assert not repo.transition_run_status(run_id, "pending", "running")

        run = repo.get_training_run(run_id)
        assert run.status == "running"
        assert run.started_at is not None
        assert run.last_activity_at == run.started_at

    def test_transition_records_failure_reason(self, repo):
        run_id = _make_run(repo, status="running")
        completed = datetime.now(timezone.utc)

        assert repo.transition_run_status(
            run_id, "running", "failed", completed_at=completed, failure_reason="boom"
        )
        run = repo.get_training_run(run_id)
        assert run.status == "failed"
        assert run.failure_reason == "boom"
        assert run.completed_at == completed

    def test_touch_activity_only_for_running_runs(self, repo):
        pending_id = _make_run(repo, name="pending")
        running_id = _make_run(repo, name="running", status="running")

        repo.touch_run_activity(pending_id)
        repo.touch_run_activity(running_id)

        assert repo.get_training_run(pending_id).last_activity_at is None
        assert repo.get_training_run(running_id).last_activity_at is not None

    def test_request_stop_once(self, repo):
        run_id = _make_run(repo, status="running")

        assert repo.request_run_stop(run_id)
        assert not repo.request_run_stop(run_id)
        run = repo.get_training_run(run_id)
        assert run.stop_requested_at is not None
        assert run.status == "running"

    def test_request_stop_ignored_when_not_running(self, repo):
        run_id = _make_run(repo, status="completed")
        assert not repo.request_run_stop(run_id)

    def test_list_runs_by_status(self, repo):
        _make_run(repo, name="a", status="running")
        _make_run(repo, name="b", status="completed")
        _make_run(repo, name="c", status="running")

        running = repo.list_training_runs(status="running")
        assert [r.name for r in running] == ["c", "a"]
        assert len(repo.list_training_runs(limit=None)) == 3
        assert len(repo.list_training_runs(limit=1)) == 1


class TestSampleOperations:
    def test_insert_and_list_by_split(self, repo):
        run_id = _make_run(repo)
        repo.insert_training_samples([
            TrainingSampleRecord(run_id, "train", "t1", "suicide", "HIGH"),
            TrainingSampleRecord(run_id, "eval", "e1", "nssi", "LOW"),
            TrainingSampleRecord(run_id, "eval", "e2", "psychosis", "CRITICAL"),
        ])

        eval_samples = repo.list_training_samples(run_id, "eval")
        assert [s.text for s in eval_samples] == ["e1", "e2"]
        assert eval_samples[0] == TrainingSampleRecord(
            run_id, "eval", "e1", "nssi", "LOW", id=eval_samples[0].id
        )
        assert repo.count_training_samples(run_id) == {"train": 1, "eval": 2}

    def test_counts_default_to_zero(self, repo):
        run_id = _make_run(repo)
        assert repo.count_training_samples(run_id) == {"train": 0, "eval": 0}


class TestEpochOperations:
    def test_round_trip_and_backfill(self, repo):
        run_id = _make_run(repo)
        epoch = EpochResultRecord(
            run_id=run_id,
            epoch_number=1,
            category_f1=0.5,
            risk_f1=0.25,
            overall_f1=0.375,
            accuracy=0.4,
            playbook_size=36,
            errors_found=3,
        )
        epoch.id = repo.insert_epoch_result(epoch)

        loaded = repo.get_epoch_result(run_id, 1)
        epoch.created_at = loaded.created_at
        assert loaded == epoch

        repo.update_epoch_heuristics_added(run_id, 1, 4)
        assert repo.get_epoch_result(run_id, 1).heuristics_added == 4

    def test_epoch_numbers_unique_per_run(self, repo):
        run_id = _make_run(repo)
        repo.insert_epoch_result(EpochResultRecord(run_id, 1, 0, 0, 0, 0, 0, 0))

        with pytest.raises(Exception):  # sqlite3.IntegrityError
            repo.insert_epoch_result(EpochResultRecord(run_id, 1, 0, 0, 0, 0, 0, 0))

    def test_list_ordered_and_max_epoch(self, repo):
        run_id = _make_run(repo)
        assert repo.get_max_epoch_number(run_id) == 0

        repo.insert_epoch_result(EpochResultRecord(run_id, 2, 0, 0, 0.2, 0, 0, 0))
        repo.insert_epoch_result(EpochResultRecord(run_id, 1, 0, 0, 0.1, 0, 0, 0))

        assert [e.epoch_number for e in repo.list_epoch_results(run_id)] == [1, 2]
        assert repo.get_max_epoch_number(run_id) == 2


class TestHeuristicOperations:
    def test_round_trip(self, repo):
        run_id = _make_run(repo)
        heuristic = HeuristicRecord(
            bullet_id="suicide-r1-e1-001",
            section="suicide",
            content="Giving away possessions = HIGH risk.",
            risk_level="HIGH",
            run_id=run_id,
            epoch_number=1,
        )
        repo.insert_heuristic(heuristic)

        loaded = repo.get_heuristic("suicide-r1-e1-001")
        heuristic.last_updated = loaded.last_updated
        assert loaded == heuristic
        assert not loaded.is_baseline

    def test_seed_baseline_is_idempotent(self, repo):
        bullets = [
            HeuristicRecord("suicide-001", "suicide", "Plan = CRITICAL risk.", "CRITICAL"),
            HeuristicRecord("nssi-001", "nssi", "Cutting = HIGH risk.", "HIGH"),
        ]
        assert repo.seed_baseline_heuristics(bullets) == 2
        repo.increment_heuristic_counters("suicide-001", helpful_delta=2)

        assert repo.seed_baseline_heuristics(bullets) == 0
        assert repo.get_heuristic("suicide-001").helpful_count == 2
        assert repo.get_heuristic("nssi-001").is_baseline

    def test_playbook_snapshot_excludes_current_and_other_runs(self, repo):
        run_id = _make_run(repo, name="mine")
        other_id = _make_run(repo, name="other")
        repo.seed_baseline_heuristics([HeuristicRecord("base-001", "suicide", "x")])
        repo.insert_heuristic(HeuristicRecord("e1", "suicide", "x", run_id=run_id, epoch_number=1))
        repo.insert_heuristic(HeuristicRecord("e2", "suicide", "x", run_id=run_id, epoch_number=2))
        repo.insert_heuristic(HeuristicRecord("o1", "suicide", "x", run_id=other_id, epoch_number=1))

        ids = {h.bullet_id for h in repo.list_playbook_snapshot(run_id, 2)}
        assert ids == {"base-001", "e1"}

        ids = {h.bullet_id for h in repo.list_playbook_snapshot(run_id, 1)}
        assert ids == {"base-001"}

    def test_increment_adds_deltas(self, repo):
        repo.seed_baseline_heuristics([HeuristicRecord("h1", "suicide", "x")])

        assert repo.increment_heuristic_counters("h1", helpful_delta=3, harmful_delta=1)
        assert repo.increment_heuristic_counters("h1", helpful_delta=1)

        h = repo.get_heuristic("h1")
        assert (h.helpful_count, h.harmful_count) == (4, 1)

    def test_increment_rejects_negative_delta(self, repo):
        repo.seed_baseline_heuristics([HeuristicRecord("h1", "suicide", "x")])
        with pytest.raises(ValueError):
            repo.increment_heuristic_counters("h1", helpful_delta=-1)

    def test_increment_missing_or_zero(self, repo):
        repo.seed_baseline_heuristics([HeuristicRecord("h1", "suicide", "x")])
        assert not repo.increment_heuristic_counters("missing", helpful_delta=1)
        assert not repo.increment_heuristic_counters("h1")

    def test_list_heuristics_for_run(self, repo):
        run_id = _make_run(repo)
        repo.seed_baseline_heuristics([HeuristicRecord("base-001", "suicide", "x")])
        repo.insert_heuristic(HeuristicRecord("r1", "nssi", "y", run_id=run_id, epoch_number=1))

        assert [h.bullet_id for h in repo.list_heuristics(run_id)] == ["base-001", "r1"]
        assert [h.bullet_id for h in repo.list_heuristics(run_id, include_baseline=False)] == ["r1"]


class TestReflectionAndLogOperations:
    def test_reflection_round_trip(self, repo):
        run_id = _make_run(repo)
        reflection = ReflectionRecord(
            run_id=run_id,
            epoch_number=1,
            error_type="risk underestimation",
            correct_approach="Weigh stated plans heavily",
            key_insight="A plan implies CRITICAL",
            affected_section="suicide",
            tag="explicit_plan",
            input_text="I have pills saved up",
            predicted_category="suicide",
            predicted_risk="HIGH",
            true_category="suicide",
            true_risk="CRITICAL",
        )
        reflection.id = repo.insert_reflection(reflection)

        [loaded] = repo.list_reflections(run_id)
        reflection.created_at = loaded.created_at
        assert loaded == reflection
        assert repo.list_reflections(run_id, epoch_number=2) == []

    def test_agent_log_round_trip_and_filters(self, repo):
        run_id = _make_run(repo)
        log = AgentLogRecord(
            run_id=run_id,
            epoch_number=1,
            agent_type="generator",
            system_prompt="prompt",
            input_summary="in",
            output_summary="out",
            details_json=json.dumps({"a": 1}),
        )
        log.id = repo.insert_agent_log(log)
        repo.log_agent(run_id, 1, "curator", "p", "i", "o", details={"new_bullets": []})
        repo.log_agent(run_id, 2, "generator", "p", "i", "o")

        [loaded] = repo.list_agent_logs(run_id, epoch_number=1, agent_type="generator")
        log.created_at = loaded.created_at
        assert loaded == log

        assert len(repo.list_agent_logs(run_id)) == 3
        assert len(repo.list_agent_logs(run_id, agent_type="generator")) == 2

    def test_agent_type_is_constrained(self, repo):
        run_id = _make_run(repo)
        with pytest.raises(Exception):  # sqlite3.IntegrityError
            repo.log_agent(run_id, 1, "planner", "p", "i", "o")


class TestRepositoryLifecycle:
    def test_context_manager_closes(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path = Path(tmp) / "ctx.db"
            with Repository(db_path) as repo:
                _make_run(repo)
            with pytest.raises(RuntimeError):
                repo.conn

            with Repository(db_path) as repo:
                assert len(repo.list_training_runs()) == 1
