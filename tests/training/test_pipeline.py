"""Tests for the epoch pipeline."""

import json
import tempfile
from pathlib import Path

import pytest

from src.agents.base import ItemFailure, StepOutcome
from src.agents.client import MockGeminiClient
from src.agents.steps import Classification, CuratedBullet, ReflectionInsight
from src.db.models import HeuristicRecord, TrainingRunRecord, TrainingSampleRecord
from src.db.repo import Repository
from src.training.config import PipelineConfig
from src.training.errors import EpochFailure
from src.training.pipeline import EpochPipeline, make_bullet_id


@pytest.fixture
def repo():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    repo = Repository(db_path)
    repo.connect()
    repo.seed_baseline_heuristics([
        HeuristicRecord("suicide-001", "suicide", "Active plan = CRITICAL risk.", "CRITICAL"),
        HeuristicRecord("nssi-001", "nssi", "Cutting = HIGH risk.", "HIGH"),
    ])
    yield repo
    repo.close()
    db_path.unlink()


class FakeStep:
    """Step double that answers every request with ``respond(request)``."""

    def __init__(self, name, respond):
        self.name = name
        self.respond = respond
        self.requests = []

    def run(self, request):
        self.requests.append(request)
        return self.respond(request)


def _running_run(repo, eval_rows) -> int:
    run_id = repo.insert_training_run(TrainingRunRecord(name="test", status="running"))
    repo.insert_training_samples(
        [TrainingSampleRecord(run_id, "eval", text, cat, risk) for text, cat, risk in eval_rows]
    )
    return run_id


EVAL_ROWS = [
    ("plan one", "suicide", "CRITICAL"),
    ("plan two", "suicide", "CRITICAL"),
    ("plan three", "suicide", "CRITICAL"),
    ("cutting", "nssi", "HIGH"),
]

# text -> (category, risk, cited ids)
ANSWERS = {
    "plan one": ("suicide", "CRITICAL", ["suicide-001"]),
    "plan two": ("suicide", "CRITICAL", ["suicide-001"]),
    "plan three": ("suicide", "CRITICAL", ["suicide-001"]),
    "cutting": ("suicide", "HIGH", ["suicide-001", "nssi-001"]),
}


def _generator(answers=ANSWERS):
    def respond(request):
        category, risk, cited = answers[request.text]
        return StepOutcome.succeeded(Classification(category, risk, cited))

    return FakeStep("generator", respond)


def _reflector():
    def respond(request):
        return StepOutcome.succeeded(
            ReflectionInsight(
                error_type="category misclassification",
                correct_approach="Look for self-injury",
                key_insight=f"'{request.text}' is self-injury",
                affected_section=request.true_category,
                tag="self_injury",
            )
        )

    return FakeStep("reflector", respond)


def _curator(bullets_per_call):
    calls = iter(bullets_per_call)

    def respond(request):
        return StepOutcome.succeeded([
            CuratedBullet(request.reflection.affected_section, content, "HIGH")
            for content in next(calls)
        ])

    return FakeStep("curator", respond)


def _fail(name):
    return FakeStep(name, lambda request: StepOutcome.failed(ItemFailure(name, "boom")))


class TestEpochPipeline:
    def test_full_epoch(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        curator = _curator([["Cutting is self-injury = HIGH risk.", "Blades imply NSSI = HIGH risk."]])
        pipeline = EpochPipeline(repo, _generator(), _reflector(), curator)

        report = pipeline.run(run_id, 1)

        assert report.errors_found == 1
        assert report.evaluation.accuracy == pytest.approx(3 / 4)
        assert report.playbook_size == 2
        assert report.reflections_created == 1
        assert report.heuristics_added == 2
        assert report.new_bullet_ids == [
            make_bullet_id("nssi", run_id, 1, 1),
            make_bullet_id("nssi", run_id, 1, 2),
        ]
        assert report.new_bullet_ids[0] == f"nssi-r{run_id}-e1-001"

        epoch = repo.get_epoch_result(run_id, 1)
        assert epoch.errors_found == 1
        assert epoch.heuristics_added == 2
        assert epoch.overall_f1 == pytest.approx(report.overall_f1)

        [reflection] = repo.list_reflections(run_id, 1)
        assert reflection.input_text == "cutting"
        assert reflection.predicted_category == "suicide"
        assert reflection.true_category == "nssi"

        new = repo.get_heuristic(report.new_bullet_ids[0])
        assert (new.run_id, new.epoch_number, new.risk_level) == (run_id, 1, "HIGH")

        agent_types = [log.agent_type for log in repo.list_agent_logs(run_id, 1)]
        assert agent_types == ["generator", "reflector", "curator"]

    def test_counters_three_helpful_one_harmful(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        pipeline = EpochPipeline(repo, _generator(), _reflector(), _curator([[]]))

        pipeline.run(run_id, 1)

        suicide = repo.get_heuristic("suicide-001")
        assert (suicide.helpful_count, suicide.harmful_count) == (3, 1)
        nssi = repo.get_heuristic("nssi-001")
        assert (nssi.helpful_count, nssi.harmful_count) == (0, 1)

    def test_sequence_shared_across_reflections(self, repo):
        rows = [("a", "nssi", "HIGH"), ("b", "psychosis", "HIGH")]
        answers = {"a": ("suicide", "HIGH", []), "b": ("suicide", "HIGH", [])}
        run_id = _running_run(repo, rows)
        curator = _curator([["first = HIGH risk.", "second = HIGH risk."], ["third = HIGH risk."]])
        pipeline = EpochPipeline(repo, _generator(answers), _reflector(), curator)

        report = pipeline.run(run_id, 1)

        assert report.new_bullet_ids == [
            f"nssi-r{run_id}-e1-001",
            f"nssi-r{run_id}-e1-002",
            f"psychosis-r{run_id}-e1-003",
        ]

    def test_curated_bullets_visible_next_epoch_only(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        curator = _curator([["new = HIGH risk."], ["newer = HIGH risk."]])
        generator = _generator()
        pipeline = EpochPipeline(repo, generator, _reflector(), curator)

        first = pipeline.run(run_id, 1)
        second = pipeline.run(run_id, 2)

        assert first.playbook_size == 2
        assert second.playbook_size == 3
        epoch_two_context = {h.bullet_id for h in generator.requests[-1].heuristics}
        assert first.new_bullet_ids[0] in epoch_two_context
        assert second.new_bullet_ids[0] not in epoch_two_context

    def test_all_generate_calls_fail(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        reflector = _reflector()
        pipeline = EpochPipeline(repo, _fail("generator"), reflector, _curator([]))

        report = pipeline.run(run_id, 1)

        assert report.skipped["generator"] == 4
        assert report.errors_found == 0
        epoch = repo.get_epoch_result(run_id, 1)
        assert (epoch.accuracy, epoch.overall_f1, epoch.errors_found) == (0.0, 0.0, 0)
        assert reflector.requests == []
        assert [log.agent_type for log in repo.list_agent_logs(run_id)] == ["generator"]

    def test_failed_reflections_are_skipped(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        curator = _curator([])
        pipeline = EpochPipeline(repo, _generator(), _fail("reflector"), curator)

        report = pipeline.run(run_id, 1)

        assert report.skipped["reflector"] == 1
        assert report.reflections_created == 0
        assert curator.requests == []
        assert repo.get_epoch_result(run_id, 1).heuristics_added == 0

    def test_failed_curation_is_skipped(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        pipeline = EpochPipeline(repo, _generator(), _reflector(), _fail("curator"))

        report = pipeline.run(run_id, 1)

        assert report.skipped["curator"] == 1
        assert report.heuristics_added == 0
        assert len(repo.list_reflections(run_id)) == 1

    def test_max_errors_to_reflect(self, repo):
        rows = [("a", "nssi", "HIGH"), ("b", "nssi", "HIGH"), ("c", "nssi", "HIGH")]
        answers = {t: ("suicide", "HIGH", []) for t in "abc"}
        run_id = _running_run(repo, rows)
        reflector = _reflector()
        pipeline = EpochPipeline(
            repo,
            _generator(answers),
            reflector,
            _curator([[], []]),
            PipelineConfig(max_errors_to_reflect=2),
        )

        report = pipeline.run(run_id, 1)

        assert report.errors_found == 3
        assert len(reflector.requests) == 2

    def test_empty_eval_split_fails_epoch(self, repo):
        run_id = _running_run(repo, [])
        pipeline = EpochPipeline(repo, _generator(), _reflector(), _curator([]))

        with pytest.raises(EpochFailure):
            pipeline.run(run_id, 1)
        assert repo.get_epoch_result(run_id, 1) is None

    def test_heartbeat_is_recorded(self, repo):
        run_id = _running_run(repo, EVAL_ROWS)
        pipeline = EpochPipeline(repo, _generator(), _reflector(), _curator([[]]))

        pipeline.run(run_id, 1)

        assert repo.get_training_run(run_id).last_activity_at is not None


class TestPipelineWithMockClient:
    def test_from_client_end_to_end(self, repo):
        run_id = _running_run(repo, [("cutting", "nssi", "HIGH")])
        client = MockGeminiClient(responses=[
            json.dumps({"category": "suicide", "risk_level": "HIGH", "heuristics_used": ["nssi-001"]}),
            json.dumps({
                "error_type": "category misclassification",
                "correct_approach": "Self-injury is NSSI",
                "key_insight": "Cutting without intent to die is NSSI",
                "affected_section": "nssi",
                "tag": "self_injury",
            }),
            json.dumps({"bullets": [{"section": "nssi", "content": "Cutting without intent = HIGH risk."}]}),
        ])
        pipeline = EpochPipeline.from_client(repo, client)

        report = pipeline.run(run_id, 1)

        assert report.new_bullet_ids == [f"nssi-r{run_id}-e1-001"]
        assert repo.get_heuristic("nssi-001").harmful_count == 1
        assert repo.get_heuristic(report.new_bullet_ids[0]).risk_level == "HIGH"

        generator_log = repo.list_agent_logs(run_id, agent_type="generator")[0]
        assert "{{USER_INPUT}}" in generator_log.system_prompt
        assert json.loads(generator_log.details_json)["errors"][0]["text"] == "cutting"
        reflector_log = repo.list_agent_logs(run_id, agent_type="reflector")[0]
        assert "cutting" in reflector_log.system_prompt
