"""One training epoch: Generate, Evaluate, Reflect, Curate.

The pipeline reads the eval split and the playbook snapshot visible at the
start of the epoch, classifies every sample, credits cited heuristics,
persists the epoch metrics, reflects on each error and curates new bullets.
Per-item failures are counted and skipped. Anything else propagates to the
run controller, which fails the run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.agents.prompts import render_generator_template
from src.agents.steps import (
    Classification,
    CuratedBullet,
    CurateInput,
    CuratorStep,
    GenerateInput,
    GeneratorStep,
    ReflectInput,
    ReflectionInsight,
    ReflectorStep,
)
from src.db.models import EpochResultRecord, HeuristicRecord, ReflectionRecord
from src.training.config import PipelineConfig
from src.training.effectiveness import EffectivenessTracker
from src.training.errors import EpochFailure
from src.training.metrics import EvaluationResult, Prediction, evaluate_predictions

if TYPE_CHECKING:
    from src.agents.base import AgentStep
    from src.agents.client import GeminiClient, MockGeminiClient
    from src.db.models import TrainingSampleRecord
    from src.db.repo import Repository

logger = logging.getLogger(__name__)


def make_bullet_id(section: str, run_id: int, epoch_number: int, seq: int) -> str:
    return f"{section}-r{run_id}-e{epoch_number}-{seq:03d}"


@dataclass
class EpochReport:
    """Summary of one epoch returned to the run controller."""

    run_id: int
    epoch_number: int
    evaluation: EvaluationResult
    playbook_size: int
    errors_found: int
    reflections_created: int = 0
    heuristics_added: int = 0
    new_bullet_ids: list[str] = field(default_factory=list)
    skipped: dict[str, int] = field(default_factory=dict)

    @property
    def overall_f1(self) -> float:
        return self.evaluation.overall_f1


class EpochPipeline:
    """Runs a single epoch for a run.

    Usage:
        pipeline = EpochPipeline.from_client(repo, client)
        report = pipeline.run(run_id=1, epoch_number=1)
    """

    def __init__(
        self,
        repo: Repository,
        generator: AgentStep[GenerateInput, Classification],
        reflector: AgentStep[ReflectInput, ReflectionInsight],
        curator: AgentStep[CurateInput, list[CuratedBullet]],
        config: PipelineConfig | None = None,
    ):
        self.repo = repo
        self.generator = generator
        self.reflector = reflector
        self.curator = curator
        self.config = config or PipelineConfig()
        self._last_heartbeat: float | None = None

    @classmethod
    def from_client(
        cls,
        repo: Repository,
        client: GeminiClient | MockGeminiClient,
        config: PipelineConfig | None = None,
    ) -> EpochPipeline:
        config = config or PipelineConfig()
        return cls(
            repo,
            generator=GeneratorStep(client, temperature=config.generator_temperature),
            reflector=ReflectorStep(client, temperature=config.reflector_temperature),
            curator=CuratorStep(
                client,
                temperature=config.curator_temperature,
                max_bullets=config.max_bullets_per_reflection,
            ),
            config=config,
        )

    def run(self, run_id: int, epoch_number: int) -> EpochReport:
        prefix = f"[run {run_id}] [epoch {epoch_number}]"
        self._last_heartbeat = None

        samples = self.repo.list_training_samples(run_id, "eval")
        if not samples:
            raise EpochFailure(epoch_number, "No evaluation samples available")

        playbook = self.repo.list_playbook_snapshot(run_id, epoch_number)
        logger.info(f"{prefix} Starting with {len(samples)} samples, playbook size {len(playbook)}")
        skipped = {"generator": 0, "reflector": 0, "curator": 0}

        # Generate + Score + Track
        tracker = EffectivenessTracker(self.repo, known_ids=(h.bullet_id for h in playbook))
        predictions = self._generate(run_id, samples, playbook, tracker, skipped, prefix)
        tracker.flush()
        self._heartbeat(run_id, force=True)

        # Evaluate
        evaluation = evaluate_predictions(predictions)
        errors = [p for p in predictions if not p.is_correct]
        self.repo.insert_epoch_result(
            EpochResultRecord(
                run_id=run_id,
                epoch_number=epoch_number,
                category_f1=evaluation.category_f1,
                risk_f1=evaluation.risk_f1,
                overall_f1=evaluation.overall_f1,
                accuracy=evaluation.accuracy,
                playbook_size=len(playbook),
                errors_found=len(errors),
                heuristics_added=0,
            )
        )
        self.repo.log_agent(
            run_id,
            epoch_number,
            "generator",
            system_prompt=render_generator_template(playbook),
            input_summary=f"Classified {len(samples)} samples with {len(playbook)} heuristics",
            output_summary=(
                f"Accuracy: {evaluation.accuracy * 100:.1f}%, F1: {evaluation.overall_f1 * 100:.1f}%, "
                f"errors: {len(errors)}, skipped: {skipped['generator']}"
            ),
            details={
                "metrics": evaluation.to_dict(),
                "errors": [
                    {
                        "text": p.text,
                        "predicted": {"category": p.predicted_category, "risk_level": p.predicted_risk},
                        "expected": {"category": p.true_category, "risk_level": p.true_risk},
                        "heuristics_used": p.cited_ids,
                    }
                    for p in errors
                ],
            },
        )
        logger.info(
            f"{prefix} Evaluated: accuracy={evaluation.accuracy:.3f} "
            f"overall_f1={evaluation.overall_f1:.3f} errors={len(errors)}"
        )

        # Reflect
        reflections = self._reflect(run_id, epoch_number, errors, skipped, prefix)
        self._heartbeat(run_id, force=True)

        # Curate
        new_ids = self._curate(run_id, epoch_number, reflections, playbook, skipped, prefix)
        self.repo.update_epoch_heuristics_added(run_id, epoch_number, len(new_ids))
        self._heartbeat(run_id, force=True)

        logger.info(
            f"{prefix} Done: {len(reflections)} reflections, {len(new_ids)} new heuristics, "
            f"skipped {skipped}"
        )
        return EpochReport(
            run_id=run_id,
            epoch_number=epoch_number,
            evaluation=evaluation,
            playbook_size=len(playbook),
            errors_found=len(errors),
            reflections_created=len(reflections),
            heuristics_added=len(new_ids),
            new_bullet_ids=new_ids,
            skipped=skipped,
        )

    def _generate(
        self,
        run_id: int,
        samples: list[TrainingSampleRecord],
        playbook: list[HeuristicRecord],
        tracker: EffectivenessTracker,
        skipped: dict[str, int],
        prefix: str,
    ) -> list[Prediction]:
        predictions: list[Prediction] = []
        for sample in samples:
            outcome = self.generator.run(GenerateInput(text=sample.text, heuristics=playbook))
            if not outcome.ok:
                skipped["generator"] += 1
                logger.warning(f"{prefix} Skipping sample {sample.id}: {outcome.failure.reason}")
                self._heartbeat(run_id)
                continue

            classification = outcome.value
            prediction = Prediction(
                text=sample.text,
                predicted_category=classification.category,
                predicted_risk=classification.risk_level,
                true_category=sample.true_category,
                true_risk=sample.true_risk,
                cited_ids=classification.cited_ids,
            )
            tracker.record(prediction.cited_ids, prediction.is_correct)
            predictions.append(prediction)
            self._heartbeat(run_id)
        return predictions

    def _reflect(
        self,
        run_id: int,
        epoch_number: int,
        errors: list[Prediction],
        skipped: dict[str, int],
        prefix: str,
    ) -> list[ReflectionInsight]:
        limit = self.config.max_errors_to_reflect
        to_reflect = errors if limit is None else errors[:limit]

        reflections: list[ReflectionInsight] = []
        first_prompt: str | None = None
        for error in to_reflect:
            request = ReflectInput(
                text=error.text,
                predicted_category=error.predicted_category,
                predicted_risk=error.predicted_risk,
                true_category=error.true_category,
                true_risk=error.true_risk,
            )
            if first_prompt is None and hasattr(self.reflector, "build_prompt"):
                first_prompt = self.reflector.build_prompt(request)

            outcome = self.reflector.run(request)
            self._heartbeat(run_id)
            if not outcome.ok:
                skipped["reflector"] += 1
                logger.warning(f"{prefix} Skipping reflection: {outcome.failure.reason}")
                continue

            insight = outcome.value
            self.repo.insert_reflection(
                ReflectionRecord(
                    run_id=run_id,
                    epoch_number=epoch_number,
                    error_type=insight.error_type,
                    correct_approach=insight.correct_approach,
                    key_insight=insight.key_insight,
                    affected_section=insight.affected_section,
                    tag=insight.tag,
                    input_text=error.text,
                    predicted_category=error.predicted_category,
                    predicted_risk=error.predicted_risk,
                    true_category=error.true_category,
                    true_risk=error.true_risk,
                )
            )
            reflections.append(insight)

        if reflections:
            self.repo.log_agent(
                run_id,
                epoch_number,
                "reflector",
                system_prompt=first_prompt or "",
                input_summary=f"Analyzed {len(to_reflect)} of {len(errors)} errors",
                output_summary=f"Generated {len(reflections)} reflections",
                details={"reflections": [r.to_dict() for r in reflections]},
            )
        return reflections

    def _curate(
        self,
        run_id: int,
        epoch_number: int,
        reflections: list[ReflectionInsight],
        playbook: list[HeuristicRecord],
        skipped: dict[str, int],
        prefix: str,
    ) -> list[str]:
        new_ids: list[str] = []
        new_bullets: list[dict[str, str]] = []
        first_prompt: str | None = None
        # Shared by every reflection in the epoch
        seq = 0

        for reflection in reflections:
            request = CurateInput(reflection=reflection, playbook=playbook)
            if first_prompt is None and hasattr(self.curator, "build_prompt"):
                first_prompt = self.curator.build_prompt(request)

            outcome = self.curator.run(request)
            self._heartbeat(run_id)
            if not outcome.ok:
                skipped["curator"] += 1
                logger.warning(f"{prefix} Skipping curation: {outcome.failure.reason}")
                continue

            for bullet in outcome.value[: self.config.max_bullets_per_reflection]:
                seq += 1
                bullet_id = make_bullet_id(bullet.section, run_id, epoch_number, seq)
                self.repo.insert_heuristic(
                    HeuristicRecord(
                        bullet_id=bullet_id,
                        section=bullet.section,
                        content=bullet.content,
                        risk_level=bullet.risk_level,
                        run_id=run_id,
                        epoch_number=epoch_number,
                    )
                )
                new_ids.append(bullet_id)
                new_bullets.append(
                    {"id": bullet_id, "section": bullet.section, "content": bullet.content}
                )

        if new_ids:
            self.repo.log_agent(
                run_id,
                epoch_number,
                "curator",
                system_prompt=first_prompt or "",
                input_summary=f"Processed {len(reflections)} reflections",
                output_summary=f"Added {len(new_ids)} new heuristics",
                details={"new_bullets": new_bullets},
            )
        return new_ids

    def _heartbeat(self, run_id: int, force: bool = False) -> None:
        now = time.monotonic()
        if (
            not force
            and self._last_heartbeat is not None
            and now - self._last_heartbeat < self.config.heartbeat_interval_seconds
        ):
            return
        self.repo.touch_run_activity(run_id)
        self._last_heartbeat = now
