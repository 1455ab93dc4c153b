"""Application service for training runs.

Wraps the repository, run controller and recovery supervisor behind the
operations the CLI and web API expose: create, start, stop, status, the
raw listings, playbook snapshots and on-demand recovery.

Starting a run is fire-and-continue. The pending -> running transition
happens in the caller's thread, then the epoch loop runs on a daemon thread
with its own database connection.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import asdict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from src.agents.prompts import format_playbook_context, render_generator_template
from src.db.models import TrainingRunRecord, TrainingSampleRecord
from src.db.repo import Repository
from src.training.config import CreateRunRequest, PlateauConfig, RecoveryConfig
from src.training.controller import RunController, RunOutcome
from src.training.dataset import SampleRow
from src.training.errors import DatasetError, InvalidRunStateError, RunNotFoundError
from src.training.pipeline import EpochPipeline
from src.training.plateau import detect_plateau
from src.training.recovery import RecoverySupervisor

if TYPE_CHECKING:
    from src.agents.client import GeminiClient, MockGeminiClient
    from src.training.config import PipelineConfig

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[Repository], EpochPipeline]

# One active epoch loop per run id within this process
_active_runs: dict[int, threading.Thread] = {}
_active_lock = threading.Lock()


def client_pipeline_factory(
    client: GeminiClient | MockGeminiClient,
    config: PipelineConfig | None = None,
) -> PipelineFactory:
    """Build pipelines that share one LLM client."""

    def factory(repo: Repository) -> EpochPipeline:
        return EpochPipeline.from_client(repo, client, config)

    return factory


def to_dict(record: Any) -> dict[str, Any]:
    """Serialize a dataclass record, rendering datetimes as ISO text."""
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def is_run_active(run_id: int) -> bool:
    with _active_lock:
        thread = _active_runs.get(run_id)
        return thread is not None and thread.is_alive()


class TrainingService:
    """Operations on training runs.

    Args:
        repo: Repository for the calling thread
        pipeline_factory: Builds an epoch pipeline bound to a repository
        recovery_config: Thresholds for ``recover_now``
    """

    def __init__(
        self,
        repo: Repository,
        pipeline_factory: PipelineFactory | None = None,
        recovery_config: RecoveryConfig | None = None,
    ):
        self.repo = repo
        self.pipeline_factory = pipeline_factory
        self.recovery_config = recovery_config or RecoveryConfig()

    # --- Creation and lifecycle ---

    def create_run(
        self,
        request: CreateRunRequest,
        train_rows: list[SampleRow],
        eval_rows: list[SampleRow],
    ) -> TrainingRunRecord:
        """Create a pending run and ingest its samples."""
        if not eval_rows:
            raise DatasetError("Invalid evaluation data", ["Evaluation set is empty"])
        if not train_rows:
            raise DatasetError("Invalid training data", ["Training set is empty"])

        run_id = self.repo.insert_training_run(
            TrainingRunRecord(
                name=request.name,
                max_epochs=request.max_epochs,
                plateau_threshold=request.plateau_threshold,
                plateau_patience=request.plateau_patience,
            )
        )
        samples = [
            TrainingSampleRecord(run_id, split, row.text, row.true_category, row.true_risk)
            for split, rows in (("train", train_rows), ("eval", eval_rows))
            for row in rows
        ]
        self.repo.insert_training_samples(samples)
        logger.info(
            f"[run {run_id}] Created '{request.name}' with {len(train_rows)} train "
            f"and {len(eval_rows)} eval samples"
        )
        return self._get_run(run_id)

    def start_run(self, run_id: int) -> threading.Thread:
        """Start a pending run and return the thread driving its epochs."""
        if self.pipeline_factory is None:
            raise RuntimeError("TrainingService has no pipeline factory; cannot start runs")

        with _active_lock:
            existing = _active_runs.get(run_id)
            if existing is not None and existing.is_alive():
                raise InvalidRunStateError(run_id, "running", "start")

            controller = RunController(self.repo, self.pipeline_factory(self.repo))
            controller.start(run_id)

            thread = threading.Thread(
                target=self._run_in_background,
                args=(run_id,),
                name=f"training-run-{run_id}",
                daemon=True,
            )
            _active_runs[run_id] = thread
            thread.start()
        return thread

    def _run_in_background(self, run_id: int) -> RunOutcome | None:
        try:
            with Repository(self.repo.db_path) as repo:
                controller = RunController(repo, self.pipeline_factory(repo))
                outcome = controller.run_epochs(run_id)
                logger.info(
                    f"[run {run_id}] Finished with status '{outcome.status}' after "
                    f"{outcome.epochs_completed} epochs: {outcome.reason}"
                )
                return outcome
        except Exception:
            # The recovery supervisor fails the run once its heartbeat goes stale
            logger.exception(f"[run {run_id}] Training thread crashed")
            return None
        finally:
            with _active_lock:
                if _active_runs.get(run_id) is threading.current_thread():
                    del _active_runs[run_id]

    def run_sync(self, run_id: int) -> RunOutcome:
        """Run a pending run to completion in the calling thread."""
        if self.pipeline_factory is None:
            raise RuntimeError("TrainingService has no pipeline factory; cannot start runs")
        controller = RunController(self.repo, self.pipeline_factory(self.repo))
        return controller.run(run_id)

    def stop_run(self, run_id: int) -> TrainingRunRecord:
        """Request a stop; it takes effect at the next epoch boundary."""
        run = self._get_run(run_id)
        if run.status != "running":
            raise InvalidRunStateError(run_id, run.status, "stop")

        if self.repo.request_run_stop(run_id):
            logger.info(f"[run {run_id}] Stop requested")
        return self._get_run(run_id)

    def recover_now(self) -> dict[str, Any]:
        supervisor = RecoverySupervisor(self.repo, self.recovery_config)
        reports = supervisor.recover_all()
        return {
            "recovered": reports["stuck"].count,
            "timed_out": reports["timed_out"].count,
            "stuck_runs": reports["stuck"].to_dict()["runs"],
            "timed_out_runs": reports["timed_out"].to_dict()["runs"],
        }

    # --- Queries ---

    def get_run_status(self, run_id: int) -> dict[str, Any]:
        run = self._get_run(run_id)
        epochs = self.repo.list_epoch_results(run_id)
        counts = self.repo.count_training_samples(run_id)

        plateau = None
        if epochs:
            plateau = detect_plateau(
                epochs,
                PlateauConfig(threshold=run.plateau_threshold, patience=run.plateau_patience),
            ).to_dict()

        best = None
        for epoch in epochs:
            if best is None or epoch.overall_f1 > best.overall_f1:
                best = epoch

        return {
            "run_id": run.id,
            "name": run.name,
            "status": run.status,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
            "last_activity_at": run.last_activity_at.isoformat() if run.last_activity_at else None,
            "failure_reason": run.failure_reason,
            "stop_requested": run.stop_requested_at is not None,
            "config": {
                "max_epochs": run.max_epochs,
                "plateau_threshold": run.plateau_threshold,
                "plateau_patience": run.plateau_patience,
            },
            "dataset": {
                "training_samples": counts["train"],
                "eval_samples": counts["eval"],
            },
            "progress": {
                "current_epoch": len(epochs),
                "max_epochs": run.max_epochs,
                "progress_percent": round(len(epochs) / run.max_epochs * 100),
            },
            "epochs": [to_dict(e) for e in epochs],
            "best_epoch": (
                {
                    "epoch_number": best.epoch_number,
                    "overall_f1": best.overall_f1,
                    "category_f1": best.category_f1,
                    "risk_f1": best.risk_f1,
                    "accuracy": best.accuracy,
                }
                if best
                else None
            ),
            "plateau_status": plateau,
        }

    def list_runs(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return [to_dict(r) for r in self.repo.list_training_runs(status=status, limit=limit)]

    def list_epochs(self, run_id: int) -> list[dict[str, Any]]:
        self._get_run(run_id)
        return [to_dict(e) for e in self.repo.list_epoch_results(run_id)]

    def list_reflections(self, run_id: int, epoch_number: int | None = None) -> list[dict[str, Any]]:
        self._get_run(run_id)
        return [to_dict(r) for r in self.repo.list_reflections(run_id, epoch_number)]

    def list_heuristics(
        self, run_id: int | None = None, include_baseline: bool = True
    ) -> list[dict[str, Any]]:
        if run_id is not None:
            self._get_run(run_id)
        heuristics = self.repo.list_heuristics(run_id=run_id, include_baseline=include_baseline)
        return [{**to_dict(h), "is_baseline": h.is_baseline} for h in heuristics]

    def list_agent_logs(
        self,
        run_id: int,
        epoch_number: int | None = None,
        agent_type: str | None = None,
    ) -> list[dict[str, Any]]:
        self._get_run(run_id)
        logs = self.repo.list_agent_logs(run_id, epoch_number=epoch_number, agent_type=agent_type)
        return [to_dict(log) for log in logs]

    def get_playbook_snapshot(self, run_id: int, epoch_number: int) -> dict[str, Any]:
        """The playbook and generator prompt as seen at the start of an epoch."""
        self._get_run(run_id)
        entries = self.repo.list_playbook_snapshot(run_id, epoch_number)
        full_prompt = render_generator_template(entries)
        return {
            "run_id": run_id,
            "epoch_number": epoch_number,
            "playbook_entries": [
                {
                    "bullet_id": h.bullet_id,
                    "section": h.section,
                    "content": h.content,
                    "risk_level": h.risk_level,
                    "run_id": h.run_id,
                    "epoch_number": h.epoch_number,
                }
                for h in entries
            ],
            "playbook_size": len(entries),
            "playbook_context": format_playbook_context(entries),
            "full_prompt": full_prompt,
            "prompt_length": len(full_prompt),
            "token_count": math.ceil(len(full_prompt) / 4),
        }

    def _get_run(self, run_id: int) -> TrainingRunRecord:
        run = self.repo.get_training_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run
