"""Run state machine and epoch loop.

A run moves pending -> running -> {completed, stopped, failed}. Every
transition is a conditional update on the persisted status, so a status
written by another actor (a stop, the recovery supervisor) is never
overwritten.

Key responsibilities:
- Start a pending run
- Run epochs strictly one after another
- Check for cancellation once per epoch, after the epoch is persisted
- Decide continuation with the plateau detector
- Fail the run when an epoch cannot complete
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.db.repo import utc_now
from src.training.config import PlateauConfig
from src.training.errors import EpochFailure, InvalidRunStateError, RunNotFoundError
from src.training.plateau import should_continue_training

if TYPE_CHECKING:
    from src.db.models import TrainingRunRecord
    from src.db.repo import Repository
    from src.training.pipeline import EpochPipeline

logger = logging.getLogger(__name__)

STOPPED_REASON = "Stopped by user"


@dataclass
class RunOutcome:
    """Final result of a run's epoch loop."""

    run_id: int
    status: str  # 'completed', 'stopped', 'failed'
    epochs_completed: int
    reason: str


class RunController:
    """Drives a run's epochs until completion, stop or failure.

    Usage:
        controller = RunController(repo, pipeline)
        outcome = controller.run(run_id)
    """

    def __init__(self, repo: Repository, pipeline: EpochPipeline):
        self.repo = repo
        self.pipeline = pipeline

    def run(self, run_id: int) -> RunOutcome:
        """Start a pending run and drive it to a terminal status."""
        self.start(run_id)
        return self.run_epochs(run_id)

    def start(self, run_id: int) -> TrainingRunRecord:
        """Transition a run from pending to running.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run is not pending
        """
        run = self._load(run_id)
        if not self.repo.transition_run_status(run_id, "pending", "running", started_at=utc_now()):
            current = self._load(run_id)
            raise InvalidRunStateError(run_id, current.status, "start")
        logger.info(f"[run {run_id}] Started '{run.name}' (max_epochs={run.max_epochs})")
        return self._load(run_id)

    def run_epochs(self, run_id: int) -> RunOutcome:
        """Run epochs for a run that is already running."""
        run = self._load(run_id)
        if run.status != "running":
            raise InvalidRunStateError(run_id, run.status, "run epochs for")

        plateau_config = PlateauConfig(
            threshold=run.plateau_threshold,
            patience=run.plateau_patience,
        )
        epoch_number = self.repo.get_max_epoch_number(run_id)

        while True:
            epoch_number += 1
            logger.info(f"[run {run_id}] [epoch {epoch_number}] Starting epoch")

            try:
                self.pipeline.run(run_id, epoch_number)
            except EpochFailure as e:
                logger.error(f"[run {run_id}] {e}")
                return self._fail(run_id, str(e))
            except Exception as e:
                logger.exception(f"[run {run_id}] [epoch {epoch_number}] Unexpected error")
                return self._fail(run_id, f"Epoch {epoch_number} failed: {type(e).__name__}: {e}")

            try:
                outcome = self._after_epoch(run, epoch_number, plateau_config)
            except Exception as e:
                logger.exception(f"[run {run_id}] [epoch {epoch_number}] Error after epoch")
                return self._fail(run_id, f"Epoch {epoch_number} failed: {type(e).__name__}: {e}")
            if outcome is not None:
                return outcome

    def _after_epoch(
        self,
        run: TrainingRunRecord,
        epoch_number: int,
        plateau_config: PlateauConfig,
    ) -> RunOutcome | None:
        """Cancellation check and continuation decision for a persisted epoch.

        Returns an outcome when the loop must exit, otherwise None.
        """
        run_id = run.id
        cancelled = self._check_cancellation(run_id)
        if cancelled is not None:
            return cancelled

        epochs = self.repo.list_epoch_results(run_id)
        decision = should_continue_training(epochs, run.max_epochs, plateau_config)
        logger.info(f"[run {run_id}] [epoch {epoch_number}] {decision.plateau.message}")

        if decision.should_continue:
            return None

        if not self.repo.transition_run_status(
            run_id, "running", "completed", completed_at=utc_now()
        ):
            return self._outcome_from_store(run_id)
        logger.info(f"[run {run_id}] Completed: {decision.reason}")
        return RunOutcome(
            run_id=run_id,
            status="completed",
            epochs_completed=len(epochs),
            reason=decision.reason,
        )

    def _check_cancellation(self, run_id: int) -> RunOutcome | None:
        """Single cancellation point, evaluated after each persisted epoch.

        Returns an outcome when the loop must exit, otherwise None.
        """
        run = self._load(run_id)

        if run.status != "running":
            # Terminal status written by someone else; leave it untouched
            logger.info(f"[run {run_id}] Status is '{run.status}', leaving the epoch loop")
            return self._outcome(run)

        if run.stop_requested_at is not None:
            if self.repo.transition_run_status(
                run_id,
                "running",
                "stopped",
                completed_at=utc_now(),
                failure_reason=STOPPED_REASON,
            ):
                logger.info(f"[run {run_id}] Stopped at epoch boundary")
            return self._outcome_from_store(run_id)

        return None

    def _fail(self, run_id: int, reason: str) -> RunOutcome:
        if not self.repo.transition_run_status(
            run_id, "running", "failed", completed_at=utc_now(), failure_reason=reason
        ):
            return self._outcome_from_store(run_id)
        return RunOutcome(
            run_id=run_id,
            status="failed",
            epochs_completed=self.repo.get_max_epoch_number(run_id),
            reason=reason,
        )

    def _outcome_from_store(self, run_id: int) -> RunOutcome:
        return self._outcome(self._load(run_id))

    def _outcome(self, run: TrainingRunRecord) -> RunOutcome:
        return RunOutcome(
            run_id=run.id,
            status=run.status,
            epochs_completed=self.repo.get_max_epoch_number(run.id),
            reason=run.failure_reason or f"Run is {run.status}",
        )

    def _load(self, run_id: int) -> TrainingRunRecord:
        run = self.repo.get_training_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run
