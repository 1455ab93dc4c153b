"""Detection of stuck and timed-out training runs.

A run left in 'running' by a dead process is never noticed by its own loop.
The supervisor inspects persisted state only and fails such runs with a
conditional transition, so concurrent supervisors recover a run once.
Recovery never raises: internal errors are logged and reported as zero
recoveries.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from src.db.repo import Repository, utc_now
from src.training.config import RecoveryConfig

if TYPE_CHECKING:
    from src.db.models import TrainingRunRecord

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    count: int = 0
    runs: list[tuple[int, str]] = field(default_factory=list)

    def add(self, run: TrainingRunRecord) -> None:
        self.count += 1
        self.runs.append((run.id, run.name))

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "runs": [{"run_id": run_id, "name": name} for run_id, name in self.runs],
        }


class RecoverySupervisor:
    """Fails running runs whose heartbeat is stale or whose runtime is exceeded.

    Args:
        repo: Repository to scan
        config: Staleness and timeout thresholds
        clock: Returns the current UTC time (tests inject a fixed clock)
    """

    def __init__(
        self,
        repo: Repository,
        config: RecoveryConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.config = config or RecoveryConfig()
        self.clock = clock
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def recover_stuck_runs(self) -> RecoveryReport:
        """Fail running runs with no activity within the stale threshold."""
        report = RecoveryReport()
        try:
            running = self.repo.list_training_runs(status="running", limit=None)
            if not running:
                logger.debug("No running training runs found")
                return report

            now = self.clock()
            for run in running:
                timestamps = [t for t in (run.last_activity_at, run.started_at) if t is not None]
                if timestamps:
                    idle_seconds = (now - max(timestamps)).total_seconds()
                    if idle_seconds <= self.config.heartbeat_stale_seconds:
                        continue
                    minutes = str(round(idle_seconds / 60))
                else:
                    minutes = "unknown"

                reason = (
                    f"Training process died or became unresponsive. Last activity: {minutes} "
                    "minutes ago. The process likely crashed or the server was restarted "
                    "during training."
                )
                if self.repo.transition_run_status(
                    run.id, "running", "failed", completed_at=now, failure_reason=reason
                ):
                    logger.warning(
                        f"Run #{run.id} ({run.name}): last activity {minutes} minutes ago, marked as failed"
                    )
                    report.add(run)
        except Exception:
            logger.exception("Error during stuck run recovery")
            return RecoveryReport()

        if report.count:
            logger.info(f"Recovered {report.count} stuck training run(s)")
        return report

    def check_run_timeouts(self) -> RecoveryReport:
        """Fail running runs started longer ago than the runtime limit."""
        report = RecoveryReport()
        try:
            now = self.clock()
            limit_hours = round(self.config.run_timeout_seconds / 3600)
            for run in self.repo.list_training_runs(status="running", limit=None):
                if run.started_at is None:
                    continue
                elapsed = (now - run.started_at).total_seconds()
                if elapsed <= self.config.run_timeout_seconds:
                    continue

                hours = round(elapsed / 3600)
                reason = (
                    f"Training exceeded maximum runtime limit of {limit_hours} hours. The run was "
                    f"automatically terminated after running for {hours} hours. This may indicate "
                    "an infinite loop, extremely slow LLM responses, or misconfigured training "
                    "parameters."
                )
                if self.repo.transition_run_status(
                    run.id, "running", "failed", completed_at=now, failure_reason=reason
                ):
                    logger.warning(f"Run #{run.id} ({run.name}): running for {hours} hours, marked as failed")
                    report.add(run)
        except Exception:
            logger.exception("Error checking run timeouts")
            return RecoveryReport()

        if report.count:
            logger.info(f"Timed out {report.count} training run(s)")
        return report

    def recover_all(self) -> dict[str, RecoveryReport]:
        return {
            "stuck": self.recover_stuck_runs(),
            "timed_out": self.check_run_timeouts(),
        }

    # --- Periodic mode ---

    def start_periodic(self, interval_seconds: float = 60.0) -> threading.Thread:
        """Run ``recover_all`` every ``interval_seconds`` on a daemon thread.

        The thread opens its own connection to the same database file.
        """
        if self._thread is not None and self._thread.is_alive():
            return self._thread

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._periodic_loop,
            args=(interval_seconds,),
            name="recovery-supervisor",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop_periodic(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _periodic_loop(self, interval_seconds: float) -> None:
        with Repository(self.repo.db_path) as repo:
            supervisor = RecoverySupervisor(repo, self.config, self.clock)
            while not self._stop_event.is_set():
                supervisor.recover_all()
                self._stop_event.wait(interval_seconds)
