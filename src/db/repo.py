"""Repository pattern for database operations."""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.db.models import (
    AgentLogRecord,
    EpochResultRecord,
    HeuristicRecord,
    ReflectionRecord,
    TrainingRunRecord,
    TrainingSampleRecord,
)

SCHEMA_VERSION = 1

TERMINAL_STATUSES = ("completed", "stopped", "failed")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _ts_to_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _text_to_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Repository:
    """Database repository for playbook trainer persistence."""

    def __init__(self, db_path: str | Path = "playbook.db"):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self, enable_wal: bool = True) -> None:
        """Open database connection and ensure schema exists.

        Args:
            enable_wal: Enable WAL mode for better concurrent access (default True)
        """
        self._conn = sqlite3.connect(self.db_path, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        if enable_wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        self._ensure_schema()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "Repository":
        self.connect()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _ensure_schema(self) -> None:
        """Create schema if it doesn't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        schema_sql = schema_path.read_text()

        cursor = self.conn.cursor()
        cursor.executescript(schema_sql)

        # Check/set schema version
        cursor.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
        row = cursor.fetchone()
        if row is None:
            cursor.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        self.conn.commit()

    # --- Training run operations ---

    def insert_training_run(self, run: TrainingRunRecord) -> int:
        """Insert a new training run. Returns the new ID."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO training_runs (
                name, max_epochs, plateau_threshold, plateau_patience, status,
                started_at, completed_at, last_activity_at, failure_reason,
                stop_requested_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.name,
                run.max_epochs,
                run.plateau_threshold,
                run.plateau_patience,
                run.status,
                _ts_to_text(run.started_at),
                _ts_to_text(run.completed_at),
                _ts_to_text(run.last_activity_at),
                run.failure_reason,
                _ts_to_text(run.stop_requested_at),
                _ts_to_text(run.created_at or utc_now()),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid  # type: ignore

    def get_training_run(self, run_id: int) -> TrainingRunRecord | None:
        """Get a training run by ID."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM training_runs WHERE id = ?", (run_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_training_run(row)

    def list_training_runs(
        self, status: str | None = None, limit: int | None = 100
    ) -> list[TrainingRunRecord]:
        """List training runs, newest first, optionally filtered by status.

        A limit of None returns every matching run.
        """
        cursor = self.conn.cursor()
        # SQLite treats a negative LIMIT as no limit
        limit = -1 if limit is None else limit
        if status:
            cursor.execute(
                "SELECT * FROM training_runs WHERE status = ? ORDER BY id DESC LIMIT ?",
                (status, limit),
            )
        else:
            cursor.execute("SELECT * FROM training_runs ORDER BY id DESC LIMIT ?", (limit,))
        return [self._row_to_training_run(row) for row in cursor.fetchall()]

    def transition_run_status(
        self,
        run_id: int,
        from_status: str,
        to_status: str,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """Move a run between statuses if it is still in ``from_status``.

        The update is conditional on the persisted status, so concurrent
        writers cannot apply the same transition twice.

        Returns:
            True if this call performed the transition
        """
        updates = ["status = ?"]
        params: list[Any] = [to_status]

        if started_at is not None:
            updates.append("started_at = ?")
            params.append(_ts_to_text(started_at))
            updates.append("last_activity_at = ?")
            params.append(_ts_to_text(started_at))
        if completed_at is not None:
            updates.append("completed_at = ?")
            params.append(_ts_to_text(completed_at))
        if failure_reason is not None:
            updates.append("failure_reason = ?")
            params.append(failure_reason)

        params.extend([run_id, from_status])
        cursor = self.conn.cursor()
        cursor.execute(
            f"UPDATE training_runs SET {', '.join(updates)} WHERE id = ? AND status = ?",
            params,
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def touch_run_activity(self, run_id: int, at: datetime | None = None) -> None:
        """Record a heartbeat for a running run."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE training_runs SET last_activity_at = ? WHERE id = ? AND status = 'running'",
            (_ts_to_text(at or utc_now()), run_id),
        )
        self.conn.commit()

    def request_run_stop(self, run_id: int) -> bool:
        """Flag a running run for a stop at its next epoch boundary."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE training_runs SET stop_requested_at = ?
            WHERE id = ? AND status = 'running' AND stop_requested_at IS NULL
            """,
            (_ts_to_text(utc_now()), run_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def _row_to_training_run(self, row: sqlite3.Row) -> TrainingRunRecord:
        return TrainingRunRecord(
            id=row["id"],
            name=row["name"],
            max_epochs=row["max_epochs"],
            plateau_threshold=row["plateau_threshold"],
            plateau_patience=row["plateau_patience"],
            status=row["status"],
            started_at=_text_to_ts(row["started_at"]),
            completed_at=_text_to_ts(row["completed_at"]),
            last_activity_at=_text_to_ts(row["last_activity_at"]),
            failure_reason=row["failure_reason"],
            stop_requested_at=_text_to_ts(row["stop_requested_at"]),
            created_at=_text_to_ts(row["created_at"]),
        )

    # --- Training sample operations ---

    def insert_training_samples(self, samples: list[TrainingSampleRecord]) -> int:
        """Insert samples in one transaction. Returns the number inserted."""
        cursor = self.conn.cursor()
        cursor.executemany(
            """
            INSERT INTO training_samples (run_id, split, text, true_category, true_risk)
            VALUES (?, ?, ?, ?, ?)
            """,
            [(s.run_id, s.split, s.text, s.true_category, s.true_risk) for s in samples],
        )
        self.conn.commit()
        return len(samples)

    def list_training_samples(self, run_id: int, split: str) -> list[TrainingSampleRecord]:
        """Get all samples of a run's split in ingestion order."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM training_samples WHERE run_id = ? AND split = ? ORDER BY id",
            (run_id, split),
        )
        return [
            TrainingSampleRecord(
                id=row["id"],
                run_id=row["run_id"],
                split=row["split"],
                text=row["text"],
                true_category=row["true_category"],
                true_risk=row["true_risk"],
            )
            for row in cursor.fetchall()
        ]

    def count_training_samples(self, run_id: int) -> dict[str, int]:
        """Get sample counts per split for a run."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT split, COUNT(*) as count
            FROM training_samples
            WHERE run_id = ?
            GROUP BY split
            """,
            (run_id,),
        )
        counts = {"train": 0, "eval": 0}
        counts.update({row["split"]: row["count"] for row in cursor.fetchall()})
        return counts

    # --- Epoch result operations ---

    def insert_epoch_result(self, epoch: EpochResultRecord) -> int:
        """Insert an epoch result. Returns the new ID."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO epoch_results (
                run_id, epoch_number, category_f1, risk_f1, overall_f1, accuracy,
                playbook_size, errors_found, heuristics_added, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                epoch.run_id,
                epoch.epoch_number,
                epoch.category_f1,
                epoch.risk_f1,
                epoch.overall_f1,
                epoch.accuracy,
                epoch.playbook_size,
                epoch.errors_found,
                epoch.heuristics_added,
                _ts_to_text(epoch.created_at or utc_now()),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid  # type: ignore

    def update_epoch_heuristics_added(
        self, run_id: int, epoch_number: int, heuristics_added: int
    ) -> None:
        """Backfill the curated bullet count for an epoch."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE epoch_results SET heuristics_added = ?
            WHERE run_id = ? AND epoch_number = ?
            """,
            (heuristics_added, run_id, epoch_number),
        )
        self.conn.commit()

    def get_epoch_result(self, run_id: int, epoch_number: int) -> EpochResultRecord | None:
        """Get one epoch result."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM epoch_results WHERE run_id = ? AND epoch_number = ?",
            (run_id, epoch_number),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_epoch_result(row)

    def list_epoch_results(self, run_id: int) -> list[EpochResultRecord]:
        """Get all epoch results of a run ordered by epoch number."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM epoch_results WHERE run_id = ? ORDER BY epoch_number",
            (run_id,),
        )
        return [self._row_to_epoch_result(row) for row in cursor.fetchall()]

    def get_max_epoch_number(self, run_id: int) -> int:
        """Highest persisted epoch number for a run (0 when none)."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT MAX(epoch_number) as max_epoch FROM epoch_results WHERE run_id = ?",
            (run_id,),
        )
        row = cursor.fetchone()
        return row["max_epoch"] or 0

    def _row_to_epoch_result(self, row: sqlite3.Row) -> EpochResultRecord:
        return EpochResultRecord(
            id=row["id"],
            run_id=row["run_id"],
            epoch_number=row["epoch_number"],
            category_f1=row["category_f1"],
            risk_f1=row["risk_f1"],
            overall_f1=row["overall_f1"],
            accuracy=row["accuracy"],
            playbook_size=row["playbook_size"],
            errors_found=row["errors_found"],
            heuristics_added=row["heuristics_added"],
            created_at=_text_to_ts(row["created_at"]),
        )

    # --- Heuristic (playbook) operations ---

    def insert_heuristic(self, heuristic: HeuristicRecord) -> None:
        """Insert a playbook bullet."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO heuristics (
                bullet_id, section, content, risk_level, helpful_count,
                harmful_count, run_id, epoch_number, last_updated
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                heuristic.bullet_id,
                heuristic.section,
                heuristic.content,
                heuristic.risk_level,
                heuristic.helpful_count,
                heuristic.harmful_count,
                heuristic.run_id,
                heuristic.epoch_number,
                _ts_to_text(heuristic.last_updated or utc_now()),
            ),
        )
        self.conn.commit()

    def seed_baseline_heuristics(self, heuristics: list[HeuristicRecord]) -> int:
        """Insert baseline bullets, skipping ids that already exist.

        Returns:
            Number of bullets actually inserted
        """
        cursor = self.conn.cursor()
        inserted = 0
        for h in heuristics:
            cursor.execute(
                """
                INSERT OR IGNORE INTO heuristics (
                    bullet_id, section, content, risk_level, helpful_count,
                    harmful_count, run_id, epoch_number, last_updated
                )
                VALUES (?, ?, ?, ?, 0, 0, NULL, NULL, ?)
                """,
                (h.bullet_id, h.section, h.content, h.risk_level, _ts_to_text(utc_now())),
            )
            inserted += cursor.rowcount
        self.conn.commit()
        return inserted

    def get_heuristic(self, bullet_id: str) -> HeuristicRecord | None:
        """Get a playbook bullet by ID."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM heuristics WHERE bullet_id = ?", (bullet_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_heuristic(row)

    def list_playbook_snapshot(self, run_id: int, epoch_number: int) -> list[HeuristicRecord]:
        """Get the playbook visible to a run at the start of an epoch.

        This is every baseline bullet plus the bullets this run curated in
        epochs strictly before ``epoch_number``.
        """
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM heuristics
            WHERE run_id IS NULL
               OR (run_id = ? AND epoch_number < ?)
            ORDER BY helpful_count DESC, bullet_id ASC
            """,
            (run_id, epoch_number),
        )
        return [self._row_to_heuristic(row) for row in cursor.fetchall()]

    def list_heuristics(
        self, run_id: int | None = None, include_baseline: bool = True
    ) -> list[HeuristicRecord]:
        """List bullets, optionally restricted to one run's curated bullets."""
        cursor = self.conn.cursor()
        if run_id is None:
            cursor.execute("SELECT * FROM heuristics ORDER BY bullet_id")
        elif include_baseline:
            cursor.execute(
                """
                SELECT * FROM heuristics WHERE run_id IS NULL OR run_id = ?
                ORDER BY epoch_number IS NOT NULL, epoch_number, bullet_id
                """,
                (run_id,),
            )
        else:
            cursor.execute(
                "SELECT * FROM heuristics WHERE run_id = ? ORDER BY epoch_number, bullet_id",
                (run_id,),
            )
        return [self._row_to_heuristic(row) for row in cursor.fetchall()]

    def increment_heuristic_counters(
        self, bullet_id: str, helpful_delta: int = 0, harmful_delta: int = 0
    ) -> bool:
        """Atomically add deltas to a bullet's effectiveness counters.

        The increment happens inside a single UPDATE statement, never as a
        read-modify-write from Python.

        Returns:
            True if the bullet exists and was updated
        """
        if helpful_delta < 0 or harmful_delta < 0:
            raise ValueError("Counter deltas must be non-negative")
        if helpful_delta == 0 and harmful_delta == 0:
            return False

        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE heuristics
            SET helpful_count = helpful_count + ?,
                harmful_count = harmful_count + ?,
                last_updated = ?
            WHERE bullet_id = ?
            """,
            (helpful_delta, harmful_delta, _ts_to_text(utc_now()), bullet_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def _row_to_heuristic(self, row: sqlite3.Row) -> HeuristicRecord:
        return HeuristicRecord(
            bullet_id=row["bullet_id"],
            section=row["section"],
            content=row["content"],
            risk_level=row["risk_level"],
            helpful_count=row["helpful_count"],
            harmful_count=row["harmful_count"],
            run_id=row["run_id"],
            epoch_number=row["epoch_number"],
            last_updated=_text_to_ts(row["last_updated"]),
        )

    # --- Reflection operations ---

    def insert_reflection(self, reflection: ReflectionRecord) -> int:
        """Insert a reflection. Returns the new ID."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO reflections (
                run_id, epoch_number, error_type, correct_approach, key_insight,
                affected_section, tag, input_text, predicted_category,
                predicted_risk, true_category, true_risk, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                reflection.run_id,
                reflection.epoch_number,
                reflection.error_type,
                reflection.correct_approach,
                reflection.key_insight,
                reflection.affected_section,
                reflection.tag,
                reflection.input_text,
                reflection.predicted_category,
                reflection.predicted_risk,
                reflection.true_category,
                reflection.true_risk,
                _ts_to_text(reflection.created_at or utc_now()),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid  # type: ignore

    def list_reflections(
        self, run_id: int, epoch_number: int | None = None
    ) -> list[ReflectionRecord]:
        """List reflections for a run, optionally for a single epoch."""
        cursor = self.conn.cursor()
        if epoch_number is not None:
            cursor.execute(
                "SELECT * FROM reflections WHERE run_id = ? AND epoch_number = ? ORDER BY id",
                (run_id, epoch_number),
            )
        else:
            cursor.execute(
                "SELECT * FROM reflections WHERE run_id = ? ORDER BY id",
                (run_id,),
            )
        return [
            ReflectionRecord(
                id=row["id"],
                run_id=row["run_id"],
                epoch_number=row["epoch_number"],
                error_type=row["error_type"],
                correct_approach=row["correct_approach"],
                key_insight=row["key_insight"],
                affected_section=row["affected_section"],
                tag=row["tag"],
                input_text=row["input_text"],
                predicted_category=row["predicted_category"],
                predicted_risk=row["predicted_risk"],
                true_category=row["true_category"],
                true_risk=row["true_risk"],
                created_at=_text_to_ts(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    # --- Agent log operations ---

    def insert_agent_log(self, log: AgentLogRecord) -> int:
        """Record an agent audit entry. Returns the new ID."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO agent_logs (
                run_id, epoch_number, agent_type, system_prompt,
                input_summary, output_summary, details_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.run_id,
                log.epoch_number,
                log.agent_type,
                log.system_prompt,
                log.input_summary,
                log.output_summary,
                log.details_json,
                _ts_to_text(log.created_at or utc_now()),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid  # type: ignore

    def log_agent(
        self,
        run_id: int,
        epoch_number: int,
        agent_type: str,
        system_prompt: str,
        input_summary: str,
        output_summary: str,
        details: dict[str, Any] | None = None,
    ) -> int:
        """Convenience wrapper that serializes ``details`` to JSON."""
        return self.insert_agent_log(
            AgentLogRecord(
                run_id=run_id,
                epoch_number=epoch_number,
                agent_type=agent_type,
                system_prompt=system_prompt,
                input_summary=input_summary,
                output_summary=output_summary,
                details_json=json.dumps(details) if details else None,
            )
        )

    def list_agent_logs(
        self,
        run_id: int,
        epoch_number: int | None = None,
        agent_type: str | None = None,
    ) -> list[AgentLogRecord]:
        """Get agent logs with optional filtering."""
        cursor = self.conn.cursor()
        conditions = ["run_id = ?"]
        params: list[Any] = [run_id]

        if epoch_number is not None:
            conditions.append("epoch_number = ?")
            params.append(epoch_number)
        if agent_type:
            conditions.append("agent_type = ?")
            params.append(agent_type)

        cursor.execute(
            f"SELECT * FROM agent_logs WHERE {' AND '.join(conditions)} ORDER BY id",
            params,
        )
        return [
            AgentLogRecord(
                id=row["id"],
                run_id=row["run_id"],
                epoch_number=row["epoch_number"],
                agent_type=row["agent_type"],
                system_prompt=row["system_prompt"],
                input_summary=row["input_summary"],
                output_summary=row["output_summary"],
                details_json=row["details_json"],
                created_at=_text_to_ts(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]
