"""Database models for the playbook trainer persistence layer."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TrainingRunRecord:
    """A training run and its lifecycle state.

    Status values: 'pending', 'running', 'completed', 'stopped', 'failed'.
    Only 'running' is non-terminal once a run has been started.
    """

    name: str
    max_epochs: int = 10
    plateau_threshold: float = 0.01
    plateau_patience: int = 3
    status: str = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None
    failure_reason: str | None = None
    stop_requested_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class EpochResultRecord:
    """Metrics for one completed epoch of a run."""

    run_id: int
    epoch_number: int
    category_f1: float
    risk_f1: float
    overall_f1: float
    accuracy: float
    playbook_size: int
    errors_found: int
    heuristics_added: int = 0
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class TrainingSampleRecord:
    """A labelled sample belonging to a run's train or eval split."""

    run_id: int
    split: str  # 'train', 'eval'
    text: str
    true_category: str
    true_risk: str
    id: int | None = None


@dataclass
class HeuristicRecord:
    """A playbook bullet with effectiveness counters.

    Baseline bullets have no owning run and no epoch number.
    """

    bullet_id: str
    section: str
    content: str
    risk_level: str = "MEDIUM"
    helpful_count: int = 0
    harmful_count: int = 0
    run_id: int | None = None
    epoch_number: int | None = None
    last_updated: datetime | None = None

    @property
    def is_baseline(self) -> bool:
        return self.run_id is None


@dataclass
class ReflectionRecord:
    """Reflector output for one misclassified sample."""

    run_id: int
    epoch_number: int
    error_type: str
    correct_approach: str
    key_insight: str
    affected_section: str
    tag: str
    input_text: str
    predicted_category: str
    predicted_risk: str
    true_category: str
    true_risk: str
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class AgentLogRecord:
    """Audit entry describing one agent step of an epoch."""

    run_id: int
    epoch_number: int
    agent_type: str  # 'generator', 'reflector', 'curator'
    system_prompt: str
    input_summary: str
    output_summary: str
    details_json: str | None = None
    id: int | None = None
    created_at: datetime | None = None
