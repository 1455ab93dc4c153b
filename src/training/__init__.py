"""Playbook training loop: epochs, evaluation, plateau detection and recovery."""

from src.training.config import (
    CreateRunRequest,
    PipelineConfig,
    PlateauConfig,
    RecoveryConfig,
    TrainingDefaults,
)
from src.training.controller import RunController, RunOutcome
from src.training.effectiveness import EffectivenessTracker
from src.training.errors import (
    DatasetError,
    EpochFailure,
    InvalidRunStateError,
    RunNotFoundError,
    TrainingError,
)
from src.training.metrics import (
    ClassificationMetrics,
    EvaluationResult,
    Prediction,
    evaluate_predictions,
)
from src.training.pipeline import EpochPipeline, EpochReport
from src.training.plateau import (
    ContinuationDecision,
    PlateauStatus,
    detect_plateau,
    should_continue_training,
)
from src.training.recovery import RecoveryReport, RecoverySupervisor
from src.training.service import TrainingService

__all__ = [
    "CreateRunRequest",
    "PipelineConfig",
    "PlateauConfig",
    "RecoveryConfig",
    "TrainingDefaults",
    "RunController",
    "RunOutcome",
    "EffectivenessTracker",
    "DatasetError",
    "EpochFailure",
    "InvalidRunStateError",
    "RunNotFoundError",
    "TrainingError",
    "ClassificationMetrics",
    "EvaluationResult",
    "Prediction",
    "evaluate_predictions",
    "EpochPipeline",
    "EpochReport",
    "ContinuationDecision",
    "PlateauStatus",
    "detect_plateau",
    "should_continue_training",
    "RecoveryReport",
    "RecoverySupervisor",
    "TrainingService",
]
