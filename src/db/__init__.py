from src.db.models import (
    AgentLogRecord,
    EpochResultRecord,
    HeuristicRecord,
    ReflectionRecord,
    TrainingRunRecord,
    TrainingSampleRecord,
)
from src.db.repo import Repository

__all__ = [
    "Repository",
    "TrainingRunRecord",
    "EpochResultRecord",
    "TrainingSampleRecord",
    "HeuristicRecord",
    "ReflectionRecord",
    "AgentLogRecord",
]
