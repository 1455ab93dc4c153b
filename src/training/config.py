"""Configuration for training runs, the epoch pipeline and recovery."""

import os
from dataclasses import dataclass

from pydantic import BaseModel, Field


@dataclass
class TrainingDefaults:
    """Defaults applied when a run is created without explicit settings.

    Attributes:
        max_epochs: Hard cap on the number of epochs
        plateau_threshold: Improvement threshold shown in plateau messages
        plateau_patience: Epochs without a new best before stopping
    """

    max_epochs: int = 10
    plateau_threshold: float = 0.01
    plateau_patience: int = 3


@dataclass
class PlateauConfig:
    threshold: float = 0.01
    patience: int = 3


@dataclass
class PipelineConfig:
    """Configuration for one epoch of the pipeline.

    Attributes:
        max_errors_to_reflect: Cap on reflector calls per epoch (None = every error)
        max_bullets_per_reflection: Curator bullets kept per reflection
        heartbeat_interval_seconds: Minimum spacing between heartbeat writes
        generator_temperature: Sampling temperature for classification calls
        reflector_temperature: Sampling temperature for reflection calls
        curator_temperature: Sampling temperature for curation calls
    """

    max_errors_to_reflect: int | None = None
    max_bullets_per_reflection: int = 2
    heartbeat_interval_seconds: float = 15.0
    generator_temperature: float | None = 0.3
    reflector_temperature: float | None = 0.7
    curator_temperature: float | None = 0.7


@dataclass
class RecoveryConfig:
    """Thresholds used by the recovery supervisor.

    Attributes:
        heartbeat_stale_seconds: A running run idle longer than this is failed
        run_timeout_seconds: A running run started longer ago than this is failed
    """

    heartbeat_stale_seconds: float = 300.0
    run_timeout_seconds: float = 86400.0

    @classmethod
    def from_env(cls) -> "RecoveryConfig":
        config = cls()
        stale = os.environ.get("PLAYBOOK_HEARTBEAT_STALE_SECONDS")
        if stale:
            config.heartbeat_stale_seconds = float(stale)
        timeout = os.environ.get("PLAYBOOK_RUN_TIMEOUT_SECONDS")
        if timeout:
            config.run_timeout_seconds = float(timeout)
        return config


class CreateRunRequest(BaseModel):
    """Validated parameters for a new training run."""

    name: str = Field(min_length=1, max_length=200)
    max_epochs: int = Field(default=TrainingDefaults.max_epochs, ge=1, le=100)
    plateau_threshold: float = Field(default=TrainingDefaults.plateau_threshold, gt=0, le=1)
    plateau_patience: int = Field(default=TrainingDefaults.plateau_patience, ge=1, le=20)
