"""Exceptions raised by the training loop and its service layer."""


class TrainingError(Exception):
    """Base class for training errors."""


class EpochFailure(TrainingError):
    """An epoch could not run to completion; the run ends as failed."""

    def __init__(self, epoch_number: int, reason: str):
        self.epoch_number = epoch_number
        self.reason = reason
        super().__init__(f"Epoch {epoch_number} failed: {reason}")


class RunNotFoundError(TrainingError):
    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"Training run {run_id} not found")


class InvalidRunStateError(TrainingError):
    """An operation was attempted on a run in the wrong status."""

    def __init__(self, run_id: int, status: str, action: str):
        self.run_id = run_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} run {run_id}: status is '{status}'")


class DatasetError(TrainingError):
    """Uploaded samples failed validation.

    Attributes:
        errors: One human-readable message per rejected row
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)
