"""Plateau detection and the continue/stop decision for a run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.training.config import PlateauConfig

if TYPE_CHECKING:
    from src.db.models import EpochResultRecord


@dataclass
class PlateauStatus:
    is_plateaued: bool
    best_f1: float
    best_epoch: int | None
    epochs_without_improvement: int
    should_stop: bool
    improvement: float
    message: str

    def to_dict(self) -> dict:
        return {
            "is_plateaued": self.is_plateaued,
            "best_f1": self.best_f1,
            "best_epoch": self.best_epoch,
            "epochs_without_improvement": self.epochs_without_improvement,
            "should_stop": self.should_stop,
            "improvement": self.improvement,
            "message": self.message,
        }


@dataclass
class ContinuationDecision:
    should_continue: bool
    reason: str
    plateau: PlateauStatus


def detect_plateau(
    epochs: list[EpochResultRecord],
    config: PlateauConfig | None = None,
) -> PlateauStatus:
    """Find the best epoch and count the epochs since it.

    ``epochs`` must be ordered by epoch_number ascending. Only ``patience``
    decides ``should_stop``; ``threshold`` is reported in the message.
    """
    config = config or PlateauConfig()

    if not epochs:
        return PlateauStatus(
            is_plateaued=False,
            best_f1=0.0,
            best_epoch=None,
            epochs_without_improvement=0,
            should_stop=False,
            improvement=0.0,
            message="No epochs yet",
        )

    if len(epochs) == 1:
        only = epochs[0]
        return PlateauStatus(
            is_plateaued=False,
            best_f1=only.overall_f1,
            best_epoch=only.epoch_number,
            epochs_without_improvement=0,
            should_stop=False,
            improvement=0.0,
            message="First epoch completed",
        )

    best_index = 0
    for i, epoch in enumerate(epochs):
        if epoch.overall_f1 > epochs[best_index].overall_f1:
            best_index = i

    best = epochs[best_index]
    latest = epochs[-1]
    epochs_without_improvement = len(epochs) - 1 - best_index
    should_stop = epochs_without_improvement >= config.patience
    improvement = latest.overall_f1 - best.overall_f1

    if should_stop:
        message = (
            f"Training plateaued. No improvement above {config.threshold * 100:.1f}% "
            f"for {epochs_without_improvement} epochs."
        )
    elif epochs_without_improvement == 0:
        message = f"New best F1: {best.overall_f1 * 100:.2f}%"
    else:
        remaining = config.patience - epochs_without_improvement
        message = f"No significant improvement. {remaining} epochs remaining before stop."

    return PlateauStatus(
        is_plateaued=should_stop,
        best_f1=best.overall_f1,
        best_epoch=best.epoch_number,
        epochs_without_improvement=epochs_without_improvement,
        should_stop=should_stop,
        improvement=improvement,
        message=message,
    )


def should_continue_training(
    epochs: list[EpochResultRecord],
    max_epochs: int,
    config: PlateauConfig | None = None,
) -> ContinuationDecision:
    plateau = detect_plateau(epochs, config)

    if len(epochs) >= max_epochs:
        return ContinuationDecision(
            should_continue=False,
            reason=f"Maximum epochs ({max_epochs}) reached",
            plateau=plateau,
        )

    if plateau.should_stop:
        return ContinuationDecision(should_continue=False, reason=plateau.message, plateau=plateau)

    return ContinuationDecision(
        should_continue=True,
        reason=f"Training in progress: epoch {len(epochs)}/{max_epochs}",
        plateau=plateau,
    )
