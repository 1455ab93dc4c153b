"""Helpful/harmful counters for playbook heuristics.

Citations accumulate in memory during an epoch's Generate step and are
flushed with one atomic add-delta update per heuristic.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from src.db.repo import Repository

logger = logging.getLogger(__name__)


class EffectivenessTracker:
    """Accumulates citation outcomes and applies them to the store.

    Args:
        repo: Repository used for the atomic counter update
        known_ids: Ids that may be credited; citations of other ids are
            ignored (None accepts every id)
    """

    def __init__(self, repo: Repository, known_ids: Iterable[str] | None = None):
        self.repo = repo
        self.known_ids = set(known_ids) if known_ids is not None else None
        self.helpful: Counter[str] = Counter()
        self.harmful: Counter[str] = Counter()
        self.ignored: Counter[str] = Counter()

    def record(self, cited_ids: Iterable[str], correct: bool) -> None:
        """Credit every cited id once for one scored sample."""
        # A sample that cites the same id twice still counts once
        for bullet_id in dict.fromkeys(cited_ids):
            if self.known_ids is not None and bullet_id not in self.known_ids:
                self.ignored[bullet_id] += 1
                continue
            if correct:
                self.helpful[bullet_id] += 1
            else:
                self.harmful[bullet_id] += 1

    def pending(self) -> dict[str, tuple[int, int]]:
        ids = sorted(set(self.helpful) | set(self.harmful))
        return {i: (self.helpful[i], self.harmful[i]) for i in ids}

    def flush(self) -> int:
        """Apply accumulated deltas. Returns the number of heuristics updated."""
        if self.ignored:
            logger.warning(f"Ignored citations of unknown heuristics: {sorted(self.ignored)}")

        updated = 0
        for bullet_id, (helpful, harmful) in self.pending().items():
            if self.repo.increment_heuristic_counters(
                bullet_id, helpful_delta=helpful, harmful_delta=harmful
            ):
                updated += 1
            else:
                logger.warning(f"Heuristic {bullet_id} vanished before its counters were updated")

        self.helpful.clear()
        self.harmful.clear()
        self.ignored.clear()
        return updated
