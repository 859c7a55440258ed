"""
Section locks — stop the router from editing the same section forever.

Every adopted targeted fix or section regeneration counts one edit
against each section it touched. A section is frozen once it reaches
`lock_after_edits` edits, or when the round that edited it turned a
score rise into a fall (improved, then dropped by more than the
tolerance). Frozen sections are left out of later fix recommendations.

A full regeneration renumbers every section, so it clears all counts
and locks.
"""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List, Sequence

logger = logging.getLogger(__name__)


class SectionLocks:
    def __init__(self, lock_after_edits: int = 2, oscillation_tolerance: float = 0.01):
        self.lock_after_edits = lock_after_edits
        self.oscillation_tolerance = oscillation_tolerance
        self._edits: Dict[str, int] = {}
        self._locked: Dict[str, str] = {}

    @property
    def locked(self) -> FrozenSet[str]:
        return frozenset(self._locked)

    @property
    def edit_counts(self) -> Dict[str, int]:
        return dict(self._edits)

    def reasons(self) -> Dict[str, str]:
        """Locked section id -> why it was frozen."""
        return dict(self._locked)

    def record_edits(self, section_ids: Iterable[str], scores: Sequence[float]) -> List[str]:
        """
        Count one edit per section and apply both lock rules.

        scores is the adopted score history, ending with the score of the
        round that made these edits. Returns the sections newly locked.
        """
        edited = list(section_ids)
        newly: List[str] = []
        for section_id in edited:
            self._edits[section_id] = self._edits.get(section_id, 0) + 1
            count = self._edits[section_id]
            if self.lock_after_edits and count >= self.lock_after_edits:
                newly += self._lock(section_id, f"edited {count} times")

        if self._oscillated(scores):
            prev, peak, now = scores[-3:]
            for section_id in edited:
                newly += self._lock(section_id, f"score rose {prev:.3f} -> {peak:.3f} then fell to {now:.3f}")
        return newly

    def reset(self) -> None:
        self._edits.clear()
        self._locked.clear()

    def _oscillated(self, scores: Sequence[float]) -> bool:
        if len(scores) < 3:
            return False
        prev, peak, now = scores[-3:]
        tol = self.oscillation_tolerance
        return peak > prev + tol and now < peak - tol

    def _lock(self, section_id: str, reason: str) -> List[str]:
        if section_id in self._locked:
            return []
        self._locked[section_id] = reason
        logger.info(f"  [section lock] {section_id} locked: {reason}")
        return [section_id]
