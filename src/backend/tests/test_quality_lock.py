"""Tests for the quality lock regression guard."""

import pytest

from refinery.core.errors import RegressionDetected
from refinery.core.quality_lock import QualityLock
from refinery.models.schemas import Criterion

FA = Criterion.FACTUAL_ACCURACY
CL = Criterion.CLARITY_READABILITY


class TestQualityLock:
    def test_locks_only_passing_criteria(self) -> None:
        lock = QualityLock(threshold=0.75, tolerance=0.05)
        lock.confirm({FA: 0.80, CL: 0.70})
        assert lock.locks == {FA: 0.80}

    def test_lock_ratchets_upward_only(self) -> None:
        lock = QualityLock()
        lock.confirm({FA: 0.80})
        lock.confirm({FA: 0.90})
        lock.confirm({FA: 0.88})
        assert lock.locks[FA] == 0.90

    def test_drop_within_tolerance_is_allowed(self) -> None:
        lock = QualityLock(tolerance=0.05)
        lock.confirm({FA: 0.80})
        lock.check({FA: 0.75})
        assert lock.regressions({FA: 0.76}) == {}

    def test_drop_beyond_tolerance_raises(self) -> None:
        lock = QualityLock(tolerance=0.05)
        lock.confirm({FA: 0.80, CL: 0.90})
        with pytest.raises(RegressionDetected) as exc:
            lock.check({FA: 0.70, CL: 0.91}, composite=0.77)
        assert exc.value.regressions == {"factual_accuracy": (0.80, 0.70)}
        assert exc.value.candidate_score == 0.77
        assert "factual_accuracy" in str(exc.value)

    def test_unlocked_criterion_may_fall(self) -> None:
        lock = QualityLock()
        lock.confirm({CL: 0.60})
        lock.check({CL: 0.10})

    def test_criterion_absent_from_candidate_is_ignored(self) -> None:
        lock = QualityLock()
        lock.confirm({FA: 0.90})
        lock.check({CL: 0.10})

    def test_locks_property_is_a_copy(self) -> None:
        lock = QualityLock()
        lock.confirm({FA: 0.90})
        lock.locks[FA] = 0.0
        assert lock.locks[FA] == 0.90
