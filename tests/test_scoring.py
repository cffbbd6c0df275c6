"""打分映射测试"""

import math

import pytest

from codecontext.rag.vectordb.scoring import clamp01, score_from_distance


class TestScoreFromDistance:

    def test_cosine_distance(self):
        assert score_from_distance(0.0, "cosine_distance") == 1.0
        assert score_from_distance(0.25, "cosine_distance") == pytest.approx(0.75)
        assert score_from_distance(2.0, "cosine_distance") == -1.0

    def test_cosine_similarity_identity(self):
        assert score_from_distance(0.42, "cosine_similarity") == pytest.approx(0.42)

    def test_l2_is_monotonic_decreasing(self):
        assert score_from_distance(0.0, "l2") == 1.0
        assert score_from_distance(1.0, "l2") > score_from_distance(2.0, "l2")
        assert score_from_distance(1.0, "l2", alpha=2.0) == pytest.approx(math.exp(-2.0))

    def test_unknown_metric(self):
        with pytest.raises(ValueError):
            score_from_distance(0.1, "manhattan")


def test_clamp01():
    assert clamp01(-0.5) == 0.0
    assert clamp01(0.3) == 0.3
    assert clamp01(1.7) == 1.0
