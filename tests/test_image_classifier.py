"""Tests for picking and formatting the best prediction."""

from __future__ import annotations

import pytest

from snaplabel.ml.image_classifier import ClassificationResult, best_prediction, format_prediction


class TestBestPrediction:
    def test_picks_highest_confidence(self) -> None:
        results = [
            ClassificationResult("cat", 0.1),
            ClassificationResult("dog", 0.7),
            ClassificationResult("bird", 0.2),
        ]
        best = best_prediction(results)
        assert best.label == "dog"
        assert all(best.confidence >= r.confidence for r in results)

    def test_single_entry_is_selected(self) -> None:
        only = ClassificationResult("cat", 0.01)
        assert best_prediction([only]) is only

    def test_ties_go_to_first_occurrence(self) -> None:
        results = [
            ClassificationResult("cat", 0.4),
            ClassificationResult("dog", 0.4),
            ClassificationResult("bird", 0.2),
        ]
        assert best_prediction(results).label == "cat"

    def test_empty_list_raises(self) -> None:
        with pytest.raises(ValueError, match="empty"):
            best_prediction([])


class TestFormatPrediction:
    def test_cat_example(self) -> None:
        best = best_prediction([ClassificationResult("cat", 0.82), ClassificationResult("dog", 0.18)])
        assert format_prediction(best) == "cat — 82.0%"

    def test_one_decimal_place(self) -> None:
        assert format_prediction(ClassificationResult("dog", 0.12345)) == "dog — 12.3%"

    def test_full_confidence(self) -> None:
        assert format_prediction(ClassificationResult("bird", 1.0)) == "bird — 100.0%"
