"""
Test: aggregation policies, natural sort and completeness.
"""
import pytest

from checkmate.schemas.grading import FileOutcome, FileStatus, GradedResult, ScoringPolicy
from checkmate.services.aggregator import aggregate, natural_sort_key


def result(number, score, points=None, **kwargs):
    return GradedResult(question_number=number, score=score, points_possible=points, **kwargs)


class TestNaturalSort:
    def test_numeric_runs_by_value(self):
        report = aggregate([result("10", 50), result("2", 50), result("1", 50)])
        assert [q.question_number for q in report.questions] == ["1", "2", "10"]

    def test_sub_questions(self):
        labels = ["2b", "10", "2a", "1"]
        assert sorted(labels, key=natural_sort_key) == ["1", "2a", "2b", "10"]

    def test_case_insensitive(self):
        assert natural_sort_key("Q2") == natural_sort_key("q2")

    def test_stable_for_equal_labels(self):
        first = result("1", 80, feedback="first")
        second = result("1", 60, feedback="second")
        report = aggregate([first, second])
        assert [q.feedback for q in report.questions] == ["first", "second"]


class TestRelativePolicy:
    def test_points_weighted_total(self):
        report = aggregate([result("1", 90, 10), result("2", 50, 20)])
        assert report.scoring_mode == ScoringPolicy.RELATIVE
        assert report.total_score == 19.0
        assert report.total_possible == 30
        assert [q.points_earned for q in report.questions] == [9.0, 10.0]

    def test_points_earned_rounded(self):
        report = aggregate([result("1", 33, 7)])
        assert report.questions[0].points_earned == 2.3


class TestAveragePolicy:
    def test_simple_average_without_points(self):
        report = aggregate([result("1", 90), result("2", 50)])
        assert report.scoring_mode == ScoringPolicy.AVERAGE
        assert report.total_score == 70.0
        assert report.total_possible == 100

    def test_partial_points_fall_back_to_average(self):
        report = aggregate([result("1", 90, 10), result("2", 50, 0)])
        assert report.scoring_mode == ScoringPolicy.FALLBACK_AVERAGE
        assert report.total_score == 70.0
        assert all(q.points_earned is None for q in report.questions)

    def test_average_is_not_rounded(self):
        report = aggregate([result("1", 100), result("2", 0), result("3", 0)])
        assert report.total_score == pytest.approx(100 / 3)

    def test_missing_points_fall_back_to_average(self):
        report = aggregate([result("1", 90, 10), result("2", 50)])
        assert report.scoring_mode == ScoringPolicy.FALLBACK_AVERAGE
        assert report.total_score == 70.0

    def test_empty_results(self):
        report = aggregate([])
        assert report.total_score == 0
        assert report.scoring_mode == ScoringPolicy.AVERAGE
        assert report.questions == []
        assert not report.has_errors


class TestCompleteness:
    def test_complete_when_all_detected(self):
        report = aggregate([result("1", 90), result("2", 50)], expected_questions=2)
        assert report.detected_questions == 2
        assert report.is_complete is True

    def test_incomplete_when_questions_missing(self):
        report = aggregate([result("1", 90)], expected_questions=3)
        assert report.is_complete is False

    def test_duplicate_labels_counted_once(self):
        report = aggregate([result("1", 90), result("1", 70)], expected_questions=2)
        assert report.detected_questions == 1
        assert report.is_complete is False

    def test_unknown_without_expected(self):
        assert aggregate([result("1", 90)]).is_complete is None


class TestErrors:
    def test_failed_file_marks_report(self):
        files = [FileOutcome(filename="a.png", status=FileStatus.FAILED, error="boom")]
        report = aggregate([], files=files)
        assert report.total_score == 0
        assert report.has_errors

    def test_errors_are_kept(self):
        report = aggregate([result("1", 90)], errors=["rubric unreadable"])
        assert report.errors == ["rubric unreadable"]
        assert report.has_errors

    def test_failed_questions_counted(self):
        report = aggregate([result("1", 0, scoring_failed=True), result("2", 80)])
        assert report.failed_questions == 1
