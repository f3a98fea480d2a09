"""
Aggregate per-question results into the final report.

Two policies, never mixed:
    relative  - every result declares points: weighted sum of earned points
    average   - plain mean of quality scores (reported as fallback_average
                when only some results declare points)
"""
import logging
import re
from typing import Iterable, List, Optional, Sequence

from ..schemas.grading import AggregatedReport, FileOutcome, GradedResult, ScoringPolicy

logger = logging.getLogger(__name__)

_NUMBER_RUN = re.compile(r"(\d+)")


def natural_sort_key(label: str):
    """Sort key comparing digit runs by value: "2" < "10", "1a" < "1b"."""
    parts = _NUMBER_RUN.split(str(label or "").lower())
    return [(0, int(part), "") if part.isdigit() else (1, 0, part) for part in parts]


def _has_points(result: GradedResult) -> bool:
    return result.points_possible is not None and result.points_possible > 0


def aggregate(
    results: Sequence[GradedResult],
    expected_questions: Optional[int] = None,
    files: Iterable[FileOutcome] = (),
    errors: Iterable[str] = (),
) -> AggregatedReport:
    """Sort results and compute the final grade."""
    ordered: List[GradedResult] = sorted(results, key=lambda r: natural_sort_key(r.question_number))
    with_points = sum(1 for r in ordered if _has_points(r))

    if ordered and with_points == len(ordered):
        questions = [
            r.model_copy(update={"points_earned": round(r.score / 100 * r.points_possible, 1)})
            for r in ordered
        ]
        total_score = round(sum(q.points_earned for q in questions), 1)
        total_possible = round(sum(r.points_possible for r in ordered), 2)
        policy = ScoringPolicy.RELATIVE
    else:
        questions = ordered
        total_score = sum(r.score for r in ordered) / len(ordered) if ordered else 0
        total_possible = 100
        policy = ScoringPolicy.FALLBACK_AVERAGE if with_points else ScoringPolicy.AVERAGE

    detected = len({r.question_number for r in ordered})
    is_complete = detected >= expected_questions if expected_questions is not None else None

    logger.info(
        f"Aggregated {len(ordered)} results: total={total_score} ({policy.value}), "
        f"detected={detected}, expected={expected_questions}"
    )

    return AggregatedReport(
        total_score=total_score,
        scoring_mode=policy,
        total_possible=total_possible,
        questions=questions,
        expected_questions=expected_questions,
        detected_questions=detected,
        is_complete=is_complete,
        files=list(files),
        errors=list(errors),
    )
