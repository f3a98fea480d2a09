"""
Command line tools for the grading pipeline.

Usage:
    checkmate view-memory                          # Dump the teacher memory
    checkmate view-memory --question 3             # Records for question 3
    checkmate grade page1.png page2.png --rubric-text "..."
    checkmate grade answers.png --mode separate --question-sheet questions.png --smart
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import settings
from .database import close_db, init_db
from .exceptions import CheckmateError
from .schemas.grading import GradingMode, TrainingRecord
from .services.upload_storage import InMemoryExamFile



def _load(path: Optional[str]) -> Optional[InMemoryExamFile]:
    if not path:
        return None
    file_path = Path(path)
    return InMemoryExamFile(file_path.read_bytes(), filename=file_path.name)


def print_records(records: List[TrainingRecord]) -> None:
    """Print memory records as a table."""
    if not records:
        print("Teacher memory is empty.")
        return

    print(f"{'ID':>5}  {'QUESTION':<20}  {'GRADE':>5}  {'CREATED':<19}  REMARK")
    print("-" * 80)
    for record in records:
        remark = (record.teacher_remark or "").replace("\n", " ")
        print(
            f"{record.id or '':>5}  {record.question_hash[:20]:<20}  {record.grade_awarded:>5}  "
            f"{record.created_at:%Y-%m-%d %H:%M:%S}  {remark[:60]}"
        )
    print(f"\n{len(records)} records")


async def view_memory(question: Optional[str]) -> int:
    from .services.grading_pipeline import get_teacher_memory

    await init_db()
    try:
        memory = get_teacher_memory()
        records = await memory.find_similar(question) if question else await memory.get_all()
        print_records(records)
    finally:
        await close_db()
    return 0


async def grade(args: argparse.Namespace) -> int:
    from .services.grading_pipeline import GradingBatch, get_grading_pipeline

    await init_db()
    try:
        batch = GradingBatch(
            files=[_load(path) for path in args.images],
            mode=args.mode,
            smart_grading=args.smart,
            rubric_text=args.rubric_text,
            rubric_file=_load(args.rubric_image),
            question_file=_load(args.question_sheet),
            expected_questions=args.expected,
        )
        report = await get_grading_pipeline().run(batch)
        print(json.dumps(report.model_dump(mode="json"), ensure_ascii=False, indent=2))
    finally:
        await close_db()
    return 1 if report.has_errors else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="checkmate", description="Hebrew exam grading pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    memory_parser = subparsers.add_parser("view-memory", help="Show stored teacher remarks")
    memory_parser.add_argument("--question", default=None, help="Only records for this question id")

    grade_parser = subparsers.add_parser("grade", help="Grade exam page images locally")
    grade_parser.add_argument("images", nargs="+", help="Exam page images")
    grade_parser.add_argument("--mode", default=GradingMode.STANDARD.value, choices=[m.value for m in GradingMode])
    rubric = grade_parser.add_mutually_exclusive_group()
    rubric.add_argument("--rubric-text", default=None, help="Rubric as text")
    rubric.add_argument("--rubric-image", default=None, help="Rubric image to OCR")
    grade_parser.add_argument("--question-sheet", default=None, help="Question paper image (separate mode)")
    grade_parser.add_argument("--smart", action="store_true", help="Use teacher memory as scoring guidance")
    grade_parser.add_argument("--expected", type=int, default=None, help="Expected number of questions")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = build_parser().parse_args(argv)

    try:
        if args.command == "view-memory":
            return asyncio.run(view_memory(args.question))
        return asyncio.run(grade(args))
    except (CheckmateError, OSError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
