"""
Prompt builders for the grading pipeline.

The grading mode is a closed set of variants. Each variant owns the vision
prompt for its kind of page, so the pipeline never branches on mode strings
to decide what to ask the model.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from ..schemas.grading import ExamQuestion, GradingMode, TrainingRecord

_SEGMENT_FORMAT = """**Output Format (Strict JSON):**
```json
{{
  "segments": [
    {{
{fields}
    }}
  ]
}}
```"""


def _output_format(*fields: str) -> str:
    return _SEGMENT_FORMAT.format(fields=",\n".join("      " + field for field in fields))


STANDARD_OUTPUT_FORMAT = _output_format(
    '"question_number": "Integer or String"',
    '"question_text": "The printed text..."',
    '"student_answer_text": "The transcribed handwriting..."',
    '"teacher_notes_detected": "Teacher remark if present, else empty"',
    '"manual_score_detected": "Teacher mark if present, else empty"',
)

SEPARATE_OUTPUT_FORMAT = _output_format(
    '"question_number": "Integer"',
    '"question_text": "Mapped text from context OR \'Unknown\'"',
    '"student_answer_text": "Handwritten content..."',
    '"teacher_notes_detected": "Teacher remark if present, else empty"',
    '"manual_score_detected": "Teacher mark if present, else empty"',
)

TRAINING_OUTPUT_FORMAT = _output_format(
    '"question_number": "Integer"',
    '"question_text": "Printed text"',
    '"student_answer_text": "Handwritten text"',
    '"teacher_notes_detected": "The text written in Red/Green"',
    '"manual_score_detected": "The score/mark given"',
)


# =============================================================================
# Grading mode variants
# =============================================================================

@dataclass(frozen=True)
class StandardMode:
    """Questions and handwritten answers share the same page."""

    @property
    def grading_mode(self) -> GradingMode:
        return GradingMode.STANDARD

    def vision_prompt(self) -> str:
        return f"""
**Role:** You are an expert Hebrew OCR and Exam Analyzer.
**Task:** Analyze the provided exam image.
**Mode:** Standard Exam (Questions and Answers on the same page).

**Instructions:**
1. Locate printed text (Question) and handwritten text (Answer) strictly within the same document coordinates.
2. Extract the printed question text and the corresponding handwritten answer.
3. Ignore "Student Name", "Class", "Date".
4. If the teacher already marked the page (red/green ink, V/X, a number or a deduction such as "-2"), copy the mark into "manual_score_detected" and any written remark into "teacher_notes_detected". Otherwise leave them empty.

**Handwriting Nuances:**
- The text is in Hebrew. Pay extreme attention to handwritten characters that look similar (e.g., 'ו'/'ן', 'ש'/'ס').
- Maintain Right-to-Left logic.

{STANDARD_OUTPUT_FORMAT}
**Ignore Point Indicators:** Remove '10 pts', '(20)', etc.
"""


@dataclass(frozen=True)
class SeparateMode:
    """Answer sheet only; question text comes from a separate question paper."""
    context: str = ""

    @property
    def grading_mode(self) -> GradingMode:
        return GradingMode.SEPARATE

    def vision_prompt(self) -> str:
        context = self.context.strip() or (
            "No question paper provided. Try to infer question numbers from handwriting (e.g. '1.', 'Q1', 'שאלה 1')."
        )
        return f"""
**Role:** You are an expert Hebrew OCR and Exam Analyzer.
**Task:** Analyze the provided HANDWRITTEN STUDENT ANSWER SHEET.
**Mode:** Separate Sheet (Answer Book).
**Context:** The user may have provided the Question Paper text below. Use it to map answers.

**Question Paper Context:**
{context}

**Instructions:**
1. Focus on the HANDWRITTEN text. Identify question numbers.
2. If Question Paper Context is available, map the handwritten answer to the corresponding question text.
3. If an answer cannot be mapped, write "Unknown" in the `question_text` field. Never invent question text.
4. If the teacher already marked the sheet, copy the mark into "manual_score_detected" and any remark into "teacher_notes_detected".

{SEPARATE_OUTPUT_FORMAT}
"""


@dataclass(frozen=True)
class TrainingMode:
    """Harvest teacher markings from already-graded pages. Never grades."""

    @property
    def grading_mode(self) -> GradingMode:
        return GradingMode.TRAINING

    def vision_prompt(self) -> str:
        return f"""
**Role:** You are an expert Data Harvester for AI Training.
**Task:** Extract Teacher Grading Datapoints.
**Mode:** HARVESTING ONLY. DO NOT GRADE.

**Instructions:**
1. Scan the document specifically for **RED or GREEN ink** (Teacher Marks).
2. Pair every Teacher Remark/Score with the corresponding Student Handwriting and Question Text.
3. Your goal is to create a training dataset of "What the student wrote" vs "What the teacher said/gave".
4. Do not produce a grade of your own. Copy only what the teacher wrote (✓, V, X, "-2", "85").

{TRAINING_OUTPUT_FORMAT}
"""


ExamMode = Union[StandardMode, SeparateMode, TrainingMode]


def mode_for(grading_mode: Union[GradingMode, str], context: str = "") -> ExamMode:
    """Build the mode variant for a grading mode; context is used by separate mode only."""
    grading_mode = GradingMode(grading_mode)
    if grading_mode == GradingMode.SEPARATE:
        return SeparateMode(context=context or "")
    if grading_mode == GradingMode.TRAINING:
        return TrainingMode()
    return StandardMode()


# =============================================================================
# Preprocessing prompts
# =============================================================================

RUBRIC_EXTRACTION_PROMPT = """
**Role:** You are an expert Hebrew OCR system.
**Task:** Extract the grading rubric / answer key from this image.

**Instructions:**
1. Transcribe every rubric line exactly as written (Hebrew text, formulas, expected answers).
2. Keep the question numbering so each rubric entry stays attached to its question.
3. Return plain text only.
"""

QUESTION_SHEET_PROMPT = """
**Role:** You are an expert Hebrew OCR system specialized in extracting exam questions.
**Task:** Analyze the provided question paper and extract ALL questions.

**Instructions:**
1. Identify each question by its number (1, 2, 3... or א, ב, ג...)
2. Extract the FULL text of each question (Hebrew)
3. If you see point values (e.g., "20 נקודות", "(10 נק')"), extract them
4. Maintain the original order of questions

**Output Format (Strict JSON Array):**
```json
[
  {
    "number": 1,
    "text": "Full question text in Hebrew...",
    "points": 20
  }
]
```

**Important:**
- Return ONLY a valid JSON array
- If points are not printed, use null. Do not estimate.
- Preserve Hebrew text exactly as written
"""


def render_question_context(questions: Sequence[ExamQuestion]) -> str:
    """Render question definitions as the context block of the separate-sheet prompt."""
    lines = []
    for q in questions:
        points = f" ({q.points:g} נקודות)" if q.points else ""
        lines.append(f"{q.number}. {q.text or ''}{points}".rstrip())
    return "\n".join(lines)


# =============================================================================
# Scoring prompt
# =============================================================================

def build_scoring_prompt(
    student_answer: str,
    rubric: str,
    question_text: Optional[str] = None,
    question_number: Optional[str] = None,
) -> str:
    """Prompt asking for a 0-100 quality score, Hebrew feedback and carry-forward detection."""
    return f"""
You are an expert educator grading a Hebrew language exam.

**Input Data:**
- **Question Number:** {question_number or 'Unknown'}
- **Question:** {question_text or 'Question text not available'}
- **Student Answer:** {student_answer}
- **Teacher Rubric:** {rubric}

**Instructions:**
1. **Check for 'Carry Forward Errors' (טעות נגררת):**
   - If the student made a calculation error in step A but used the result correctly in step B, deduct points ONLY for A.
2. **Feedback (Hebrew):**
   - What is the correct answer?
   - Explain what was correct and what was wrong, and provide an encouraging remark.
3. **Scoring (Quality Score):**
   - Return a **Quality Score** (0-100) based purely on the accuracy of the answer, **regardless of the question's point value**.
   - 100 = Perfect, 0 = Completely wrong.

**Output JSON:**
{{
  "question_number": "ID",
  "quality_score": 0-100,
  "feedback_hebrew": "...",
  "correct_answer": "...",
  "carry_forward_error_detected": boolean,
  "reasoning_english": "Brief reasoning for the score"
}}
"""


def build_historical_context(records: List[TrainingRecord]) -> str:
    """Render past teacher remarks as optional guidance appended to the scoring prompt."""
    if not records:
        return ""
    lines = "\n".join(
        f'- For answer "{r.student_answer_text}", teacher said: "{r.teacher_remark or ""}" (Score: {r.grade_awarded})'
        for r in records
    )
    return f"""
**Historical Teacher Remarks for Similar Questions:**
{lines}
**Instruction:** Use the above history to guide your grading style if applicable.
"""
