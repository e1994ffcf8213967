"""
Deterministic grading of submitted answers against a test definition.

Nothing here touches storage; the coordinator persists whatever grade() returns.
"""

import math
from typing import Dict, List, Optional, Tuple

from schemas import ByIndex, ByOptionId, GradedAnswer, GradeResult, MockTest, Option, Question, SubmittedAnswer


def resolve_selection(question: Question, answer: SubmittedAnswer) -> Tuple[Optional[int], Optional[Option]]:
    """Return (index, option) for the answer's selection, or (None, None) when it points nowhere."""
    selection = answer.selection
    if isinstance(selection, ByOptionId):
        for index, option in enumerate(question.options):
            if option.id == selection.option_id:
                return index, option
    elif isinstance(selection, ByIndex):
        # negative positions are not selections
        if 0 <= selection.index < len(question.options):
            return selection.index, question.options[selection.index]
    return None, None


def grade_answer(question: Optional[Question], answer: SubmittedAnswer) -> GradedAnswer:
    if question is None:
        return GradedAnswer(question_id=answer.question_id, time_spent=answer.time_spent)

    index, option = resolve_selection(question, answer)
    correct = question.correct_option()
    is_correct = bool(option is not None and option.is_correct)
    return GradedAnswer(
        question_id=question.id,
        selected_index=index,
        selected_option_id=option.id if option is not None else None,
        correct_option_id=correct.id if correct is not None else None,
        is_correct=is_correct,
        points_earned=question.points if is_correct else 0,
        time_spent=answer.time_spent,
    )


def percentage_of(score: int, total_points: int) -> int:
    if total_points <= 0:
        return 0
    # half-up, not banker's rounding
    value = math.floor(score / total_points * 100 + 0.5)
    return max(0, min(100, value))


def grade(test: MockTest, answers: List[SubmittedAnswer]) -> GradeResult:
    # a question answered twice keeps its first position and its last answer
    latest: Dict[str, SubmittedAnswer] = {}
    for answer in answers:
        latest[answer.question_id] = answer

    graded = [grade_answer(test.question(question_id), answer) for question_id, answer in latest.items()]
    score = sum(a.points_earned for a in graded)
    return GradeResult(
        score=score,
        percentage=percentage_of(score, test.total_points),
        correct_answers=sum(1 for a in graded if a.is_correct),
        total_questions=test.total_questions,
        total_points=test.total_points,
        answers=graded,
    )
