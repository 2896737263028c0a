"""Quiz scoring.

Pure functions over a quiz's stored questions so that any attempt can be
re-scored later from its saved answers.
"""

from dataclasses import dataclass
from typing import Any

from learnchain.courses.models import Quiz
from learnchain.exceptions import ValidationError


@dataclass(frozen=True)
class QuizScore:
    percent: int
    passed: bool
    correct_count: int


def _validate_answer(index: int, answer: Any, question: dict[str, Any]) -> int:
    # bool is an int subclass but never a valid option index
    if isinstance(answer, bool) or not isinstance(answer, int):
        msg = f"Answer {index + 1} must be an option index, got {answer!r}"
        raise ValidationError(msg)
    options = question.get("options") or []
    if not 0 <= answer < len(options):
        msg = f"Answer {index + 1} is out of range: {answer} (question has {len(options)} options)"
        raise ValidationError(msg)
    return answer


def score(quiz: Quiz, answers: list[Any]) -> QuizScore:
    """Score ``answers`` against ``quiz``.

    Args:
        quiz: Quiz whose ``questions`` carry ``options`` and ``correct_answer``
        answers: One option index per question, in question order

    Returns
    -------
        The floored percentage, whether it meets the passing score, and the
        number of correct answers.

    Raises
    ------
        ValidationError: If the answer count differs from the question count or
            an answer is not a valid option index.
    """
    questions = quiz.questions or []
    if len(answers) != len(questions):
        msg = f"Expected {len(questions)} answers, got {len(answers)}"
        raise ValidationError(msg)

    correct = 0
    for index, (question, answer) in enumerate(zip(questions, answers, strict=True)):
        if _validate_answer(index, answer, question) == question.get("correct_answer"):
            correct += 1

    percent = (100 * correct) // len(questions) if questions else 0
    return QuizScore(percent=percent, passed=percent >= quiz.passing_score_percent, correct_count=correct)


def public_questions(quiz: Quiz) -> list[dict[str, Any]]:
    """Return the quiz's questions without their correct answers."""
    return [{k: v for k, v in question.items() if k != "correct_answer"} for question in quiz.questions or []]


def correct_answers(quiz: Quiz) -> list[int]:
    return [question.get("correct_answer") for question in quiz.questions or []]
