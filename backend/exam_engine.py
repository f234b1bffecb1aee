"""
Snapshot building and scoring for exam attempts.

Everything here is pure: no database access, no clock. Randomness comes from
an injected source exposing ``randrange(n)`` (``random.Random`` and
``random.SystemRandom`` both qualify).
"""
import json
import random
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from schemas import Exam, Question, QuestionSnapshotEntry, ScoreResult, StudentQuestion, SubmittedAnswer

# A raw answer as it arrives from a client: a choice, a list of choices,
# a number, free text, or some other JSON structure.
AnswerValue = Union[str, int, float, bool, List[Any], Dict[str, Any], None]

_system_random = random.SystemRandom()


def shuffle(items: Sequence[Any], rng=None) -> List[Any]:
    """Return a Fisher-Yates shuffled copy of ``items``."""
    rng = rng or _system_random
    arr = list(items)
    for i in range(len(arr) - 1, 0, -1):
        j = rng.randrange(i + 1)
        arr[i], arr[j] = arr[j], arr[i]
    return arr


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def resolve_answer(answer: AnswerValue, options: Sequence[str]) -> AnswerValue:
    """Replace index-encoded answers with the option value at that index.

    Lists are resolved element by element. Indices outside the option list and
    literal values pass through unchanged.
    """
    if isinstance(answer, list):
        return [resolve_answer(item, options) for item in answer]
    index = _as_index(answer)
    if index is not None and 0 <= index < len(options):
        return options[index]
    return answer


def build_snapshot_entry(question: Question, shuffle_options: bool, rng=None) -> QuestionSnapshotEntry:
    options = shuffle(question.options, rng) if shuffle_options else list(question.options)
    return QuestionSnapshotEntry(
        questionId=question.id,
        type=question.type,
        subject=question.subject,
        difficulty=question.difficulty,
        options=options,
        marks=question.marks,
        negativeMarks=question.negativeMarks or 0,
        correctAnswer=resolve_answer(question.correctAnswer, options),
    )


def build_snapshot(exam: Exam, questions: Sequence[Question], rng=None) -> List[QuestionSnapshotEntry]:
    ordered = shuffle(questions, rng) if exam.randomizeQuestions else list(questions)
    return [build_snapshot_entry(q, exam.shuffleOptions, rng) for q in ordered]


def redact(entry: QuestionSnapshotEntry) -> StudentQuestion:
    return StudentQuestion(
        questionId=entry.questionId,
        type=entry.type,
        subject=entry.subject,
        difficulty=entry.difficulty,
        options=list(entry.options),
        marks=entry.marks,
        negativeMarks=entry.negativeMarks,
    )


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def normalize_answer(answer: AnswerValue) -> Any:
    if isinstance(answer, list):
        return sorted((normalize_answer(item) for item in answer), key=_canonical)
    if isinstance(answer, str):
        return answer.strip().lower()
    if isinstance(answer, bool):
        return answer
    if isinstance(answer, int):
        return answer
    if isinstance(answer, float):
        # 2 and 2.0 are the same number
        return int(answer) if answer.is_integer() else answer
    if answer is None:
        return ""
    return _canonical(answer).strip().lower()


def answers_match(actual: AnswerValue, expected: AnswerValue) -> bool:
    # compare encodings so that True never equals 1
    return _canonical(normalize_answer(actual)) == _canonical(normalize_answer(expected))


def is_attempted(answer: AnswerValue) -> bool:
    if answer is None:
        return False
    if isinstance(answer, str) and answer.strip() == "":
        return False
    if isinstance(answer, list) and len(answer) == 0:
        return False
    return True


def score_attempt(snapshot: Sequence[QuestionSnapshotEntry], answers: Iterable[SubmittedAnswer]) -> ScoreResult:
    answer_map = {str(item.questionId): item.answer for item in answers or []}

    score = 0.0
    attempted = 0
    correct = 0
    for entry in snapshot:
        answer = resolve_answer(answer_map.get(str(entry.questionId)), entry.options)
        if not is_attempted(answer):
            continue

        attempted += 1
        if answers_match(answer, entry.correctAnswer):
            score += entry.marks
            correct += 1
        else:
            score -= entry.negativeMarks or 0

    return ScoreResult(score=round(score, 2), attempted=attempted, correct=correct, total=len(snapshot))
