import logging
from typing import Any, Dict, List

from attempts import can_access_exam
from errors import AuthorizationError, NotFoundError, ValidationError
from schemas import Exam, ExamCreateRequest, Roles, User, utcnow

logger = logging.getLogger(__name__)


def create_exam(store, author: User, data: ExamCreateRequest) -> Exam:
    if not data.questions:
        raise ValidationError("Exam must include at least one question")
    if data.endTime <= data.startTime:
        raise ValidationError("Invalid exam schedule")
    try:
        store.get_questions(data.questions)
    except NotFoundError:
        raise ValidationError("One or more questions were not found")

    exam = store.insert_exam({
        "title": data.title,
        "createdBy": author.uid,
        "questions": list(data.questions),
        "duration": data.duration,
        "startTime": data.startTime,
        "endTime": data.endTime,
        "assignedBatch": data.assignedBatch,
        "attemptLimit": data.attemptLimit or 1,
        "randomizeQuestions": True if data.randomizeQuestions is None else data.randomizeQuestions,
        "shuffleOptions": True if data.shuffleOptions is None else data.shuffleOptions,
    })
    logger.info("Exam %s created by %s with %d questions", exam.id, author.uid, len(exam.questions))
    return exam


def list_exams_for_user(store, user: User) -> List[Exam]:
    if user.role == Roles.STUDENT:
        return store.list_exams(batches=["ALL", user.department], ending_after=utcnow())
    if user.role == Roles.PROFESSOR:
        return store.list_exams(created_by=user.uid)
    return store.list_exams()


def get_exam_details(store, user: User, exam_id: str) -> Dict[str, Any]:
    """Exam with question summaries; answers and options are not included."""
    exam = store.get_exam(exam_id)
    if exam is None:
        raise NotFoundError("Exam not found")
    if user.role == Roles.STUDENT and not can_access_exam(user, exam):
        raise AuthorizationError("Forbidden")
    if user.role == Roles.PROFESSOR and exam.createdBy != user.uid:
        raise AuthorizationError("Forbidden")

    questions = store.get_questions(exam.questions)
    details = exam.model_dump()
    details["questions"] = [
        {
            "id": q.id,
            "type": q.type,
            "subject": q.subject,
            "difficulty": q.difficulty,
            "marks": q.marks,
            "negativeMarks": q.negativeMarks,
        }
        for q in questions
    ]
    return details
