"""
Attempt lifecycle: start (create / resume / lazy expiry), submit and forced timeout.

An attempt moves IN_PROGRESS -> SUBMITTED or IN_PROGRESS -> TIMEOUT and never
leaves a terminal state. Every write to an existing attempt goes through the
store's compare-and-set on ``(id, status=IN_PROGRESS, version)``, so two
requests racing on one attempt cannot both win.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional

from errors import (
    AlreadyFinalizedError,
    AttemptLimitReachedError,
    AuthorizationError,
    ConflictError,
    DeviceConflictError,
    DuplicateAttemptError,
    NotActiveError,
    NotFoundError,
    SessionError,
)
from exam_engine import build_snapshot, redact, score_attempt
from schemas import (
    Attempt,
    AttemptResult,
    AttemptStatus,
    Exam,
    StartAttemptResponse,
    SubmittedAnswer,
    User,
    utcnow,
)
from session_tokens import issue_token, verify_token

logger = logging.getLogger(__name__)


def can_access_exam(student: User, exam: Exam) -> bool:
    return exam.assignedBatch == "ALL" or student.department == exam.assignedBatch


def attempt_deadline(exam: Exam, started_at: datetime) -> datetime:
    return min(started_at + timedelta(minutes=exam.duration), exam.endTime)


def remaining_seconds(deadline: datetime, now: datetime) -> int:
    return max(1, math.floor((deadline - now).total_seconds()))


def _coerce_answers(answers: Optional[Iterable[Any]]) -> List[SubmittedAnswer]:
    coerced = []
    for item in answers or []:
        if isinstance(item, dict):
            coerced.append(SubmittedAnswer.model_validate(item))
        else:
            coerced.append(SubmittedAnswer(questionId=str(item.questionId), answer=item.answer))
    return coerced


class AttemptService:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow, rng=None):
        self.store = store
        self.clock = clock
        self.rng = rng

    # ------------------------------------------------------------------ start

    def start(self, student: User, exam_id: str, client_ip: str) -> StartAttemptResponse:
        exam = self.store.get_exam(exam_id)
        if exam is None:
            raise NotFoundError("Exam not found")
        if not can_access_exam(student, exam):
            raise AuthorizationError("You are not assigned to this exam")

        now = self.clock()
        if now < exam.startTime or now >= exam.endTime:
            raise NotActiveError("Exam is not active right now")

        active = self.store.find_active_attempt(student.uid, exam.id)
        if active is not None:
            if now > active.deadlineAt:
                self._expire(active, now)
            elif active.ipAddress != client_ip:
                logger.warning(
                    "Device conflict on start: attempt=%s student=%s ip=%s", active.id, student.uid, client_ip
                )
                raise DeviceConflictError()
            else:
                return self._resume(active, now)

        attempts_used = self.store.count_attempts(student.uid, exam.id)
        if attempts_used >= exam.attemptLimit:
            raise AttemptLimitReachedError()

        questions = self.store.get_questions(exam.questions)
        snapshot = build_snapshot(exam, questions, self.rng)
        token, token_hash = issue_token()
        deadline = attempt_deadline(exam, now)

        attempt = Attempt(
            studentId=student.uid,
            examId=exam.id,
            status=AttemptStatus.IN_PROGRESS,
            startTime=now,
            deadlineAt=deadline,
            ipAddress=client_ip,
            sessionTokenHash=token_hash,
            questionSnapshot=snapshot,
            attemptNumber=attempts_used + 1,
            createdAt=now,
            updatedAt=now,
        )
        try:
            attempt = self.store.insert_attempt(attempt)
        except DuplicateAttemptError:
            winner = self.store.find_active_attempt(student.uid, exam.id)
            if winner is not None and winner.ipAddress != client_ip:
                raise DeviceConflictError()
            raise ConflictError("Another start request for this exam is already being processed")

        logger.info(
            "Started attempt=%s exam=%s student=%s number=%d deadline=%s",
            attempt.id, exam.id, student.uid, attempt.attemptNumber, deadline.isoformat(),
        )
        return StartAttemptResponse(
            attemptId=attempt.id,
            sessionToken=token,
            deadlineAt=deadline,
            remainingSeconds=remaining_seconds(deadline, now),
            questions=[redact(entry) for entry in snapshot],
        )

    def _resume(self, attempt: Attempt, now: datetime) -> StartAttemptResponse:
        token, token_hash = issue_token()
        updated = self.store.compare_and_set_attempt(
            attempt.id, attempt.version, {"sessionTokenHash": token_hash}, now
        )
        if updated is None:
            raise ConflictError("Attempt was modified by another request")

        logger.info("Resumed attempt=%s student=%s, session token rotated", attempt.id, attempt.studentId)
        return StartAttemptResponse(
            attemptId=updated.id,
            sessionToken=token,
            deadlineAt=updated.deadlineAt,
            remainingSeconds=remaining_seconds(updated.deadlineAt, now),
            questions=[redact(entry) for entry in updated.questionSnapshot],
        )

    def _expire(self, attempt: Attempt, now: datetime) -> None:
        scoring = score_attempt(attempt.questionSnapshot, attempt.answers)
        updated = self.store.compare_and_set_attempt(
            attempt.id,
            attempt.version,
            {"status": AttemptStatus.TIMEOUT.value, "score": scoring.score, "endTime": now},
            now,
        )
        if updated is None:
            # finalized by a concurrent request; either way it is no longer active
            logger.info("Attempt=%s was finalized concurrently during lazy expiry", attempt.id)
            return
        logger.info("Expired attempt=%s student=%s score=%s", attempt.id, attempt.studentId, scoring.score)

    # -------------------------------------------------------- submit / timeout

    def submit(self, student, exam_id, attempt_id, session_token, answers, violation_flags, client_ip) -> AttemptResult:
        return self._finalize(
            student, exam_id, attempt_id, session_token, answers, violation_flags, client_ip, forced=False
        )

    def timeout(self, student, exam_id, attempt_id, session_token, answers, violation_flags, client_ip) -> AttemptResult:
        return self._finalize(
            student, exam_id, attempt_id, session_token, answers, violation_flags, client_ip, forced=True
        )

    def _load_for_finalize(self, student: User, exam_id: str, attempt_id: str, session_token, client_ip) -> Attempt:
        attempt = self.store.find_attempt(attempt_id, exam_id, student.uid)
        if attempt is None:
            raise NotFoundError("Attempt not found")
        if attempt.status != AttemptStatus.IN_PROGRESS.value:
            raise AlreadyFinalizedError(attempt.status)
        if not verify_token(session_token, attempt.sessionTokenHash):
            logger.warning("Invalid session token for attempt=%s student=%s", attempt.id, student.uid)
            raise SessionError("Invalid exam session token")
        if attempt.ipAddress and attempt.ipAddress != client_ip:
            logger.warning("Device conflict on attempt=%s ip=%s", attempt.id, client_ip)
            raise DeviceConflictError()
        return attempt

    def _finalize(self, student, exam_id, attempt_id, session_token, answers, violation_flags, client_ip, forced):
        attempt = self._load_for_finalize(student, exam_id, attempt_id, session_token, client_ip)

        now = self.clock()
        submitted = _coerce_answers(answers)
        scoring = score_attempt(attempt.questionSnapshot, submitted)

        if forced:
            status = AttemptStatus.TIMEOUT
            flags = list(violation_flags) if violation_flags is not None else list(attempt.violationFlags)
        else:
            status = AttemptStatus.TIMEOUT if now > attempt.deadlineAt else AttemptStatus.SUBMITTED
            flags = list(violation_flags or [])

        changes = {
            "answers": [a.model_dump() for a in submitted],
            "score": scoring.score,
            "endTime": now,
            "status": status.value,
            "violationFlags": flags,
            "ipAddress": attempt.ipAddress or client_ip,
        }
        updated = self.store.compare_and_set_attempt(attempt.id, attempt.version, changes, now)
        if updated is None:
            self._raise_lost_race(attempt, student)

        logger.info(
            "%s attempt=%s exam=%s student=%s status=%s score=%s",
            "Forced timeout of" if forced else "Submitted",
            attempt.id, attempt.examId, student.uid, status.value, scoring.score,
        )
        return AttemptResult(
            status=status.value,
            score=scoring.score,
            attempted=scoring.attempted,
            correct=scoring.correct,
            total=scoring.total,
        )

    def _raise_lost_race(self, attempt: Attempt, student: User):
        current = self.store.find_attempt(attempt.id, attempt.examId, student.uid)
        if current is not None and current.status != AttemptStatus.IN_PROGRESS.value:
            raise AlreadyFinalizedError(current.status)
        if current is not None and current.sessionTokenHash != attempt.sessionTokenHash:
            raise SessionError("Invalid exam session token")
        raise ConflictError("Attempt was modified by another request")
