import random
import threading
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from attempts import AttemptService
from errors import ConflictError, DuplicateAttemptError, NotFoundError
from schemas import Attempt, Exam, Question, Roles, User


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class ScriptedRandom:
    """randrange() returns the scripted values in order."""

    def __init__(self, values):
        self.values = list(values)
        self.calls = []

    def randrange(self, n):
        value = self.values.pop(0)
        assert 0 <= value < n
        self.calls.append(n)
        return value


class InMemoryStore:
    """Record store fake with the same conditional-write rules as the Mongo store."""

    def __init__(self):
        self._lock = threading.Lock()
        self.exams = {}
        self.questions = {}
        self.attempts = {}
        self.users = {}

    # Exams and questions

    def add_question(self, **fields) -> Question:
        question = Question(id=str(ObjectId()), **fields)
        self.questions[question.id] = question
        return question

    def add_exam(self, **fields) -> Exam:
        exam = Exam(id=str(ObjectId()), **fields)
        self.exams[exam.id] = exam
        return exam

    def get_exam(self, exam_id):
        return self.exams.get(exam_id)

    def get_questions(self, question_ids):
        missing = [qid for qid in question_ids if qid not in self.questions]
        if missing:
            raise NotFoundError("One or more questions were not found")
        return [self.questions[qid] for qid in question_ids]

    def insert_exam(self, data):
        return self.add_exam(**data)

    def list_exams(self, created_by=None, batches=None, ending_after=None):
        exams = list(self.exams.values())
        if created_by is not None:
            exams = [e for e in exams if e.createdBy == created_by]
        if batches is not None:
            exams = [e for e in exams if e.assignedBatch in batches]
        if ending_after is not None:
            exams = [e for e in exams if e.endTime >= ending_after]
        return sorted(exams, key=lambda e: e.startTime)

    # Attempts

    def find_active_attempt(self, student_id, exam_id):
        with self._lock:
            live = [
                a for a in self.attempts.values()
                if a.studentId == student_id and a.examId == exam_id and a.status == "IN_PROGRESS"
            ]
            return live[-1].model_copy(deep=True) if live else None

    def count_attempts(self, student_id, exam_id):
        with self._lock:
            return sum(1 for a in self.attempts.values() if a.studentId == student_id and a.examId == exam_id)

    def insert_attempt(self, attempt: Attempt) -> Attempt:
        with self._lock:
            for other in self.attempts.values():
                if other.studentId != attempt.studentId or other.examId != attempt.examId:
                    continue
                if other.status == "IN_PROGRESS" and attempt.status == "IN_PROGRESS":
                    raise DuplicateAttemptError("one_active_attempt")
                if other.attemptNumber == attempt.attemptNumber:
                    raise DuplicateAttemptError("attempt_number")
            stored = attempt.model_copy(update={"id": str(ObjectId())}, deep=True)
            self.attempts[stored.id] = stored
            return stored.model_copy(deep=True)

    def find_attempt(self, attempt_id, exam_id, student_id):
        with self._lock:
            attempt = self.attempts.get(attempt_id)
            if attempt is None or attempt.examId != exam_id or attempt.studentId != student_id:
                return None
            return attempt.model_copy(deep=True)

    def compare_and_set_attempt(self, attempt_id, expected_version, changes, now):
        with self._lock:
            current = self.attempts.get(attempt_id)
            if current is None or current.status != "IN_PROGRESS" or current.version != expected_version:
                return None
            data = current.model_dump()
            data.update(changes)
            data["updatedAt"] = now
            data["version"] = current.version + 1
            updated = Attempt(**data)
            self.attempts[attempt_id] = updated
            return updated.model_copy(deep=True)

    def list_attempts_for_student(self, student_id, limit=50):
        attempts = [a for a in self.attempts.values() if a.studentId == student_id]
        return sorted(attempts, key=lambda a: a.createdAt, reverse=True)[:limit]

    # Users

    def get_user(self, uid):
        record = self.users.get(uid)
        return User(**record) if record else None

    def get_user_credentials(self, email):
        for record in self.users.values():
            if record["email"] == email.strip().lower():
                return record
        return None

    def insert_user(self, user, password_hash):
        if self.get_user_credentials(user.email) is not None:
            raise ConflictError("A user with this email already exists")
        self.users[user.uid] = {**user.model_dump(), "email": user.email.lower(), "password": password_hash}

    def set_refresh_token_hash(self, uid, token_hash):
        if uid in self.users:
            self.users[uid]["refreshTokenHash"] = token_hash

    def get_refresh_token_hash(self, uid):
        return self.users.get(uid, {}).get("refreshTokenHash")

    def list_students_for_proctor(self, proctor_uid):
        students = [User(**r) for r in self.users.values()
                    if r.get("proctorId") == proctor_uid and r["role"] == Roles.STUDENT]
        return sorted(students, key=lambda s: s.name)

    def stats(self):
        return {
            "exams": len(self.exams),
            "attempts": len(self.attempts),
            "activeAttempts": sum(1 for a in self.attempts.values() if a.status == "IN_PROGRESS"),
        }


EXAM_START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
EXAM_END = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def questions(store):
    return [
        store.add_question(type="MCQ", subject="Math", difficulty="Easy",
                           options=["2", "3", "4", "5"], correctAnswer="4", marks=4, negativeMarks=1),
        store.add_question(type="MultiSelect", subject="Science", difficulty="Medium",
                           options=["H2O", "CO2", "NaCl"], correctAnswer=["H2O", "CO2"], marks=2, negativeMarks=0.5),
        store.add_question(type="Numerical", subject="Math", difficulty="Hard",
                           options=[], correctAnswer=42, marks=3),
    ]


@pytest.fixture
def exam(store, questions):
    return store.add_exam(
        title="Midterm",
        createdBy="prof-1",
        questions=[q.id for q in questions],
        duration=60,
        startTime=EXAM_START,
        endTime=EXAM_END,
        assignedBatch="CSE",
        attemptLimit=1,
        randomizeQuestions=False,
        shuffleOptions=False,
    )


@pytest.fixture
def student():
    return User(uid="student-1", role=Roles.STUDENT, email="s1@university.edu", name="Student One", department="CSE")


@pytest.fixture
def service(store, clock):
    return AttemptService(store, clock=clock, rng=random.Random(7))
