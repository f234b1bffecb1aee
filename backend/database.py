import logging
from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import ConflictError, DuplicateAttemptError, NotFoundError
from schemas import Attempt, AttemptStatus, Exam, Question, Roles, User, utcnow
import settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(settings.DATABASE_URL, tz_aware=True)
        _db = _client[settings.DATABASE_NAME]
    return _db


def create_document(db, collection_name: str, data: Dict[str, Any]) -> str:
    now = utcnow()
    data.setdefault("createdAt", now)
    data.setdefault("updatedAt", now)
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(db, collection_name: str, filter_dict: Dict[str, Any] | None = None, limit: int = 100,
                  sort: Optional[List] = None) -> List[Dict[str, Any]]:
    filter_dict = filter_dict or {}
    cursor = db[collection_name].find(filter_dict)
    if sort:
        cursor = cursor.sort(sort)
    return list(cursor.limit(limit))


def ensure_indexes(db) -> None:
    attempts = db["attempt"]
    # at most one live attempt per (student, exam)
    attempts.create_index(
        [("studentId", ASCENDING), ("examId", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": AttemptStatus.IN_PROGRESS.value},
        name="one_active_attempt",
    )
    # attemptNumber = prior count + 1, so racing creations of the same slot collide
    attempts.create_index(
        [("studentId", ASCENDING), ("examId", ASCENDING), ("attemptNumber", ASCENDING)],
        unique=True,
        name="attempt_number",
    )
    attempts.create_index([("studentId", ASCENDING), ("examId", ASCENDING), ("createdAt", DESCENDING)])
    db["user"].create_index("email", unique=True)
    db["user"].create_index("uid", unique=True)
    logger.info("Ensured indexes on %s", db.name)


def _oid(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _exam_from_doc(doc: Dict[str, Any]) -> Exam:
    return Exam(**{
        **doc,
        "id": str(doc["_id"]),
        "createdBy": str(doc.get("createdBy")),
        "questions": [str(q) for q in doc.get("questions", [])],
    })


def _question_from_doc(doc: Dict[str, Any]) -> Question:
    created_by = doc.get("createdBy")
    return Question(**{**doc, "id": str(doc["_id"]), "createdBy": str(created_by) if created_by else None})


def _attempt_from_doc(doc: Dict[str, Any]) -> Attempt:
    return Attempt(**{**doc, "id": str(doc["_id"])})


class MongoRecordStore:
    """Record store backed by the ``exam``, ``question``, ``attempt`` and ``user`` collections."""

    def __init__(self, db):
        self.db = db

    # Exams and questions

    def get_exam(self, exam_id: str) -> Optional[Exam]:
        oid = _oid(exam_id)
        if oid is None:
            return None
        doc = self.db["exam"].find_one({"_id": oid})
        return _exam_from_doc(doc) if doc else None

    def get_questions(self, question_ids: Sequence[str]) -> List[Question]:
        """Return questions in the order of ``question_ids``; fail if any is missing."""
        oids = [_oid(qid) for qid in question_ids]
        if any(oid is None for oid in oids):
            raise NotFoundError("One or more questions were not found")
        docs = {str(doc["_id"]): doc for doc in self.db["question"].find({"_id": {"$in": oids}})}
        missing = [qid for qid in question_ids if str(qid) not in docs]
        if missing:
            raise NotFoundError("One or more questions were not found")
        return [_question_from_doc(docs[str(qid)]) for qid in question_ids]

    def insert_exam(self, data: Dict[str, Any]) -> Exam:
        doc = {**data, "questions": [_oid(q) for q in data.get("questions", [])]}
        doc["_id"] = ObjectId(create_document(self.db, "exam", doc))
        return _exam_from_doc(doc)

    def list_exams(self, created_by: Optional[str] = None, batches: Optional[Sequence[str]] = None,
                   ending_after: Optional[datetime] = None) -> List[Exam]:
        query: Dict[str, Any] = {}
        if created_by is not None:
            query["createdBy"] = created_by
        if batches is not None:
            query["assignedBatch"] = {"$in": list(batches)}
        if ending_after is not None:
            query["endTime"] = {"$gte": ending_after}
        docs = get_documents(self.db, "exam", query, limit=500, sort=[("startTime", ASCENDING)])
        return [_exam_from_doc(doc) for doc in docs]

    # Attempts

    def find_active_attempt(self, student_id: str, exam_id: str) -> Optional[Attempt]:
        doc = self.db["attempt"].find_one(
            {"studentId": student_id, "examId": exam_id, "status": AttemptStatus.IN_PROGRESS.value},
            sort=[("createdAt", DESCENDING)],
        )
        return _attempt_from_doc(doc) if doc else None

    def count_attempts(self, student_id: str, exam_id: str) -> int:
        return self.db["attempt"].count_documents({"studentId": student_id, "examId": exam_id})

    def insert_attempt(self, attempt: Attempt) -> Attempt:
        doc = attempt.model_dump(exclude={"id"})
        try:
            result = self.db["attempt"].insert_one(doc)
        except DuplicateKeyError as exc:
            raise DuplicateAttemptError(str(exc)) from exc
        return attempt.model_copy(update={"id": str(result.inserted_id)})

    def find_attempt(self, attempt_id: str, exam_id: str, student_id: str) -> Optional[Attempt]:
        oid = _oid(attempt_id)
        if oid is None:
            return None
        doc = self.db["attempt"].find_one({"_id": oid, "examId": exam_id, "studentId": student_id})
        return _attempt_from_doc(doc) if doc else None

    def compare_and_set_attempt(self, attempt_id: str, expected_version: int, changes: Dict[str, Any],
                                now: datetime) -> Optional[Attempt]:
        """Apply ``changes`` only if the attempt is still live at ``expected_version``."""
        doc = self.db["attempt"].find_one_and_update(
            {"_id": _oid(attempt_id), "status": AttemptStatus.IN_PROGRESS.value, "version": expected_version},
            {"$set": {**changes, "updatedAt": now}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return _attempt_from_doc(doc) if doc else None

    def list_attempts_for_student(self, student_id: str, limit: int = 50) -> List[Attempt]:
        docs = get_documents(self.db, "attempt", {"studentId": student_id}, limit=limit,
                             sort=[("createdAt", DESCENDING)])
        return [_attempt_from_doc(doc) for doc in docs]

    # Users

    def get_user(self, uid: str) -> Optional[User]:
        doc = self.db["user"].find_one({"uid": uid})
        return User(**doc) if doc else None

    def get_user_credentials(self, email: str) -> Optional[Dict[str, Any]]:
        return self.db["user"].find_one({"email": email.strip().lower()})

    def insert_user(self, user: User, password_hash: str) -> None:
        try:
            create_document(self.db, "user",
                            {**user.model_dump(), "email": user.email.lower(), "password": password_hash})
        except DuplicateKeyError as exc:
            raise ConflictError("A user with this email already exists") from exc

    def set_refresh_token_hash(self, uid: str, token_hash: Optional[str]) -> None:
        self.db["user"].update_one({"uid": uid}, {"$set": {"refreshTokenHash": token_hash, "updatedAt": utcnow()}})

    def get_refresh_token_hash(self, uid: str) -> Optional[str]:
        doc = self.db["user"].find_one({"uid": uid})
        return doc.get("refreshTokenHash") if doc else None

    def list_students_for_proctor(self, proctor_uid: str) -> List[User]:
        docs = get_documents(self.db, "user", {"proctorId": proctor_uid, "role": Roles.STUDENT}, limit=500,
                             sort=[("name", ASCENDING)])
        return [User(**doc) for doc in docs]

    # Dashboard

    def stats(self) -> Dict[str, int]:
        return {
            "exams": self.db["exam"].count_documents({}),
            "attempts": self.db["attempt"].count_documents({}),
            "activeAttempts": self.db["attempt"].count_documents({"status": AttemptStatus.IN_PROGRESS.value}),
        }
