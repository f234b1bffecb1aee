from enum import Enum
from typing import Annotated, Any, List, Literal, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator, model_validator

ObjectIdStr = Annotated[str, StringConstraints(pattern=r"^[a-fA-F0-9]{24}$")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Roles:
    ADMIN = "Admin"
    PRINCIPAL = "Principal"
    PROFESSOR = "Professor"
    STUDENT_PROCTOR = "StudentProctor"
    STUDENT = "Student"

    ALL = (ADMIN, PRINCIPAL, PROFESSOR, STUDENT_PROCTOR, STUDENT)


class QuestionType(str, Enum):
    MCQ = "MCQ"
    MULTI_SELECT = "MultiSelect"
    CODING = "Coding"
    NUMERICAL = "Numerical"
    DESCRIPTIVE = "Descriptive"


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    TIMEOUT = "TIMEOUT"


# Users Collection Schema
class User(BaseModel):
    uid: str
    role: str  # one of Roles.ALL
    email: str
    name: str = ""
    department: str = ""
    proctorId: Optional[str] = None


# Questions Collection Schema
class Question(BaseModel):
    id: str
    type: QuestionType
    subject: str
    tags: List[str] = []
    difficulty: Difficulty
    options: List[str] = []
    correctAnswer: Any
    marks: float = Field(..., ge=0)
    negativeMarks: float = Field(0, ge=0)
    createdBy: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


# Exams Collection Schema
class Exam(BaseModel):
    id: str
    title: str
    createdBy: str
    questions: List[str]
    duration: int = Field(..., ge=1)  # minutes
    startTime: datetime
    endTime: datetime
    assignedBatch: str
    attemptLimit: int = Field(1, ge=1)
    randomizeQuestions: bool = True
    shuffleOptions: bool = True
    createdAt: Optional[datetime] = Field(default_factory=utcnow)
    updatedAt: Optional[datetime] = Field(default_factory=utcnow)


class QuestionSnapshotEntry(BaseModel):
    """A question frozen into one attempt, with options and answer already resolved."""

    questionId: str
    type: str
    subject: str
    difficulty: str
    options: List[str] = []
    marks: float
    negativeMarks: float = 0
    correctAnswer: Any

    model_config = ConfigDict(frozen=True)


class SubmittedAnswer(BaseModel):
    questionId: str
    answer: Any = None


# Attempts Collection Schema
class Attempt(BaseModel):
    id: Optional[str] = None
    studentId: str
    examId: str
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    startTime: datetime
    endTime: Optional[datetime] = None
    deadlineAt: datetime
    ipAddress: str = ""
    sessionTokenHash: str
    answers: List[SubmittedAnswer] = []
    score: float = 0
    violationFlags: List[str] = []
    questionSnapshot: List[QuestionSnapshotEntry] = []
    attemptNumber: int = 1
    version: int = 0
    createdAt: Optional[datetime] = Field(default_factory=utcnow)
    updatedAt: Optional[datetime] = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=True)


class ScoreResult(BaseModel):
    score: float
    attempted: int
    correct: int
    total: int


# Request / response models

class StudentQuestion(BaseModel):
    """Client-facing view of a snapshot entry; never carries the correct answer."""

    questionId: str
    type: str
    subject: str
    difficulty: str
    options: List[str] = []
    marks: float
    negativeMarks: float = 0


class StartAttemptResponse(BaseModel):
    attemptId: str
    sessionToken: str
    deadlineAt: datetime
    remainingSeconds: int
    questions: List[StudentQuestion]


class AnswerIn(BaseModel):
    questionId: ObjectIdStr
    answer: Any = None


class SubmitAttemptRequest(BaseModel):
    attemptId: ObjectIdStr
    sessionToken: str = Field(..., min_length=20)
    answers: List[AnswerIn] = []
    violationFlags: Optional[List[Annotated[str, StringConstraints(min_length=1)]]] = None


class AttemptResult(BaseModel):
    status: str
    score: float
    attempted: int
    correct: int
    total: int


class ExamCreateRequest(BaseModel):
    title: str = Field(..., min_length=3)
    questions: List[ObjectIdStr] = Field(..., min_length=1)
    duration: int = Field(..., ge=1, le=600)
    startTime: datetime
    endTime: datetime
    assignedBatch: str = Field(..., min_length=1)
    attemptLimit: Optional[int] = Field(None, ge=1, le=10)
    randomizeQuestions: Optional[bool] = None
    shuffleOptions: Optional[bool] = None

    @field_validator("startTime", "endTime")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_schedule(self):
        if self.endTime <= self.startTime:
            raise ValueError("endTime must be after startTime")
        return self


class LoginRequest(BaseModel):
    email: str
    password: str


class Token(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=20)


class UserCreateRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: Literal["Admin", "Principal", "Professor", "StudentProctor", "Student"]
    department: str = ""
    proctorId: Optional[str] = None
