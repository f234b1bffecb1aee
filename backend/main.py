import logging
import secrets
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException, Path, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
import uvicorn

import settings
from attempts import AttemptService
from database import MongoRecordStore, ensure_indexes, get_db
from errors import ExamError, NotFoundError
from exams import create_exam, get_exam_details, list_exams_for_user
from schemas import (
    AttemptResult,
    ExamCreateRequest,
    LoginRequest,
    RefreshRequest,
    Roles,
    StartAttemptResponse,
    SubmitAttemptRequest,
    Token,
    User,
    UserCreateRequest,
)
from session_tokens import hash_token, verify_token

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ExamIdPath = Annotated[str, Path(pattern=r"^[a-fA-F0-9]{24}$")]


def get_store() -> MongoRecordStore:
    return MongoRecordStore(get_db())


def get_attempt_service(store=Depends(get_store)) -> AttemptService:
    return AttemptService(store)


def seed_super_admin(store) -> None:
    if not settings.SEED_ADMIN_PASSWORD:
        return
    if store.get_user_credentials(settings.SEED_ADMIN_EMAIL):
        return
    store.insert_user(
        User(uid="admin-1", role=Roles.ADMIN, email=settings.SEED_ADMIN_EMAIL, name="Super Admin"),
        pwd_context.hash(settings.SEED_ADMIN_PASSWORD),
    )
    logger.info("Seeded admin user %s", settings.SEED_ADMIN_EMAIL)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    store = get_store()
    ensure_indexes(store.db)
    seed_super_admin(store)
    yield


app = FastAPI(title="Exam Attempt Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(ExamError)
async def exam_error_handler(_request: Request, exc: ExamError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation failed", "code": "validation_error", "issues": jsonable_encoder(exc.errors())},
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_refresh_token(uid: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    # jti keeps tokens issued within the same second distinct
    to_encode = {"sub": uid, "type": "refresh", "jti": secrets.token_hex(8), "exp": expire}
    return jwt.encode(to_encode, settings.REFRESH_SECRET_KEY, algorithm=settings.ALGORITHM)


def issue_tokens(user: Dict[str, Any], store) -> Token:
    """Sign an access/refresh pair for ``user`` and remember the refresh token's hash."""
    access_token = create_access_token({
        "sub": user["uid"],
        "email": user["email"],
        "role": user["role"],
        "department": user.get("department") or "",
    })
    refresh_token = create_refresh_token(user["uid"])
    store.set_refresh_token_hash(user["uid"], hash_token(refresh_token))
    return Token(access_token=access_token, refresh_token=refresh_token)


def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authentication scheme")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role not in Roles.ALL:
        raise HTTPException(status_code=401, detail="Invalid token")
    return User(
        uid=user_id,
        email=payload.get("email") or "",
        role=role,
        department=payload.get("department") or "",
    )


def require_roles(*roles: str):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return dependency


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


@app.get("/")
async def root():
    return {"message": "Backend OK", "time": datetime.now(timezone.utc).isoformat()}


@app.post("/auth/login", response_model=Token)
def login(payload: LoginRequest, store=Depends(get_store)):
    user = store.get_user_credentials(payload.email)
    if not user or not pwd_context.verify(payload.password, user.get("password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    logger.info("User %s logged in", user["uid"])
    return issue_tokens(user, store)


@app.post("/auth/refresh", response_model=Token)
def refresh(payload: RefreshRequest, store=Depends(get_store)):
    try:
        claims = jwt.decode(payload.refresh_token, settings.REFRESH_SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    uid = claims.get("sub")
    if uid is None or claims.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    # only the most recently issued refresh token is accepted
    if not verify_token(payload.refresh_token, store.get_refresh_token_hash(uid)):
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = store.get_user(uid)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    return issue_tokens(user.model_dump(), store)


@app.get("/auth/me")
def me(user: User = Depends(get_current_user), store=Depends(get_store)):
    current = store.get_user(user.uid)
    if current is None:
        raise NotFoundError("User not found")
    return current.model_dump()


@app.post("/auth/logout")
def logout(user: User = Depends(get_current_user), store=Depends(get_store)):
    store.set_refresh_token_hash(user.uid, None)
    logger.info("User %s logged out", user.uid)
    return {"message": "Logged out"}


@app.post("/auth/users", status_code=201)
def create_user(data: UserCreateRequest, admin: User = Depends(require_roles(Roles.ADMIN)),
                store=Depends(get_store)):
    user = User(
        uid=str(ObjectId()),
        role=data.role,
        email=data.email.lower(),
        name=data.name,
        department=data.department,
        proctorId=data.proctorId,
    )
    store.insert_user(user, pwd_context.hash(data.password))
    logger.info("Admin %s created %s user %s", admin.uid, user.role, user.uid)
    return {
        "id": user.uid,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "department": user.department,
        "proctorId": user.proctorId,
    }


# Exams

@app.get("/exams")
def list_exams(user: User = Depends(get_current_user), store=Depends(get_store)):
    return {"exams": [exam.model_dump() for exam in list_exams_for_user(store, user)]}


@app.get("/exams/{exam_id}")
def exam_details(exam_id: ExamIdPath, user: User = Depends(get_current_user), store=Depends(get_store)):
    return get_exam_details(store, user, exam_id)


@app.post("/exams", status_code=201)
def new_exam(data: ExamCreateRequest, user: User = Depends(require_roles(Roles.ADMIN, Roles.PROFESSOR)),
             store=Depends(get_store)):
    return create_exam(store, user, data).model_dump()


# Attempts

@app.post("/exams/{exam_id}/start", response_model=StartAttemptResponse)
def start_attempt(exam_id: ExamIdPath, ip: str = Depends(client_ip),
                  user: User = Depends(require_roles(Roles.STUDENT)),
                  service: AttemptService = Depends(get_attempt_service)):
    return service.start(user, exam_id, ip)


@app.post("/exams/{exam_id}/submit", response_model=AttemptResult)
def submit_attempt(data: SubmitAttemptRequest, exam_id: ExamIdPath, ip: str = Depends(client_ip),
                   user: User = Depends(require_roles(Roles.STUDENT)),
                   service: AttemptService = Depends(get_attempt_service)):
    return service.submit(user, exam_id, data.attemptId, data.sessionToken, data.answers,
                          data.violationFlags, ip)


@app.post("/exams/{exam_id}/timeout", response_model=AttemptResult)
def timeout_attempt(data: SubmitAttemptRequest, exam_id: ExamIdPath, ip: str = Depends(client_ip),
                    user: User = Depends(require_roles(Roles.STUDENT)),
                    service: AttemptService = Depends(get_attempt_service)):
    return service.timeout(user, exam_id, data.attemptId, data.sessionToken, data.answers,
                           data.violationFlags, ip)


# Proctor / dashboard

def _attempt_summary(attempt) -> Dict[str, Any]:
    return attempt.model_dump(exclude={"sessionTokenHash", "questionSnapshot"})


@app.get("/proctor/students")
def proctor_students(user: User = Depends(require_roles(Roles.STUDENT_PROCTOR)), store=Depends(get_store)):
    students = store.list_students_for_proctor(user.uid)
    return {"students": [
        {"id": s.uid, "name": s.name, "email": s.email, "department": s.department} for s in students
    ]}


@app.get("/proctor/students/{student_id}/performance")
def student_performance(student_id: str, user: User = Depends(require_roles(Roles.STUDENT_PROCTOR)),
                        store=Depends(get_store)):
    student = store.get_user(student_id)
    if student is None or student.role != Roles.STUDENT or student.proctorId != user.uid:
        raise NotFoundError("Student not found under this proctor")
    attempts: List = store.list_attempts_for_student(student.uid, limit=50)
    return {
        "student": {"id": student.uid, "name": student.name, "email": student.email},
        "attempts": [_attempt_summary(a) for a in attempts],
    }


@app.get("/dashboard/stats")
def dashboard_stats(user: User = Depends(require_roles(Roles.ADMIN, Roles.PROFESSOR)), store=Depends(get_store)):
    return store.stats()


def run() -> None:
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
