from fastapi import FastAPI, Depends, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from starlette.middleware.base import BaseHTTPMiddleware
from datetime import datetime

import logging
import re
import time
import uuid

from . import crud
from .catalog import SequenceCatalog
from .config import settings
from .deps import (
    get_answer_evaluator,
    get_catalog,
    get_current_parent,
    get_profile_store,
    get_session,
    get_session_manager,
    get_task_orchestrator,
)
from .errors import (
    ConflictError,
    ForbiddenError,
    GameError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from .evaluator import AnswerEvaluator
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .profiles import ProfileStore
from .sessions import SessionManager
from .tasks import TaskOrchestrator


# Rate limiting - last request times per client IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()
    cutoff_time = current_time - window_seconds
    # forget clients whose last request fell out of the window
    for ip in [k for k, times in _RATE_LIMIT_STORE.items() if not times or times[-1] <= cutoff_time]:
        del _RATE_LIMIT_STORE[ip]
    _RATE_LIMIT_STORE[client_ip] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(client_ip, [])
        if req_time > cutoff_time
    ]
    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False
    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def rate_limit_dependency(max_requests: Optional[int] = None, window_seconds: int = 60):
    """Create a dependency that raises RateLimitedError when over the limit"""
    def dependency(request: Request):
        limit = max_requests or settings.RATE_LIMIT_SUBMIT
        if not check_rate_limit(request, limit, window_seconds):
            raise RateLimitedError(
                f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds."
            )
    return dependency


setup_logging(logging.INFO)
logger = get_logger("melody")
app = FastAPI(title="Melody Quest")


# Each taxonomy entry maps to exactly one status, here and nowhere else
ERROR_STATUS = {
    ValidationError: 400,
    UnauthorizedError: 401,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    RateLimitedError: 429,
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Cache-Control', 'no-store')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception as exc:
            # answered here so the 500 still carries the request id
            response = await unexpected_error_handler(request, exc)
            return response
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:4321",
        "http://127.0.0.1:4321",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "Authorization", "X-Request-ID"],
)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        logger.error("game_error", extra={"path": request.url.path, "error": exc.code})
    return JSONResponse(status_code=status, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = {}
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        details[field or "request"] = err.get("msg", "invalid")
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": details})
    return JSONResponse(status_code=400, content=ValidationError(details=details).to_payload())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    # never echo the exception text; it may carry query parameters
    logger.exception("unexpected_error", extra={"path": request.url.path, "method": request.method})
    return JSONResponse(status_code=500, content=GameError().to_payload())


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    from .cache import get_cache
    return JSONResponse({"cache_stats": get_cache().get_stats(), "status": "ok"})


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    db_path = settings.DATABASE_URL
    connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
    if not db_path.startswith("sqlite"):
        engine = create_engine(
            db_path,
            echo=False,
            connect_args=connect_args,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=1800,
        )
    else:
        engine = create_engine(db_path, echo=False, connect_args=connect_args)

    SQLModel.metadata.create_all(engine)
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})
    crud.engine = engine


_UUID_RE = re.compile(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$')


def _validate_id_param(value: str, field: str) -> str:
    if not value or not _UUID_RE.match(value):
        raise ValidationError(f"Invalid {field} format", {field: f"Invalid {field} format"})
    return value


def lease_cookie_name(profile_id: str) -> str:
    return f"game_session_{profile_id}"


def _set_lease_cookie(response: Response, profile_id: str, session_id: str, ended_at: str) -> None:
    # expires in lockstep with the session; readable by the page script
    response.set_cookie(
        lease_cookie_name(profile_id),
        session_id,
        expires=crud.as_utc(datetime.fromisoformat(ended_at)),
        path="/",
        samesite="strict",
        secure=settings.COOKIE_SECURE,
    )


def _resolve_session_id(request: Request, profile_id: str, explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    return request.cookies.get(lease_cookie_name(profile_id))


class NextTaskRequest(BaseModel):
    sessionId: Optional[str] = Field(None, max_length=100)


class SubmitAnswerRequest(BaseModel):
    answer: str = Field(..., min_length=1, max_length=200)
    sessionId: Optional[str] = Field(None, max_length=100)

    @field_validator('answer')
    @classmethod
    def validate_answer(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Answer is required')
        return v


@app.post("/api/profiles/{profile_id}/sessions", status_code=201)
def start_session(
    profile_id: str,
    response: Response,
    parent_id: str = Depends(get_current_parent),
    profiles: ProfileStore = Depends(get_profile_store),
    sessions: SessionManager = Depends(get_session_manager),
):
    _validate_id_param(profile_id, "profileId")
    profiles.validate_ownership(profile_id, parent_id)
    result = sessions.start_session(profile_id)
    _set_lease_cookie(response, profile_id, result["sessionId"], result["endedAt"])
    return result


@app.get("/api/profiles/{profile_id}/sessions")
def list_sessions(
    profile_id: str,
    page: int = 1,
    pageSize: int = 20,
    active: Optional[str] = None,
    parent_id: str = Depends(get_current_parent),
    profiles: ProfileStore = Depends(get_profile_store),
    sessions: SessionManager = Depends(get_session_manager),
):
    _validate_id_param(profile_id, "profileId")
    if active not in (None, "true", "false"):
        raise ValidationError("Invalid query parameters", {"active": "active must be 'true' or 'false'"})
    profiles.validate_ownership(profile_id, parent_id)
    flag = None if active is None else active == "true"
    return sessions.list_sessions(profile_id, page=page, page_size=pageSize, active=flag)


@app.post("/api/sessions/{session_id}/refresh")
def refresh_session(
    session_id: str,
    response: Response,
    parent_id: str = Depends(get_current_parent),
    sessions: SessionManager = Depends(get_session_manager),
    session: Session = Depends(get_session),
):
    _validate_id_param(session_id, "sessionId")
    result = sessions.refresh_session(session_id, parent_id)
    gs = crud.get_session_by_id(session, session_id)
    if gs is not None:
        _set_lease_cookie(response, gs.profile_id, session_id, result["endedAt"])
    return result


@app.post("/api/sessions/{session_id}/end", status_code=204)
def end_session(
    session_id: str,
    parent_id: str = Depends(get_current_parent),
    sessions: SessionManager = Depends(get_session_manager),
    session: Session = Depends(get_session),
):
    _validate_id_param(session_id, "sessionId")
    sessions.end_session(session_id, parent_id)
    response = Response(status_code=204)
    gs = crud.get_session_by_id(session, session_id)
    if gs is not None:
        response.delete_cookie(lease_cookie_name(gs.profile_id), path="/", samesite="strict")
    return response


@app.post("/api/profiles/{profile_id}/tasks/next")
def next_task(
    profile_id: str,
    request: Request,
    body: Optional[NextTaskRequest] = None,
    parent_id: str = Depends(get_current_parent),
    profiles: ProfileStore = Depends(get_profile_store),
    sessions: SessionManager = Depends(get_session_manager),
    tasks: TaskOrchestrator = Depends(get_task_orchestrator),
):
    _validate_id_param(profile_id, "profileId")
    profiles.validate_ownership(profile_id, parent_id)
    sid = _resolve_session_id(request, profile_id, body.sessionId if body else None)
    sessions.require_active(sid, profile_id)
    return tasks.resume_or_generate(profile_id, sid)


@app.get("/api/profiles/{profile_id}/tasks/current")
def current_task(
    profile_id: str,
    request: Request,
    sessionId: Optional[str] = None,
    parent_id: str = Depends(get_current_parent),
    profiles: ProfileStore = Depends(get_profile_store),
    sessions: SessionManager = Depends(get_session_manager),
    tasks: TaskOrchestrator = Depends(get_task_orchestrator),
):
    _validate_id_param(profile_id, "profileId")
    profiles.validate_ownership(profile_id, parent_id)
    sessions.require_active(_resolve_session_id(request, profile_id, sessionId), profile_id)
    return tasks.current(profile_id)


@app.post("/api/profiles/{profile_id}/tasks/{sequence_id}/submit")
def submit_answer(
    profile_id: str,
    sequence_id: str,
    body: SubmitAnswerRequest,
    request: Request,
    parent_id: str = Depends(get_current_parent),
    profiles: ProfileStore = Depends(get_profile_store),
    evaluator: AnswerEvaluator = Depends(get_answer_evaluator),
    _: None = Depends(rate_limit_dependency()),
):
    _validate_id_param(profile_id, "profileId")
    _validate_id_param(sequence_id, "sequenceId")
    profiles.validate_ownership(profile_id, parent_id)
    sid = _resolve_session_id(request, profile_id, body.sessionId)
    return evaluator.submit(profile_id, sequence_id, body.answer, sid)


@app.get("/api/demo/sequences")
def demo_sequences(
    levelId: Optional[str] = None,
    catalog: SequenceCatalog = Depends(get_catalog),
    _: None = Depends(rate_limit_dependency(max_requests=60)),
):
    level = None
    if levelId not in (None, "", "null"):
        try:
            level = int(levelId)
        except ValueError:
            level = -1
        if level < 1 or level > settings.DEMO_MAX_LEVEL:
            msg = f"Level ID must be an integer between 1 and {settings.DEMO_MAX_LEVEL}"
            raise ValidationError("Invalid query parameters", {"levelId": msg})
    return {"sequences": catalog.demo_sequences(level)}
