"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the SAT practice backend.
Controllers are intentionally thin: they accept requests, resolve the
caller, delegate to services and return JSON responses. Service errors
(`satprep.errors.AppError`) are mapped to responses by one handler.

Endpoints implemented:
- POST /auth/register
- POST /auth/login
- GET /questions
- GET /questions/{question_id}
- GET /questions/{question_id}/neighbors
- POST /attempts
- POST /status
- GET /dashboard
- GET /filters
- GET /review
- POST /admin/import
- GET /health
"""

from typing import Optional

from fastapi import FastAPI, Depends, UploadFile, File, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
import json
import logging
import time
import uuid

from .database import create_db_and_tables, get_session
from . import services, repositories
from .auth import CurrentUser, get_current_user, get_optional_user
from .config import settings
from .errors import AppError, UpstreamFailure
from .schemas import AttemptIn, AttemptOut, ImportSummary, QuestionFilters, RegisterIn, StatusIn, TokenOut

app = FastAPI(title="SAT Practice API")
logger = logging.getLogger("satprep.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


def _log_fields(request: Request, **extra) -> str:
    fields = {
        "request_id": getattr(request.state, "request_id", ""),
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    fields.update(extra)
    return json.dumps(fields, ensure_ascii=True, default=str)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", _log_fields(request, duration_ms=elapsed_ms))
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", _log_fields(request, status_code=response.status_code, duration_ms=elapsed_ms))
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Map service errors to `{detail, code}` with their status code."""
    log = logger.error if isinstance(exc, UpstreamFailure) else logger.warning
    log("request_error %s", _log_fields(request, code=exc.code, status_code=exc.status_code, detail=exc.message))
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed input as 400 with the first problem as the message."""
    errors = exc.errors()
    message = "invalid input"
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))
    logger.warning("request_error %s", _log_fields(request, code="invalid_input", status_code=400, detail=message))
    return JSONResponse(status_code=400, content={"detail": message, "code": "invalid_input"})


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is already taken so the
    operation can be repeated safely by automation and tests.
    """
    auth = services.AuthService(db)
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username}
    user = auth.register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT bearer token."""
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.get('/questions')
def list_questions(
    filters: QuestionFilters = Depends(),
    page: int = Query(1, le=repositories.PAGE_MAX),
    page_size: int = Query(repositories.PAGE_SIZE_DEFAULT),
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    """Filtered, sorted, paginated question bank.

    Anonymous callers get no status badges and the `status` filter is
    ignored for them.
    """
    return services.QuestionBankService(db).list_questions(filters, user, page=page, page_size=page_size)


@app.get('/questions/{question_id}')
def get_question(question_id: str, db: Session = Depends(get_session),
                 user: Optional[CurrentUser] = Depends(get_optional_user)):
    """Current version, options, taxonomy and (when signed in) status.

    Answer key fields are only present once the caller has completed the
    question.
    """
    return services.QuestionBankService(db).detail(question_id, user)


@app.get('/questions/{question_id}/neighbors')
def get_neighbors(question_id: str, filters: QuestionFilters = Depends(),
                  db: Session = Depends(get_session),
                  user: Optional[CurrentUser] = Depends(get_optional_user)):
    """Previous/next question ids within the same filter and sort."""
    return services.QuestionBankService(db).neighbors(question_id, filters, user)


@app.post('/attempts', response_model=AttemptOut, response_model_exclude_none=True)
def submit_attempt(payload: AttemptIn, db: Session = Depends(get_session),
                   user: CurrentUser = Depends(get_current_user)):
    """Grade a submission, record the attempt and update the status row."""
    return services.AttemptService(db).submit(
        user,
        payload.question_id,
        selected_option_id=payload.selected_option_id,
        response_text=payload.response_text,
        time_spent_ms=payload.time_spent_ms,
    )


@app.post('/status')
def patch_status(payload: StatusIn, db: Session = Depends(get_session),
                 user: CurrentUser = Depends(get_current_user)):
    """Patch whitelisted status fields; unknown fields are ignored."""
    return services.StatusService(db).apply(user, payload.question_id, payload.patch)


@app.get('/dashboard')
def dashboard(db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Per-domain and per-skill stats plus recent activity for the caller."""
    return services.ProgressService(db).dashboard(user)


@app.get('/filters')
def filters(domain: Optional[str] = None, program: Optional[str] = None, db: Session = Depends(get_session)):
    """Distinct domains, or the skills of `domain` when given."""
    return services.QuestionBankService(db).filters(domain=domain, program=program)


@app.get('/review')
def review(db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Questions the caller marked for review."""
    return services.ProgressService(db).review(user)


@app.post('/admin/import', response_model=ImportSummary)
def import_bank(file: UploadFile = File(...), deduplicate: bool = True, dry_run: bool = False,
                db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Upload a JSON/JSONL question bank and import its questions.

    Returns a JSON summary with created/skipped counts and per-item errors.
    """
    if not file.filename:
        raise HTTPException(status_code=400, detail='no file')
    content = file.file.read(settings.MAX_IMPORT_BYTES + 1)
    if len(content) > settings.MAX_IMPORT_BYTES:
        raise HTTPException(status_code=400, detail='file too large')
    try:
        res = services.ImportService(db).import_bank(content, file.filename, deduplicate=deduplicate, dry_run=dry_run)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("bank_imported user=%s file=%s created=%s skipped=%s errors=%s",
                user.user_id, file.filename, res['created'], res['skipped'], len(res['errors']))
    return res


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
