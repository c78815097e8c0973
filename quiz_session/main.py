import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from quiz_session.api.client import SessionApiClient
from quiz_session.config import settings
from quiz_session.controller import SessionController
from quiz_session.logger import setup_logger
from quiz_session.models import QuizMode, SessionSnapshot, SlotView, SubmitOutcome
from quiz_session.utils.exceptions import (
    LocalOperationError,
    NavigationError,
    QuizSessionError,
    RejectedError,
    SubmissionError,
    TransientError,
)

logger = setup_logger(__name__)


class StartRequest(BaseModel):
    quiz_id: str
    mode: QuizMode = QuizMode.EXAM


class AnswerRequest(BaseModel):
    question_id: str
    answer: Any = None


class HealthResponse(BaseModel):
    status: str
    session_state: str
    connectivity_degraded: bool
    pending_writes: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager: one controller for the local UI."""
    logger.info("🚀 Starting quiz session bridge")
    logger.info(f"   Config: API={settings.api_base_url}, heartbeat={settings.heartbeat_interval}s")
    api = SessionApiClient()
    app.state.controller = SessionController(api)
    yield
    logger.info("🛑 Shutting down quiz session bridge")
    await app.state.controller.abandon()
    await api.aclose()


app = FastAPI(title="Quiz Session Bridge", version="0.1.0", lifespan=lifespan)


def get_controller(request: Request) -> SessionController:
    return request.app.state.controller


@app.get("/session", response_model=SessionSnapshot)
async def get_session(controller: SessionController = Depends(get_controller)):
    return controller.snapshot()


@app.post("/session/start", response_model=SessionSnapshot)
async def start_session(
    request: StartRequest, controller: SessionController = Depends(get_controller)
):
    return await controller.start(request.quiz_id, request.mode)


@app.post("/session/restore", response_model=SessionSnapshot)
async def restore_session(controller: SessionController = Depends(get_controller)):
    snapshot = await controller.restore()
    return snapshot or controller.snapshot()


@app.post("/session/answer", response_model=SlotView)
async def answer_question(
    request: AnswerRequest, controller: SessionController = Depends(get_controller)
):
    return controller.answer(request.question_id, request.answer)


@app.put("/session/questions/{question_id}/flag", response_model=SlotView)
async def flag_question(
    question_id: str, controller: SessionController = Depends(get_controller)
):
    return controller.flag(question_id)


@app.delete("/session/questions/{question_id}/flag", response_model=SlotView)
async def unflag_question(
    question_id: str, controller: SessionController = Depends(get_controller)
):
    return controller.unflag(question_id)


@app.post("/session/next", response_model=SessionSnapshot)
async def next_question(controller: SessionController = Depends(get_controller)):
    controller.next()
    return controller.snapshot()


@app.post("/session/previous", response_model=SessionSnapshot)
async def previous_question(controller: SessionController = Depends(get_controller)):
    controller.previous()
    return controller.snapshot()


@app.post("/session/go-to/{position}", response_model=SessionSnapshot)
async def go_to_question(
    position: int, controller: SessionController = Depends(get_controller)
):
    controller.go_to(position)
    return controller.snapshot()


@app.post("/session/pause", response_model=SessionSnapshot)
async def pause_session(controller: SessionController = Depends(get_controller)):
    return await controller.pause()


@app.post("/session/resume", response_model=SessionSnapshot)
async def resume_session(controller: SessionController = Depends(get_controller)):
    return await controller.resume()


@app.post("/session/submit", response_model=SubmitOutcome)
async def submit_session(controller: SessionController = Depends(get_controller)):
    return await controller.submit()


@app.post("/session/review", response_model=SessionSnapshot)
async def review_session(controller: SessionController = Depends(get_controller)):
    return controller.review()


@app.post("/session/abandon", response_model=SessionSnapshot)
async def abandon_session(
    discard: bool = False, controller: SessionController = Depends(get_controller)
):
    return await controller.abandon(discard_attempt=discard)


@app.get("/health", response_model=HealthResponse)
async def health_check(controller: SessionController = Depends(get_controller)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        session_state=controller.state.value,
        connectivity_degraded=controller.connectivity_degraded,
        pending_writes=controller.cache.pending_count,
    )


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(QuizSessionError)
async def session_exception_handler(request: Request, exc: QuizSessionError):
    """Map session errors onto HTTP statuses for the UI."""
    if isinstance(exc, NavigationError):
        status_code = 422
    elif isinstance(exc, (LocalOperationError, RejectedError)):
        status_code = 409
    elif isinstance(exc, TransientError):
        status_code = 503
    elif isinstance(exc, SubmissionError):
        status_code = 502
    else:
        status_code = 400

    level = logging.WARNING if status_code < 500 else logging.ERROR
    logger.log(level, f"🔥 {type(exc).__name__}: {exc}")
    return _error(status_code, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"🔥 Unexpected Error: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
