import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load environment variables before building settings
load_dotenv()

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import (
    ConfigurationError,
    PayloadTooLarge,
    PermanentUpstreamError,
    QuizMediaError,
    TransientUpstreamError,
    UnsupportedContent,
    ValidationError,
)
from .routes import quiz_routes
from .services.quiz_service import QuizPipeline, build_pipeline

logger = logging.getLogger("media_quiz.main")

# The only place taxonomy classes meet HTTP status codes. First match wins.
STATUS_MAP = [
    (ValidationError, 400),
    (ConfigurationError, 400),
    (PayloadTooLarge, 413),
    (UnsupportedContent, 415),
    (TransientUpstreamError, 500),
    (PermanentUpstreamError, 500),
]


def status_for(exc: QuizMediaError) -> int:
    if isinstance(exc, TransientUpstreamError) and exc.upstream_status == 429:
        return 429
    for error_type, status in STATUS_MAP:
        if isinstance(exc, error_type):
            return status
    return 500


def error_body(reason: str, details=None) -> dict:
    body = {"error": reason}
    if details is not None:
        body["details"] = details
    return body


def create_app(settings: Optional[Settings] = None, pipeline: Optional[QuizPipeline] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = time.monotonic()
        if pipeline is not None:
            app.state.pipeline = pipeline
            yield
            return
        async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
            app.state.pipeline = build_pipeline(settings, client)
            logger.info(f"Media quiz service ready (payload limit {settings.max_payload_bytes} bytes, "
                        f"video fallback {'on' if settings.fallback_configured else 'off'})")
            yield

    app = FastAPI(
        title="Media Quiz API",
        description="Turns audio, video and PDF sources into multiple choice quizzes",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuizMediaError)
    async def quiz_media_error_handler(request: Request, exc: QuizMediaError):
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.warning
        log(f"{request.method} {request.url.path} -> {status} {exc.reason}: {exc}")
        return JSONResponse(status_code=status, content=error_body(exc.reason, exc.details))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"{request.method} {request.url.path} -> 400 invalid request")
        return JSONResponse(status_code=400, content=error_body("INVALID_REQUEST", jsonable_errors(exc)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} -> 500 unhandled error")
        return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", str(exc)))

    app.include_router(quiz_routes.router, tags=["quiz"])

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Media Quiz API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "ts": int(time.time() * 1000),
            "uptime": round(time.monotonic() - app.state.started_at, 3),
        }

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
