"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import SupabaseIdentityVerifier
from .config import PROJECT_ROOT, Settings, get_settings
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .middleware import APIRateLimitMiddleware
from .repository import MessageRepository
from .routers.analytics import router as analytics_router
from .routers.tts import router as tts_router
from .services.ledger import MessageLedger
from .services.rate_limit import build_rate_limiter
from .services.speech_client import SpeechSynthesisClient
from .services.transcoder import FfmpegTranscoder
from .services.tts_pipeline import TTSPipeline

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _configure_logging(settings: Settings) -> None:
    """Configure logging based on LOG_LEVEL and LOG_DIR."""

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT)
    handlers: list[logging.Handler] = []

    if settings.log_dir is not None:
        file_handler = DateStampedFileHandler(settings.log_dir, prefix="voxa")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("voxa").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Quiet down noisy third-party libraries
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    if settings.log_dir is not None:
        cleanup_old_logs(
            [settings.log_dir],
            settings.log_retention_hours,
            logger=logging.getLogger(__name__),
        )


def _resolve_under(base: Path, p: Path) -> Path:
    # Allow absolute paths as-is (useful for tests and external mounts).
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def _log_capabilities(settings: Settings) -> None:
    logger = logging.getLogger(__name__)
    if settings.openai_api_key and settings.openai_api_key.get_secret_value():
        logger.info("OPENAI_API_KEY loaded; TTS is enabled")
    else:
        logger.warning("OPENAI_API_KEY not set; text-to-speech requests will fail")
    if settings.supabase_base_url:
        logger.info("SUPABASE_URL loaded; token verification enabled")
    else:
        logger.warning("SUPABASE_URL not set; all requests are treated as anonymous")
    if not settings.database_enabled:
        logger.warning("Database disabled; TTS messages will not be logged")


def create_app() -> FastAPI:
    load_dotenv()
    settings = get_settings()
    _configure_logging(settings)
    _log_capabilities(settings)
    logger = logging.getLogger(__name__)

    repository: MessageRepository | None = None
    if settings.database_enabled:
        repository = MessageRepository(
            _resolve_under(PROJECT_ROOT, settings.database_path)
        )
    ledger = MessageLedger(repository)

    rate_limiter = build_rate_limiter(
        settings,
        database_path=_resolve_under(PROJECT_ROOT, settings.rate_limit_database_path),
    )
    api_rate_limiter = build_rate_limiter(
        settings,
        database_path=_resolve_under(PROJECT_ROOT, settings.rate_limit_database_path),
        limit=settings.api_rate_limit_max,
        window_seconds=settings.api_rate_limit_window_seconds,
        label="API",
    )

    speech_client: SpeechSynthesisClient | None = None
    if settings.openai_api_key and settings.openai_api_key.get_secret_value():
        speech_client = SpeechSynthesisClient(
            api_key=settings.openai_api_key.get_secret_value(),
            model=settings.openai_tts_model,
            endpoint=settings.openai_speech_url,
            request_timeout=settings.openai_request_timeout,
        )

    pipeline = TTSPipeline(
        speech_client=speech_client,
        transcoder=FfmpegTranscoder(
            settings.ffmpeg_path, log_stderr=not settings.is_production
        ),
        rate_limiter=rate_limiter,
        ledger=ledger,
        max_chars=settings.tts_max_chars,
    )

    identity_verifier = SupabaseIdentityVerifier(
        settings.supabase_base_url,
        anon_key=(
            settings.supabase_anon_key.get_secret_value()
            if settings.supabase_anon_key
            else None
        ),
        timeout=settings.auth_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if repository is not None:
            try:
                await repository.initialize()
                logger.info("Database ready")
            except Exception as exc:
                logger.error("Database initialization failed: %s", exc)
                logger.warning("Server will continue without database features")
                ledger.disable()
                app.state.message_repository = None
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(ledger.drain(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Pending ledger updates did not finish within 10s")
            if speech_client is not None:
                await speech_client.aclose()
            await identity_verifier.aclose()
            await rate_limiter.close()
            await api_rate_limiter.close()
            if repository is not None:
                await repository.close()

    app = FastAPI(
        title="Voxa Backend",
        version="0.1.0",
        description="Text-to-speech for video calls, delivered as 48 kHz mono WAV.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.message_repository = repository
    app.state.message_ledger = ledger
    app.state.rate_limiter = rate_limiter
    app.state.api_rate_limiter = api_rate_limiter
    app.state.tts_pipeline = pipeline
    app.state.identity_verifier = identity_verifier

    app.add_middleware(APIRateLimitMiddleware, path_prefix="/api")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(tts_router)
    app.include_router(analytics_router)

    @app.get("/api/health", tags=["health"])
    async def healthcheck() -> JSONResponse:
        current = app.state.message_repository
        if current is None:
            return JSONResponse({"status": "ok", "database": "not-configured"})
        try:
            await current.ping()
        except Exception as exc:
            return JSONResponse(
                status_code=500,
                content={
                    "status": "error",
                    "database": "error",
                    "message": str(exc) or "Unknown database error",
                },
            )
        return JSONResponse({"status": "ok", "database": "connected"})

    return app


__all__ = ["create_app"]
