"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PROJECT_ROOT, Settings, get_settings
from .llm_client import ChatCompletionClient
from .repository import TrialRepository
from .routers.ai import router as ai_router
from .routers.voice import router as voice_router
from .services.response_generator import ResponseGenerator
from .services.session import SessionRegistry
from .services.stt_service import DeepgramRecognitionBridge, RecognitionBridge
from .services.transcription import WhisperTranscriber
from .services.tts_service import SpeechSynthesizer


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    log_file = os.getenv("LOG_FILE")
    handlers: list[logging.Handler] = []
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Always add console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    logging.getLogger("companion_voice").setLevel(log_level)

    # Also capture uvicorn logs
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Per-frame websocket and HTTP logging is too chatty above DEBUG
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)


@dataclass
class VoiceServices:
    """Process-wide collaborators shared by every session."""

    recognizer: RecognitionBridge
    generator: ResponseGenerator
    synthesizer: Any
    transcriber: Any = None
    repository: Optional[TrialRepository] = None
    llm_client: Optional[ChatCompletionClient] = None

    async def initialize(self) -> None:
        if self.repository is not None:
            await self.repository.initialize()

    async def shutdown(self) -> None:
        if self.repository is not None:
            await self.repository.close()
        for client in (self.llm_client, self.synthesizer, self.transcriber):
            close = getattr(client, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as exc:
                logging.warning("Error closing %s: %s", type(client).__name__, exc)


def _resolve_under(base: Path, p: Path) -> Path:
    # Allow absolute paths as-is (useful for tests and external mounts).
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def build_services(settings: Settings) -> VoiceServices:
    llm_client = ChatCompletionClient(settings)
    return VoiceServices(
        recognizer=DeepgramRecognitionBridge(settings),
        generator=ResponseGenerator(llm_client, settings),
        synthesizer=SpeechSynthesizer(settings),
        transcriber=WhisperTranscriber(settings),
        repository=TrialRepository(_resolve_under(PROJECT_ROOT, settings.database_path)),
        llm_client=llm_client,
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[VoiceServices] = None,
) -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = settings or get_settings()
    services = services or build_services(settings)
    registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.initialize()
        try:
            yield
        finally:
            # Add timeout to prevent hanging during shutdown (especially in tests)
            try:
                await asyncio.wait_for(services.shutdown(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Service shutdown timed out after 10s")
            except Exception as exc:
                logging.warning("Error during service shutdown: %s", exc)

    app = FastAPI(
        title="Companion Voice Backend",
        version="0.1.0",
        description="Real-time duplex voice conversation pipeline.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.services = services
    app.state.session_registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(voice_router)
    app.include_router(ai_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | int]:
        return {
            "status": "ok",
            "active_sessions": len(registry),
            "llm_model": settings.llm_model,
        }

    return app


__all__ = ["VoiceServices", "build_services", "create_app"]
