"""Entry point for the live call transcript relay."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routes import router as api_router
from api.transcription_routes import router as transcription_router
from api.twilio_routes import stream_router
from config.settings import get_settings
from integrations.deepgram import DeepgramLinkFactory
from relay.errors import RelayError
from relay.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if not settings.deepgram_api_key:
        LOGGER.error("DEEPGRAM_API_KEY is not set; transcription disabled")
    app.state.registry = SessionRegistry(grace_seconds=settings.session_grace_seconds)
    app.state.link_factory = DeepgramLinkFactory(settings)
    yield
    await app.state.registry.close()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Live Call Transcript Relay",
    description="Relays Twilio call audio to Deepgram and streams transcripts to observers.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
app.include_router(stream_router)
app.include_router(transcription_router)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
