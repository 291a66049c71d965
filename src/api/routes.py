"""FastAPI routes exposing the relay's HTTP surface."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_registry
from api.schemas import HealthResponse
from api.twilio_routes import router as twilio_router
from config.settings import get_settings
from relay.registry import SessionRegistry

router = APIRouter()
router.include_router(twilio_router)


@router.get("/health", response_model=HealthResponse)
async def health(registry: SessionRegistry = Depends(get_registry)) -> HealthResponse:
    return HealthResponse(
        active_sessions=len(registry),
        transcription_configured=bool(get_settings().deepgram_api_key),
    )
