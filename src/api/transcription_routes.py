"""Observer websocket: live transcripts for one call, addressed by ``?callSid=``."""

from __future__ import annotations

from fastapi import APIRouter, Depends, WebSocket

from api.dependencies import get_registry
from config.settings import get_settings
from relay.observers import ObserverIngress
from relay.registry import SessionRegistry

router = APIRouter(tags=["transcriptions"])


@router.websocket("/transcriptions")
async def transcription_observer(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_registry),
) -> None:
    ingress = ObserverIngress(registry, max_queue=get_settings().observer_queue_size)
    await ingress.handle(websocket)
