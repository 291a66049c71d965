"""Twilio Voice integration.

This module provides:
- TwiML webhook that forks both call tracks to the media stream and dials the callee.
- Access token endpoint for the browser Voice SDK.
- Media Streams websocket feeding the call relay.
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, Depends, Request, Response, WebSocket

from api.dependencies import get_link_factory, get_registry
from api.schemas import TokenResponse
from config.settings import get_settings
from integrations.twilio_client import build_access_token, get_twilio_caller_id, get_twilio_voice_config
from integrations.twilio_streaming import LinkFactory, TwilioMediaStreamHandler
from relay.errors import TwilioNotConfiguredError
from relay.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])
stream_router = APIRouter(tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    return Response(content=xml, media_type="text/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url.rstrip('/')}/stream")
    host = request.headers.get("host") or "localhost:3000"
    return f"wss://{host}/stream"


def _twiml_stream_and_dial(*, stream_url: str, caller_id: str, to_number: str) -> str:
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Start>"
        f"<Stream url={quoteattr(stream_url)} track=\"both_tracks\" />"
        "</Start>"
        f"<Dial callerId={quoteattr(caller_id)}>"
        f"<Number>{escape(to_number)}</Number>"
        "</Dial>"
        "</Response>"
    )


@router.post("/twiml")
async def twilio_twiml(request: Request) -> Response:
    try:
        caller_id = get_twilio_caller_id()
    except TwilioNotConfiguredError as exc:
        return Response(content=exc.detail, status_code=exc.status_code, media_type="text/plain")

    form = await request.form()
    to_number = str(form.get("To") or "").strip()
    if not to_number:
        return Response(content="Missing 'To' parameter", status_code=400, media_type="text/plain")

    return _twiml_response(
        _twiml_stream_and_dial(
            stream_url=_stream_url(request),
            caller_id=caller_id,
            to_number=to_number,
        )
    )


@router.get("/token", response_model=TokenResponse)
async def twilio_token() -> TokenResponse:
    # Missing configuration surfaces through the RelayError handler in main.
    cfg = get_twilio_voice_config()
    return TokenResponse(token=build_access_token(cfg))


@stream_router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_registry),
    link_factory: LinkFactory = Depends(get_link_factory),
) -> None:
    await websocket.accept()
    LOGGER.info("Twilio media stream websocket accepted")
    handler = TwilioMediaStreamHandler(
        registry,
        link_factory,
        teardown_on_disconnect=get_settings().teardown_on_stream_disconnect,
    )
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is None:
                LOGGER.warning("Ignoring non-text frame on media stream for %s", handler.call_sid)
                continue
            await handler.handle_text(text)
    finally:
        await handler.handle_disconnect()
