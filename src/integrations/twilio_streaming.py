from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from relay.errors import MalformedMessageError
from relay.models import Speaker
from relay.registry import SessionRegistry
from relay.session import CallSession
from relay.upstream import TranscriptCallback, UpstreamLink

LOGGER = logging.getLogger(__name__)

LinkFactory = Callable[[str, Speaker, TranscriptCallback], UpstreamLink]


class StreamState(str, Enum):
    AWAITING_START = "awaiting_start"
    STREAMING = "streaming"
    STOPPED = "stopped"


def parse_twilio_ws_message(text: str) -> dict[str, Any]:
    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedMessageError(f"Invalid JSON from Twilio: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedMessageError("Twilio message is not a JSON object")
    return message


def speaker_for_track(track: str | None) -> Speaker:
    """Twilio's ``outbound`` track carries the caller; everything else the recipient."""

    return Speaker.CALLER if track == "outbound" else Speaker.RECIPIENT


class TwilioMediaStreamHandler:
    """State machine for one Twilio Media Streams websocket.

    AWAITING_START --start--> STREAMING --stop--> STOPPED. Events that are not
    expected in the current state are ignored.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        link_factory: LinkFactory,
        *,
        teardown_on_disconnect: bool = True,
    ) -> None:
        self._registry = registry
        self._link_factory = link_factory
        self._teardown_on_disconnect = teardown_on_disconnect
        self.state = StreamState.AWAITING_START
        self.call_sid: str | None = None
        self.session: CallSession | None = None
        self._transitions: dict[
            StreamState, dict[str, Callable[[dict[str, Any]], Awaitable[None]]]
        ] = {
            StreamState.AWAITING_START: {
                "connected": self._on_connected,
                "start": self._on_start,
            },
            StreamState.STREAMING: {
                "media": self._on_media,
                "stop": self._on_stop,
            },
            StreamState.STOPPED: {},
        }

    async def handle_text(self, text: str) -> None:
        try:
            message = parse_twilio_ws_message(text)
        except MalformedMessageError as exc:
            LOGGER.error("Twilio message parse error: %s", exc)
            return
        await self.handle_event(message)

    async def handle_event(self, message: dict[str, Any]) -> None:
        event = str(message.get("event") or "")
        handler = self._transitions[self.state].get(event)
        if handler is None:
            LOGGER.debug("Ignoring Twilio event %r in state %s", event, self.state.value)
            return
        try:
            await handler(message)
        except MalformedMessageError as exc:
            LOGGER.error("Ignoring malformed Twilio %s event: %s", event, exc)

    async def handle_disconnect(self) -> None:
        LOGGER.info("Twilio websocket closed%s", f" for {self.call_sid}" if self.call_sid else "")
        if self.state is StreamState.STREAMING and self._teardown_on_disconnect and self.session:
            LOGGER.warning("Media stream for %s dropped without stop; tearing down", self.call_sid)
            self.session.teardown()
            self.state = StreamState.STOPPED

    async def _on_connected(self, message: dict[str, Any]) -> None:
        LOGGER.info("Twilio media stream connected")

    async def _on_start(self, message: dict[str, Any]) -> None:
        start = message.get("start") or {}
        call_sid = start.get("callSid") if isinstance(start, dict) else None
        if not isinstance(call_sid, str) or not call_sid:
            raise MalformedMessageError("start event without callSid")

        LOGGER.info("Stream started for %s, tracks: %s", call_sid, start.get("tracks"))
        session = await self._registry.start_call(call_sid)
        outbound = self._link_factory(call_sid, Speaker.CALLER, session.broadcast)
        inbound = self._link_factory(call_sid, Speaker.RECIPIENT, session.broadcast)
        session.attach_links(outbound, inbound)

        self.call_sid = call_sid
        self.session = session
        self.state = StreamState.STREAMING

    async def _on_media(self, message: dict[str, Any]) -> None:
        media = message.get("media") or {}
        if not isinstance(media, dict):
            raise MalformedMessageError("media event without media object")
        payload = media.get("payload")
        if not isinstance(payload, str) or not payload:
            return
        try:
            frame = base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise MalformedMessageError(f"invalid base64 payload: {exc}") from exc

        if self.session is not None:
            self.session.route_audio(speaker_for_track(media.get("track")), frame)

    async def _on_stop(self, message: dict[str, Any]) -> None:
        LOGGER.info("Stream stopped for %s", self.call_sid)
        if self.session is not None:
            self.session.teardown()
        self.state = StreamState.STOPPED
