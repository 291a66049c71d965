"""Deepgram live transcription: connection setup and result parsing."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

import websockets

from config.settings import Settings, get_settings
from relay.errors import MalformedMessageError
from relay.models import Speaker
from relay.upstream import Connector, ProviderConnection, TranscriptCallback, UpstreamLink

LOGGER = logging.getLogger(__name__)

# Asks Deepgram to flush final results and close the stream.
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


def build_listen_url(settings: Settings) -> str:
    params = {
        "encoding": settings.deepgram_encoding,
        "sample_rate": str(settings.deepgram_sample_rate),
        "channels": "1",
        "model": settings.deepgram_model,
        "language": settings.deepgram_language,
        "smart_format": str(settings.deepgram_smart_format).lower(),
        "interim_results": str(settings.deepgram_interim_results).lower(),
        "endpointing": str(settings.deepgram_endpointing_ms),
    }
    return f"{settings.deepgram_listen_url.rstrip('?')}?{urlencode(params)}"


def parse_transcript(message: bytes | str) -> tuple[str, bool] | None:
    """Extract ``(text, is_final)`` from a Deepgram results message.

    Returns None for messages that carry no recognition alternatives
    (Metadata, SpeechStarted, UtteranceEnd) and for binary frames.
    """

    if isinstance(message, bytes):
        return None
    try:
        payload: Any = json.loads(message)
    except json.JSONDecodeError as exc:
        raise MalformedMessageError(f"Invalid JSON from Deepgram: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessageError("Deepgram message is not a JSON object")

    channel = payload.get("channel")
    if not isinstance(channel, dict):
        return None
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return None
    first = alternatives[0]
    if not isinstance(first, dict):
        return None

    text = first.get("transcript")
    return (text if isinstance(text, str) else "", bool(payload.get("is_final", False)))


class DeepgramLinkFactory:
    """Creates one Deepgram-backed UpstreamLink per call track."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._url = build_listen_url(self._settings)

    def __call__(
        self, call_sid: str, speaker: Speaker, on_transcript: TranscriptCallback
    ) -> UpstreamLink:
        settings = self._settings
        return UpstreamLink.open(
            call_sid,
            speaker,
            connect=self._connector(),
            parse=parse_transcript,
            on_transcript=on_transcript,
            finish_message=CLOSE_STREAM_MESSAGE,
            max_pending_frames=settings.pending_audio_max_frames,
            overflow_policy=settings.pending_audio_overflow,
            close_timeout=settings.upstream_close_timeout_seconds,
        )

    def _connector(self) -> Connector | None:
        api_key = self._settings.deepgram_api_key
        if not api_key:
            return None

        headers = {"Authorization": f"Token {api_key}"}
        url = self._url

        async def connect() -> ProviderConnection:
            return await websockets.connect(url, additional_headers=headers, max_size=2**22)

        return connect
