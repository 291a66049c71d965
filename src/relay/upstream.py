from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Literal, Protocol

from relay.errors import MalformedMessageError
from relay.models import AudioFrame, Speaker, TranscriptEvent

LOGGER = logging.getLogger(__name__)


class ProviderConnection(Protocol):
    """Duplex connection to the transcription provider (a websockets client connection)."""

    async def send(self, message: bytes | str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[bytes | str]: ...


Connector = Callable[[], Awaitable[ProviderConnection]]
TranscriptParser = Callable[[bytes | str], tuple[str, bool] | None]
TranscriptCallback = Callable[[TranscriptEvent], None]
OverflowPolicy = Literal["drop_oldest", "abort"]

# Outbox sentinel: stop writing and close the connection.
_CLOSE = None


class UpstreamLink:
    """One provider connection for one track of one call.

    Audio submitted before the connection is established is held in ``pending``
    and flushed, in arrival order, the moment the connection opens. After that
    every frame goes straight to a FIFO writer task, so submit() never waits on
    the network.
    """

    def __init__(
        self,
        call_sid: str,
        speaker: Speaker,
        *,
        connect: Connector | None,
        parse: TranscriptParser,
        on_transcript: TranscriptCallback,
        finish_message: str | None = None,
        max_pending_frames: int = 0,
        overflow_policy: OverflowPolicy = "drop_oldest",
        close_timeout: float = 2.0,
    ) -> None:
        self.call_sid = call_sid
        self.speaker = speaker
        self.ready = False
        self.pending: deque[AudioFrame] = deque()
        self.dropped_frames = 0

        self._connect = connect
        self._parse = parse
        self._on_transcript = on_transcript
        self._finish_message = finish_message
        self._max_pending = max_pending_frames
        self._overflow_policy = overflow_policy
        self._close_timeout = close_timeout

        self._outbox: asyncio.Queue[AudioFrame | None] = asyncio.Queue()
        self._connection: ProviderConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def open(cls, call_sid: str, speaker: Speaker, **kwargs) -> UpstreamLink:
        """Create a link and start connecting in the background."""

        link = cls(call_sid, speaker, **kwargs)
        link.start()
        return link

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is not None or self._closed:
            return
        if self._connect is None:
            LOGGER.error(
                "Transcription disabled for call=%s speaker=%s: no provider credential configured",
                self.call_sid,
                self.speaker.value,
            )
            self._closed = True
            return
        self._task = asyncio.create_task(
            self._run(), name=f"upstream:{self.call_sid}:{self.speaker.value}"
        )

    def submit(self, frame: AudioFrame) -> None:
        if self._closed:
            self.dropped_frames += 1
            LOGGER.debug(
                "Dropping frame for closed link call=%s speaker=%s", self.call_sid, self.speaker.value
            )
            return

        if self.ready:
            self._outbox.put_nowait(frame)
            return

        if self._max_pending and len(self.pending) >= self._max_pending:
            if self._overflow_policy == "abort":
                LOGGER.warning(
                    "Pending audio exceeded %d frames for call=%s speaker=%s; closing link",
                    self._max_pending,
                    self.call_sid,
                    self.speaker.value,
                )
                self.close()
                return
            self.pending.popleft()
            self.dropped_frames += 1
            if self.dropped_frames == 1:
                LOGGER.warning(
                    "Pending audio full (%d frames) for call=%s speaker=%s; dropping oldest",
                    self._max_pending,
                    self.call_sid,
                    self.speaker.value,
                )
        self.pending.append(frame)

    def close(self) -> None:
        """Stop the link. Safe to call any number of times."""

        if self._closed:
            return
        self._closed = True
        self.pending.clear()

        if self._connection is None:
            # Still connecting; there is nothing to flush.
            if self._task is not None and not self._task.done():
                self._task.cancel()
            return
        self._outbox.put_nowait(_CLOSE)

    async def wait_closed(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _mark_ready(self) -> None:
        if self.ready:
            return
        flushed = len(self.pending)
        while self.pending:
            self._outbox.put_nowait(self.pending.popleft())
        self.ready = True
        LOGGER.info(
            "Upstream open for call=%s speaker=%s (flushed %d buffered frames)",
            self.call_sid,
            self.speaker.value,
            flushed,
        )

    async def _run(self) -> None:
        try:
            connection = await self._connect()
        except Exception as exc:
            LOGGER.error(
                "Upstream connect failed for call=%s speaker=%s: %s",
                self.call_sid,
                self.speaker.value,
                exc,
            )
            self._closed = True
            self.pending.clear()
            return

        if self._closed:
            await connection.close()
            return

        self._connection = connection
        self._mark_ready()
        reader = asyncio.create_task(self._read_loop(connection))
        try:
            await self._write_loop(connection)
            if self._finish_message is not None and not reader.done():
                try:
                    await connection.send(self._finish_message)
                    await asyncio.wait_for(asyncio.shield(reader), timeout=self._close_timeout)
                except asyncio.TimeoutError:
                    LOGGER.debug(
                        "No close from provider for call=%s speaker=%s within %.1fs",
                        self.call_sid,
                        self.speaker.value,
                        self._close_timeout,
                    )
                except Exception:
                    LOGGER.debug("Finish message not delivered", exc_info=True)
        finally:
            await connection.close()
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _write_loop(self, connection: ProviderConnection) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is _CLOSE:
                return
            try:
                await connection.send(frame)
            except Exception as exc:
                LOGGER.warning(
                    "Upstream send failed for call=%s speaker=%s: %s",
                    self.call_sid,
                    self.speaker.value,
                    exc,
                )
                self._closed = True
                return

    async def _read_loop(self, connection: ProviderConnection) -> None:
        try:
            async for message in connection:
                self._handle_message(message)
        except Exception as exc:
            LOGGER.warning(
                "Upstream error for call=%s speaker=%s: %s", self.call_sid, self.speaker.value, exc
            )
        finally:
            LOGGER.info("Upstream closed for call=%s speaker=%s", self.call_sid, self.speaker.value)
            if not self._closed:
                self._closed = True
                self._outbox.put_nowait(_CLOSE)

    def _handle_message(self, message: bytes | str) -> None:
        try:
            parsed = self._parse(message)
        except MalformedMessageError as exc:
            LOGGER.debug("Ignoring provider payload for call=%s: %s", self.call_sid, exc)
            return
        if parsed is None:
            return

        text, is_final = parsed
        if not text.strip():
            return
        self._on_transcript(TranscriptEvent(speaker=self.speaker, text=text, is_final=is_final))
