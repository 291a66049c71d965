"""Observer side of the relay: browser websockets subscribed to a call's transcripts."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import WebSocket, WebSocketDisconnect, status

from relay.models import TranscriptEvent
from relay.registry import SessionRegistry
from relay.session import CallSession, ObserverSink

LOGGER = logging.getLogger(__name__)


class WebSocketObserver:
    """Queues transcript events and writes them to one observer websocket.

    deliver() never awaits, so a slow observer cannot hold up the broadcast to
    the others; when its queue is full, events are skipped for that observer.
    """

    def __init__(self, websocket: WebSocket, *, max_queue: int = 256) -> None:
        self._websocket = websocket
        self._queue: asyncio.Queue[TranscriptEvent] = asyncio.Queue(maxsize=max_queue)
        self._open = True
        self.skipped = 0

    @property
    def writable(self) -> bool:
        return self._open

    def deliver(self, event: TranscriptEvent) -> None:
        if not self._open:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.skipped += 1
            LOGGER.warning("Observer queue full; skipped %d transcript event(s)", self.skipped)

    async def serve(self) -> None:
        """Send queued events until the client disconnects."""

        sender = asyncio.create_task(self._send_loop())
        try:
            while True:
                message = await self._websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
        finally:
            self._open = False
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender

    async def _send_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._websocket.send_text(event.model_dump_json())
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                LOGGER.info("Observer no longer writable: %s", exc)
                self._open = False
                return


class ObserverIngress:
    """Registers observer websockets with the session for their call id."""

    def __init__(self, registry: SessionRegistry, *, max_queue: int = 256) -> None:
        self._registry = registry
        self._max_queue = max_queue

    async def handle(self, websocket: WebSocket) -> None:
        call_sid = websocket.query_params.get("callSid")
        if not call_sid:
            await websocket.accept()
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing callSid")
            return

        observer = WebSocketObserver(websocket, max_queue=self._max_queue)
        session = await self.attach(call_sid, observer)
        try:
            await websocket.accept()
            await observer.serve()
        finally:
            self.detach(call_sid, observer, session)

    async def attach(self, call_sid: str, observer: ObserverSink) -> CallSession:
        session = await self._registry.get_or_create(call_sid)
        session.add_observer(observer)
        return session

    def detach(
        self, call_sid: str, observer: ObserverSink, session: CallSession | None = None
    ) -> None:
        current = self._registry.get(call_sid)
        if current is not None:
            current.remove_observer(observer)
        if session is not None and session is not current:
            session.remove_observer(observer)

        # A call that never started has nothing to wait for; ended calls leave
        # through the grace timer.
        if current is not None and current.idle:
            self._registry.remove(call_sid, current)
