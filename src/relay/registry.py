from __future__ import annotations

import asyncio
import logging

from relay.session import CallSession

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory mapping from call id to CallSession.

    Note: This is a single-process registry. One instance is created per
    application lifespan and shared by the media and observer endpoints.
    """

    def __init__(self, *, grace_seconds: float = 5.0) -> None:
        self._grace_seconds = grace_seconds
        self._lock = asyncio.Lock()
        self._sessions: dict[str, CallSession] = {}
        self._removals: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._sessions

    def get(self, call_sid: str) -> CallSession | None:
        return self._sessions.get(call_sid)

    async def get_or_create(self, call_sid: str) -> CallSession:
        async with self._lock:
            session = self._sessions.get(call_sid)
            if session is None:
                session = self._new_session(call_sid)
            return session

    async def start_call(self, call_sid: str) -> CallSession:
        """Return the session a new media stream should attach its links to.

        A session that already ended (same call id reused inside the grace
        window) is replaced by a fresh one that keeps its observers, and its
        pending removal is cancelled.
        """

        async with self._lock:
            session = self._sessions.get(call_sid)
            if session is None:
                return self._new_session(call_sid)
            if not session.ended:
                return session

            self._cancel_removal(call_sid)
            replacement = self._new_session(call_sid)
            replacement.adopt_observers(session.observers)
            LOGGER.info("Call %s restarted within grace period; replacing session", call_sid)
            return replacement

    def remove(self, call_sid: str, session: CallSession | None = None) -> None:
        """Drop the slot for ``call_sid``; with ``session`` given, only if it still holds it."""

        current = self._sessions.get(call_sid)
        if current is None or (session is not None and current is not session):
            return
        del self._sessions[call_sid]
        self._cancel_removal(call_sid)
        LOGGER.info("Session %s removed", call_sid)

    def schedule_removal(self, session: CallSession) -> None:
        call_sid = session.call_sid
        self._cancel_removal(call_sid)
        loop = asyncio.get_running_loop()
        self._removals[call_sid] = loop.call_later(
            self._grace_seconds, self._expire, call_sid, session
        )

    async def close(self) -> None:
        """Tear down every session and wait for their links to finish."""

        for handle in self._removals.values():
            handle.cancel()
        self._removals.clear()

        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.teardown()
        # teardown() may have scheduled new removals.
        for handle in self._removals.values():
            handle.cancel()
        self._removals.clear()

        await asyncio.gather(
            *(link.wait_closed() for session in sessions for link in session.links),
            return_exceptions=True,
        )

    def _new_session(self, call_sid: str) -> CallSession:
        session = CallSession(call_sid, on_teardown=self.schedule_removal)
        self._sessions[call_sid] = session
        LOGGER.info("Session %s created", call_sid)
        return session

    def _expire(self, call_sid: str, session: CallSession) -> None:
        self._removals.pop(call_sid, None)
        self.remove(call_sid, session)

    def _cancel_removal(self, call_sid: str) -> None:
        handle = self._removals.pop(call_sid, None)
        if handle is not None:
            handle.cancel()
