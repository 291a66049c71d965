from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Protocol

from relay.models import AudioFrame, Speaker, TranscriptEvent
from relay.upstream import UpstreamLink

LOGGER = logging.getLogger(__name__)


class ObserverSink(Protocol):
    """Anything that can receive transcript events for a call."""

    @property
    def writable(self) -> bool: ...

    def deliver(self, event: TranscriptEvent) -> None: ...


class CallSession:
    """State for one call: up to one upstream link per speaker and its observers."""

    def __init__(
        self,
        call_sid: str,
        *,
        on_teardown: Callable[[CallSession], None] | None = None,
    ) -> None:
        self.call_sid = call_sid
        self.ended = False
        self._links: dict[Speaker, UpstreamLink] = {}
        self._observers: set[ObserverSink] = set()
        self._on_teardown = on_teardown

    @property
    def outbound_link(self) -> UpstreamLink | None:
        return self._links.get(Speaker.CALLER)

    @property
    def inbound_link(self) -> UpstreamLink | None:
        return self._links.get(Speaker.RECIPIENT)

    @property
    def links(self) -> list[UpstreamLink]:
        return list(self._links.values())

    @property
    def observers(self) -> frozenset[ObserverSink]:
        return frozenset(self._observers)

    @property
    def idle(self) -> bool:
        """True for a session nobody uses: no links, no observers, not yet ended."""
        return not self._links and not self._observers and not self.ended

    def attach_links(self, outbound: UpstreamLink, inbound: UpstreamLink) -> None:
        if outbound.speaker is not Speaker.CALLER or inbound.speaker is not Speaker.RECIPIENT:
            raise ValueError("attach_links expects (caller link, recipient link)")

        if self._links:
            LOGGER.warning("Replacing upstream links for call=%s", self.call_sid)
            for link in self._links.values():
                link.close()
        self._links = {Speaker.CALLER: outbound, Speaker.RECIPIENT: inbound}

    def route_audio(self, speaker: Speaker, frame: AudioFrame) -> None:
        link = self._links.get(speaker)
        if link is None:
            LOGGER.debug("No %s link yet for call=%s; dropping frame", speaker.value, self.call_sid)
            return
        link.submit(frame)

    def add_observer(self, sink: ObserverSink) -> None:
        self._observers.add(sink)
        LOGGER.info("Observer connected for call=%s (%d listener(s))", self.call_sid, len(self._observers))

    def adopt_observers(self, sinks: Iterable[ObserverSink]) -> None:
        self._observers.update(sinks)

    def remove_observer(self, sink: ObserverSink) -> None:
        if sink in self._observers:
            self._observers.discard(sink)
            LOGGER.info("Observer disconnected from call=%s", self.call_sid)

    def broadcast(self, event: TranscriptEvent) -> None:
        for sink in tuple(self._observers):
            if not sink.writable:
                continue
            try:
                sink.deliver(event)
            except Exception:
                LOGGER.exception("Observer delivery failed for call=%s", self.call_sid)

    def teardown(self) -> None:
        """Close both links and hand the session to the registry for delayed removal.

        Observers are left connected; they close on their own when the client
        goes away, and may still receive finals flushed while links close.
        """

        if self.ended:
            return
        self.ended = True
        for link in self._links.values():
            link.close()
        LOGGER.info("Call %s ended; links closing", self.call_sid)
        if self._on_teardown is not None:
            self._on_teardown(self)
