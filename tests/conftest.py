from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Must be set before any module reads the cached Settings.
os.environ.setdefault("DEEPGRAM_API_KEY", "test-deepgram-key")
os.environ.setdefault("SESSION_GRACE_SECONDS", "5")
os.environ.setdefault("LOG_LEVEL", "DEBUG")


def deepgram_result(text: str, *, is_final: bool = False) -> str:
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "channel": {"alternatives": [{"transcript": text, "confidence": 0.98}]},
        }
    )


class FakeProviderConnection:
    """In-memory stand-in for a Deepgram websocket."""

    def __init__(self, *, echo: bool = False) -> None:
        self.sent: list[bytes | str] = []
        self.closed = False
        self._echo = echo
        self._incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()

    async def send(self, message: bytes | str) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self.sent.append(message)
        if self._echo and isinstance(message, bytes):
            # Pretend the provider recognized the frame's bytes as speech.
            self.emit(deepgram_result(message.decode(), is_final=True))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def emit(self, message: str | bytes) -> None:
        self._incoming.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str | bytes:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    @property
    def audio(self) -> list[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]


class FakeConnector:
    """Connector whose connection only opens once ``gate`` is set."""

    def __init__(self, *, open_immediately: bool = False, fail: bool = False, echo: bool = False) -> None:
        self.connection = FakeProviderConnection(echo=echo)
        self.attempts = 0
        self._fail = fail
        self.gate = asyncio.Event()
        if open_immediately:
            self.gate.set()

    async def __call__(self) -> FakeProviderConnection:
        self.attempts += 1
        await self.gate.wait()
        if self._fail:
            raise ConnectionRefusedError("provider unavailable")
        return self.connection


class FakeLinkFactory:
    """LinkFactory that builds real UpstreamLinks on fake connections."""

    def __init__(self, *, open_immediately: bool = True, echo: bool = False) -> None:
        self._open_immediately = open_immediately
        self._echo = echo
        self.connectors: dict[tuple[str, str], FakeConnector] = {}
        self.links = []

    def __call__(self, call_sid, speaker, on_transcript):
        from integrations.deepgram import parse_transcript
        from relay.upstream import UpstreamLink

        connector = FakeConnector(open_immediately=self._open_immediately, echo=self._echo)
        self.connectors[(call_sid, speaker.value)] = connector
        link = UpstreamLink.open(
            call_sid,
            speaker,
            connect=connector,
            parse=parse_transcript,
            on_transcript=on_transcript,
        )
        self.links.append(link)
        return link


class RecordingSink:
    def __init__(self, *, writable: bool = True, fail: bool = False) -> None:
        self.events = []
        self._writable = writable
        self._fail = fail

    @property
    def writable(self) -> bool:
        return self._writable

    def deliver(self, event) -> None:
        if self._fail:
            raise RuntimeError("sink exploded")
        self.events.append(event)


async def _eventually(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture()
def eventually():
    return _eventually


@pytest.fixture()
def fake_connector_cls():
    return FakeConnector


@pytest.fixture()
def link_factory_cls():
    return FakeLinkFactory


@pytest.fixture()
def sink_cls():
    return RecordingSink


@pytest.fixture()
def result_message():
    return deepgram_result


@pytest.fixture(scope="session")
def app():
    import importlib

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def settings_env(monkeypatch):
    from config.settings import get_settings

    def apply(**values):
        for key, value in values.items():
            if value is None:
                monkeypatch.delenv(key.upper(), raising=False)
            else:
                monkeypatch.setenv(key.upper(), str(value))
        get_settings.cache_clear()

    yield apply
    get_settings.cache_clear()


@pytest.fixture()
def link_factory(app):
    import api.dependencies as deps

    factory = FakeLinkFactory(echo=True)
    app.dependency_overrides[deps.get_link_factory] = lambda: factory
    yield factory
    app.dependency_overrides.clear()
