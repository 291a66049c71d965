from __future__ import annotations

import base64
import time

from fastapi.testclient import TestClient


def _start(call_sid: str) -> dict:
    return {
        "event": "start",
        "start": {"callSid": call_sid, "streamSid": "MZ1", "tracks": ["inbound", "outbound"]},
    }


def _media(track: str, payload: bytes) -> dict:
    return {
        "event": "media",
        "media": {"track": track, "payload": base64.b64encode(payload).decode("ascii")},
    }


def test_twiml_streams_both_tracks_and_dials(app, settings_env):
    settings_env(twilio_caller_id="+15005550006", public_base_url=None)

    with TestClient(app) as client:
        resp = client.post(
            "/api/twilio/twiml",
            data={"To": "+5511999990000"},
            headers={"host": "relay.example.com"},
        )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert '<Stream url="wss://relay.example.com/stream" track="both_tracks" />' in resp.text
    assert '<Dial callerId="+15005550006"><Number>+5511999990000</Number></Dial>' in resp.text


def test_twiml_prefers_public_base_url(app, settings_env):
    settings_env(twilio_caller_id="+15005550006", public_base_url="https://abc.ngrok-free.app/")

    with TestClient(app) as client:
        resp = client.post("/api/twilio/twiml", data={"To": "+5511999990000"})

    assert 'url="wss://abc.ngrok-free.app/stream"' in resp.text


def test_twiml_requires_to_parameter(app, settings_env):
    settings_env(twilio_caller_id="+15005550006")

    with TestClient(app) as client:
        resp = client.post("/api/twilio/twiml", data={})

    assert resp.status_code == 400
    assert resp.text == "Missing 'To' parameter"


def test_twiml_requires_caller_id(app, settings_env):
    settings_env(twilio_caller_id=None)

    with TestClient(app) as client:
        resp = client.post("/api/twilio/twiml", data={"To": "+5511999990000"})

    assert resp.status_code == 500
    assert resp.text == "Missing TWILIO_CALLER_ID env variable"


def test_token_reports_missing_configuration(app, settings_env):
    settings_env(twilio_account_sid=None, twilio_api_key_sid=None)

    with TestClient(app) as client:
        resp = client.get("/api/twilio/token")

    assert resp.status_code == 500
    assert resp.json() == {"error": "Missing Twilio environment variables"}


def test_token_returns_voice_jwt(app, settings_env):
    settings_env(
        twilio_account_sid="AC" + "0" * 32,
        twilio_api_key_sid="SK" + "0" * 32,
        twilio_api_key_secret="secret",
        twilio_twiml_app_sid="AP" + "0" * 32,
    )

    with TestClient(app) as client:
        resp = client.get("/api/twilio/token")

    assert resp.status_code == 200
    assert resp.json()["token"].count(".") == 2


def test_health_reports_sessions(app):
    with TestClient(app) as client:
        assert client.get("/api/health").json()["active_sessions"] == 0
        with client.websocket_connect("/transcriptions?callSid=CA-health"):
            payload = client.get("/api/health").json()

    assert payload["status"] == "ok"
    assert payload["active_sessions"] == 1
    assert payload["transcription_configured"] is True


def test_observer_connected_before_start_receives_transcripts(app, link_factory):
    with TestClient(app) as client:
        with client.websocket_connect("/transcriptions?callSid=CA123") as observer:
            with client.websocket_connect("/stream") as stream:
                stream.send_json({"event": "connected", "protocol": "Call"})
                stream.send_json(_start("CA123"))
                stream.send_json(_media("outbound", b"hello there"))

                assert observer.receive_json() == {
                    "speaker": "Caller",
                    "text": "hello there",
                    "is_final": True,
                }

                stream.send_json(_media("inbound", b"oi tudo bem"))
                assert observer.receive_json() == {
                    "speaker": "Recipient",
                    "text": "oi tudo bem",
                    "is_final": True,
                }
                stream.send_json({"event": "stop"})

    caller_link, recipient_link = link_factory.links
    assert caller_link.closed and recipient_link.closed


def test_every_observer_receives_each_event(app, link_factory):
    with TestClient(app) as client:
        with client.websocket_connect("/transcriptions?callSid=CA777") as first:
            with client.websocket_connect("/transcriptions?callSid=CA777") as second:
                with client.websocket_connect("/stream") as stream:
                    stream.send_json(_start("CA777"))
                    stream.send_json(_media("outbound", b"bom dia"))

                    expected = {"speaker": "Caller", "text": "bom dia", "is_final": True}
                    assert first.receive_json() == expected
                    assert second.receive_json() == expected
                    stream.send_json({"event": "stop"})


def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def test_binary_frame_on_media_stream_is_ignored(app, link_factory):
    with TestClient(app) as client:
        with client.websocket_connect("/transcriptions?callSid=CA-bin") as observer:
            with client.websocket_connect("/stream") as stream:
                stream.send_json(_start("CA-bin"))
                stream.send_bytes(b"\x00\x01")
                stream.send_json(_media("outbound", b"still relaying"))

                assert observer.receive_json()["text"] == "still relaying"

                stream.send_json({"event": "stop"})
                session = app.state.registry.get("CA-bin")
                _wait_for(lambda: session.ended)

                assert all(link.closed for link in session.links)


def test_dropped_media_stream_after_binary_frame_tears_down(app, link_factory):
    with TestClient(app) as client:
        with client.websocket_connect("/transcriptions?callSid=CA-drop"):
            with client.websocket_connect("/stream") as stream:
                stream.send_json(_start("CA-drop"))
                stream.send_bytes(b"\xff")
                _wait_for(lambda: app.state.registry.get("CA-drop").links)

            session = app.state.registry.get("CA-drop")
            _wait_for(lambda: session.ended)

            assert all(link.closed for link in session.links)
