from __future__ import annotations

from dataclasses import dataclass

from config.settings import get_settings
from relay.errors import TwilioNotConfiguredError


@dataclass(frozen=True)
class TwilioVoiceConfig:
    account_sid: str
    api_key_sid: str
    api_key_secret: str
    twiml_app_sid: str
    identity: str
    ttl_seconds: int


def get_twilio_voice_config() -> TwilioVoiceConfig:
    settings = get_settings()
    if not (
        settings.twilio_account_sid
        and settings.twilio_api_key_sid
        and settings.twilio_api_key_secret
        and settings.twilio_twiml_app_sid
    ):
        raise TwilioNotConfiguredError()

    return TwilioVoiceConfig(
        account_sid=settings.twilio_account_sid,
        api_key_sid=settings.twilio_api_key_sid,
        api_key_secret=settings.twilio_api_key_secret,
        twiml_app_sid=settings.twilio_twiml_app_sid,
        identity=settings.twilio_token_identity,
        ttl_seconds=settings.twilio_token_ttl_seconds,
    )


def get_twilio_caller_id() -> str:
    caller_id = get_settings().twilio_caller_id
    if not caller_id:
        raise TwilioNotConfiguredError("Missing TWILIO_CALLER_ID env variable")
    return caller_id


def build_access_token(cfg: TwilioVoiceConfig) -> str:
    """Voice SDK token allowing outgoing calls through the TwiML app only."""

    from twilio.jwt.access_token import AccessToken
    from twilio.jwt.access_token.grants import VoiceGrant

    token = AccessToken(
        cfg.account_sid,
        cfg.api_key_sid,
        cfg.api_key_secret,
        identity=cfg.identity,
        ttl=cfg.ttl_seconds,
    )
    token.add_grant(VoiceGrant(outgoing_application_sid=cfg.twiml_app_sid, incoming_allow=False))
    return token.to_jwt()
