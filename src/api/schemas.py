"""API-facing Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    token: str = Field(description="Twilio Voice SDK access token (JWT).")


class HealthResponse(BaseModel):
    status: str = "ok"
    active_sessions: int
    transcription_configured: bool
