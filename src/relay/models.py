"""Data exchanged between the relay components."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict

# Raw encoded audio as received from the telephony feed; ordering is arrival order.
AudioFrame = bytes


class Speaker(str, Enum):
    """Which of the two call tracks a frame or transcript belongs to."""

    CALLER = "Caller"
    RECIPIENT = "Recipient"


class TranscriptEvent(BaseModel):
    """One interim or final hypothesis for a speaker.

    Interim events may be superseded by later events for the same speaker.
    Observers reconcile by replacing the trailing interim entry; the relay
    forwards events in provider order without merging them.
    """

    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    is_final: bool = False
