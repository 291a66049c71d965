"""Per-call relay between telephony audio, transcription upstreams and observers.

Audio flows Twilio -> CallSession -> UpstreamLink -> provider; transcripts flow
provider -> UpstreamLink -> CallSession -> every connected observer.
"""
