"""Per-call bridging between a Twilio media stream and a realtime speech service."""
