"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for protocol names, audio formats and provider
defaults so the relay, the handlers and the provider adapters agree on them.
"""

# Logger name used throughout the application
LOGGER_NAME = "voice_relay"

# Telephony leg audio format. Twilio Media Streams always carries 8 kHz mono mu-law;
# the transcriber and synthesizer must be configured with exactly these values.
TWILIO_AUDIO_ENCODING = "audio/x-mulaw"
AUDIO_ENCODING = "mulaw"
AUDIO_SAMPLE_RATE = 8000
AUDIO_CHANNELS = 1

# Largest audio payload carried by one outbound media frame (400 ms of mu-law)
OUTBOUND_FRAME_BYTES = 3200

# Default provider models
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_STT_MODEL = "nova-2"
DEFAULT_TTS_MODEL = "aura-asteria-en"
DEFAULT_LANGUAGE = "en-US"

# Provider endpoints
DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_SPEAK_URL = "wss://api.deepgram.com/v1/speak"

# Agent behaviour
DEFAULT_SYSTEM_PROMPT = (
    "You are a funny, slightly sarcastic but friendly voice agent. You love telling "
    "jokes. Keep your responses concise and conversational."
)
DEFAULT_GREETING = (
    "Hello! You are connected to the funny AI agent. "
    "Please start speaking after this message."
)
FALLBACK_UTTERANCE = "Sorry, I didn't quite get that. Could you say it again?"

# Synthesis modes
SYNTHESIS_MODE_INCREMENTAL = "incremental"
SYNTHESIS_MODE_WHOLE = "whole"

# Session timeouts (seconds)
DEFAULT_MAX_IDLE_SECONDS = 60.0
DEFAULT_MAX_REPLY_SECONDS = 30.0

# Twilio Media Streams event names
EVENT_CONNECTED = "connected"
EVENT_START = "start"
EVENT_MEDIA = "media"
EVENT_STOP = "stop"
EVENT_MARK = "mark"

# Twilio call statuses that end a call
TERMINAL_CALL_STATUSES = ("completed", "failed", "busy", "no-answer", "canceled")
