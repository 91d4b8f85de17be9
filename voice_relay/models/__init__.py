"""
Models module for data structures and state management in the voice relay.

Key components:
- message_schemas: Pydantic models for Twilio Media Streams frames, inbound and outbound.
- conversation: immutable conversation turns and the alternating per-call history.
- session_registry: the process-wide registry of live call sessions.
"""

from voice_relay.models.conversation import (
    ConversationHistory,
    ConversationTurn,
    Role,
)
from voice_relay.models.message_schemas import (
    ConnectedFrame,
    MarkFrame,
    MediaPayload,
    OutboundMediaFrame,
    StartFrame,
    StopFrame,
)
from voice_relay.models.session_registry import SessionRegistry
