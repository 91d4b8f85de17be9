"""
Pydantic models for Twilio Media Streams message schemas.

This module defines structured data models for the frames exchanged over the
bidirectional media-stream WebSocket: the control frames Twilio pushes
(connected, start, stop, mark), the inbound media frames carrying caller audio,
and the outbound media frames the relay builds for synthesized audio.
"""

import base64
import binascii
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from voice_relay.config.constants import AUDIO_SAMPLE_RATE, TWILIO_AUDIO_ENCODING


# Base Models
class BaseFrame(BaseModel):
    """Base model for all media-stream frames."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event: str = Field(..., description="Frame kind")
    sequenceNumber: Optional[str] = Field(
        None, description="Monotonic sequence number assigned by Twilio"
    )


class StreamFrame(BaseFrame):
    """Frame that belongs to an established stream."""

    streamSid: str = Field(..., description="Stream (session) identifier")

    @field_validator("streamSid")
    def validate_stream_sid(cls, v):
        """Validate that the stream identifier is not empty."""
        if not v.strip():
            raise ValueError("streamSid cannot be empty")
        return v


# Control Frames
class ConnectedFrame(BaseFrame):
    """First frame Twilio sends after the socket opens."""

    event: Literal["connected"]
    protocol: Optional[str] = None
    version: Optional[str] = None


class MediaFormat(BaseModel):
    """Audio format announced in the start frame."""

    encoding: str = TWILIO_AUDIO_ENCODING
    sampleRate: int = AUDIO_SAMPLE_RATE
    channels: int = 1

    def matches_telephony_leg(self) -> bool:
        """Return True when the announced format is the 8 kHz mono mu-law the adapters expect."""
        return (
            self.encoding == TWILIO_AUDIO_ENCODING
            and self.sampleRate == AUDIO_SAMPLE_RATE
            and self.channels == 1
        )


class StartMetadata(BaseModel):
    """Payload of the start frame."""

    model_config = ConfigDict(extra="ignore")

    streamSid: str
    accountSid: Optional[str] = None
    callSid: Optional[str] = None
    tracks: List[str] = Field(default_factory=lambda: ["inbound"])
    mediaFormat: MediaFormat = Field(default_factory=MediaFormat)
    customParameters: Dict[str, str] = Field(default_factory=dict)


class StartFrame(StreamFrame):
    """Stream start: carries the identifier every outbound frame must use."""

    event: Literal["start"]
    start: StartMetadata


class StopMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    accountSid: Optional[str] = None
    callSid: Optional[str] = None


class StopFrame(StreamFrame):
    """Stream stop: the call leg has ended."""

    event: Literal["stop"]
    stop: StopMetadata = Field(default_factory=StopMetadata)


class MarkPayload(BaseModel):
    name: str


class MarkFrame(StreamFrame):
    """Playback marker acknowledgement."""

    event: Literal["mark"]
    mark: MarkPayload


# Media Frames
class MediaPayload(BaseModel):
    """Audio carried by an inbound media frame."""

    model_config = ConfigDict(extra="ignore")

    payload: str = Field(..., description="Base64-encoded mu-law audio")
    track: Optional[str] = "inbound"
    chunk: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("payload")
    def validate_payload(cls, v):
        """Validate that the payload is non-empty base64."""
        if not v:
            raise ValueError("Audio payload cannot be empty")
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 encoded audio data")
        return v

    def audio_bytes(self) -> bytes:
        """Decode the payload to raw mu-law bytes."""
        return base64.b64decode(self.payload)


class OutboundMediaPayload(BaseModel):
    payload: str = Field(..., description="Base64-encoded mu-law audio")


class OutboundMediaFrame(BaseModel):
    """Audio the relay sends back to Twilio for playback."""

    event: Literal["media"] = "media"
    streamSid: str
    media: OutboundMediaPayload

    @classmethod
    def from_audio(cls, stream_sid: str, audio: bytes) -> "OutboundMediaFrame":
        """Build an outbound frame from raw audio bytes."""
        return cls(
            streamSid=stream_sid,
            media=OutboundMediaPayload(payload=base64.b64encode(audio).decode("utf-8")),
        )
