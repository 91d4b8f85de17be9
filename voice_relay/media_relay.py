"""
WebSocket media relay for Twilio Media Streams.

This module implements the server side of the bidirectional media stream Twilio
opens for each answered call. It provides the infrastructure to:
- Accept the stream socket and read frames until the call ends
- Route each inbound frame to the handler for its event kind
- Own the process-wide registry of live call sessions
- Frame synthesized audio as outbound media frames for the stream

The MediaRelay class is created once per process; a MediaStreamConnection is
created for every socket and holds that socket's stream identifier and session.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket

from voice_relay.bot.responder import ResponseGenerator
from voice_relay.bot.session import CallSession
from voice_relay.bot.synthesizer import DeepgramSynthesizer
from voice_relay.bot.transcriber import DeepgramTranscriber
from voice_relay.config.constants import (
    EVENT_CONNECTED,
    EVENT_MARK,
    EVENT_MEDIA,
    EVENT_START,
    EVENT_STOP,
    LOGGER_NAME,
)
from voice_relay.config.settings import RelaySettings
from voice_relay.handlers.stream_handlers import (
    chunk_audio_data,
    handle_connected,
    handle_mark,
    handle_media,
    handle_start,
    handle_stop,
)
from voice_relay.models.conversation import ConversationHistory
from voice_relay.models.message_schemas import OutboundMediaFrame
from voice_relay.models.session_registry import SessionRegistry

logger = logging.getLogger(LOGGER_NAME)

# Type hint for handler functions
HandlerFunc = Callable[
    [Dict[str, Any], "MediaStreamConnection", "MediaRelay"],
    Awaitable[Optional[bool]],
]


class MediaStreamConnection:
    """
    State of one media-stream socket.

    Outbound audio can only be sent once a start frame has supplied the stream
    identifier, and never after the socket has been closed.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.stream_sid: Optional[str] = None
        self.session: Optional[CallSession] = None
        self.closed = False

    async def send_audio(self, audio: bytes) -> bool:
        """
        Send synthesized audio to the caller as one or more media frames.

        Args:
            audio: Raw mu-law audio

        Returns:
            bool: True if every frame was sent, False if sending was refused or failed
        """
        if self.closed:
            logger.debug("Not sending audio: connection closed")
            return False
        if not self.stream_sid:
            logger.warning("Not sending audio: no start frame received yet")
            return False

        for chunk in chunk_audio_data(audio):
            if self.closed:
                return False
            frame = OutboundMediaFrame.from_audio(self.stream_sid, chunk)
            try:
                await self.websocket.send_text(frame.model_dump_json())
            except Exception as e:
                logger.warning(f"Failed to send audio for stream {self.stream_sid}: {e}")
                self.closed = True
                return False
        return True


class MediaRelay:
    """Routes Twilio Media Streams frames to call sessions.

    Each frame is routed to a handler based on its "event" field. Frames that
    cannot be parsed are dropped with a warning; they never end the call.
    """

    def __init__(
        self,
        settings: RelaySettings,
        session_factory: Optional[Callable[[MediaStreamConnection], CallSession]] = None,
    ):
        self.settings = settings
        self.registry = SessionRegistry()
        self.session_factory = session_factory or self.create_session

        self.handlers: Dict[str, HandlerFunc] = {
            EVENT_CONNECTED: handle_connected,
            EVENT_START: handle_start,
            EVENT_MEDIA: handle_media,
            EVENT_STOP: handle_stop,
            EVENT_MARK: handle_mark,
        }

    def create_session(self, connection: MediaStreamConnection) -> CallSession:
        """Build a call session wired to real providers and to this connection's send path."""
        settings = self.settings

        async def on_fatal(session: CallSession, reason: str) -> None:
            await self.teardown(connection, reason=reason)
            try:
                await connection.websocket.close()
            except Exception as e:
                logger.debug(f"Error closing socket after fatal session error: {e}")

        return CallSession(
            history=ConversationHistory(settings.system_prompt),
            transcriber=DeepgramTranscriber(settings.deepgram_api_key, model=settings.stt_model),
            responder=ResponseGenerator(settings.openai_api_key, model=settings.openai_model),
            synthesizer=DeepgramSynthesizer(settings.deepgram_api_key, model=settings.tts_model),
            send_audio=connection.send_audio,
            synthesis_mode=settings.synthesis_mode,
            max_reply_seconds=settings.max_reply_seconds,
            fatal_handler=on_fatal,
        )

    @staticmethod
    def parse_frame(data: str) -> Optional[Dict[str, Any]]:
        """Decode a text frame; returns None for anything that is not a JSON object with an event."""
        try:
            message = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return None
        event = message.get("event") if isinstance(message, dict) else None
        if not isinstance(event, str) or not event:
            logger.warning("Dropping frame without an event kind")
            return None
        return message

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Handle a media-stream socket throughout its lifecycle.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object

        The socket is read until Twilio sends a stop frame, the peer disconnects,
        or no frame arrives for the configured idle time. The session is torn
        down in every case.
        """
        await websocket.accept()
        logger.info("A new Twilio audio stream has connected")
        connection = MediaStreamConnection(websocket)

        try:
            while not connection.closed:
                try:
                    received = await asyncio.wait_for(
                        websocket.receive(), timeout=self.settings.max_idle_seconds
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"No frames for {self.settings.max_idle_seconds}s on stream "
                        f"{connection.stream_sid}, closing"
                    )
                    break
                if received.get("type") == "websocket.disconnect":
                    logger.info("Twilio stream connection closed")
                    break
                data = received.get("text")
                if data is None:
                    logger.warning("Dropping non-text frame on media stream")
                    continue

                message = self.parse_frame(data)
                if message is None:
                    continue

                event = message["event"]
                handler = self.handlers.get(event)
                if handler is None:
                    logger.warning(f"Unhandled frame event received: {event}")
                    continue

                try:
                    keep_reading = await handler(message, connection, self)
                except Exception as e:
                    logger.error(f"Error handling {event} frame: {e}", exc_info=True)
                    continue
                if keep_reading is False:
                    break

        except Exception as e:
            logger.error(f"Error in media stream connection: {e}", exc_info=True)
        finally:
            await self.teardown(connection, reason="socket closed")
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Socket already closed: {e}")
            logger.info("Media stream connection closed")

    async def teardown(self, connection: MediaStreamConnection, reason: str = "closed") -> None:
        """
        Stop all sends on a connection and release its session. Safe to call more than once.
        """
        connection.closed = True
        session = connection.session
        if session is None:
            return
        connection.session = None
        if session.stream_sid:
            self.registry.remove_session(session.stream_sid)
        await session.close(reason)

    async def end_call(self, call_sid: str, reason: str = "call ended") -> bool:
        """
        Close the session serving a call after an explicit call-end notification.

        Returns:
            bool: True if a live session was found and closed
        """
        session = self.registry.find_by_call_sid(call_sid)
        if session is None:
            return False
        self.registry.remove_session(session.stream_sid)
        return await session.close(reason)
