"""
Handles the Twilio Media Streams frames received on the media-stream socket.

Each handler receives the decoded JSON frame, the per-socket connection and the
media relay that owns the session registry. Handlers never raise for bad input:
frames that fail validation are logged and dropped so one malformed frame cannot
end the call.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List

from pydantic import ValidationError

from voice_relay.config.constants import LOGGER_NAME, OUTBOUND_FRAME_BYTES
from voice_relay.models.message_schemas import (
    ConnectedFrame,
    MarkFrame,
    MediaPayload,
    StartFrame,
    StopFrame,
)

if TYPE_CHECKING:
    from voice_relay.media_relay import MediaRelay, MediaStreamConnection

logger = logging.getLogger(LOGGER_NAME)


async def handle_connected(
    message: Dict[str, Any],
    connection: "MediaStreamConnection",
    relay: "MediaRelay",
) -> None:
    """Handle the connected frame Twilio sends when the socket opens."""
    try:
        frame = ConnectedFrame(**message)
        logger.info(f"Media stream connected (protocol: {frame.protocol}, version: {frame.version})")
    except ValidationError as e:
        logger.warning(f"Invalid connected frame: {e}")
    return None


async def handle_start(
    message: Dict[str, Any],
    connection: "MediaStreamConnection",
    relay: "MediaRelay",
) -> None:
    """
    Handle the start frame.

    The stream identifier it carries becomes the connection's session identifier
    and is stamped on every outbound frame from now on. The first start frame
    creates the call session; a later one re-keys it.

    Args:
        message: The start frame
        connection: The socket the frame arrived on
        relay: The media relay owning the session registry
    """
    try:
        frame = StartFrame(**message)
    except ValidationError as e:
        logger.warning(f"Invalid start frame: {e}")
        return None

    stream_sid = frame.streamSid
    call_sid = frame.start.callSid
    media_format = frame.start.mediaFormat
    logger.info(f"Twilio stream started with SID: {stream_sid} (call: {call_sid})")

    if not media_format.matches_telephony_leg():
        logger.warning(
            f"Stream {stream_sid} announced {media_format.encoding} at "
            f"{media_format.sampleRate} Hz; transcription expects 8 kHz mu-law"
        )

    session = connection.session
    if session is None:
        session = relay.session_factory(connection)
        connection.session = session
    elif connection.stream_sid and connection.stream_sid != stream_sid:
        relay.registry.remove_session(connection.stream_sid)

    connection.stream_sid = stream_sid
    try:
        relay.registry.add_session(stream_sid, session)
    except ValueError as e:
        logger.error(f"Cannot register stream {stream_sid}: {e}")
        return None

    if not await session.start(stream_sid, call_sid):
        relay.registry.remove_session(stream_sid)
    return None


async def handle_media(
    message: Dict[str, Any],
    connection: "MediaStreamConnection",
    relay: "MediaRelay",
) -> None:
    """
    Handle an inbound media frame.

    Only the media payload is validated, not the whole frame; the decoded
    bytes go to the session's transcriber without waiting on the network.
    """
    session = connection.session
    if session is None or connection.stream_sid is None:
        logger.debug("Dropping media frame received before stream start")
        return None

    stream_sid = message.get("streamSid")
    if stream_sid and stream_sid != connection.stream_sid:
        logger.warning(
            f"Dropping media frame for stream {stream_sid} on connection for {connection.stream_sid}"
        )
        return None

    try:
        media = MediaPayload.model_validate(message.get("media"))
    except ValidationError as e:
        logger.warning(f"Invalid media payload for stream {connection.stream_sid}: {e}")
        return None

    if (media.track or "inbound") != "inbound":
        return None

    session.feed_audio(media.audio_bytes())
    return None


async def handle_stop(
    message: Dict[str, Any],
    connection: "MediaStreamConnection",
    relay: "MediaRelay",
) -> bool:
    """
    Handle the stop frame: release the session and end the read loop.

    Returns:
        False, telling the relay to stop reading from the socket
    """
    try:
        frame = StopFrame(**message)
        logger.info(f"Twilio stream stopped: {frame.streamSid}")
    except ValidationError as e:
        logger.warning(f"Invalid stop frame, stopping stream anyway: {e}")

    await relay.teardown(connection, reason="stream stopped")
    return False


async def handle_mark(
    message: Dict[str, Any],
    connection: "MediaStreamConnection",
    relay: "MediaRelay",
) -> None:
    """Handle a playback mark acknowledgement."""
    try:
        frame = MarkFrame(**message)
        logger.debug(f"Playback mark reached: {frame.mark.name}")
    except ValidationError as e:
        logger.warning(f"Invalid mark frame: {e}")
    return None


def chunk_audio_data(audio_data: bytes, chunk_size: int = OUTBOUND_FRAME_BYTES) -> List[bytes]:
    """Split audio data into chunks of at most chunk_size bytes."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [audio_data[i:i + chunk_size] for i in range(0, len(audio_data), chunk_size)]
