"""
FastAPI server for the Twilio real-time voice relay.

This module initializes and configures the FastAPI application Twilio talks to
during a call:
- the voice webhook, answered with TwiML that plays the greeting and opens a
  bidirectional media stream back to this server
- the call-status webhook, used as the explicit call-end notification
- the media-stream WebSocket, handled by the MediaRelay

Provider credentials are checked when the application starts; a server
without them refuses to start rather than failing on every call.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Form, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response
from twilio.twiml.voice_response import Connect, VoiceResponse

from voice_relay.config.constants import TERMINAL_CALL_STATUSES
from voice_relay.config.logging_config import configure_logging
from voice_relay.config.settings import RelaySettings
from voice_relay.media_relay import MediaRelay

settings = RelaySettings.from_env()

# Configure logging
logger = configure_logging(settings.log_level)

MEDIA_STREAM_PATH = "/media-stream"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Refuse to start without provider credentials."""
    settings.require_credentials()
    logger.info("Provider credentials configured")
    yield
    logger.info(f"Shutting down with {len(media_relay.registry)} active sessions")


# Create FastAPI application
app = FastAPI(
    title="Voice Relay",
    description="Real-time voice agent relaying Twilio Media Streams to Deepgram and OpenAI",
    version="1.0.0",
    lifespan=lifespan,
)

# Create the process-wide media relay
media_relay = MediaRelay(settings)


def build_stream_url(request: Request, base_url: Optional[str] = None) -> str:
    """
    Build the wss:// URL Twilio should open the media stream to.

    Uses SERVER_BASE_URL when configured (http -> ws, https -> wss), otherwise
    the host the webhook request was addressed to.
    """
    if base_url:
        base = base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{MEDIA_STREAM_PATH}"

    host = request.headers.get("host") or request.url.netloc
    return f"wss://{host}{MEDIA_STREAM_PATH}"


@app.post("/twilio-webhook")
async def twilio_webhook(request: Request):
    """Answer an inbound call: say the greeting, then connect the media stream.

    Returns:
        TwiML instructing Twilio to play the greeting and open the stream
    """
    logger.info("--- Received a call on Twilio number. ---")
    response = VoiceResponse()
    response.say(settings.greeting)

    connect = Connect()
    connect.stream(url=build_stream_url(request, settings.server_base_url))
    response.append(connect)

    return Response(content=str(response), media_type="application/xml")


@app.post("/twilio-status")
async def twilio_status(
    CallSid: Optional[str] = Form(None),
    CallStatus: Optional[str] = Form(None),
):
    """Handle call status callbacks; terminal statuses close the call's session.

    Always answers 200 so Twilio does not retry.
    """
    if not CallSid or not CallStatus:
        logger.warning("Call status update without CallSid or CallStatus, ignoring")
        return PlainTextResponse("OK")

    logger.info(f"Call status update - CallSid: {CallSid}, CallStatus: {CallStatus}")
    if CallStatus in TERMINAL_CALL_STATUSES:
        try:
            if await media_relay.end_call(CallSid, reason=f"call {CallStatus}"):
                logger.info(f"Session ended for call {CallSid}")
        except Exception as e:
            logger.error(f"Error ending session for call {CallSid}: {e}", exc_info=True)
    return PlainTextResponse("OK")


@app.websocket(MEDIA_STREAM_PATH)
async def media_stream(websocket: WebSocket):
    """WebSocket endpoint for Twilio Media Streams.

    Twilio pushes connected, start, media, mark and stop frames; synthesized
    replies are sent back over the same socket as media frames.
    """
    await media_relay.handle_websocket(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Status information including the number of live call sessions
    """
    return {
        "status": "healthy",
        "credentials_configured": not settings.missing_credentials(),
        "active_sessions": len(media_relay.registry),
        "synthesis_mode": settings.synthesis_mode,
    }


@app.get("/")
async def root():
    """Root endpoint to display basic information about the API."""
    return {
        "name": "Voice Relay",
        "description": "Real-time voice agent relaying Twilio Media Streams to Deepgram and OpenAI",
        "version": "1.0.0",
        "endpoints": {
            "/twilio-webhook": "Twilio voice webhook (TwiML)",
            "/twilio-status": "Twilio call status callback",
            MEDIA_STREAM_PATH: "Twilio Media Streams WebSocket",
            "/health": "Health check endpoint",
        },
    }
