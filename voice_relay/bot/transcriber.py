"""
Streaming speech-to-text over the Deepgram live transcription WebSocket.

One DeepgramTranscriber serves one call session. Caller audio is fed in without
blocking the media relay's read loop, buffered on a bounded queue and drained by
a sender task; a receiver task turns finalized results into transcript segments.
"""

import asyncio
import json
import logging
import time
import traceback
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from voice_relay.config.constants import (
    AUDIO_CHANNELS,
    AUDIO_ENCODING,
    AUDIO_SAMPLE_RATE,
    DEEPGRAM_LISTEN_URL,
    DEFAULT_LANGUAGE,
    DEFAULT_STT_MODEL,
    LOGGER_NAME,
)
from voice_relay.errors import TranscriptionError

logger = logging.getLogger(LOGGER_NAME)

CONNECTION_TIMEOUT = 10  # seconds
FINISH_TIMEOUT = 3  # seconds to wait for trailing results after CloseStream
KEEPALIVE_INTERVAL = 5  # seconds of silence before a KeepAlive is sent
MAX_AUDIO_QUEUE = 500  # ~10 s of 20 ms Twilio frames

TranscriptHandler = Callable[[str], Awaitable[None]]
ErrorHandler = Callable[[TranscriptionError], Awaitable[None]]


class DeepgramTranscriber:
    """
    Client for one Deepgram live transcription stream.

    Only results Deepgram marks ``is_final`` are emitted; interim hypotheses are
    discarded for the whole life of the stream. The encoding and sample rate are
    fixed to the telephony leg's 8 kHz mu-law and are not configurable.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_STT_MODEL,
        language: str = DEFAULT_LANGUAGE,
    ):
        self.api_key = api_key
        self.model = model
        self.language = language
        self.ws = None
        self.audio_queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_AUDIO_QUEUE)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._connection_active = False
        self._is_closing = False
        self._finished = False
        self._failed = False
        self._last_send = 0.0
        self._transcript_handler: Optional[TranscriptHandler] = None
        self._error_handler: Optional[ErrorHandler] = None

    @property
    def active(self) -> bool:
        return self._connection_active and not self._is_closing

    def build_url(self) -> str:
        """Return the listen URL with the fixed audio configuration."""
        params = {
            "model": self.model,
            "language": self.language,
            "smart_format": "true",
            "encoding": AUDIO_ENCODING,
            "sample_rate": AUDIO_SAMPLE_RATE,
            "channels": AUDIO_CHANNELS,
            "interim_results": "false",
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    def set_handlers(
        self,
        transcript_handler: Optional[TranscriptHandler] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        """
        Set the callbacks for finalized segments and stream failure.

        Args:
            transcript_handler: Async function called with each final transcript segment
            error_handler: Async function called once if the stream fails
        """
        self._transcript_handler = transcript_handler
        self._error_handler = error_handler

    async def connect(self) -> bool:
        """
        Open the Deepgram connection and start the sender, receiver and keep-alive tasks.

        Returns:
            bool: True if the connection was established, False otherwise
        """
        if self._is_closing:
            logger.warning("Cannot connect - transcriber is closing")
            return False

        headers = {"Authorization": f"Token {self.api_key}"}
        try:
            logger.info(f"Connecting to Deepgram live transcription with model: {self.model}")
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    self.build_url(),
                    additional_headers=headers,
                    compression=None,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.error(f"Timeout while connecting to Deepgram (after {CONNECTION_TIMEOUT}s)")
            return False
        except Exception as e:
            logger.error(f"Failed to connect to Deepgram: {e}")
            logger.debug(f"Connection error details: {traceback.format_exc()}")
            return False

        if self._is_closing:
            # Closed while the handshake was in flight
            await self.ws.close()
            return False

        self._connection_active = True
        self._last_send = time.time()
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._recv_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive())
        logger.info("Deepgram connection opened")
        return True

    def feed(self, chunk: bytes) -> bool:
        """
        Queue caller audio for transcription without blocking.

        Args:
            chunk: Raw mu-law audio bytes

        Returns:
            bool: True if the chunk was queued, False if it was dropped
        """
        if not self.active or self._finished:
            return False
        try:
            self.audio_queue.put_nowait(chunk)
            return True
        except asyncio.QueueFull:
            logger.warning("Transcriber audio queue full, dropping chunk")
            return False

    async def _send_loop(self) -> None:
        """Drain queued audio to Deepgram; a None sentinel ends the stream."""
        try:
            while True:
                chunk = await self.audio_queue.get()
                if chunk is None:
                    await self.ws.send(json.dumps({"type": "CloseStream"}))
                    logger.debug("Sent CloseStream to Deepgram")
                    break
                await self.ws.send(chunk)
                self._last_send = time.time()
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            logger.info("Deepgram connection closed while sending audio")
        except Exception as e:
            await self._fail(e)

    async def _recv_loop(self) -> None:
        """Receive Deepgram messages and emit final transcript segments."""
        try:
            async for message in self.ws:
                if isinstance(message, bytes):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Received invalid JSON from Deepgram: {message[:100]}...")
                    continue
                await self._handle_message(data)
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            logger.info("Deepgram connection closed normally")
        except ConnectionClosedError as e:
            await self._fail(e)
        except Exception as e:
            await self._fail(e)
        finally:
            self._connection_active = False

    async def _handle_message(self, data: dict) -> None:
        message_type = data.get("type")
        if message_type == "Results":
            transcript = self.extract_transcript(data)
            if data.get("is_final") and transcript.strip():
                logger.info(f"User said: \"{transcript}\"")
                if self._transcript_handler:
                    await self._transcript_handler(transcript)
            elif transcript:
                logger.debug(f"Discarding interim transcript: {transcript}")
        elif message_type == "Error":
            await self._fail(TranscriptionError(data.get("description") or str(data)))
        else:
            logger.debug(f"Received Deepgram message of type: {message_type or 'unknown'}")

    @staticmethod
    def extract_transcript(data: dict) -> str:
        """Return the top alternative's transcript from a Results message."""
        alternatives = (data.get("channel") or {}).get("alternatives") or []
        if not alternatives:
            return ""
        return alternatives[0].get("transcript") or ""

    async def _keepalive(self) -> None:
        """Keep the stream open through silence longer than Deepgram's idle limit."""
        while self.active and not self._finished:
            await asyncio.sleep(KEEPALIVE_INTERVAL)
            if not self.active or self._finished:
                return
            if time.time() - self._last_send < KEEPALIVE_INTERVAL:
                continue
            try:
                await self.ws.send(json.dumps({"type": "KeepAlive"}))
                self._last_send = time.time()
                logger.debug("Sent KeepAlive to Deepgram")
            except Exception as e:
                logger.warning(f"KeepAlive failed: {e}")
                return

    async def _fail(self, error: Exception) -> None:
        """Mark the stream dead and notify the owner exactly once."""
        self._connection_active = False
        if self._failed or self._is_closing:
            return
        self._failed = True
        logger.error(f"Deepgram transcription stream failed: {error}")
        if self._error_handler:
            if not isinstance(error, TranscriptionError):
                error = TranscriptionError(str(error))
            try:
                await self._error_handler(error)
            except Exception as e:
                logger.error(f"Error in transcription error handler: {e}", exc_info=True)

    async def finish(self, timeout: float = FINISH_TIMEOUT) -> None:
        """
        Signal end of audio, let Deepgram flush trailing results, then close.

        Safe to call more than once.
        """
        if self._finished:
            return
        self._finished = True

        if self._connection_active and self._send_task and not self._send_task.done():
            await self.audio_queue.put(None)
            if self._recv_task and self._recv_task is not asyncio.current_task():
                try:
                    await asyncio.wait_for(asyncio.shield(self._recv_task), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.debug("Deepgram did not close within finish timeout")
                except Exception as e:
                    logger.debug(f"Receive task ended with error during finish: {e}")
        await self.close()

    async def close(self) -> None:
        """Close the connection and cancel all tasks. Safe to call more than once."""
        if self._is_closing:
            return
        logger.info("Closing Deepgram transcriber")
        self._is_closing = True
        self._connection_active = False

        current = asyncio.current_task()
        for task in (self._send_task, self._recv_task, self._keepalive_task):
            if task and task is not current and not task.done():
                task.cancel()

        if self.ws:
            try:
                await self.ws.close()
            except Exception as e:
                logger.debug(f"Error closing Deepgram WebSocket: {e}")
