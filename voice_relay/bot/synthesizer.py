"""
Text-to-speech over the Deepgram Speak WebSocket.

Audio is requested directly in the telephony leg's encoding (8 kHz mu-law, no
container) so chunks can be framed and sent to Twilio without conversion.
Two modes are offered: whole-text synthesis, which returns one audio buffer,
and incremental synthesis, which consumes text chunks as a reply is being
generated and yields audio chunks as soon as Deepgram produces them.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Dict
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosedError

from voice_relay.config.constants import (
    AUDIO_ENCODING,
    AUDIO_SAMPLE_RATE,
    DEEPGRAM_SPEAK_URL,
    DEFAULT_TTS_MODEL,
    LOGGER_NAME,
)
from voice_relay.errors import GenerationError, SynthesisError

logger = logging.getLogger(LOGGER_NAME)

CONNECTION_TIMEOUT = 10  # seconds

# Text ending with one of these is flushed right away so playback can start
SENTENCE_ENDINGS = (".", "!", "?", ";", ":")


async def _single(text: str) -> AsyncIterator[str]:
    yield text


class DeepgramSynthesizer:
    """Client for Deepgram Aura text-to-speech."""

    def __init__(self, api_key: str, model: str = DEFAULT_TTS_MODEL):
        self.api_key = api_key
        self.model = model

    def build_url(self) -> str:
        params = {
            "model": self.model,
            "encoding": AUDIO_ENCODING,
            "sample_rate": AUDIO_SAMPLE_RATE,
        }
        return f"{DEEPGRAM_SPEAK_URL}?{urlencode(params)}"

    async def _connect(self):
        try:
            return await asyncio.wait_for(
                websockets.connect(
                    self.build_url(),
                    additional_headers={"Authorization": f"Token {self.api_key}"},
                    compression=None,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise SynthesisError(
                f"Timeout while connecting to Deepgram Speak (after {CONNECTION_TIMEOUT}s)"
            )
        except Exception as e:
            raise SynthesisError(f"Failed to connect to Deepgram Speak: {e}") from e

    async def synthesize(self, text: str) -> bytes:
        """
        Synthesize a complete utterance.

        Args:
            text: Text to speak

        Returns:
            Raw mu-law audio for the whole utterance

        Raises:
            SynthesisError: If the provider fails or returns no audio
        """
        if not text or not text.strip():
            raise SynthesisError("Cannot synthesize empty text")
        audio = bytearray()
        async for chunk in self.stream(_single(text)):
            audio.extend(chunk)
        if not audio:
            raise SynthesisError("Deepgram returned no audio")
        return bytes(audio)

    async def stream(self, chunks: AsyncIterator[str]) -> AsyncIterator[bytes]:
        """
        Synthesize text chunks incrementally.

        Text is forwarded as it arrives and flushed at sentence boundaries;
        audio chunks are yielded as soon as they are received. The iterator ends
        once every flushed segment has been spoken.

        Raises:
            GenerationError: Re-raised from the text source if it fails
            SynthesisError: If the provider connection fails
        """
        ws = await self._connect()
        flushes: Dict[str, object] = {"sent": 0, "received": 0, "done": False}
        sender = asyncio.create_task(self._send_text(ws, chunks, flushes))

        try:
            async for message in ws:
                if isinstance(message, bytes):
                    if message:
                        yield message
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Received invalid JSON from Deepgram Speak: {message[:100]}...")
                    continue

                message_type = data.get("type")
                if message_type == "Flushed":
                    flushes["received"] += 1
                    if flushes["done"] and flushes["received"] >= flushes["sent"]:
                        break
                elif message_type == "Warning":
                    logger.warning(f"Deepgram Speak warning: {data.get('description', data)}")
                elif message_type == "Error":
                    raise SynthesisError(data.get("description") or str(data))
                else:
                    logger.debug(f"Received Deepgram Speak message of type: {message_type or 'unknown'}")
            else:
                # The connection ended without a final Flushed
                await self._await_sender(sender)
                if not (flushes["done"] and flushes["received"] >= flushes["sent"]):
                    raise SynthesisError("Deepgram Speak closed before finishing the utterance")
        except ConnectionClosedError as e:
            await self._await_sender(sender)
            raise SynthesisError(f"Deepgram Speak connection lost: {e}") from e
        finally:
            if not sender.done():
                sender.cancel()
                try:
                    await sender
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Text sender ended with error during cleanup: {e}")
            try:
                await ws.send(json.dumps({"type": "Close"}))
            except Exception:
                pass
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing Deepgram Speak WebSocket: {e}")

        self._raise_sender_error(sender)

    @staticmethod
    def _raise_sender_error(sender: asyncio.Task) -> None:
        if sender.done() and not sender.cancelled() and sender.exception():
            raise sender.exception()

    async def _await_sender(self, sender: asyncio.Task, timeout: float = 1.0) -> None:
        """Let the text sender settle, then re-raise its error if it failed."""
        if not sender.done():
            await asyncio.wait({sender}, timeout=timeout)
        self._raise_sender_error(sender)

    async def _send_text(self, ws, chunks: AsyncIterator[str], flushes: Dict[str, object]) -> None:
        """Forward text chunks as Speak messages, flushing at sentence ends."""
        pending = False
        try:
            async for text in chunks:
                if not text:
                    continue
                await ws.send(json.dumps({"type": "Speak", "text": text}))
                pending = True
                if text.rstrip().endswith(SENTENCE_ENDINGS):
                    flushes["sent"] += 1
                    await ws.send(json.dumps({"type": "Flush"}))
                    pending = False
            if pending or flushes["sent"] == 0:
                flushes["sent"] += 1
                flushes["done"] = True
                await ws.send(json.dumps({"type": "Flush"}))
            else:
                flushes["done"] = True
                if flushes["received"] >= flushes["sent"]:
                    # Every segment was already spoken; end the receive loop
                    await ws.close()
        except GenerationError:
            await ws.close()
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await ws.close()
            raise SynthesisError(f"Failed to send text to Deepgram Speak: {e}") from e
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
