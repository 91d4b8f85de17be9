"""
Per-call session state machine.

A CallSession ties together one call's conversation history, its streaming
transcriber, the reply generator, the synthesizer and the outbound audio path
provided by the media relay. Every external event goes through a single
transition table so the lifecycle can be exercised without a live socket:

    IDLE --start--> LISTENING --segment--> GENERATING --cycle_done--> LISTENING
    any state --close--> CLOSED

While a reply is being generated, further final segments are still accepted;
one is kept as pending and any others arriving before it is consumed are dropped.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from voice_relay.bot.responder import ResponseGenerator
from voice_relay.bot.synthesizer import DeepgramSynthesizer
from voice_relay.bot.transcriber import DeepgramTranscriber
from voice_relay.config.constants import (
    DEFAULT_MAX_REPLY_SECONDS,
    FALLBACK_UTTERANCE,
    LOGGER_NAME,
    SYNTHESIS_MODE_INCREMENTAL,
    SYNTHESIS_MODE_WHOLE,
)
from voice_relay.errors import GenerationError, SynthesisError, TranscriptionError
from voice_relay.models.conversation import ConversationHistory

logger = logging.getLogger(LOGGER_NAME)

AudioSender = Callable[[bytes], Awaitable[bool]]
FatalHandler = Callable[["CallSession", str], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    GENERATING = "generating"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    START = "start"
    SEGMENT = "segment"
    CYCLE_DONE = "cycle_done"
    CLOSE = "close"


TRANSITIONS = {
    (SessionState.IDLE, SessionEvent.START): SessionState.LISTENING,
    # A repeated start frame re-keys the session without interrupting it
    (SessionState.LISTENING, SessionEvent.START): SessionState.LISTENING,
    (SessionState.GENERATING, SessionEvent.START): SessionState.GENERATING,
    (SessionState.LISTENING, SessionEvent.SEGMENT): SessionState.GENERATING,
    (SessionState.GENERATING, SessionEvent.CYCLE_DONE): SessionState.LISTENING,
    (SessionState.IDLE, SessionEvent.CLOSE): SessionState.CLOSED,
    (SessionState.LISTENING, SessionEvent.CLOSE): SessionState.CLOSED,
    (SessionState.GENERATING, SessionEvent.CLOSE): SessionState.CLOSED,
}


class InvalidTransition(Exception):
    """An event arrived in a state that does not accept it."""


class CallSession:
    """State machine for a single call."""

    def __init__(
        self,
        history: ConversationHistory,
        transcriber: DeepgramTranscriber,
        responder: ResponseGenerator,
        synthesizer: DeepgramSynthesizer,
        send_audio: AudioSender,
        synthesis_mode: str = SYNTHESIS_MODE_INCREMENTAL,
        max_reply_seconds: float = DEFAULT_MAX_REPLY_SECONDS,
        fatal_handler: Optional[FatalHandler] = None,
    ):
        if synthesis_mode not in (SYNTHESIS_MODE_INCREMENTAL, SYNTHESIS_MODE_WHOLE):
            raise ValueError(f"Unknown synthesis mode: {synthesis_mode}")
        self.history = history
        self.transcriber = transcriber
        self.responder = responder
        self.synthesizer = synthesizer
        self.send_audio = send_audio
        self.synthesis_mode = synthesis_mode
        self.max_reply_seconds = max_reply_seconds
        self.fatal_handler = fatal_handler

        self.state = SessionState.IDLE
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None
        self.pending_segment: Optional[str] = None
        self.transcribing = False
        self._transcriber_started = False
        self._cycle_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def _transition(self, event: SessionEvent) -> SessionState:
        """
        Apply an event to the current state.

        Raises:
            InvalidTransition: If the table has no entry for (state, event)
        """
        next_state = TRANSITIONS.get((self.state, event))
        if next_state is None:
            raise InvalidTransition(f"Event {event.value} is not valid in state {self.state.value}")
        if next_state != self.state:
            logger.debug(
                f"Session {self.stream_sid}: {self.state.value} -> {next_state.value} on {event.value}"
            )
        self.state = next_state
        return next_state

    async def start(self, stream_sid: str, call_sid: Optional[str] = None) -> bool:
        """
        Handle the stream start: record identifiers and open the transcriber.

        Returns:
            bool: False if the session is already closed
        """
        try:
            self._transition(SessionEvent.START)
        except InvalidTransition as e:
            logger.warning(f"Ignoring start for stream {stream_sid}: {e}")
            return False

        if self.stream_sid and self.stream_sid != stream_sid:
            logger.info(f"Session re-keyed from {self.stream_sid} to {stream_sid}")
        self.stream_sid = stream_sid
        self.call_sid = call_sid or self.call_sid

        if not self._transcriber_started:
            self._transcriber_started = True
            self.transcriber.set_handlers(
                transcript_handler=self.on_transcript,
                error_handler=self.on_transcription_error,
            )
            connected = await self.transcriber.connect()
            self.transcribing = connected and not self.closed
            if not connected and not self.closed:
                logger.error(
                    f"Transcription unavailable for stream {stream_sid}; the call will not be answered"
                )
        return True

    def feed_audio(self, chunk: bytes) -> bool:
        """Hand caller audio to the transcriber without waiting."""
        if self.state not in (SessionState.LISTENING, SessionState.GENERATING):
            return False
        if not self.transcribing:
            return False
        return self.transcriber.feed(chunk)

    async def on_transcript(self, segment: str) -> None:
        """
        Handle a finalized transcript segment.

        Blank segments are discarded. In LISTENING a reply cycle starts; in
        GENERATING the segment is kept as pending if the slot is free, otherwise
        it is dropped.
        """
        if self.state in (SessionState.IDLE, SessionState.CLOSED):
            return
        if not segment or not segment.strip():
            logger.debug(f"Discarding blank transcript segment for stream {self.stream_sid}")
            return

        if self.state == SessionState.GENERATING:
            if self.pending_segment is None:
                self.pending_segment = segment
                logger.info(f"Queued segment while replying for stream {self.stream_sid}")
            else:
                logger.warning(
                    f"Dropping segment for stream {self.stream_sid}, one is already pending: \"{segment}\""
                )
            return

        self._transition(SessionEvent.SEGMENT)
        self._cycle_task = asyncio.create_task(self._run_cycles(segment))

    async def on_transcription_error(self, error: TranscriptionError) -> None:
        """Stop transcribing; the call stays up until the socket closes."""
        logger.error(f"Transcription stopped for stream {self.stream_sid}: {error}")
        self.transcribing = False
        await self.transcriber.close()

    async def _run_cycles(self, segment: str) -> None:
        """Run reply cycles for a segment and then for whatever became pending."""
        try:
            while segment is not None and not self.closed:
                try:
                    await asyncio.wait_for(
                        self._reply_cycle(segment), timeout=self.max_reply_seconds
                    )
                except asyncio.TimeoutError:
                    logger.error(
                        f"Reply for stream {self.stream_sid} exceeded {self.max_reply_seconds}s"
                    )
                    await self._fatal("reply generation timed out")
                    return
                segment, self.pending_segment = self.pending_segment, None

            if not self.closed:
                self._transition(SessionEvent.CYCLE_DONE)
        except asyncio.CancelledError:
            logger.info(f"Reply cycle cancelled for stream {self.stream_sid}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error in reply cycle for stream {self.stream_sid}: {e}", exc_info=True)
            if not self.closed:
                self.pending_segment = None
                self._transition(SessionEvent.CYCLE_DONE)

    async def _reply_cycle(self, segment: str) -> None:
        """Generate a reply to one segment and play it to the caller."""
        try:
            if self.synthesis_mode == SYNTHESIS_MODE_WHOLE:
                reply = await self.responder.reply(self.history, segment)
                audio = await self.synthesizer.synthesize(reply)
                await self.send_audio(audio)
            else:
                text_chunks = self.responder.stream_reply(self.history, segment)
                try:
                    await self._play(self.synthesizer.stream(text_chunks))
                finally:
                    # An unfinished reply rolls its user turn back on close
                    await text_chunks.aclose()
        except GenerationError as e:
            logger.warning(f"Generation failed for stream {self.stream_sid}: {e}")
            await self._speak_fallback()
        except SynthesisError as e:
            logger.error(f"Synthesis failed for stream {self.stream_sid}: {e}")

    async def _play(self, audio_chunks) -> None:
        """Forward audio chunks to the relay as they arrive; stop once sending fails."""
        async for chunk in audio_chunks:
            if self.closed or not await self.send_audio(chunk):
                logger.debug(f"Discarding remaining audio for stream {self.stream_sid}")
                await audio_chunks.aclose()
                return

    async def _speak_fallback(self) -> None:
        if self.closed:
            return
        try:
            audio = await self.synthesizer.synthesize(FALLBACK_UTTERANCE)
        except SynthesisError as e:
            logger.error(f"Could not synthesize fallback for stream {self.stream_sid}: {e}")
            return
        await self.send_audio(audio)

    async def _fatal(self, reason: str) -> None:
        if self.fatal_handler:
            try:
                await self.fatal_handler(self, reason)
            except Exception as e:
                logger.error(f"Error in fatal handler for stream {self.stream_sid}: {e}", exc_info=True)
        await self.close(reason)

    async def close(self, reason: str = "closed") -> bool:
        """
        Tear the session down: cancel the reply cycle, release the transcriber
        and drop the history.

        Returns:
            bool: True if this call closed the session, False if it was already closed
        """
        if self.closed:
            return False
        self._transition(SessionEvent.CLOSE)
        logger.info(f"Closing session for stream {self.stream_sid}: {reason}")
        self.pending_segment = None

        task = self._cycle_task
        self._cycle_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Reply cycle ended with error during close: {e}")

        self.transcribing = False
        try:
            await self.transcriber.finish()
        except Exception as e:
            logger.warning(f"Error releasing transcriber for stream {self.stream_sid}: {e}")
        self.history.clear()
        return True
