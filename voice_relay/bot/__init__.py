"""
Bot module: the per-call conversation engine.

Key components:
- DeepgramTranscriber: one live speech-to-text stream per call, emitting final segments.
- ResponseGenerator: OpenAI chat completions over the call's history, whole or streamed.
- DeepgramSynthesizer: mu-law text-to-speech, whole-text or incremental.
- CallSession: the state machine tying them to the media relay's send path.

Usage examples:
```python
from voice_relay.bot import CallSession, DeepgramTranscriber, ResponseGenerator, DeepgramSynthesizer
from voice_relay.models.conversation import ConversationHistory

session = CallSession(
    history=ConversationHistory("You are a helpful voice agent."),
    transcriber=DeepgramTranscriber(deepgram_key),
    responder=ResponseGenerator(openai_key),
    synthesizer=DeepgramSynthesizer(deepgram_key),
    send_audio=connection.send_audio,
)
await session.start("MZ123", call_sid="CA123")
session.feed_audio(mulaw_bytes)
await session.close()
```
"""

from voice_relay.bot.responder import ResponseGenerator
from voice_relay.bot.session import CallSession, SessionState
from voice_relay.bot.synthesizer import DeepgramSynthesizer
from voice_relay.bot.transcriber import DeepgramTranscriber

__all__ = [
    "CallSession",
    "DeepgramSynthesizer",
    "DeepgramTranscriber",
    "ResponseGenerator",
    "SessionState",
]
