import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from voice_relay.errors import SynthesisError


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


class FakeTranscriber:
    """Stands in for DeepgramTranscriber; records fed audio and lifecycle calls."""

    def __init__(self, connect_result=True):
        self.connect_result = connect_result
        self.fed = []
        self.connect_calls = 0
        self.finish_calls = 0
        self.close_calls = 0
        self.transcript_handler = None
        self.error_handler = None

    def set_handlers(self, transcript_handler=None, error_handler=None):
        self.transcript_handler = transcript_handler
        self.error_handler = error_handler

    async def connect(self):
        self.connect_calls += 1
        return self.connect_result

    def feed(self, chunk):
        self.fed.append(chunk)
        return True

    async def finish(self):
        self.finish_calls += 1

    async def close(self):
        self.close_calls += 1


class FakeSynthesizer:
    """Stands in for DeepgramSynthesizer; 'audio' is the encoded text."""

    def __init__(self, fail=False):
        self.fail = fail
        self.synthesized = []
        self.streamed = []

    async def synthesize(self, text):
        if self.fail:
            raise SynthesisError("synthesis down")
        self.synthesized.append(text)
        return text.encode()

    async def stream(self, chunks):
        async for text in chunks:
            if self.fail:
                raise SynthesisError("synthesis down")
            self.streamed.append(text)
            yield text.encode()


def make_completion(text):
    """Build an object shaped like a chat completion response."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))]
    )


def make_chunk(text):
    """Build an object shaped like a streamed chat completion chunk."""
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeCompletionStream:
    """Async iterable of streamed chunks that can fail part-way."""

    def __init__(self, parts, error=None):
        self.parts = parts
        self.error = error

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for part in self.parts:
            yield make_chunk(part)
        if self.error:
            raise self.error


def make_openai_client(create):
    """Build an object shaped like AsyncOpenAI with a given completions.create mock."""
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def send_audio():
    return AsyncMock(return_value=True)


def twilio_frame(event, stream_sid="CA123", **fields):
    """Serialize a Twilio Media Streams frame."""
    frame = {"event": event, "sequenceNumber": "1"}
    if event != "connected":
        frame["streamSid"] = stream_sid
    frame.update(fields)
    return json.dumps(frame)


def start_frame(stream_sid="CA123", call_sid="CAcall1", encoding="audio/x-mulaw", sample_rate=8000):
    return twilio_frame(
        "start",
        stream_sid=stream_sid,
        start={
            "streamSid": stream_sid,
            "accountSid": "AC123",
            "callSid": call_sid,
            "tracks": ["inbound"],
            "mediaFormat": {"encoding": encoding, "sampleRate": sample_rate, "channels": 1},
            "customParameters": {},
        },
    )
