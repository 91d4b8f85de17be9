import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from voice_relay.bot.responder import ResponseGenerator
from voice_relay.bot.session import CallSession, SessionState
from voice_relay.config.settings import RelaySettings
from voice_relay.media_relay import MediaRelay, MediaStreamConnection
from voice_relay.models.conversation import ConversationHistory

from conftest import (
    FakeSynthesizer,
    FakeTranscriber,
    make_completion,
    make_openai_client,
    start_frame,
    twilio_frame,
)


def socket_message(frame):
    """Wrap a frame the way Starlette's WebSocket.receive() delivers it."""
    if isinstance(frame, (BaseException, dict)):
        return frame
    if isinstance(frame, bytes):
        return {"type": "websocket.receive", "bytes": frame}
    return {"type": "websocket.receive", "text": frame}


def make_websocket(frames):
    websocket = AsyncMock()
    websocket.receive = AsyncMock(side_effect=[socket_message(frame) for frame in frames])
    return websocket


def sent_frames(websocket):
    return [json.loads(call.args[0]) for call in websocket.send_text.await_args_list]


class SessionFactory:
    """Builds real call sessions wired to fake providers."""

    def __init__(self, reply="hi!"):
        self.create = AsyncMock(return_value=make_completion(reply))
        self.sessions = []
        self.transcribers = []

    def __call__(self, connection):
        transcriber = FakeTranscriber()
        session = CallSession(
            history=ConversationHistory("You are a helpful agent."),
            transcriber=transcriber,
            responder=ResponseGenerator(client=make_openai_client(self.create)),
            synthesizer=FakeSynthesizer(),
            send_audio=connection.send_audio,
            synthesis_mode="whole",
        )
        self.sessions.append(session)
        self.transcribers.append(transcriber)
        return session


@pytest.fixture
def factory():
    return SessionFactory()


@pytest.fixture
def relay(factory):
    return MediaRelay(RelaySettings(max_idle_seconds=5), session_factory=factory)


@pytest.mark.asyncio
class TestMediaStreamConnection:

    async def test_no_send_before_start(self):
        websocket = AsyncMock()
        connection = MediaStreamConnection(websocket)

        assert not await connection.send_audio(b"\xff" * 10)
        websocket.send_text.assert_not_awaited()

    async def test_frames_carry_stream_sid(self):
        websocket = AsyncMock()
        connection = MediaStreamConnection(websocket)
        connection.stream_sid = "CA123"

        audio = bytes(range(256)) * 20
        assert await connection.send_audio(audio)

        frames = sent_frames(websocket)
        assert len(frames) == 2
        assert all(frame["event"] == "media" for frame in frames)
        assert all(frame["streamSid"] == "CA123" for frame in frames)
        decoded = b"".join(base64.b64decode(frame["media"]["payload"]) for frame in frames)
        assert decoded == audio

    async def test_no_send_after_close(self):
        websocket = AsyncMock()
        connection = MediaStreamConnection(websocket)
        connection.stream_sid = "CA123"
        connection.closed = True

        assert not await connection.send_audio(b"\xff")
        websocket.send_text.assert_not_awaited()

    async def test_send_failure_closes_connection(self):
        websocket = AsyncMock()
        websocket.send_text.side_effect = RuntimeError("socket gone")
        connection = MediaStreamConnection(websocket)
        connection.stream_sid = "CA123"

        assert not await connection.send_audio(b"\xff")
        assert connection.closed
        assert not await connection.send_audio(b"\xff")
        websocket.send_text.assert_awaited_once()


def test_parse_frame():
    assert MediaRelay.parse_frame('{"event": "start"}') == {"event": "start"}
    assert MediaRelay.parse_frame("not json") is None
    assert MediaRelay.parse_frame('["event"]') is None
    assert MediaRelay.parse_frame('{"no": "event"}') is None
    assert MediaRelay.parse_frame('{"event": ["media"]}') is None
    assert MediaRelay.parse_frame('{"event": 3}') is None
    assert MediaRelay.parse_frame('{"event": ""}') is None


@pytest.mark.asyncio
class TestMediaRelay:

    async def test_full_stream_lifecycle(self, relay, factory):
        audio = base64.b64encode(b"\x01\x02\x03").decode()
        websocket = make_websocket([
            twilio_frame("connected", protocol="Call", version="1.0.0"),
            start_frame(),
            twilio_frame("media", media={"payload": audio, "track": "inbound"}),
            "not json",
            '{"no": "event"}',
            twilio_frame("media", media={"payload": "%%%", "track": "inbound"}),
            twilio_frame("dtmf", dtmf={"digit": "1"}),
            twilio_frame("stop"),
        ])

        await relay.handle_websocket(websocket)

        websocket.accept.assert_awaited_once()
        websocket.close.assert_awaited()
        assert len(factory.sessions) == 1
        assert factory.transcribers[0].fed == [b"\x01\x02\x03"]
        assert factory.transcribers[0].finish_calls == 1
        assert factory.sessions[0].state == SessionState.CLOSED
        assert len(relay.registry) == 0
        websocket.send_text.assert_not_awaited()

    async def test_reply_frames_carry_stream_sid(self, relay, factory):
        websocket = AsyncMock()
        connection = MediaStreamConnection(websocket)
        await relay.handlers["start"](json.loads(start_frame("CA123")), connection, relay)
        session = connection.session

        await session.on_transcript("hello there")
        await session._cycle_task

        frames = sent_frames(websocket)
        assert frames
        assert all(frame["streamSid"] == "CA123" for frame in frames)
        assert base64.b64decode(frames[0]["media"]["payload"]) == b"hi!"

    async def test_media_before_start_dropped(self, relay, factory):
        audio = base64.b64encode(b"\x01").decode()
        websocket = make_websocket([
            twilio_frame("media", media={"payload": audio}),
            twilio_frame("stop"),
        ])

        await relay.handle_websocket(websocket)

        assert factory.sessions == []
        websocket.send_text.assert_not_awaited()

    async def test_idle_timeout_closes_stream(self, factory):
        relay = MediaRelay(RelaySettings(max_idle_seconds=0.01), session_factory=factory)

        frames = [start_frame()]

        async def receive():
            if frames:
                return socket_message(frames.pop(0))
            await asyncio.sleep(3600)

        websocket = AsyncMock()
        websocket.receive = receive

        await relay.handle_websocket(websocket)

        assert factory.sessions[0].state == SessionState.CLOSED
        assert len(relay.registry) == 0
        websocket.close.assert_awaited()

    async def test_disconnect_tears_down(self, relay, factory):
        websocket = make_websocket([start_frame(), {"type": "websocket.disconnect", "code": 1000}])

        await relay.handle_websocket(websocket)

        assert factory.sessions[0].state == SessionState.CLOSED
        assert len(relay.registry) == 0

    async def test_handler_error_does_not_end_stream(self, relay):
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        relay.handlers["mark"] = failing
        websocket = make_websocket([
            twilio_frame("mark", mark={"name": "x"}),
            twilio_frame("mark", mark={"name": "y"}),
            twilio_frame("stop"),
        ])

        await relay.handle_websocket(websocket)

        assert failing.await_count == 2

    async def test_teardown_is_idempotent(self, relay, factory):
        connection = MediaStreamConnection(AsyncMock())
        await relay.handlers["start"](json.loads(start_frame()), connection, relay)
        session = connection.session

        await relay.teardown(connection, reason="stream stopped")
        await relay.teardown(connection, reason="socket closed")

        assert session.state == SessionState.CLOSED
        assert factory.transcribers[0].finish_calls == 1
        assert len(relay.registry) == 0

    async def test_end_call(self, relay, factory):
        connection = MediaStreamConnection(AsyncMock())
        await relay.handlers["start"](json.loads(start_frame(call_sid="CAcall1")), connection, relay)

        assert await relay.end_call("CAcall1", reason="call completed")
        assert not await relay.end_call("CAcall1")
        assert factory.sessions[0].state == SessionState.CLOSED
        assert len(relay.registry) == 0

    async def test_concurrent_calls_are_isolated(self, relay, factory):
        first = MediaStreamConnection(AsyncMock())
        second = MediaStreamConnection(AsyncMock())
        await relay.handlers["start"](json.loads(start_frame("CA1", "CAcall1")), first, relay)
        await relay.handlers["start"](json.loads(start_frame("CA2", "CAcall2")), second, relay)

        await relay.end_call("CAcall1")

        assert first.session.state == SessionState.CLOSED
        assert second.session.state == SessionState.LISTENING
        assert "CA2" in relay.registry


def test_create_session_uses_settings():
    settings = RelaySettings(
        openai_api_key="sk-test",
        deepgram_api_key="dg-test",
        synthesis_mode="whole",
        max_reply_seconds=7,
    )
    relay = MediaRelay(settings)
    connection = MediaStreamConnection(MagicMock())

    with patch("voice_relay.bot.responder.AsyncOpenAI") as openai_cls:
        session = relay.session_factory(connection)

    openai_cls.assert_called_once_with(api_key="sk-test")
    assert session.synthesis_mode == "whole"
    assert session.max_reply_seconds == 7
    assert session.transcriber.api_key == "dg-test"
    assert session.history.as_messages()[0]["content"] == settings.system_prompt


@pytest.mark.asyncio
class TestMalformedFrames:

    async def test_binary_frame_dropped(self, relay, factory):
        mark_handler = AsyncMock()
        relay.handlers["mark"] = mark_handler
        websocket = make_websocket([
            start_frame(),
            b"\x00\x01\x02",
            twilio_frame("mark", mark={"name": "after-binary"}),
            {"type": "websocket.disconnect", "code": 1000},
        ])

        await relay.handle_websocket(websocket)

        mark_handler.assert_awaited_once()
        assert mark_handler.call_args.args[1].stream_sid == "CA123"

    async def test_non_string_event_dropped(self, relay, factory):
        mark_handler = AsyncMock()
        relay.handlers["mark"] = mark_handler
        websocket = make_websocket([
            start_frame(),
            json.dumps({"event": ["media"], "streamSid": "CA123"}),
            json.dumps({"event": {"kind": "media"}}),
            twilio_frame("mark", mark={"name": "after-bad-event"}),
            {"type": "websocket.disconnect", "code": 1000},
        ])

        await relay.handle_websocket(websocket)

        mark_handler.assert_awaited_once()

    async def test_session_survives_malformed_frames(self, relay, factory):
        frames = [
            start_frame(),
            b"\xff\xfe",
            json.dumps({"event": ["media"]}),
        ]
        survived = asyncio.Event()

        async def receive():
            if frames:
                return socket_message(frames.pop(0))
            # Every malformed frame has been consumed
            survived.set()
            return {"type": "websocket.disconnect", "code": 1000}

        websocket = AsyncMock()
        websocket.receive = receive
        states = []

        original_teardown = relay.teardown

        async def recording_teardown(connection, reason="closed"):
            states.append((survived.is_set(), connection.session.state if connection.session else None))
            await original_teardown(connection, reason=reason)

        relay.teardown = recording_teardown

        await relay.handle_websocket(websocket)

        assert states[0] == (True, SessionState.LISTENING)
        assert factory.sessions[0].state == SessionState.CLOSED
