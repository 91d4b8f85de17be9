from unittest.mock import AsyncMock

import pytest

from voice_relay.bot.responder import ResponseGenerator
from voice_relay.errors import GenerationError
from voice_relay.models.conversation import ConversationHistory, Role

from conftest import FakeCompletionStream, make_completion, make_openai_client

SYSTEM_PROMPT = "You are a helpful agent."


@pytest.fixture
def history():
    return ConversationHistory(SYSTEM_PROMPT)


@pytest.mark.asyncio
class TestReply:

    async def test_history_contains_user_turn_before_model_call(self, history):
        seen = {}

        async def create(**kwargs):
            seen["roles"] = [turn.role for turn in history.turns]
            seen["messages"] = kwargs["messages"]
            return make_completion("hi!")

        responder = ResponseGenerator(client=make_openai_client(AsyncMock(side_effect=create)))

        reply = await responder.reply(history, "hello there")

        assert reply == "hi!"
        assert seen["roles"] == [Role.SYSTEM, Role.USER]
        assert seen["messages"][-1] == {"role": "user", "content": "hello there"}
        assert [(t.role, t.text) for t in history.turns] == [
            (Role.SYSTEM, SYSTEM_PROMPT),
            (Role.USER, "hello there"),
            (Role.AGENT, "hi!"),
        ]

    async def test_uses_configured_model(self, history):
        create = AsyncMock(return_value=make_completion("hi!"))
        responder = ResponseGenerator(model="gpt-test", client=make_openai_client(create))

        await responder.reply(history, "hello")

        assert create.call_args.kwargs["model"] == "gpt-test"

    async def test_provider_failure_rolls_back(self, history):
        create = AsyncMock(side_effect=RuntimeError("provider down"))
        responder = ResponseGenerator(client=make_openai_client(create))

        with pytest.raises(GenerationError):
            await responder.reply(history, "hello there")

        assert len(history) == 1
        assert history.last_role == Role.SYSTEM

    async def test_empty_reply_is_a_failure(self, history):
        create = AsyncMock(return_value=make_completion("   "))
        responder = ResponseGenerator(client=make_openai_client(create))

        with pytest.raises(GenerationError):
            await responder.reply(history, "hello there")

        assert len(history) == 1

    async def test_blank_segment_never_reaches_provider(self, history):
        create = AsyncMock(return_value=make_completion("hi!"))
        responder = ResponseGenerator(client=make_openai_client(create))

        with pytest.raises(ValueError):
            await responder.reply(history, "  ")

        create.assert_not_awaited()
        assert len(history) == 1

    async def test_prior_turns_sent_in_order(self, history):
        history.append_user("first")
        history.append_agent("one")
        create = AsyncMock(return_value=make_completion("two"))
        responder = ResponseGenerator(client=make_openai_client(create))

        await responder.reply(history, "second")

        messages = create.call_args.kwargs["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert [m["content"] for m in messages[1:]] == ["first", "one", "second"]


@pytest.mark.asyncio
class TestStreamReply:

    async def test_yields_chunks_and_appends_agent_turn(self, history):
        create = AsyncMock(return_value=FakeCompletionStream(["hi", "!"]))
        responder = ResponseGenerator(client=make_openai_client(create))

        chunks = [chunk async for chunk in responder.stream_reply(history, "hello there")]

        assert chunks == ["hi", "!"]
        assert create.call_args.kwargs["stream"] is True
        assert history.turns[-1].role == Role.AGENT
        assert history.turns[-1].text == "hi!"

    async def test_failure_mid_stream_rolls_back(self, history):
        create = AsyncMock(
            return_value=FakeCompletionStream(["partial"], error=RuntimeError("connection reset"))
        )
        responder = ResponseGenerator(client=make_openai_client(create))

        chunks = []
        with pytest.raises(GenerationError):
            async for chunk in responder.stream_reply(history, "hello there"):
                chunks.append(chunk)

        assert chunks == ["partial"]
        assert len(history) == 1

    async def test_empty_stream_is_a_failure(self, history):
        create = AsyncMock(return_value=FakeCompletionStream([]))
        responder = ResponseGenerator(client=make_openai_client(create))

        with pytest.raises(GenerationError):
            async for _ in responder.stream_reply(history, "hello there"):
                pass

        assert len(history) == 1

    async def test_abandoned_stream_rolls_back(self, history):
        create = AsyncMock(return_value=FakeCompletionStream(["hi", " there", "!"]))
        responder = ResponseGenerator(client=make_openai_client(create))

        stream = responder.stream_reply(history, "hello there")
        assert await stream.__anext__() == "hi"
        await stream.aclose()

        assert len(history) == 1
        assert history.last_role == Role.SYSTEM
