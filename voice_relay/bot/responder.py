"""
Reply generation with the OpenAI chat-completions API.

The generator owns the history mutations of a reply cycle: it appends the
caller's segment as a user turn, asks the model for a reply using the full
ordered history, and appends the reply as an agent turn. Any failure rolls the
history back to where it was, so a failed cycle never leaves an orphan user turn.
"""

import logging
from typing import AsyncIterator, Optional

from openai import AsyncOpenAI

from voice_relay.config.constants import DEFAULT_CHAT_MODEL, LOGGER_NAME
from voice_relay.errors import GenerationError
from voice_relay.models.conversation import ConversationHistory

logger = logging.getLogger(LOGGER_NAME)


class ResponseGenerator:
    """Produces agent replies from a conversation history."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_CHAT_MODEL,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def reply(self, history: ConversationHistory, segment: str) -> str:
        """
        Generate a complete reply to a transcript segment.

        Args:
            history: The session's conversation history
            segment: Finalized, non-blank transcript segment

        Returns:
            The reply text, already appended to history as an agent turn

        Raises:
            GenerationError: If the provider fails or returns an empty reply
        """
        checkpoint = len(history)
        history.append_user(segment)
        completed = False
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=history.as_messages(),
            )
            text = (completion.choices[0].message.content or "").strip()
            if not text:
                raise GenerationError("Model returned an empty reply")
            history.append_agent(text)
            completed = True
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Reply generation failed: {e}") from e
        finally:
            # Also covers cancellation by the reply timeout
            if not completed:
                history.rollback(checkpoint)

        logger.info(f"AI said: \"{text}\"")
        return text

    async def stream_reply(
        self, history: ConversationHistory, segment: str
    ) -> AsyncIterator[str]:
        """
        Generate a reply as a stream of text chunks.

        The returned iterator is finite and can be consumed once. The agent turn
        is appended only after the last chunk; if the provider fails, or the
        consumer stops early, the user turn is rolled back.

        Raises:
            GenerationError: If the provider fails or the reply is empty
        """
        checkpoint = len(history)
        history.append_user(segment)
        parts = []
        completed = False
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=history.as_messages(),
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content or ""
                if content:
                    parts.append(content)
                    yield content

            text = "".join(parts).strip()
            if not text:
                raise GenerationError("Model returned an empty reply")
            history.append_agent(text)
            completed = True
            logger.info(f"AI said: \"{text}\"")
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Reply generation failed: {e}") from e
        finally:
            if not completed:
                history.rollback(checkpoint)
