"""
Conversation history for a single call.

A history always starts with one system turn holding the agent's instructions,
followed by strictly alternating user and agent turns. Turns are immutable once
appended; the only way to shrink a history is to roll back to an earlier length
(used when a reply fails) or to clear it at session teardown.
"""

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    """Speaker of a conversation turn."""
    SYSTEM = "system"
    USER = "user"
    AGENT = "agent"


# Chat-completion APIs call the agent "assistant"
PROVIDER_ROLES = {
    Role.SYSTEM: "system",
    Role.USER: "user",
    Role.AGENT: "assistant",
}


class ConversationTurn(BaseModel):
    """One immutable turn of the conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    text: str


class ConversationHistory:
    """
    Ordered conversation turns for one call session.

    The history enforces the shape system, (user, agent)*: appending a user turn
    is only valid after the system turn or an agent turn, and appending an agent
    turn is only valid directly after a user turn.
    """

    def __init__(self, system_prompt: str):
        if not system_prompt or not system_prompt.strip():
            raise ValueError("System prompt cannot be empty")
        self._turns: List[ConversationTurn] = [
            ConversationTurn(role=Role.SYSTEM, text=system_prompt)
        ]

    @property
    def turns(self) -> List[ConversationTurn]:
        """A copy of the turns, oldest first."""
        return list(self._turns)

    @property
    def last_role(self) -> Role:
        return self._turns[-1].role if self._turns else None

    def __len__(self) -> int:
        return len(self._turns)

    def append_user(self, text: str) -> ConversationTurn:
        """
        Append a user turn.

        Raises:
            ValueError: If the text is blank or the previous turn is a user turn
        """
        if not text or not text.strip():
            raise ValueError("User turn cannot be empty")
        if self.last_role not in (Role.SYSTEM, Role.AGENT):
            raise ValueError("A user turn must follow the system turn or an agent turn")
        turn = ConversationTurn(role=Role.USER, text=text)
        self._turns.append(turn)
        return turn

    def append_agent(self, text: str) -> ConversationTurn:
        """
        Append an agent turn.

        Raises:
            ValueError: If the text is blank or the previous turn is not a user turn
        """
        if not text or not text.strip():
            raise ValueError("Agent turn cannot be empty")
        if self.last_role != Role.USER:
            raise ValueError("An agent turn must follow a user turn")
        turn = ConversationTurn(role=Role.AGENT, text=text)
        self._turns.append(turn)
        return turn

    def rollback(self, length: int) -> None:
        """Drop every turn after the first ``length`` turns; the system turn is never dropped."""
        self._turns = self._turns[:max(length, 1)]

    def clear(self) -> None:
        """Release all turns at session teardown."""
        self._turns = []

    def as_messages(self) -> List[Dict[str, str]]:
        """Render the history in the chat-completion message format."""
        return [
            {"role": PROVIDER_ROLES[turn.role], "content": turn.text}
            for turn in self._turns
        ]
