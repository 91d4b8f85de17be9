"""
Process-wide registry of live call sessions.

The registry is owned by the media relay and keyed by stream identifier.
Sessions are inserted explicitly when a stream starts and removed explicitly at
teardown; nothing else shares state across calls.
"""

from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from voice_relay.bot.session import CallSession


class SessionRegistry:
    """
    Tracks the active call sessions of this process.

    Each stream identifier maps to exactly one session. Removal is idempotent so
    duplicate close events are harmless.
    """

    def __init__(self):
        """Initialize an empty dictionary of active sessions."""
        self.active_sessions: Dict[str, "CallSession"] = {}

    def add_session(self, stream_sid: str, session: "CallSession") -> None:
        """
        Register a session under its stream identifier.

        Raises:
            ValueError: If another session already owns the identifier
        """
        existing = self.active_sessions.get(stream_sid)
        if existing is not None and existing is not session:
            raise ValueError(f"Stream {stream_sid} already has a live session")
        self.active_sessions[stream_sid] = session

    def find_by_call_sid(self, call_sid: str) -> Optional["CallSession"]:
        """Return the session serving a telephony call, or None."""
        for session in self.active_sessions.values():
            if session.call_sid == call_sid:
                return session
        return None

    def remove_session(self, stream_sid: str) -> Optional["CallSession"]:
        """Remove and return a session; returns None if it was already gone."""
        return self.active_sessions.pop(stream_sid, None)

    def __len__(self) -> int:
        return len(self.active_sessions)

    def __contains__(self, stream_sid: str) -> bool:
        return stream_sid in self.active_sessions
