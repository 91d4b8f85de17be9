"""
Exception hierarchy for the voice relay.

Configuration errors are fatal at process startup. Transcription, generation
and synthesis errors are provider-logic failures that a session recovers from
locally; they never propagate to the media relay or to other sessions.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class ConfigurationError(RelayError):
    """Required configuration (usually a credential) is missing or invalid."""


class TranscriptionError(RelayError):
    """The streaming speech-to-text connection failed."""


class GenerationError(RelayError):
    """The language model failed to produce a reply."""


class SynthesisError(RelayError):
    """Text-to-speech synthesis failed."""
