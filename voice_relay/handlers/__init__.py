"""
Handlers module for the Twilio Media Streams protocol.

- stream_handlers: one coroutine per frame kind (connected, start, media, stop,
  mark), plus the outbound audio chunking used by the media relay.

Every handler has the signature ``handler(message, connection, relay)`` and is
looked up by the frame's ``event`` field in ``MediaRelay.handlers``.
"""

# Handlers module initialization
