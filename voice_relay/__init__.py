"""
Voice Relay - Twilio Media Streams to Deepgram and OpenAI

A real-time voice agent for inbound phone calls. Twilio answers the call, plays
a greeting and opens a bidirectional media stream to this server; the caller's
audio is transcribed by Deepgram, answered by an OpenAI chat model, spoken back
with Deepgram text-to-speech and streamed to the caller on the same socket.

Architecture Overview:
- FastAPI server exposing the Twilio webhooks and the media-stream WebSocket
- MediaRelay demultiplexing stream frames and owning the session registry
- One CallSession state machine per call, owning its history and provider streams

Key Components:
- bot: provider adapters (transcriber, responder, synthesizer) and the session
- config: constants, settings and logging setup
- handlers: one handler per Media Streams frame kind
- models: frame schemas, conversation history and the session registry
- media_relay: socket lifecycle and outbound audio framing

Getting Started:
1. Set up environment variables (or a .env file):
   - OPENAI_API_KEY, DEEPGRAM_API_KEY: provider credentials (required)
   - SERVER_BASE_URL: public URL Twilio reaches this server on
   - PORT, HOST, LOG_LEVEL: server settings

2. Start the server:
   ```bash
   python run.py
   ```

3. Point the Twilio number's voice webhook at https://your-server/twilio-webhook
   and its status callback at https://your-server/twilio-status.
"""

__version__ = "1.0.0"
