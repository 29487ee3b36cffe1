"""
Live Voice Session Manager

This package keeps a real-time, bidirectional voice conversation open with a
remote conversational model (Gemini Live over WebSocket) and dispatches the
tool calls the model issues back into the application.

Architecture Overview:
- A capture pipeline turns microphone audio into 16 kHz PCM frames
- A playback scheduler plays the model's 24 kHz audio gap-free and supports barge-in
- A transcript assembler merges transcription deltas into conversation turns
- A tool dispatcher routes remote function calls to registered handlers
- A retry policy reconnects after unintentional disconnects in bounded tiers
- A session controller owns the connection lifecycle and wires everything together

Key Components:
- audio: Capture pipeline, playback scheduler and the pyaudio device layer
- bot: Live API client, context builder and the session controller
- config: Tuning constants and logging setup
- handlers: Tool dispatcher, built-in tools, transcript assembler, confirmation tracker
- models: Wire schemas, envelopes and transcript models
- services: Retry policy and the conversation store interface

Getting Started:
1. Set up environment variables:
   - GEMINI_API_KEY: Your Gemini API key
   - PORT: Port for the control API (default 8000)
   - HOST: Host to bind the control API to (default 127.0.0.1)
   - LOG_LEVEL: Logging level (default INFO)

2. Start the control API:
   ```bash
   python run.py
   ```

3. Drive the session:
   - POST /session/connect to start listening
   - POST /session/disconnect to stop
"""
