"""
Bot module for running a live voice conversation with Gemini.

This module provides the components that hold a real-time, bidirectional audio
conversation with the Gemini Live API and recover it when the network fails.

Key components:
- LiveClient: Client for one Gemini Live session over a WebSocket. Sends the
  session setup, microphone audio, typed turns and tool results, and yields the
  parsed server messages.
- SessionController: Orchestrator owning the connection lifecycle. Wires audio
  capture to the outbound channel and inbound audio to the playback scheduler,
  assembles the transcript, dispatches tool calls and schedules reconnects.
- build_system_instruction: Rebuilds the session's system instruction from the
  stored user rules and today's conversation before every (re)connect.

Usage examples:
```python
import asyncio
import os

from voice_session.bot import SessionController

async def talk():
    controller = SessionController(api_key=os.getenv("GEMINI_API_KEY"))
    if await controller.connect():
        await controller.send_text_turn("Hi, what's on my planner today?")
        await asyncio.sleep(30)
    await controller.disconnect(intentional=True)
    print(controller.status)
```
"""

from voice_session.bot.context import build_system_instruction
from voice_session.bot.live_client import LiveClient
from voice_session.bot.session_controller import SessionController

__all__ = ["LiveClient", "SessionController", "build_system_instruction"]
