"""
FastAPI server exposing the live voice session to a local UI.

The server holds one SessionController for the whole process. The endpoints
map one-to-one onto the controller's public operations: connect, disconnect,
typed turns, status and transcript.
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path

import dotenv
from fastapi import FastAPI
from pydantic import BaseModel

from voice_session.bot.session_controller import SessionController
from voice_session.config.constants import DEFAULT_LIVE_MODEL
from voice_session.config.logging_config import configure_logging

# Load environment variables from .env file if it exists
env_path = Path(".") / ".env"
if env_path.exists():
    dotenv.load_dotenv(env_path)

# Configure logging
logger = configure_logging()

# Get configuration from environment variables
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "127.0.0.1")

controller = SessionController(
    api_key=os.getenv("GEMINI_API_KEY"),
    model=os.getenv("GEMINI_LIVE_MODEL", DEFAULT_LIVE_MODEL),
)


class DisconnectRequest(BaseModel):
    intentional: bool = True


class TextTurnRequest(BaseModel):
    text: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down live voice session")
    await controller.shutdown()


app = FastAPI(
    title="Live Voice Session",
    description="Local control surface for a real-time voice conversation with Gemini Live",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Status information including the session state.
    """
    status = controller.status
    return {
        "status": "healthy",
        "gemini_api_key_configured": bool(controller.api_key),
        "session_state": status.state.value,
        "connected": status.connected,
    }


@app.get("/")
async def root():
    """Basic information about the API."""
    return {
        "name": "Live Voice Session",
        "description": "Local control surface for a real-time voice conversation with Gemini Live",
        "version": "1.0.0",
        "endpoints": {
            "/health": "Health check endpoint",
            "/session": "Current session status",
            "/session/transcript": "Conversation turns of the current session",
            "/session/connect": "Start the voice session",
            "/session/disconnect": "Stop the voice session",
            "/session/text": "Send a typed turn",
        },
    }


@app.get("/session")
async def session_status():
    return controller.status.model_dump(mode="json")


@app.get("/session/transcript")
async def session_transcript():
    return {"turns": [turn.model_dump(mode="json") for turn in controller.turns]}


@app.post("/session/connect")
async def session_connect():
    """Start the session. A manual connect also clears a previous 'retry manually' state."""
    connected = await controller.connect(manual=True)
    return {"connected": connected, "status": controller.status.model_dump(mode="json")}


@app.post("/session/disconnect")
async def session_disconnect(request: DisconnectRequest = DisconnectRequest()):
    await controller.disconnect(intentional=request.intentional)
    return {"status": controller.status.model_dump(mode="json")}


@app.post("/session/text")
async def session_text(request: TextTurnRequest):
    sent = await controller.send_text_turn(request.text)
    return {"sent": sent, "status": controller.status.model_dump(mode="json")}


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on http://{HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT, http="h11")
