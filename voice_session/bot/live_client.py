import asyncio
import json
import logging
import time
import traceback
from typing import AsyncIterator, Optional, Tuple

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidStatus, WebSocketException

from voice_session.audio.capture import AudioFrame
from voice_session.config.constants import (
    CONNECTION_TIMEOUT,
    DEFAULT_LIVE_MODEL,
    LIVE_API_URL,
    LOGGER_NAME,
    WS_MAX_SIZE,
    WS_PING_INTERVAL,
    WS_PING_TIMEOUT,
)
from voice_session.errors import SessionError, TransientConnectionError, classify_failure
from voice_session.models.envelopes import ToolResultEnvelope
from voice_session.models.live_schemas import (
    ClientContentMessage,
    LiveServerMessage,
    RealtimeInputMessage,
    SetupMessage,
    ToolResponseMessage,
)

logger = logging.getLogger(LOGGER_NAME)


def _close_details(exc: ConnectionClosed) -> Tuple[Optional[int], str]:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return None, ""
    return frame.code, frame.reason or ""


def _closed_error(exc: ConnectionClosed) -> SessionError:
    code, reason = _close_details(exc)
    logger.debug(f"WebSocket close code: {code}, reason: {reason}")
    return classify_failure(reason)


class LiveClient:
    """
    Client for one Gemini Live session over a WebSocket.

    The client only speaks the wire protocol: it does not reconnect on its own.
    Reconnection decisions belong to the session controller.
    """

    def __init__(self, api_key: str, model: str = DEFAULT_LIVE_MODEL, url: str = LIVE_API_URL):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.ws = None
        self._connection_active = False
        self._is_closing = False
        logger.info(f"LiveClient initialized with model: {model}")

    @property
    def connected(self) -> bool:
        return self._connection_active and self.ws is not None

    async def connect(self, setup: SetupMessage) -> None:
        """
        Open the socket, send the setup message and wait for setupComplete.

        Args:
            setup: Session configuration sent as the first message

        Raises:
            AuthorizationError: If the endpoint rejected our credentials
            TransientConnectionError: For any other failure
        """
        if self._is_closing:
            raise TransientConnectionError("Client is closing")

        headers = {"x-goog-api-key": self.api_key}
        try:
            logger.info(f"Connecting to Gemini Live API with model: {self.model}")
            logger.debug(f"WebSocket URL: {self.url}")
            connection_start = time.time()
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    self.url,
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=WS_PING_TIMEOUT,
                    compression=None,
                    additional_headers=headers,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
            logger.debug(f"WebSocket connection established in {time.time() - connection_start:.2f} seconds")
        except asyncio.TimeoutError:
            logger.error(f"Timeout while connecting to Gemini Live API (after {CONNECTION_TIMEOUT}s)")
            raise TransientConnectionError("Network error: connection timed out.")
        except InvalidStatus as e:
            status_code = e.response.status_code
            logger.error(f"Gemini Live API rejected the handshake with HTTP {status_code}")
            raise classify_failure(str(e), status_code) from e
        except (OSError, WebSocketException) as e:
            logger.error(f"Failed to connect to Gemini Live API: {e}")
            logger.debug(f"Connection error details: {traceback.format_exc()}")
            raise TransientConnectionError(f"Network error: {e}") from e

        try:
            await self._send(setup, require_active=False)
            await asyncio.wait_for(self._wait_setup_complete(), timeout=CONNECTION_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error("Timeout waiting for setupComplete")
            await self._abort()
            raise TransientConnectionError("Network error: session setup timed out.")
        except SessionError:
            await self._abort()
            raise

        self._connection_active = True
        logger.info("Successfully connected to Gemini Live API")

    async def _wait_setup_complete(self) -> None:
        while True:
            try:
                raw = await self.ws.recv()
            except ConnectionClosed as e:
                raise _closed_error(e) from e
            message = self._parse(raw)
            if message is not None and message.setupComplete is not None:
                logger.debug("Received setupComplete")
                return
            logger.debug("Ignoring message received before setupComplete")

    async def _abort(self) -> None:
        ws, self.ws = self.ws, None
        self._connection_active = False
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing half-open WebSocket: {e}")

    async def _send(self, message: BaseModel, require_active: bool = True) -> None:
        if self.ws is None or (require_active and not self._connection_active):
            raise TransientConnectionError("Not connected")
        try:
            await self.ws.send(message.model_dump_json(exclude_none=True))
        except ConnectionClosed as e:
            self._connection_active = False
            raise _closed_error(e) from e

    async def send_audio(self, frame: AudioFrame) -> None:
        """Stream one captured PCM frame."""
        await self._send(RealtimeInputMessage.from_pcm(frame.pcm, frame.mime_type))

    async def send_text_turn(self, text: str) -> None:
        logger.debug(f"Sending text turn: {text[:200]}")
        await self._send(ClientContentMessage.user_text(text))

    async def send_tool_response(self, result: ToolResultEnvelope) -> None:
        logger.debug(f"Sending tool response for {result.name} (id={result.id})")
        await self._send(ToolResponseMessage.from_result(result))

    def _parse(self, raw) -> Optional[LiveServerMessage]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            return LiveServerMessage.model_validate(json.loads(raw))
        except json.JSONDecodeError:
            logger.warning(f"Received invalid JSON: {raw[:100]}...")
        except ValidationError as e:
            logger.warning(f"Received message with unexpected shape: {e}")
        return None

    async def messages(self) -> AsyncIterator[LiveServerMessage]:
        """
        Yield parsed server messages until the connection ends.

        Ends silently when we closed the connection ourselves.

        Raises:
            AuthorizationError: If the endpoint closed the session over credentials
            TransientConnectionError: For any other close
        """
        ws = self.ws
        if ws is None:
            raise TransientConnectionError("Not connected")
        try:
            async for raw in ws:
                message = self._parse(raw)
                if message is not None:
                    yield message
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            self._connection_active = False
            if self._is_closing:
                return
            logger.warning(f"Connection closed during receive: {e}")
            raise _closed_error(e) from e

        self._connection_active = False
        if self._is_closing:
            logger.info("WebSocket connection closed normally")
            return
        reason = getattr(ws, "close_reason", None) or ""
        logger.warning(f"Gemini Live API closed the connection (code {getattr(ws, 'close_code', None)})")
        raise classify_failure(reason)

    async def close(self) -> None:
        """Close the WebSocket. Safe to call more than once."""
        if self._is_closing and self.ws is None:
            return
        logger.info("Closing Gemini Live client")
        self._is_closing = True
        self._connection_active = False
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")
        logger.info("Gemini Live client closed")
