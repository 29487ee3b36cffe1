"""
Orchestrator for the live voice session.

The controller owns the one live connection and every piece of per-session
state. All mutation happens on the event loop: device threads hand audio over
with ``call_soon_threadsafe``, the receive loop, tool tasks and the retry timer
are all tasks on the same loop. Each connection attempt gets a new epoch;
anything still running on behalf of an older epoch (receive loop, tool calls)
sees the mismatch and drops its output.
"""

import asyncio
import inspect
import logging
import time
import traceback
from datetime import date
from typing import Any, Callable, List, Literal, Optional, Protocol, Set

from voice_session.audio.capture import AudioCapturePipeline, AudioFrame, InputSource
from voice_session.audio.playback import AudioOutput, AudioPlaybackScheduler, PcmBuffer
from voice_session.bot.context import build_system_instruction
from voice_session.bot.live_client import LiveClient
from voice_session.config.constants import DEFAULT_LIVE_MODEL, DEFAULT_VOICE_NAME, LOGGER_NAME
from voice_session.errors import (
    AuthorizationError,
    DeviceError,
    SessionError,
    TransientConnectionError,
    describe_failure,
)
from voice_session.handlers.builtin_tools import register_builtin_tools
from voice_session.handlers.confirmation import ConfirmationOutcome, ConfirmationTracker
from voice_session.handlers.tool_dispatcher import ToolDispatcher
from voice_session.handlers.transcript import TranscriptAssembler
from voice_session.models.envelopes import SessionEffect, ToolCallEnvelope
from voice_session.models.live_schemas import LiveServerMessage, SetupMessage
from voice_session.models.session import SessionState, SessionStatus
from voice_session.models.transcript import TranscriptTurn, TurnKind
from voice_session.services.conversation_store import ConversationStore, InMemoryConversationStore
from voice_session.services.retry_policy import RetryPolicy

logger = logging.getLogger(LOGGER_NAME)

MANUAL_RETRY_MESSAGE = "Could not reconnect. Please try manually."


class AudioDevices(Protocol):
    def check_input(self) -> None: ...

    def open_input(self) -> InputSource: ...

    def open_output(self) -> AudioOutput: ...

    def terminate(self) -> None: ...


def default_devices() -> AudioDevices:
    """PortAudio devices. Imported on first use so the controller runs without pyaudio."""
    try:
        from voice_session.audio.devices import PyAudioDevices
    except ImportError as e:
        raise DeviceError("Audio support is not installed (pip install 'live-voice-session[audio]')",
                          permanent=True) from e
    return PyAudioDevices()


class SessionController:
    """
    Single owner of the live session: connection lifecycle, audio wiring,
    transcript, tool calls and retries.

    Public surface: ``connect``, ``disconnect``, ``send_text_turn``,
    ``speak_reminder``, ``status`` and ``turns``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_LIVE_MODEL,
        voice_name: str = DEFAULT_VOICE_NAME,
        store: Optional[ConversationStore] = None,
        dispatcher: Optional[ToolDispatcher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client_factory: Optional[Callable[[], LiveClient]] = None,
        devices_factory: Callable[[], AudioDevices] = default_devices,
        status_listener: Optional[Callable[[SessionStatus], None]] = None,
        on_end_session: Optional[Callable[[], Any]] = None,
        complete_subject: Optional[Callable] = None,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.model = model
        self.voice_name = voice_name
        self.store = store if store is not None else InMemoryConversationStore()
        self.dispatcher = dispatcher if dispatcher is not None else ToolDispatcher()
        register_builtin_tools(self.dispatcher, self.store)
        self.retry = retry_policy if retry_policy is not None else RetryPolicy()
        self._client_factory = client_factory or self._default_client
        self._devices_factory = devices_factory
        self._devices: Optional[AudioDevices] = None
        self.status_listener = status_listener
        self.on_end_session = on_end_session
        self._today = today

        self.playback = AudioPlaybackScheduler(clock=clock)
        self.capture: Optional[AudioCapturePipeline] = None
        self.transcript = TranscriptAssembler()
        self.confirmations = ConfirmationTracker(complete_subject)

        self._client: Optional[LiveClient] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()
        self._epoch = 0
        self._log_id: Optional[int] = None
        self._log_day: Optional[str] = None
        self._user_speaking = False
        self._reminder_behind_turn = False
        self._reminder_spoken = False
        self._status = SessionStatus()

    def _default_client(self) -> LiveClient:
        if not self.api_key:
            raise AuthorizationError("API key is not configured.")
        return LiveClient(self.api_key, self.model)

    # Status

    @property
    def status(self) -> SessionStatus:
        return self._status.model_copy(update={"assistant_speaking": self.playback.is_speaking})

    @property
    def turns(self) -> List[TranscriptTurn]:
        return list(self.transcript.turns)

    @property
    def state(self) -> SessionState:
        return self._status.state

    def _set_status(self, state: SessionState, message: str = "") -> None:
        previous = self._status.state
        self._status = SessionStatus(
            state=state,
            message=message,
            attempt=self.retry.attempt,
            cycle=self.retry.cycle,
            user_speaking=self._user_speaking,
            manual_retry_required=self.retry.exhausted,
        )
        if previous != state:
            logger.info(f"Session state: {previous.value} -> {state.value} {message}".rstrip())
        self._notify()

    def _notify(self) -> None:
        if self.status_listener is None:
            return
        try:
            self.status_listener(self.status)
        except Exception as e:
            logger.warning(f"Status listener failed: {e}")

    def _on_voice_activity(self, active: bool) -> None:
        self._user_speaking = active
        self._status = self._status.model_copy(update={"user_speaking": active})
        self._notify()

    # Connection lifecycle

    async def connect(self, manual: bool = True) -> bool:
        """
        Open the live session.

        Args:
            manual: True for a user-initiated connect, which clears the retry
                counters and any pending retry timer

        Returns:
            bool: True if the session is streaming
        """
        if self._status.state in (SessionState.CONNECTING, SessionState.STREAMING, SessionState.INTERRUPTED):
            logger.warning(f"Connect ignored, session is {self._status.state.value}")
            return self._status.connected

        if manual:
            self.retry.cancel()
            self.retry.reset()

        self._epoch += 1
        epoch = self._epoch
        self._set_status(SessionState.CONNECTING, "Connecting...")

        try:
            self._acquire_devices()
        except DeviceError as e:
            self._release_devices()
            logger.error(f"Audio device error: {e}")
            await self._notice(f"Could not access audio devices: {e}")
            self._set_status(SessionState.FATAL if e.permanent else SessionState.IDLE, str(e))
            return False

        client = None
        try:
            setup = await self._build_setup()
            if epoch != self._epoch:
                logger.info("Session was closed while preparing the connection")
                return False
            client = self._client_factory()
            await client.connect(setup)
        except AuthorizationError as e:
            if epoch != self._epoch:
                return False
            await self._close_client(client)
            await self._fail_authorization(e)
            return False
        except Exception as e:
            if epoch != self._epoch:
                return False
            if not isinstance(e, SessionError):
                logger.error(f"Unexpected error while connecting: {e}")
                logger.debug(f"Connection error details: {traceback.format_exc()}")
            await self._close_client(client)
            self._release_devices()
            await self._schedule_retry(str(e))
            return False

        if epoch != self._epoch:
            logger.info("Session was closed during the handshake, dropping the new connection")
            await self._close_client(client)
            return False

        self._client = client
        self.retry.reset()
        try:
            self.capture.start()
        except DeviceError as e:
            self._client = None
            self._epoch += 1
            self._release_devices()
            await self._close_client(client)
            logger.error(f"Could not start audio capture: {e}")
            await self._notice(f"Could not access audio devices: {e}")
            self._set_status(SessionState.FATAL if e.permanent else SessionState.IDLE, str(e))
            return False

        self._set_status(SessionState.STREAMING, "Connected")
        self._receive_task = asyncio.create_task(self._receive_loop(client, epoch))
        return True

    async def _build_setup(self) -> SetupMessage:
        # Always rebuilt from the store so a resumed session never relies on stale memory.
        rules = await self.store.get_user_rules()
        day = self._today().isoformat()
        log = await self.store.get_latest_conversation(day)
        history = log.turns if log is not None else []
        self._log_id = log.id if log is not None else None
        self._log_day = day
        self.transcript.load(history)
        logger.debug(f"Loaded {len(rules)} user rule(s) and {len(history)} turn(s) of history for {day}")
        return SetupMessage.build(
            self.model,
            build_system_instruction(rules, history),
            self.dispatcher.declarations(),
            self.voice_name,
        )

    def _acquire_devices(self) -> None:
        if self._devices is None:
            self._devices = self._devices_factory()
        devices = self._devices
        devices.check_input()
        self.playback.attach(devices.open_output())
        self.capture = AudioCapturePipeline(
            source_factory=devices.open_input,
            sink=self._send_frame,
            on_voice_activity=self._on_voice_activity,
        )

    def _release_devices(self) -> None:
        capture, self.capture = self.capture, None
        if capture is not None:
            capture.stop()
        output = self.playback.detach()
        if output is not None:
            try:
                output.close()
            except Exception as e:
                logger.warning(f"Error releasing playback device: {e}")
        self._user_speaking = False

    async def _close_client(self, client: Optional[LiveClient]) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing live client: {e}")

    async def _teardown_network(self) -> None:
        task, self._receive_task = self._receive_task, None
        client, self._client = self._client, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Receive loop ended with error: {e}")
        await self._close_client(client)

    async def disconnect(self, intentional: bool = True) -> None:
        """
        Close the session.

        Devices are released before this coroutine first suspends, so callers
        see the microphone off immediately; the network teardown follows.

        Args:
            intentional: False treats the disconnect as a connection loss and
                goes through the retry policy
        """
        if not intentional:
            if self._status.connected or self._status.state == SessionState.CONNECTING:
                await self._connection_lost(TransientConnectionError("Connection closed unexpectedly."))
            return

        cancelled = self.retry.cancel()
        self._epoch += 1
        self._release_devices()
        self.confirmations.drop_announced()
        self._set_status(SessionState.IDLE, "Disconnected")
        if cancelled:
            logger.info("Pending reconnect cancelled by disconnect")
        await self._teardown_network()

    async def _connection_lost(self, error: SessionError) -> None:
        logger.warning(f"Live session lost: {error}")
        self._epoch += 1
        self._release_devices()
        self.confirmations.drop_announced()
        await self._teardown_network()
        if isinstance(error, AuthorizationError):
            await self._fail_authorization(error)
        else:
            await self._schedule_retry(str(error))

    async def _fail_authorization(self, error: AuthorizationError) -> None:
        logger.error(f"Authorization failed, not retrying: {error}")
        self._release_devices()
        self.retry.cancel()
        self.retry.reset()
        message = describe_failure(str(error))
        await self._notice(message)
        self._set_status(SessionState.IDLE, message)

    async def _schedule_retry(self, reason: str) -> None:
        message = describe_failure(reason)
        decision = self.retry.record_failure()
        if decision is None:
            await self._notice(f"{message} {MANUAL_RETRY_MESSAGE}")
            self._set_status(SessionState.IDLE, MANUAL_RETRY_MESSAGE)
            return

        await self._notice(f"{message} Trying to reconnect...")
        if decision.cooldown:
            status = f"Waiting {decision.delay:g}s before reconnect cycle {decision.cycle}/{self.retry.max_cycles}"
        else:
            status = (
                f"Reconnecting in {decision.delay:g}s (attempt {decision.attempt}/{self.retry.max_attempts}, "
                f"cycle {decision.cycle}/{self.retry.max_cycles})"
            )
        self._set_status(SessionState.RETRYING, status)
        self.retry.schedule(decision, self._reconnect)

    async def _reconnect(self) -> None:
        await self.connect(manual=False)

    async def shutdown(self) -> None:
        """Disconnect and release PortAudio. Used when the application stops."""
        await self.disconnect(intentional=True)
        tool_tasks = list(self._tool_tasks)
        for task in tool_tasks:
            task.cancel()
        if tool_tasks:
            await asyncio.gather(*tool_tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tool_tasks)} tool call(s) still running at shutdown")
        devices, self._devices = self._devices, None
        if devices is not None:
            devices.terminate()

    # Outbound

    async def _send_frame(self, frame: AudioFrame) -> None:
        client = self._client
        if client is None or not self._status.connected:
            return
        await client.send_audio(frame)

    async def _send_client_text(self, text: str) -> bool:
        client = self._client
        if client is None or not self._status.connected:
            logger.warning("Cannot send text - session not connected")
            return False
        try:
            await client.send_text_turn(text)
        except SessionError as e:
            logger.warning(f"Could not send text turn: {e}")
            return False
        return True

    async def send_text_turn(self, text: str) -> bool:
        """
        Send a typed user turn over the live session.

        Returns:
            bool: True if the turn was sent and added to the transcript
        """
        text = (text or "").strip()
        if not text:
            return False
        if not await self._send_client_text(text):
            return False
        turn = self.transcript.add_text_turn("user", text)
        await self._persist([turn])
        return True

    async def speak_reminder(self, text: str, subject_kind: Literal["task", "event"], subject_id: int) -> bool:
        """
        Have the assistant announce a reminder, then wait for the user's yes/no.

        The confirmation is armed when the assistant turn speaking the reminder
        completes; the first spoken user turn after that resolves it.
        """
        prompt = (
            f"Read this reminder to the user and ask whether it has been done: \"{text}\". "
            "Do not call any functions in response."
        )
        if not await self._send_client_text(prompt):
            return False
        await self._notice(text, kind=TurnKind.ALARM)
        self.confirmations.announce(subject_kind, subject_id)
        # An answer already in progress finishes before the reminder is spoken
        self._reminder_behind_turn = self.transcript.open_turn("assistant") is not None
        self._reminder_spoken = False
        logger.info(f"Reminder sent for {subject_kind} {subject_id}, waiting for it to be spoken")
        return True

    # Inbound

    async def _receive_loop(self, client: LiveClient, epoch: int) -> None:
        try:
            async for message in client.messages():
                if epoch != self._epoch:
                    return
                await self._handle_message(message, epoch)
        except asyncio.CancelledError:
            raise
        except SessionError as e:
            if epoch == self._epoch:
                await self._connection_lost(e)
        except Exception as e:
            logger.error(f"Error in receive loop: {e}")
            logger.debug(f"Receive loop error details: {traceback.format_exc()}")
            if epoch == self._epoch:
                await self._connection_lost(TransientConnectionError(str(e)))

    async def _handle_message(self, message: LiveServerMessage, epoch: int) -> None:
        if message.toolCall is not None:
            for call in message.toolCall.functionCalls:
                self._start_tool_call(call.to_envelope(), epoch)

        if message.toolCallCancellation is not None:
            logger.info(f"Server cancelled tool calls: {message.toolCallCancellation.ids}")

        if message.goAway is not None:
            logger.warning(f"Server will close the session soon (time left: {message.goAway.timeLeft})")

        content = message.serverContent
        if content is None:
            return

        if content.interrupted:
            stopped = self.playback.interrupt()
            logger.info(f"Assistant interrupted by user, {stopped} buffer(s) dropped")
            self._set_status(SessionState.INTERRUPTED, "Interrupted")

        chunks = message.audio_chunks()
        for chunk in chunks:
            if self._status.state == SessionState.INTERRUPTED:
                self._set_status(SessionState.STREAMING, "Connected")
            self.playback.schedule(PcmBuffer(chunk.decode(), sample_rate=chunk.sample_rate))

        spoken_text = content.outputTranscription.text if content.outputTranscription is not None else None
        if spoken_text:
            self.transcript.add_assistant_delta(spoken_text)
        if (chunks or spoken_text) and self.confirmations.announced is not None and not self._reminder_behind_turn:
            self._reminder_spoken = True
        if content.inputTranscription is not None and content.inputTranscription.text:
            self.transcript.add_user_delta(content.inputTranscription.text)

        sources = content.groundingMetadata.sources() if content.groundingMetadata is not None else []
        if content.turnComplete:
            await self._complete_turn(sources)
        elif sources:
            turn = self.transcript.merge_sources(sources)
            if turn is not None:
                await self._persist([turn])

    async def _complete_turn(self, sources) -> None:
        closed = self.transcript.complete_turn()
        if sources:
            cited = self.transcript.merge_sources(sources)
            if cited is not None and all(cited is not turn for turn in closed):
                closed.append(cited)
        if self._status.state == SessionState.INTERRUPTED:
            self._set_status(SessionState.STREAMING, "Connected")
        await self._persist(closed)

        user_text = " ".join(turn.text for turn in closed if turn.author == "user").strip()
        if user_text and self.confirmations.pending is not None:
            outcome = await self.confirmations.resolve(user_text)
            if outcome == ConfirmationOutcome.CONFIRMED:
                logger.info("Reminder confirmed by the user")

        # Armed after resolving: user turns closed here started before the reminder was spoken
        if self.confirmations.announced is not None:
            if self._reminder_behind_turn:
                self._reminder_behind_turn = False
            elif self._reminder_spoken:
                pending = self.confirmations.arm_announced()
                logger.info(f"Reminder spoken, awaiting confirmation for {pending.subject_kind} {pending.subject_id}")

    async def _notice(self, text: str, kind: TurnKind = TurnKind.ERROR) -> None:
        await self._persist([self.transcript.add_notice(text, kind)])

    async def _persist(self, turns: List[TranscriptTurn]) -> None:
        if not turns:
            return
        day = self._today().isoformat()
        if day != self._log_day:
            self._log_id = None
            self._log_day = day
        try:
            self._log_id = await self.store.append_turns(self._log_id, day, turns)
        except Exception as e:
            logger.error(f"Could not persist {len(turns)} transcript turn(s): {e}", exc_info=True)

    # Tool calls

    def _start_tool_call(self, envelope: ToolCallEnvelope, epoch: int) -> None:
        task = asyncio.create_task(self._run_tool_call(envelope, epoch))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool_call(self, envelope: ToolCallEnvelope, epoch: int) -> None:
        result = await self.dispatcher.execute(envelope)
        client = self._client
        if epoch != self._epoch or client is None:
            logger.info(f"Discarding result of {envelope.name} (id={envelope.id}), session has moved on")
            return
        try:
            await client.send_tool_response(result)
        except SessionError as e:
            logger.warning(f"Could not send result of {envelope.name} (id={envelope.id}): {e}")
        if result.effect is not None and epoch == self._epoch:
            await self._apply_effect(result.effect)

    async def _apply_effect(self, effect: SessionEffect) -> None:
        logger.info(f"Applying session effect: {effect.value}")
        await self.disconnect(intentional=True)
        if effect == SessionEffect.END_SESSION and self.on_end_session is not None:
            try:
                outcome = self.on_end_session()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"End session listener failed: {e}")
