"""
Tests for the session controller state machine.

A fake live client and fake audio devices stand in for the network and
PortAudio; the retry timer sleeps are recorded instead of waited for.
"""

import asyncio
import base64
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from voice_session.bot.session_controller import MANUAL_RETRY_MESSAGE, SessionController
from voice_session.errors import AuthorizationError, DeviceError, TransientConnectionError
from voice_session.handlers.tool_dispatcher import ToolDispatcher
from voice_session.models.session import SessionState
from voice_session.models.transcript import TranscriptTurn, TurnKind
from voice_session.services.conversation_store import InMemoryConversationStore
from voice_session.services.retry_policy import RetryPolicy

TODAY = date(2024, 3, 8)


async def wait_until(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


def audio_message(seconds=0.1):
    pcm = b"\x10\x00" * int(24000 * seconds)
    return {"serverContent": {"modelTurn": {"parts": [
        {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": base64.b64encode(pcm).decode()}}
    ]}}}


def tool_call(name, call_id="fc-1", **args):
    return {"toolCall": {"functionCalls": [{"id": call_id, "name": name, "args": args}]}}


@pytest.fixture
def retry_delays():
    return []


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def statuses():
    return []


@pytest.fixture
def make_controller(store, fake_devices, live_clients, fake_clock, retry_delays, statuses):
    async def instant_sleep(delay):
        retry_delays.append(delay)

    def _make(**overrides):
        options = dict(
            store=store,
            client_factory=live_clients,
            devices_factory=lambda: fake_devices,
            retry_policy=RetryPolicy(sleep=instant_sleep),
            status_listener=statuses.append,
            today=lambda: TODAY,
            clock=fake_clock,
        )
        options.update(overrides)
        return SessionController(**options)

    return _make


@pytest.fixture
def controller(make_controller):
    return make_controller()


# Connecting

@pytest.mark.asyncio
async def test_connect_streams_and_wires_devices(controller, fake_devices, live_clients):
    assert await controller.connect() is True

    assert controller.state == SessionState.STREAMING
    assert controller.status.connected
    assert controller.retry.state == (0, 1)
    assert live_clients.last.connected
    assert fake_devices.inputs[0].started
    assert controller.playback.is_speaking is False
    assert len(fake_devices.outputs) == 1
    await controller.disconnect()


@pytest.mark.asyncio
async def test_setup_is_built_from_stored_rules_and_history(controller, store, live_clients):
    await store.add_user_rule("Call me Sasha")
    await store.append_turns(None, TODAY.isoformat(), [
        TranscriptTurn(author="user", text="Remind me to buy milk"),
        TranscriptTurn(author="assistant", text="Network error.", kind=TurnKind.ERROR),
    ])

    await controller.connect()

    setup = live_clients.last.setup.setup
    instruction = setup.systemInstruction.parts[0].text
    assert "- Call me Sasha" in instruction
    assert "User: Remind me to buy milk" in instruction
    assert "Network error." not in instruction
    names = {d["name"] for d in setup.tools[1]["functionDeclarations"]}
    assert {"stopConversation", "endSession", "getCurrentTimeAndDate"} <= names
    assert [turn.text for turn in controller.turns] == ["Remind me to buy milk", "Network error."]
    await controller.disconnect()


@pytest.mark.asyncio
async def test_second_connect_is_ignored_while_streaming(controller, live_clients):
    await controller.connect()
    assert await controller.connect() is True
    assert len(live_clients.created) == 1
    await controller.disconnect()


@pytest.mark.asyncio
async def test_captured_frames_are_sent(controller, fake_devices, live_clients, settle_loop):
    await controller.connect()
    samples = (0.3 * np.sin(np.arange(4096) / 5.0) * 32767).astype("<i2").tobytes()

    fake_devices.inputs[0].emit(samples)
    await settle_loop()

    assert len(live_clients.last.sent_audio) == 1
    assert controller.status.user_speaking
    await controller.disconnect()


# Devices

@pytest.mark.asyncio
async def test_missing_microphone_is_fatal(controller, fake_devices, live_clients):
    fake_devices.missing_input = True

    assert await controller.connect() is False

    assert controller.state == SessionState.FATAL
    assert live_clients.created == []
    assert not controller.retry.pending
    assert controller.turns[-1].kind == TurnKind.ERROR


@pytest.mark.asyncio
async def test_microphone_open_failure_goes_idle_without_retry(controller, fake_devices, live_clients):
    fake_devices.input_error = DeviceError("Microphone is busy")

    assert await controller.connect() is False

    assert controller.state == SessionState.IDLE
    assert live_clients.last.closed
    assert fake_devices.outputs[0].closed
    assert not controller.retry.pending
    assert controller.retry.state == (0, 1)


# Inbound audio and interruption

@pytest.mark.asyncio
async def test_inbound_audio_is_scheduled_gaplessly(controller, fake_devices, live_clients, settle_loop):
    await controller.connect()
    live_clients.last.push(audio_message(0.1))
    live_clients.last.push(audio_message(0.2))
    await settle_loop()

    output = fake_devices.outputs[0]
    assert len(output.written) == 2
    starts = [item.start for item in controller.playback.in_flight]
    assert starts[1] == pytest.approx(starts[0] + 0.1)
    assert controller.status.assistant_speaking
    await controller.disconnect()


@pytest.mark.asyncio
async def test_interruption_flushes_playback(controller, fake_devices, live_clients, fake_clock, settle_loop):
    await controller.connect()
    client = live_clients.last
    client.push(audio_message(0.5))
    await settle_loop()

    client.push({"serverContent": {"interrupted": True}})
    await settle_loop()

    assert controller.state == SessionState.INTERRUPTED
    assert not controller.playback.is_speaking
    assert controller.playback.cursor == fake_clock.now
    assert fake_devices.outputs[0].flushes == 1

    client.push(audio_message(0.1))
    await settle_loop()
    assert controller.state == SessionState.STREAMING
    assert controller.playback.in_flight[0].start == fake_clock.now
    await controller.disconnect()


# Transcript

@pytest.mark.asyncio
async def test_transcriptions_become_persisted_turns(controller, store, live_clients, settle_loop):
    await controller.connect()
    client = live_clients.last
    client.push({"serverContent": {"inputTranscription": {"text": "hello"}}})
    client.push({"serverContent": {"inputTranscription": {"text": " world"}}})
    client.push({"serverContent": {"outputTranscription": {"text": "Hi there."}}})
    client.push({"serverContent": {"turnComplete": True}})
    client.push({"serverContent": {"inputTranscription": {"text": "next"}}})
    client.push({"serverContent": {"turnComplete": True}})
    await settle_loop()

    assert [(t.author, t.text) for t in controller.turns] == [
        ("user", "hello world"), ("assistant", "Hi there."), ("user", "next"),
    ]
    log = await store.get_latest_conversation(TODAY.isoformat())
    assert [t.text for t in log.turns] == ["hello world", "Hi there.", "next"]
    await controller.disconnect()


@pytest.mark.asyncio
async def test_late_citations_update_logged_turn(controller, store, live_clients, settle_loop):
    await controller.connect()
    client = live_clients.last
    client.push({"serverContent": {"outputTranscription": {"text": "It will rain."}}})
    client.push({"serverContent": {"turnComplete": True}})
    client.push({"serverContent": {"groundingMetadata": {"groundingChunks": [
        {"web": {"uri": "https://weather.example", "title": "Weather"}},
        {"web": {"uri": "https://weather.example", "title": "Weather"}},
    ]}}})
    await settle_loop()

    assert [s.uri for s in controller.turns[-1].sources] == ["https://weather.example"]
    log = await store.get_latest_conversation(TODAY.isoformat())
    assert [s.uri for s in log.turns[-1].sources] == ["https://weather.example"]
    await controller.disconnect()


@pytest.mark.asyncio
async def test_send_text_turn(controller, live_clients):
    assert await controller.send_text_turn("hello") is False

    await controller.connect()
    assert await controller.send_text_turn("  What's new?  ") is True
    assert await controller.send_text_turn("   ") is False

    assert live_clients.last.text_turns == ["What's new?"]
    assert controller.turns[-1].text == "What's new?"
    await controller.disconnect()


# Tool calls

@pytest.mark.asyncio
async def test_tool_call_is_answered_with_matching_id(make_controller, live_clients, settle_loop):
    dispatcher = ToolDispatcher()
    dispatcher.register("addNote", AsyncMock(return_value="Note added."))
    controller = make_controller(dispatcher=dispatcher)
    await controller.connect()

    live_clients.last.push(tool_call("addNote", call_id="fc-42", text="milk"))
    live_clients.last.push(tool_call("noSuchTool", call_id="fc-43"))
    await settle_loop()

    responses = {r.id: r.result for r in live_clients.last.tool_responses}
    assert responses == {"fc-42": "Note added.", "fc-43": "Unknown function: noSuchTool"}
    await controller.disconnect()


@pytest.mark.asyncio
async def test_stop_conversation_answers_then_disconnects(controller, fake_devices, live_clients):
    await controller.connect()
    client = live_clients.last

    client.push(tool_call("stopConversation", call_id="fc-stop"))
    await wait_until(lambda: controller.state == SessionState.IDLE and client.closed)

    assert [(r.id, r.result) for r in client.tool_responses] == [("fc-stop", "Microphone off.")]
    assert client.closed
    assert fake_devices.inputs[0].stopped
    assert fake_devices.outputs[0].closed
    assert not controller.retry.pending


@pytest.mark.asyncio
async def test_end_session_notifies_listener(make_controller, live_clients):
    on_end = MagicMock()
    controller = make_controller(on_end_session=on_end)
    await controller.connect()

    live_clients.last.push(tool_call("endSession"))
    await wait_until(lambda: on_end.called)

    assert controller.state == SessionState.IDLE
    assert live_clients.last.tool_responses[0].result == "Ending the session."


@pytest.mark.asyncio
async def test_result_for_old_session_is_discarded(make_controller, live_clients, settle_loop):
    gate = asyncio.Event()

    async def slow_lookup(args):
        await gate.wait()
        return "found"

    dispatcher = ToolDispatcher()
    dispatcher.register("searchNotes", slow_lookup)
    controller = make_controller(dispatcher=dispatcher)
    await controller.connect()
    client = live_clients.last

    client.push(tool_call("searchNotes"))
    await settle_loop()
    await controller.disconnect()
    gate.set()
    await settle_loop()

    assert client.tool_responses == []


# Retries

@pytest.mark.asyncio
async def test_transient_loss_reconnects(controller, live_clients, statuses, retry_delays, fake_devices):
    await controller.connect()
    first = live_clients.last

    first.fail(TransientConnectionError("Connection closed unexpectedly."))
    await wait_until(lambda: len(live_clients.created) == 2 and controller.state == SessionState.STREAMING)

    assert first.closed
    assert retry_delays == [3.0]
    assert SessionState.RETRYING in [status.state for status in statuses]
    assert controller.retry.state == (0, 1)
    assert fake_devices.outputs[0].closed
    assert controller.turns[-1].text == "The connection was closed unexpectedly. Trying to reconnect..."
    await controller.disconnect()


@pytest.mark.asyncio
async def test_retries_exhaust_after_three_cycles(controller, live_clients, retry_delays):
    live_clients.connect_errors = [TransientConnectionError("Network error: refused")] * 16

    assert await controller.connect() is False
    await wait_until(lambda: controller.retry.exhausted and controller.state == SessionState.IDLE)

    assert retry_delays == [3, 6, 9, 12, 15, 60, 6, 9, 12, 15, 60, 6, 9, 12, 15]
    assert len(live_clients.created) == 16
    status = controller.status
    assert status.manual_retry_required
    assert status.message == MANUAL_RETRY_MESSAGE
    assert not controller.retry.pending
    # Repeated failures leave a single advisory notice
    assert len([t for t in controller.turns if t.kind == TurnKind.ERROR]) == 1


@pytest.mark.asyncio
async def test_status_exposes_attempt_and_cycle(controller, live_clients, statuses):
    live_clients.connect_errors = [TransientConnectionError("Network error")] * 16
    await controller.connect()
    await wait_until(lambda: controller.retry.exhausted)

    retrying = [(s.attempt, s.cycle) for s in statuses if s.state == SessionState.RETRYING]
    assert retrying == [(a, c) for c in (1, 2, 3) for a in range(1, 6)]


@pytest.mark.asyncio
async def test_manual_connect_clears_exhausted_state(controller, live_clients):
    live_clients.connect_errors = [TransientConnectionError("Network error")] * 16
    await controller.connect()
    await wait_until(lambda: controller.retry.exhausted and controller.state == SessionState.IDLE)

    assert await controller.connect() is True
    assert not controller.status.manual_retry_required
    assert controller.retry.state == (0, 1)
    await controller.disconnect()


@pytest.mark.asyncio
async def test_authorization_failure_is_not_retried(controller, live_clients, fake_devices):
    live_clients.connect_errors = [AuthorizationError("API key not valid")]

    assert await controller.connect() is False

    assert controller.state == SessionState.IDLE
    assert not controller.retry.pending
    assert controller.retry.state == (0, 1)
    assert fake_devices.outputs[0].closed
    assert controller.turns[-1].text == "Authentication error. Make sure your API key is configured correctly."


@pytest.mark.asyncio
async def test_authorization_close_while_streaming_is_not_retried(controller, live_clients, retry_delays):
    await controller.connect()
    live_clients.last.fail(AuthorizationError("The caller does not have permission"))
    await wait_until(lambda: controller.state == SessionState.IDLE)

    assert retry_delays == []
    assert len(live_clients.created) == 1


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_retry(make_controller, live_clients, settle_loop):
    controller = make_controller(retry_policy=RetryPolicy(base_delay=30.0))
    live_clients.connect_errors = [TransientConnectionError("Network error")]

    await controller.connect()
    assert controller.state == SessionState.RETRYING
    timer = controller.retry.pending_task

    await controller.disconnect(intentional=True)
    await settle_loop()

    assert timer.cancelled()
    assert controller.state == SessionState.IDLE
    assert len(live_clients.created) == 1


@pytest.mark.asyncio
async def test_unintentional_disconnect_goes_through_retry(make_controller, live_clients):
    controller = make_controller(retry_policy=RetryPolicy(base_delay=30.0))
    await controller.connect()

    await controller.disconnect(intentional=False)

    assert controller.state == SessionState.RETRYING
    assert controller.retry.state == (1, 1)
    assert live_clients.last.closed
    await controller.disconnect()


@pytest.mark.asyncio
async def test_reconnect_rebuilds_context_from_store(controller, store, live_clients):
    day = TODAY.isoformat()
    log_id = await store.append_turns(None, day, [TranscriptTurn(author="user", text="earlier")])
    await controller.connect()
    await store.append_turns(log_id, day, [TranscriptTurn(author="user", text="written elsewhere")])

    live_clients.last.fail(TransientConnectionError("Connection closed unexpectedly."))
    await wait_until(lambda: len(live_clients.created) == 2 and controller.state == SessionState.STREAMING)

    instruction = live_clients.last.setup.setup.systemInstruction.parts[0].text
    assert "User: written elsewhere" in instruction
    await controller.disconnect()


# Reminders

def say(client, author, text, complete=True):
    key = "inputTranscription" if author == "user" else "outputTranscription"
    client.push({"serverContent": {key: {"text": text}}})
    if complete:
        client.push({"serverContent": {"turnComplete": True}})


@pytest.mark.asyncio
async def test_reminder_confirmation(make_controller, live_clients, settle_loop):
    complete = AsyncMock()
    controller = make_controller(complete_subject=complete)
    await controller.connect()
    client = live_clients.last

    assert await controller.speak_reminder("Call mom", "task", 5) is True
    assert controller.turns[-1].kind == TurnKind.ALARM
    assert controller.confirmations.pending is None

    say(client, "assistant", "Reminder: call mom. Have you done it?")
    await settle_loop()
    assert controller.confirmations.pending.subject_id == 5

    say(client, "user", "Да, сделал")
    await settle_loop()

    complete.assert_awaited_once()
    assert complete.await_args.args[0].subject_id == 5
    assert controller.confirmations.pending is None
    await controller.disconnect()


@pytest.mark.asyncio
async def test_utterance_in_progress_does_not_answer_reminder(make_controller, live_clients, settle_loop):
    complete = AsyncMock()
    controller = make_controller(complete_subject=complete)
    await controller.connect()
    client = live_clients.last

    say(client, "user", "what is the weather", complete=False)
    await settle_loop()
    await controller.speak_reminder("Call mom", "task", 5)
    say(client, "assistant", "Reminder: call mom. Is it done?")
    await settle_loop()

    complete.assert_not_awaited()
    assert controller.confirmations.pending is not None

    say(client, "user", "yes, done")
    await settle_loop()

    complete.assert_awaited_once()
    assert controller.confirmations.pending is None
    await controller.disconnect()


@pytest.mark.asyncio
async def test_reminder_waits_for_answer_in_progress(make_controller, live_clients, settle_loop):
    complete = AsyncMock()
    controller = make_controller(complete_subject=complete)
    await controller.connect()
    client = live_clients.last

    say(client, "assistant", "It will be sunny", complete=False)
    await settle_loop()
    await controller.speak_reminder("Call mom", "task", 5)
    say(client, "assistant", " all day.")
    await settle_loop()
    assert controller.confirmations.pending is None

    say(client, "assistant", "Reminder: call mom. Is it done?")
    say(client, "user", "yes")
    await settle_loop()

    complete.assert_awaited_once()
    await controller.disconnect()


@pytest.mark.asyncio
async def test_unspoken_reminder_is_dropped_on_disconnect(controller):
    await controller.connect()
    await controller.speak_reminder("Call mom", "task", 5)

    await controller.disconnect()

    assert controller.confirmations.announced is None
    assert controller.confirmations.pending is None


@pytest.mark.asyncio
async def test_reminder_requires_streaming_session(controller):
    assert await controller.speak_reminder("Call mom", "task", 5) is False
    assert controller.confirmations.pending is None
    assert controller.confirmations.announced is None


@pytest.mark.asyncio
async def test_shutdown_terminates_devices(controller, fake_devices):
    await controller.connect()
    await controller.shutdown()
    assert fake_devices.terminated
    assert controller.state == SessionState.IDLE


@pytest.mark.asyncio
async def test_shutdown_waits_for_cancelled_tool_calls(make_controller, live_clients, settle_loop):
    started = asyncio.Event()

    async def never_finishes(args):
        started.set()
        await asyncio.Event().wait()

    dispatcher = ToolDispatcher()
    dispatcher.register("searchNotes", never_finishes)
    controller = make_controller(dispatcher=dispatcher)
    await controller.connect()
    live_clients.last.push(tool_call("searchNotes"))
    await wait_until(started.is_set)
    running = list(controller._tool_tasks)

    await controller.shutdown()

    assert running and all(task.done() for task in running)
    assert live_clients.last.tool_responses == []
