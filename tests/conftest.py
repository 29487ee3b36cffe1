import asyncio
import logging

import pytest

from voice_session.config.constants import LOGGER_NAME
from voice_session.errors import DeviceError
from voice_session.models.live_schemas import LiveServerMessage


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    package_logger = logging.getLogger(LOGGER_NAME)
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
    package_logger.propagate = True
    yield


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInputSource:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.callback = None
        self.started = False
        self.stopped = False

    def start(self, callback):
        if self.fail_with is not None:
            raise self.fail_with
        self.callback = callback
        self.started = True

    def stop(self):
        self.stopped = True
        self.callback = None

    def emit(self, data: bytes):
        if self.callback is not None:
            self.callback(data)


class FakeOutput:
    def __init__(self):
        self.written = []
        self.flushes = 0
        self.closed = False

    def write(self, data: bytes):
        self.written.append(data)

    def flush(self):
        self.flushes += 1

    def close(self):
        self.closed = True


class FakeDevices:
    """Stands in for PortAudio: records every device handed out."""

    def __init__(self, missing_input=False, input_error=None):
        self.missing_input = missing_input
        self.input_error = input_error
        self.inputs = []
        self.outputs = []
        self.terminated = False

    def check_input(self):
        if self.missing_input:
            raise DeviceError("No microphone available", permanent=True)

    def open_input(self):
        source = FakeInputSource(self.input_error)
        self.inputs.append(source)
        return source

    def open_output(self):
        output = FakeOutput()
        self.outputs.append(output)
        return output

    def terminate(self):
        self.terminated = True


class FakeLiveClient:
    """In-memory live connection: tests push server messages into it."""

    def __init__(self, connect_error=None):
        self.connect_error = connect_error
        self.setup = None
        self.connected = False
        self.closed = False
        self.sent_audio = []
        self.text_turns = []
        self.tool_responses = []
        self._inbox = asyncio.Queue()

    async def connect(self, setup):
        self.setup = setup
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def send_audio(self, frame):
        self.sent_audio.append(frame)

    async def send_text_turn(self, text):
        self.text_turns.append(text)

    async def send_tool_response(self, result):
        self.tool_responses.append(result)

    def push(self, payload: dict):
        self._inbox.put_nowait(LiveServerMessage.model_validate(payload))

    def fail(self, error: Exception):
        self._inbox.put_nowait(error)

    async def messages(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            if isinstance(item, Exception):
                self.connected = False
                raise item
            yield item

    async def close(self):
        self.closed = True
        self.connected = False
        self._inbox.put_nowait(None)


class LiveClientFactory:
    """Client factory handing out FakeLiveClients, optionally failing connects in order."""

    def __init__(self):
        self.created = []
        self.connect_errors = []

    def __call__(self):
        error = self.connect_errors.pop(0) if self.connect_errors else None
        client = FakeLiveClient(error)
        self.created.append(client)
        return client

    @property
    def last(self) -> FakeLiveClient:
        return self.created[-1]


async def settle(rounds: int = 20):
    """Let pending tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_devices():
    return FakeDevices()


@pytest.fixture
def live_clients():
    return LiveClientFactory()


@pytest.fixture
def settle_loop():
    return settle
