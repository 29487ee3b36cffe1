"""
PyAudio-backed capture and playback devices.

Both streams run in callback mode on PortAudio threads. The capture stream
forwards raw int16 blocks to the pipeline; the playback stream pulls from a
lock-protected byte buffer and pads with silence when it runs dry, so the
device position tracks wall-clock time.
"""

import logging
import threading
from typing import Callable, Optional

import pyaudio

from voice_session.config.constants import (
    CAPTURE_FRAME_SIZE,
    CHANNELS,
    INPUT_SAMPLE_RATE,
    LOGGER_NAME,
    OUTPUT_SAMPLE_RATE,
    SAMPLE_WIDTH,
)
from voice_session.errors import DeviceError

logger = logging.getLogger(LOGGER_NAME)

FORMAT = pyaudio.paInt16
OUTPUT_FRAMES_PER_BUFFER = 1024


class PyAudioInputSource:
    """Microphone stream delivering int16 frames to a callback."""

    def __init__(self, audio: pyaudio.PyAudio, sample_rate: int = INPUT_SAMPLE_RATE,
                 frame_size: int = CAPTURE_FRAME_SIZE):
        self._audio = audio
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self._stream = None

    def start(self, callback: Callable[[bytes], None]) -> None:
        def _stream_callback(in_data, frame_count, time_info, status):
            if status:
                logger.debug(f"Capture stream status flags: {status}")
            callback(in_data)
            return None, pyaudio.paContinue

        try:
            self._stream = self._audio.open(
                format=FORMAT,
                channels=CHANNELS,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frame_size,
                stream_callback=_stream_callback,
            )
            self._stream.start_stream()
        except (OSError, IOError) as e:
            self._stream = None
            raise DeviceError(f"Could not open microphone: {e}") from e

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop_stream()
        finally:
            stream.close()


class PyAudioOutput:
    """Speaker stream fed through ``write``; ``flush`` drops everything not yet played."""

    def __init__(self, audio: pyaudio.PyAudio, sample_rate: int = OUTPUT_SAMPLE_RATE):
        self._audio = audio
        self.sample_rate = sample_rate
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._stream = None

    def open(self) -> "PyAudioOutput":
        try:
            self._stream = self._audio.open(
                format=FORMAT,
                channels=CHANNELS,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=OUTPUT_FRAMES_PER_BUFFER,
                stream_callback=self._stream_callback,
            )
            self._stream.start_stream()
        except (OSError, IOError) as e:
            self._stream = None
            raise DeviceError(f"Could not open speaker: {e}") from e
        return self

    def _stream_callback(self, in_data, frame_count, time_info, status):
        wanted = frame_count * SAMPLE_WIDTH * CHANNELS
        with self._lock:
            chunk = bytes(self._buffer[:wanted])
            del self._buffer[:wanted]
        if len(chunk) < wanted:
            chunk += b"\x00" * (wanted - len(chunk))
        return chunk, pyaudio.paContinue

    def write(self, data: bytes) -> None:
        with self._lock:
            self._buffer.extend(data)

    def flush(self) -> None:
        with self._lock:
            self._buffer.clear()

    def close(self) -> None:
        self.flush()
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop_stream()
        finally:
            stream.close()


class PyAudioDevices:
    """Owns the PortAudio instance and hands out capture/playback devices."""

    def __init__(self):
        self._audio: Optional[pyaudio.PyAudio] = None

    def _pa(self) -> pyaudio.PyAudio:
        if self._audio is None:
            self._audio = pyaudio.PyAudio()
        return self._audio

    def check_input(self) -> None:
        """Raise DeviceError(permanent=True) when there is no microphone at all."""
        try:
            info = self._pa().get_default_input_device_info()
        except (OSError, IOError) as e:
            raise DeviceError("No microphone available", permanent=True) from e
        logger.debug(f"Default input device: {info.get('name')}")

    def open_input(self) -> PyAudioInputSource:
        return PyAudioInputSource(self._pa())

    def open_output(self) -> PyAudioOutput:
        try:
            self._pa().get_default_output_device_info()
        except (OSError, IOError) as e:
            raise DeviceError("No speaker available", permanent=True) from e
        return PyAudioOutput(self._pa()).open()

    def terminate(self) -> None:
        audio, self._audio = self._audio, None
        if audio is not None:
            audio.terminate()
