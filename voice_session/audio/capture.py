"""
Microphone capture pipeline.

Stages, each single-purpose and testable on its own:

    InputSource -> bounded queue -> DynamicsCompressor -> VoiceActivityDetector -> PcmEncoder -> sink

The input source delivers raw int16 blocks on the audio device thread. They are
handed to the event loop through a bounded queue (oldest frame dropped when
full), and every later stage runs on the loop.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import numpy as np

from voice_session.config.constants import (
    CAPTURE_FRAME_SIZE,
    CAPTURE_QUEUE_SIZE,
    COMPRESSOR_ATTACK,
    COMPRESSOR_KNEE_DB,
    COMPRESSOR_RATIO,
    COMPRESSOR_RELEASE,
    COMPRESSOR_THRESHOLD_DB,
    INPUT_MIME_TYPE,
    INPUT_SAMPLE_RATE,
    LOGGER_NAME,
    SAMPLE_WIDTH,
    VOICE_ACTIVITY_THRESHOLD,
    VOICE_ACTIVITY_WINDOW,
)

logger = logging.getLogger(LOGGER_NAME)

_SILENCE_DB = -120.0


@dataclass(frozen=True)
class AudioFrame:
    """One fixed-size frame of 16-bit mono PCM ready to send."""
    pcm: bytes
    sample_rate: int = INPUT_SAMPLE_RATE
    mime_type: str = INPUT_MIME_TYPE

    @property
    def duration(self) -> float:
        return len(self.pcm) / float(SAMPLE_WIDTH * self.sample_rate)


@dataclass(frozen=True)
class CaptureHandle:
    sample_rate: int
    frame_size: int
    mime_type: str


class InputSource(Protocol):
    """A capture device delivering raw int16 blocks to a callback on its own thread."""

    def start(self, callback: Callable[[bytes], None]) -> None: ...

    def stop(self) -> None: ...


class DynamicsCompressor:
    """
    Feed-forward compressor with a soft knee and automatic makeup gain.

    Gain reduction follows the static curve of a browser DynamicsCompressorNode
    and is smoothed per sample with separate attack and release time constants.
    """

    def __init__(
        self,
        sample_rate: int = INPUT_SAMPLE_RATE,
        threshold_db: float = COMPRESSOR_THRESHOLD_DB,
        knee_db: float = COMPRESSOR_KNEE_DB,
        ratio: float = COMPRESSOR_RATIO,
        attack: float = COMPRESSOR_ATTACK,
        release: float = COMPRESSOR_RELEASE,
    ):
        self.threshold_db = threshold_db
        self.knee_db = knee_db
        self.ratio = ratio
        self._attack_coeff = math.exp(-1.0 / (attack * sample_rate))
        self._release_coeff = math.exp(-1.0 / (release * sample_rate))
        self._reduction_db = 0.0
        # Makeup gain restores loudness the way the browser node does: (1 / full-range gain) ** 0.6
        self.makeup_db = -0.6 * float(self.static_gain_db(np.array([0.0]))[0])

    def static_gain_db(self, level_db: np.ndarray) -> np.ndarray:
        """Gain (<= 0 dB) applied to a steady input at ``level_db``."""
        slope = 1.0 / self.ratio - 1.0
        over = level_db - self.threshold_db
        half_knee = self.knee_db / 2.0
        gain = np.zeros_like(level_db, dtype=np.float64)
        if self.knee_db > 0:
            in_knee = np.abs(over) <= half_knee
            gain[in_knee] = slope * (over[in_knee] + half_knee) ** 2 / (2.0 * self.knee_db)
        above = over > half_knee
        gain[above] = slope * over[above]
        return gain

    def process(self, block: np.ndarray) -> np.ndarray:
        if block.size == 0:
            return block.astype(np.float32)
        magnitude = np.maximum(np.abs(block), 1e-6)
        level_db = np.maximum(20.0 * np.log10(magnitude), _SILENCE_DB)
        target = self.static_gain_db(level_db)

        smoothed = np.empty_like(target)
        reduction = self._reduction_db
        attack, release = self._attack_coeff, self._release_coeff
        for i, wanted in enumerate(target):
            coeff = attack if wanted < reduction else release
            reduction = coeff * reduction + (1.0 - coeff) * wanted
            smoothed[i] = reduction
        self._reduction_db = reduction

        gain = np.power(10.0, (smoothed + self.makeup_db) / 20.0)
        return (block * gain).astype(np.float32)

    def reset(self) -> None:
        self._reduction_db = 0.0


class VoiceActivityDetector:
    """
    "User is speaking" signal from short-window average absolute amplitude.

    The window is measured like an 8-bit time-domain analyser: each sample maps
    to ``floor(128 * (1 + x))`` clamped to 0..255, and the signal is active when
    the mean distance from 128 exceeds the threshold.
    """

    def __init__(self, window: int = VOICE_ACTIVITY_WINDOW, threshold: float = VOICE_ACTIVITY_THRESHOLD):
        self.threshold = threshold
        self._window = np.zeros(window, dtype=np.float32)
        self.level = 0.0
        self.active = False

    def update(self, block: np.ndarray) -> bool:
        size = len(self._window)
        if len(block) >= size:
            self._window = block[-size:].astype(np.float32)
        elif len(block):
            self._window = np.concatenate((self._window[len(block):], block.astype(np.float32)))
        as_bytes = np.clip(np.floor(128.0 * (1.0 + self._window)), 0, 255)
        self.level = float(np.mean(np.abs(as_bytes - 128.0)))
        self.active = self.level > self.threshold
        return self.active

    def reset(self) -> None:
        self._window[:] = 0.0
        self.level = 0.0
        self.active = False


class PcmEncoder:
    """Float samples in [-1, 1] to 16-bit little-endian PCM frames."""

    def __init__(self, sample_rate: int = INPUT_SAMPLE_RATE, mime_type: str = INPUT_MIME_TYPE):
        self.sample_rate = sample_rate
        self.mime_type = mime_type

    def encode(self, block: np.ndarray) -> AudioFrame:
        pcm = (np.clip(block, -1.0, 1.0) * 32767.0).astype("<i2").tobytes()
        return AudioFrame(pcm=pcm, sample_rate=self.sample_rate, mime_type=self.mime_type)


def pcm_to_float(data: bytes) -> np.ndarray:
    """Decode 16-bit little-endian PCM to float32 samples in [-1, 1)."""
    usable = len(data) - (len(data) % SAMPLE_WIDTH)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0


class AudioCapturePipeline:
    """
    Acquires the microphone and emits compressed PCM frames to an async sink.

    ``start`` opens the device (raising DeviceError) and must be called from the
    event loop. ``stop`` halts frame emission and releases the device before it
    returns.
    """

    def __init__(
        self,
        source_factory: Callable[[], InputSource],
        sink: Callable[[AudioFrame], Awaitable[None]],
        on_voice_activity: Optional[Callable[[bool], None]] = None,
        sample_rate: int = INPUT_SAMPLE_RATE,
        frame_size: int = CAPTURE_FRAME_SIZE,
        queue_size: int = CAPTURE_QUEUE_SIZE,
    ):
        self._source_factory = source_factory
        self._sink = sink
        self._on_voice_activity = on_voice_activity
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.queue_size = queue_size
        self.compressor = DynamicsCompressor(sample_rate=sample_rate)
        self.detector = VoiceActivityDetector()
        self.encoder = PcmEncoder(sample_rate=sample_rate)
        self._source: Optional[InputSource] = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump_task: Optional[asyncio.Task] = None
        self.frames_emitted = 0
        self.frames_dropped = 0

    @property
    def active(self) -> bool:
        return self._source is not None

    @property
    def voice_active(self) -> bool:
        return self.detector.active

    def start(self) -> CaptureHandle:
        """
        Open the capture device and start emitting frames.

        Returns:
            CaptureHandle: Format of the frames being emitted

        Raises:
            DeviceError: If the microphone cannot be acquired
        """
        handle = CaptureHandle(self.sample_rate, self.frame_size, self.encoder.mime_type)
        if self.active:
            return handle

        self._loop = asyncio.get_running_loop()
        source = self._source_factory()
        self.compressor.reset()
        self.detector.reset()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._pump_task = self._loop.create_task(self._pump())
        self._source = source
        try:
            source.start(self._on_device_data)
        except Exception:
            self.stop()
            raise
        logger.info(f"Audio capture started at {self.sample_rate} Hz, {self.frame_size} samples per frame")
        return handle

    def stop(self) -> None:
        """Stop emitting frames and release the device synchronously."""
        source, self._source = self._source, None
        if source is not None:
            try:
                source.stop()
            except Exception as e:
                logger.warning(f"Error releasing capture device: {e}")
            logger.info("Audio capture stopped")
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        self._queue = None
        if self.detector.active:
            self.detector.reset()
            self._notify_voice_activity(False)

    def _on_device_data(self, data: bytes) -> None:
        # Runs on the audio device thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, data)
        except RuntimeError:
            logger.debug("Event loop closed, dropping captured audio")

    def _enqueue(self, data: bytes) -> None:
        queue = self._queue
        if queue is None:
            return
        if queue.full():
            queue.get_nowait()
            self.frames_dropped += 1
            logger.debug(f"Capture queue full, dropped oldest frame ({self.frames_dropped} total)")
        queue.put_nowait(data)

    async def _pump(self) -> None:
        queue = self._queue
        while True:
            data = await queue.get()
            frame = self.process_block(pcm_to_float(data))
            try:
                await self._sink(frame)
                self.frames_emitted += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Audio frame sink failed: {e}")

    def process_block(self, samples: np.ndarray) -> AudioFrame:
        """Run one block through compressor, voice activity detector and encoder."""
        was_active = self.detector.active
        compressed = self.compressor.process(samples)
        is_active = self.detector.update(compressed)
        if is_active != was_active:
            self._notify_voice_activity(is_active)
        return self.encoder.encode(compressed)

    def _notify_voice_activity(self, active: bool) -> None:
        if self._on_voice_activity is None:
            return
        try:
            self._on_voice_activity(active)
        except Exception as e:
            logger.warning(f"Voice activity listener failed: {e}")
