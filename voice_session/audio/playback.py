"""
Gap-free, strictly ordered playback of the remote voice.

Each decoded buffer starts at ``max(now, cursor)`` and advances the cursor by
its duration, so consecutive buffers play back-to-back without the caller
managing any timing. An interruption (barge-in) stops everything in flight and
pulls the cursor back to the present.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import numpy as np

from voice_session.config.constants import (
    CHANNELS,
    LOGGER_NAME,
    OUTPUT_SAMPLE_RATE,
    SAMPLE_WIDTH,
)

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class PcmBuffer:
    """16-bit little-endian PCM audio received from the remote endpoint."""
    data: bytes
    sample_rate: int = OUTPUT_SAMPLE_RATE
    channels: int = CHANNELS

    @property
    def frame_count(self) -> int:
        return len(self.data) // (SAMPLE_WIDTH * self.channels)

    @property
    def duration(self) -> float:
        return self.frame_count / float(self.sample_rate)

    def resampled(self, sample_rate: int) -> "PcmBuffer":
        """Linear resample to ``sample_rate``, downmixing to mono."""
        if sample_rate == self.sample_rate and self.channels == 1:
            return self
        samples = np.frombuffer(self.data[: self.frame_count * SAMPLE_WIDTH * self.channels], dtype="<i2")
        samples = samples.reshape(-1, self.channels).mean(axis=1)
        target_count = int(round(len(samples) * sample_rate / float(self.sample_rate)))
        if target_count == 0 or len(samples) == 0:
            return PcmBuffer(b"", sample_rate, 1)
        positions = np.linspace(0, len(samples) - 1, target_count)
        converted = np.interp(positions, np.arange(len(samples)), samples)
        return PcmBuffer(converted.astype("<i2").tobytes(), sample_rate, 1)


@dataclass(frozen=True)
class ScheduledBuffer:
    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


class AudioOutput(Protocol):
    """A device sink that plays queued PCM sequentially."""

    def write(self, data: bytes) -> None: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


class AudioPlaybackScheduler:
    """
    Schedules PCM buffers on an output device with a monotonic cursor.

    The clock must advance in real time with the device (``time.monotonic`` for
    a device that pads silence when its queue runs dry). Only the event loop
    thread calls into the scheduler.
    """

    def __init__(
        self,
        output: Optional[AudioOutput] = None,
        clock: Callable[[], float] = time.monotonic,
        sample_rate: int = OUTPUT_SAMPLE_RATE,
    ):
        self._output = output
        self._clock = clock
        self.sample_rate = sample_rate
        self.cursor = 0.0
        self._in_flight: List[ScheduledBuffer] = []

    def attach(self, output: AudioOutput) -> None:
        self._output = output

    def detach(self) -> Optional[AudioOutput]:
        """Stop everything and hand the output device back to the caller."""
        self.interrupt()
        output, self._output = self._output, None
        return output

    def schedule(self, buffer: PcmBuffer) -> ScheduledBuffer:
        """
        Queue a buffer for playback right after everything already scheduled.

        Args:
            buffer: Decoded PCM from the remote voice

        Returns:
            ScheduledBuffer: When the buffer starts and how long it plays
        """
        if buffer.sample_rate != self.sample_rate or buffer.channels != 1:
            buffer = buffer.resampled(self.sample_rate)

        now = self._clock()
        self._reap(now)
        start = max(now, self.cursor)
        scheduled = ScheduledBuffer(start=start, duration=buffer.duration)
        self.cursor = scheduled.end
        self._in_flight.append(scheduled)

        if self._output is not None:
            self._output.write(buffer.data)
        else:
            logger.debug("No output device attached, buffer scheduled silently")
        return scheduled

    def interrupt(self) -> int:
        """
        Stop all in-flight playback immediately and reset the cursor to now.

        Returns:
            int: Number of buffers that were cut off
        """
        now = self._clock()
        self._reap(now)
        stopped = len(self._in_flight)
        if self._output is not None:
            try:
                self._output.flush()
            except Exception as e:
                logger.warning(f"Could not flush output device: {e}")
        self._in_flight.clear()
        self.cursor = now
        if stopped:
            logger.debug(f"Playback interrupted, {stopped} buffer(s) stopped")
        return stopped

    @property
    def in_flight(self) -> List[ScheduledBuffer]:
        self._reap(self._clock())
        return list(self._in_flight)

    @property
    def is_speaking(self) -> bool:
        self._reap(self._clock())
        return bool(self._in_flight)

    def _reap(self, now: float) -> None:
        if self._in_flight:
            self._in_flight = [item for item in self._in_flight if item.end > now]
