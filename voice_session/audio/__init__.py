"""
Audio module: microphone capture and gap-free playback.

Key components:
- capture: AudioCapturePipeline (source -> compressor -> voice activity -> PCM encoder -> sink)
- playback: AudioPlaybackScheduler with a monotonic cursor and barge-in support
- devices: PyAudio capture and playback streams (imported lazily by the
  session controller so the rest of the package works without PortAudio)
"""

from voice_session.audio.capture import AudioCapturePipeline, AudioFrame
from voice_session.audio.playback import AudioPlaybackScheduler, PcmBuffer

__all__ = ["AudioCapturePipeline", "AudioFrame", "AudioPlaybackScheduler", "PcmBuffer"]
