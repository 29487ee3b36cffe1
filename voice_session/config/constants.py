"""
Constants and tuning values used throughout the session manager.

These values are fixed at build time. Audio formats follow the live endpoint's
requirements (16 kHz in, 24 kHz out, 16-bit mono PCM); the compressor values
mirror a browser DynamicsCompressorNode tuned for speech.
"""

# Logger name used throughout the application
LOGGER_NAME = "voice_session"

# Live endpoint
LIVE_API_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
DEFAULT_LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"
DEFAULT_VOICE_NAME = "Zephyr"
ASSISTANT_NAME = "Iskra"

# WebSocket configuration
CONNECTION_TIMEOUT = 30  # seconds, covers the socket handshake and setupComplete
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
WS_PING_INTERVAL = 5
WS_PING_TIMEOUT = 10
WS_CLOSE_POLICY_VIOLATION = 1008

# Audio formats
SAMPLE_WIDTH = 2  # bytes, 16-bit linear PCM
CHANNELS = 1
INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
CAPTURE_FRAME_SIZE = 4096  # samples per emitted frame
INPUT_MIME_TYPE = f"audio/pcm;rate={INPUT_SAMPLE_RATE}"
CAPTURE_QUEUE_SIZE = 32  # frames buffered between the device thread and the sender

# Dynamic range compressor
COMPRESSOR_THRESHOLD_DB = -50.0
COMPRESSOR_KNEE_DB = 10.0
COMPRESSOR_RATIO = 12.0
COMPRESSOR_ATTACK = 0.001  # seconds
COMPRESSOR_RELEASE = 0.25  # seconds

# Voice activity, measured like an 8-bit analyser: mean |byte - 128| over the window
VOICE_ACTIVITY_WINDOW = 512
VOICE_ACTIVITY_THRESHOLD = 1.5

# Retry policy
RETRY_BASE_DELAY = 3.0  # seconds, delay before attempt n is base * n
RETRY_MAX_ATTEMPTS = 5
RETRY_MAX_CYCLES = 3
RETRY_CYCLE_COOLDOWN = 60.0  # seconds

# Message prefixes
CONTEXT_PREFIX = "[CONTEXT]"
