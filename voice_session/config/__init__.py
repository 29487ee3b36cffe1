"""
Configuration module for the live voice session manager.

Key components:
- constants: Fixed tuning constants for audio formats, the compressor, voice
  activity detection, retry timings and the live endpoint.
- logging_config: Console and rotating file logging for the whole package.

The tuning constants are deliberately not user-configurable at runtime. Only
secrets and server options (API key, model, host, port, log level) come from
the environment.

Usage examples:
```python
from voice_session.config.constants import LOGGER_NAME, INPUT_SAMPLE_RATE
from voice_session.config.logging_config import configure_logging

logger = configure_logging()
logger.info("Session manager started")
```
"""

# Config module initialization
