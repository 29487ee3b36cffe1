"""
Start the Live Voice Session control server.

The server owns the microphone, the speaker and the Gemini Live connection of
this machine; a local UI drives it over HTTP.

Usage:
    python run.py [--host HOST] [--port PORT] [--model MODEL] [--log-level LEVEL] [--reload]
"""

import argparse
import os
import sys
from pathlib import Path

import dotenv
import uvicorn

from voice_session.config.constants import DEFAULT_LIVE_MODEL
from voice_session.config.logging_config import configure_logging

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

env_file = Path(".env")
if env_file.exists():
    dotenv.load_dotenv(env_file)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live Voice Session control server")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"),
                        help="Interface to bind (HOST, default 127.0.0.1)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")),
                        help="Port to listen on (PORT, default 8000)")
    parser.add_argument("--model", default=os.getenv("GEMINI_LIVE_MODEL", DEFAULT_LIVE_MODEL),
                        help="Gemini Live model (GEMINI_LIVE_MODEL)")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS,
                        default=os.getenv("LOG_LEVEL", "INFO").upper(),
                        help="Log level (LOG_LEVEL, default INFO)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    # The app module is imported by uvicorn and reads its settings from the environment
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["GEMINI_LIVE_MODEL"] = args.model
    logger = configure_logging(args.log_level)

    if not os.getenv("GEMINI_API_KEY"):
        logger.error("GEMINI_API_KEY is not set; add it to the environment or to .env")
        sys.exit(1)

    logger.info(f"Serving the voice session on http://{args.host}:{args.port} (model {args.model})")
    uvicorn.run(
        "voice_session.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        http="h11",
        access_log=False,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
