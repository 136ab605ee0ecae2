"""Logging setup for the bridge process."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("aiohttp.access", "uvicorn.access", "httpx", "claude_agent_sdk")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging based on verbosity."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    # Quiet noisy libraries
    if log_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
