import logging
import os
import sys


def configure_logging() -> None:
    """Configure root logging for the API process.

    Respects DEBUG env var (true/1/yes/on) to enable verbose logs.
    In non-debug mode INFO and above are shown and noisy third-party loggers are quieted.
    """
    debug_enabled = os.getenv("DEBUG", "false").strip().lower() in ("1", "true", "yes", "on")

    root = logging.getLogger()
    root.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    ))
    root.setLevel(logging.DEBUG if debug_enabled else logging.INFO)
    root.addHandler(stream_handler)

    if not debug_enabled:
        for noisy in ("uvicorn.access", "sqlalchemy.engine", "stripe", "urllib3"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
