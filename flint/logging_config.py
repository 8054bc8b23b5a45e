"""Logging configuration for Flint."""

import logging
import sys


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure logging to capture provider SDK warnings in stdout.

    Sets up a root logger and adds a stream handler to output logs to
    stdout. Third-party HTTP and scheduler loggers are raised to WARNING
    so per-request chatter does not drown the sync summaries.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    root_logger.addHandler(handler)

    for name in ("snaptrade_client", "urllib3", "httpx", "httpcore", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info("Logging configured")


def mask_identifier(value: str | None, visible: int = 6) -> str:
    """Mask a remote identifier down to its last few characters."""
    if not value:
        return "<none>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"...{value[-visible:]}"
