"""
logging_config.py — Centralized Logging Configuration for the Checkout Service

This module configures unified logging behavior for the entire application.
Every webhook delivery is traceable through the `[Session: ...]` and
`[Order: ...]` prefixes that the workflow adds to its messages.

Features:
    • Combined console and file logging output
    • Process ID tagging (several workers may handle redeliveries of one session)
    • Standardized log format for all modules
    • Reduced verbosity for external dependencies (pika, httpx)
"""

import logging
import os
import sys

LOG_FILE = os.environ.get("CHECKOUT_LOG_FILE", "checkout_processing.log")

_NOISY_LIBRARIES = ("pika", "httpx", "httpcore")


def setup_logging(level: int = logging.INFO):
    """
    Configures root logging once, at import of the FastAPI app.

    Lines look like `<time> - INFO - [PID:12] - [Session: cs_...] Order created.`
    and the endpoint adds one `WEBHOOK_AUDIT event=... processed=true|false`
    line per delivery, which is what operators grep for when a delivery was
    acknowledged but not fully processed. Output goes to CHECKOUT_LOG_FILE
    (default `checkout_processing.log`) and stdout. pika, httpx and httpcore
    are held at WARNING so connection chatter does not bury the audit lines.
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler(sys.stdout)
        ]
    )

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.

    Returns:
        logging.Logger: A logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
