# -*- coding: utf-8 -*-
"""
Logging configuration for the reminder worker.

Routes logs by severity for correct container/platform classification:
- INFO, WARNING → STDOUT
- ERROR, CRITICAL → STDERR

Uses QueueHandler + QueueListener so a scan never blocks on stdout/stderr
while it holds the scan lock.
"""

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener


class MaxLevelFilter(logging.Filter):
    """
    Allows only records up to a specified level (inclusive).
    Keeps ERROR/CRITICAL off stdout.
    """

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


_log_listener: QueueListener | None = None

# Chatty third-party loggers that would otherwise log every HTTP request
_NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp.access")


def setup_logging(level: str = "INFO"):
    """
    Install a QueueHandler on the root logger and start a QueueListener
    thread that owns the stream handlers.

    Must be called before any logger is used. Calling it again replaces
    the previous listener.
    """
    global _log_listener

    if _log_listener is not None:
        _stop_log_listener()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.DEBUG)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue = queue.Queue()
    root_logger.addHandler(QueueHandler(log_queue))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _log_listener = QueueListener(
        log_queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(_stop_log_listener)


def _stop_log_listener():
    """Stop the queue listener (called at exit)."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
