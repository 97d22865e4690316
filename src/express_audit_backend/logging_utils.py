"""
Logging setup and the per-invocation debug trace.

Webhook handlers log through module loggers.  When the service runs with
``log_level: debug`` each handler additionally collects its debug messages in
a :class:`DebugTrace`, which is attached to the response body under
``debug.<action>``.  Event senders and operators can then see exactly what one
invocation did without digging through interleaved logs from other requests.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, List

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return _LEVELS.get(str(level).lower(), logging.INFO)


def setup_logging(level: str | int = "info") -> logging.Logger:
    """
    Configure the root logger for the service.

    Args:
        level: Level name (``debug``, ``info``, ...) or numeric logging level

    Returns:
        The package logger
    """
    log_level = resolve_level(level)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)

    return logging.getLogger("express_audit_backend")


class DebugTrace:
    """Collects debug messages for one handler invocation."""

    def __init__(self, action: str, logger: logging.Logger, enabled: bool = False) -> None:
        self.action = action
        self.logger = logger
        self.enabled = enabled
        self.messages: List[Any] = []

    def __call__(self, message: Any) -> None:
        self.logger.debug("%s: %s", self.action, message)
        if not self.enabled:
            return
        if isinstance(message, str):
            self.messages.append({"debugMessage": message})
        else:
            self.messages.append(message)

    def attach(self, body: Any) -> Any:
        if not self.enabled or not isinstance(body, dict):
            return body
        debug: Dict[str, Any] = body.setdefault("debug", {})
        debug[self.action] = list(self.messages)
        return body
