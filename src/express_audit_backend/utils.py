"""
Helpers shared by the webhook handlers and stores.

This module provides helper functions for:
- Sanitizing identifiers for safe use as storage keys
- Ensuring directory creation
- Reading dotted paths out of nested event payloads
- Checking required request inputs and building error responses
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from .errors import MissingRequiredInput
from .models import WebhookResponse

# Pattern to match characters that are not safe for filesystem paths or object keys
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a storage-safe label from an external identifier.

    Args:
        label: The original identifier to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, storage-safe label or the fallback value

    Example:
        >>> sanitize_label("urn:aaid:aem:1234", "asset")
        "urn-aaid-aem-1234"
        >>> sanitize_label("@#$", "asset")
        "asset"
    """
    # Replace non-safe characters with hyphens
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    # Remove leading/trailing separators and convert to lowercase
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_nested(params: Any, dotted_path: str, default: Any = None) -> Any:
    """
    Read ``a.b.0.c`` style paths out of nested dicts and lists.

    Example:
        >>> get_nested({"event": {"body": {"jobId": "j1"}}}, "event.body.jobId")
        "j1"
        >>> get_nested({"outputs": [{"status": "failed"}]}, "outputs.0.status")
        "failed"
    """
    current = params
    for part in dotted_path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def check_missing_request_inputs(params: Mapping[str, Any], required: Iterable[str]) -> None:
    """
    Raise MissingRequiredInput naming every required dotted path that is absent or empty.
    """
    missing: List[str] = []
    for path in required:
        value = get_nested(params, path)
        if value is None or value == "":
            missing.append(path)
    if missing:
        raise MissingRequiredInput(missing)


def error_response(status_code: int, message: str, logger: Optional[logging.Logger] = None) -> WebhookResponse:
    """Build an error response and log it."""
    if logger is not None:
        logger.info(f"{status_code}: {message}")
    return WebhookResponse(status_code=status_code, body={"error": message})
