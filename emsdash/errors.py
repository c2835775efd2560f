"""Service-level exceptions and the helpers that turn them into safe client messages.

Services raise :class:`ActionError` subclasses for problems the user can fix.
Anything else is logged with its context and reported with a generic message,
so SQL text and tracebacks never reach a browser.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable, Dict, Union

from emsdash.http import Response, json_response

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong. Please try again."
DUPLICATE_ERROR = "A record with that value already exists. Please use a different value."
CSRF_ERROR = "Invalid or missing CSRF token."


class ActionError(Exception):
    status = "400 Bad Request"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ActionError):
    pass


class NotFoundError(ActionError):
    status = "404 Not Found"

    def __init__(self, entity: str):
        super().__init__(f"{entity} not found")
        self.entity = entity


class PermissionDenied(ActionError):
    status = "403 Forbidden"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


def is_unique_constraint_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.IntegrityError):
        return False
    text = str(exc).lower()
    return "unique" in text or "duplicate key" in text


def handle_action_error(context: str, exc: BaseException, fallback: str = GENERIC_ERROR) -> str:
    """Log ``exc`` server-side and return the message that is safe to show."""
    if isinstance(exc, ActionError):
        logger.info("%s rejected: %s", context, exc.message)
        return exc.message
    if is_unique_constraint_error(exc):
        logger.warning("%s hit a unique constraint: %s", context, exc)
        return DUPLICATE_ERROR
    logger.error("%s failed", context, exc_info=exc)
    return fallback


def error_status(exc: BaseException) -> str:
    if isinstance(exc, ActionError):
        return exc.status
    if is_unique_constraint_error(exc):
        return "409 Conflict"
    return "500 Internal Server Error"


def run_action(context: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Union[Dict[str, Any], Response]:
    """Call a service and wrap the outcome as ``{"ok": ...}``.

    A failure also carries the HTTP ``status`` for its exception. A call that
    builds its own :class:`Response` (a redirect or a download) passes through.
    """
    try:
        result = func(*args, **kwargs)
    except Exception as exc:
        return {"ok": False, "error": handle_action_error(context, exc), "status": error_status(exc)}
    if isinstance(result, Response):
        return result
    return {"ok": True, **(result or {})}


def api_error(message: str, status: str = "400 Bad Request") -> Response:
    return json_response({"ok": False, "error": message}, status=status)


def api_not_found(entity: str) -> Response:
    return api_error(f"{entity} not found", status="404 Not Found")


def api_bad_request(message: str) -> Response:
    return api_error(message, status="400 Bad Request")


def api_forbidden(message: str = "Insufficient permissions") -> Response:
    return api_error(message, status="403 Forbidden")


def api_server_error(message: str = GENERIC_ERROR) -> Response:
    return api_error(message, status="500 Internal Server Error")
