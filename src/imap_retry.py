"""
IMAP Retry Logic

Transparent retry wrapper for store connections that handles transient
server errors (e.g. Microsoft 365 "Server Busy") with exponential backoff.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import imap_common

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

# Commands the mail store adapter issues that return (typ, data) and are safe to repeat.
# LOGOUT is left out: a connection that is going away is not worth waiting for.
RETRYABLE_METHODS = frozenset({"list", "create", "select", "unselect", "uid", "append", "noop"})


def _is_transient_error(data) -> bool:
    """Check if IMAP response data contains transient error patterns."""
    for item in data or []:
        if isinstance(item, bytes) and any(pattern in item for pattern in TRANSIENT_PATTERNS):
            return True
    return False


def call_with_retry(
    command: Callable,
    *args,
    max_retries: int = 3,
    initial_wait: float = 5,
    log_fn: Callable[[str], None] = imap_common.safe_print,
    sleep_fn: Callable[[float], None] = time.sleep,
    **kwargs,
):
    """
    Run an IMAP command, repeating it while the server answers with a
    transient error. Waits initial_wait, then doubles it on every attempt.

    Returns the last (typ, data) result. Non-tuple results and non-transient
    failures are returned immediately.
    """
    result = None
    for attempt in range(max_retries):
        result = command(*args, **kwargs)
        if not isinstance(result, tuple) or len(result) < 2:
            return result
        typ, data = result[0], result[1]
        if typ == "OK" or not _is_transient_error(data):
            return result
        if attempt + 1 < max_retries:
            wait = initial_wait * (2**attempt)
            log_fn(f"Server busy, retrying in {wait}s... (attempt {attempt + 1}/{max_retries})")
            sleep_fn(wait)
    return result


class ConnectionProxy:
    """Wraps an imaplib.IMAP4 or IMAP4_SSL connection.

    Methods in RETRYABLE_METHODS go through call_with_retry; every other
    attribute (capabilities, logout, authenticate, ...) is passed through.
    """

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=imap_common.safe_print, sleep_fn=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn

    @property
    def wrapped(self):
        return self._conn

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            return call_with_retry(
                attr,
                *args,
                max_retries=self._max_retries,
                initial_wait=self._initial_wait,
                log_fn=self._log_fn,
                sleep_fn=self._sleep_fn,
                **kwargs,
            )

        return wrapper
