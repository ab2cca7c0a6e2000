from __future__ import annotations

import sqlite3
import urllib.error
from typing import Any


class PipelineError(Exception):
    pass


class NonRetriableError(PipelineError):
    """Structural failure: the task is dropped and never retried."""


class TransientError(PipelineError):
    """Failure worth retrying with backoff.

    ``payload_updates`` is merged into the payload of the retried task so a
    later attempt can resume work the failed attempt already persisted.
    """

    def __init__(self, message: str, payload_updates: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.payload_updates = dict(payload_updates or {})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, NonRetriableError):
        return False
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code >= 500 or exc.code == 429
    if isinstance(exc, (TimeoutError, ConnectionError, urllib.error.URLError)):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        return "locked" in str(exc) or "busy" in str(exc)
    return False
