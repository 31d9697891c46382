"""
Error taxonomy shared by the webhook processor and the sync scheduler.

Handlers and sync steps raise these; only the processor/scheduler decide the
resulting state transition:

  TransientError    → retried with backoff (store unavailable, 5xx, 403/429)
  RateLimitedError  → transient, but retried at the provider's reset time
  PermanentError    → dead-letter / failed immediately, no further retries
  NotFoundError     → permanent (resource deleted upstream, 404/410)

Duplicates and admission deferrals are not exceptions; they are reported as
result values (EnqueueResult.duplicate, Admission.allowed).
"""
import json
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError

TRANSIENT = "transient"
PERMANENT = "permanent"


class MirrorError(Exception):
    """Base class for classified pipeline errors."""

    kind = TRANSIENT


class TransientError(MirrorError):
    """A failure that may succeed if retried later."""

    kind = TRANSIENT


class RateLimitedError(TransientError):
    """The provider refused the call because the rate budget is exhausted."""

    def __init__(self, message: str, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at


class PermanentError(MirrorError):
    """A failure that will never succeed on retry (bad payload, gone resource)."""

    kind = PERMANENT


class NotFoundError(PermanentError):
    """The referenced provider resource does not exist (any more)."""


def classify_error(exc: BaseException) -> str:
    """Return TRANSIENT or PERMANENT for an arbitrary exception.

    Unclassified exceptions count as transient so they consume retry budget
    rather than dropping an event on the first hiccup.
    """
    if isinstance(exc, MirrorError):
        return exc.kind
    if isinstance(exc, (OperationalError, DBAPIError, httpx.TransportError)):
        return TRANSIENT
    if isinstance(exc, (KeyError, ValueError, TypeError, json.JSONDecodeError)):
        return PERMANENT
    return TRANSIENT
