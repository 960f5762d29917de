"""
Tracing layer.

Sentry is initialised only when SENTRY_DSN is set; without it the SDK stays
a no-op and spans are still recorded locally, logged, and handed to any
registered listeners.

Public API:
  init_sentry()                       : configure the SDK from the environment
  start_span(op, name, attributes)    : scoped span, closed on every exit path
  capture_exception(exc)              : forward an error to Sentry
  add_span_listener / remove_span_listener
"""

import logging
import os
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import sentry_sdk

logger = logging.getLogger("snaptrace.instrument")

SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")
SENTRY_ENVIRONMENT: str = os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development"))
SENTRY_TRACES_SAMPLE_RATE: float = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "1.0"))
SENTRY_PROFILES_SAMPLE_RATE: float = float(os.getenv("SENTRY_PROFILES_SAMPLE_RATE", "1.0"))

SpanListener = Callable[["Span"], None]
_listeners: List[SpanListener] = []


class Span:
    """A finished-or-running span: name, attributes, outcome and duration."""

    def __init__(self, op: str, name: str, sentry_span: Any) -> None:
        self.op = op
        self.name = name
        self.attributes: Dict[str, Any] = {}
        self.error: Optional[BaseException] = None
        self.duration_ms: Optional[float] = None
        self._sentry_span = sentry_span

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value
        self._sentry_span.set_data(key, value)

    def __repr__(self) -> str:
        return f"Span(op={self.op!r}, name={self.name!r}, attributes={self.attributes!r})"


def init_sentry() -> bool:
    """Initialise the Sentry SDK. Returns False when no DSN is configured."""
    if not SENTRY_DSN:
        logger.info("SENTRY_DSN not set; spans are recorded locally only")
        return False

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=SENTRY_ENVIRONMENT,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=SENTRY_PROFILES_SAMPLE_RATE,
    )
    logger.info("Sentry initialised (environment=%s)", SENTRY_ENVIRONMENT)
    return True


@contextmanager
def start_span(op: str, name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    """
    Open a named span, apply *attributes*, run the body and close the span.

    An exception raised by the body is recorded on the span and re-raised.
    """
    with sentry_sdk.start_span(op=op, name=name) as sentry_span:
        span = Span(op, name, sentry_span)
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)

        started = time.perf_counter()
        try:
            yield span
        except Exception as exc:
            span.error = exc
            sentry_span.set_status("internal_error")
            raise
        finally:
            span.duration_ms = (time.perf_counter() - started) * 1000
            logger.debug("span op=%s duration_ms=%.1f attributes=%s", op, span.duration_ms, span.attributes)
            _notify(span)


def capture_exception(exc: BaseException) -> None:
    sentry_sdk.capture_exception(exc)


def add_span_listener(listener: SpanListener) -> None:
    _listeners.append(listener)


def remove_span_listener(listener: SpanListener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def _notify(span: Span) -> None:
    for listener in list(_listeners):
        try:
            listener(span)
        except Exception as exc:
            # A broken listener must never break the traced operation
            logger.warning("Span listener %r failed: %r", listener, exc)
