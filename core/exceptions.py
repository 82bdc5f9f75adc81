"""Shared exception types and failure classification for rebalancing."""

from enum import Enum
from typing import Optional

import requests


class ErrorKind(Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"
    CIRCUIT_OPEN = "circuit_open"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class RebalancerError(RuntimeError):
    """Base class for errors raised by the rebalancing core."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class RetryableError(RebalancerError):
    """Transient failure; the operation may succeed if attempted again."""

    kind = ErrorKind.RETRYABLE


class ExecutionTimeoutError(RetryableError):
    """An attempt did not finish within its timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"{operation} timed out after {timeout_seconds:.1f}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class FatalError(RebalancerError):
    """Non-retryable failure (validation, authorization, contract rejection)."""

    kind = ErrorKind.FATAL


class InvalidPortfolioInput(FatalError):
    """Raised when portfolio data or configuration is malformed."""


class CircuitOpenError(RebalancerError):
    """Raised without calling the dependency while a breaker is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, operation: str, retry_in_seconds: float = 0.0):
        super().__init__(
            f"Circuit breaker is OPEN for {operation} (retry in {max(retry_in_seconds, 0.0):.1f}s)"
        )
        self.operation = operation
        self.retry_in_seconds = retry_in_seconds


# Substrings seen on transient RPC / transaction-pool failures
TRANSIENT_MESSAGE_MARKERS = (
    "nonce has already been used",
    "nonce too low",
    "replacement fee too low",
    "replacement transaction underpriced",
    "already known",
    "unpredictable gas limit",
    "cannot estimate gas",
    "rate limit",
    "too many requests",
    "request timeout",
    "timed out",
    "network error",
    "connection reset",
)


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map an exception raised by an external call onto the error taxonomy.

    Typed errors keep their own kind. Transport failures from ``requests``:
    timeouts, connection errors, 429 and 5xx are retryable, any other HTTP
    error is fatal.
    Unknown errors are fatal unless their message carries a transient marker.
    """
    if isinstance(exc, RebalancerError):
        return exc.kind

    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return ErrorKind.RETRYABLE

    if isinstance(exc, requests.exceptions.HTTPError):
        response = exc.response
        status_code = response.status_code if response is not None else None
        if status_code is None:
            return ErrorKind.RETRYABLE
        if status_code == 429 or status_code >= 500:
            return ErrorKind.RETRYABLE
        return ErrorKind.FATAL

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.RETRYABLE

    message = str(exc).lower()
    if any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS):
        return ErrorKind.RETRYABLE

    return ErrorKind.FATAL


def error_for_kind(kind: Optional[ErrorKind], message: str) -> RebalancerError:
    """Build the typed exception for a failure reported as data (e.g. a submit result)."""
    if kind is ErrorKind.RETRYABLE:
        return RetryableError(message)
    return FatalError(message)
