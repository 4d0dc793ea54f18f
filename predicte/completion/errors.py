# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Completion error taxonomy and user-notification policy.

Every failure inside the completion pipeline is expressed as a
``CompletionError`` carrying a machine-readable ``ErrorCode``. HTTP and
transport failures raised by ``httpx`` are mapped onto the taxonomy by
``classify_http_error``. ``ErrorNotifier`` decides which errors are worth
showing to the user and makes sure bursts of transient failures do not
produce a notification per keystroke.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Machine-readable completion error codes."""

    MISSING_API_KEY = "MISSING_API_KEY"
    INVALID_API_KEY = "INVALID_API_KEY"
    RATE_LIMIT = "RATE_LIMIT"
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    CANCELLED = "CANCELLED"
    API_ERROR = "API_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class CompletionError(Exception):
    """Base class for completion pipeline failures."""

    code: ErrorCode = ErrorCode.UNEXPECTED_ERROR
    retryable: bool = False
    transient: bool = False

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class MissingCredentialError(CompletionError):
    """No API key is configured."""

    code = ErrorCode.MISSING_API_KEY


class InvalidCredentialError(CompletionError):
    """The service rejected the API key."""

    code = ErrorCode.INVALID_API_KEY


class RateLimitedError(CompletionError):
    code = ErrorCode.RATE_LIMIT
    transient = True


class BadRequestError(CompletionError):
    code = ErrorCode.BAD_REQUEST


class RequestValidationError(CompletionError):
    code = ErrorCode.VALIDATION_ERROR


class ServiceUnavailableError(CompletionError):
    code = ErrorCode.SERVICE_UNAVAILABLE
    retryable = True
    transient = True


class NetworkError(CompletionError):
    code = ErrorCode.NETWORK_ERROR
    retryable = True
    transient = True


class RequestTimeoutError(CompletionError):
    code = ErrorCode.TIMEOUT_ERROR
    transient = True


class CompletionCancelledError(CompletionError):
    """The request was superseded or cancelled by the user."""

    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Request was cancelled", **kwargs):
        super().__init__(message, **kwargs)


class ApiError(CompletionError):
    """HTTP error status without a dedicated category."""

    code = ErrorCode.API_ERROR


class UnexpectedError(CompletionError):
    code = ErrorCode.UNEXPECTED_ERROR


CREDENTIAL_ERRORS: Tuple[type, ...] = (MissingCredentialError, InvalidCredentialError)

_STATUS_ERRORS: Dict[int, Tuple[type, str]] = {
    400: (BadRequestError, "Bad request. Check the completion settings"),
    401: (InvalidCredentialError, "Invalid API key. Update it and try again"),
    403: (InvalidCredentialError, "API key is not allowed to use this model"),
    422: (RequestValidationError, "Request validation failed"),
    429: (RateLimitedError, "Rate limit exceeded. Please wait a moment"),
}


def _response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except Exception:
        return ""
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return ""


def error_for_response(
    response: httpx.Response, cause: Optional[BaseException] = None
) -> CompletionError:
    """Build the taxonomy error for an HTTP error response.

    Args:
        response: Response with a 4xx or 5xx status; its body must be read
        cause: Originating exception, if any

    Returns:
        The matching CompletionError subclass instance
    """
    status = response.status_code
    detail = _response_detail(response)

    if status in _STATUS_ERRORS:
        error_cls, message = _STATUS_ERRORS[status]
    elif status >= 500:
        error_cls, message = ServiceUnavailableError, "Completion service is temporarily unavailable"
    else:
        error_cls, message = ApiError, f"Completion service returned HTTP {status}"

    if detail:
        message = f"{message}: {detail}"
    return error_cls(message, cause=cause, status_code=status)


def classify_http_error(error: BaseException) -> CompletionError:
    """Map an exception raised while talking to the service onto the taxonomy.

    Args:
        error: Exception raised by httpx or by the pipeline

    Returns:
        A CompletionError; CompletionErrors pass through unchanged
    """
    if isinstance(error, CompletionError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        return error_for_response(error.response, cause=error)
    if isinstance(error, httpx.TimeoutException):
        return RequestTimeoutError("Request timed out", cause=error)
    if isinstance(error, httpx.TransportError):
        return NetworkError(f"Network error: {error}", cause=error)
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return RequestTimeoutError("Request timed out", cause=error)
    return UnexpectedError(f"Unexpected error: {error}", cause=error)


class NotificationLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


Notify = Callable[[NotificationLevel, str], None]


class ErrorNotifier:
    """Decides which completion errors reach the user.

    - Cancellation is never shown.
    - Credential errors are shown once until the credential changes.
    - Transient errors (rate limit, network, timeout, service unavailable)
      are shown once per burst. A burst ends on the next success or after
      ``burst_window_s`` without further transient errors.
    - Other errors are shown once per distinct message until a success.
    """

    def __init__(
        self,
        notify: Optional[Notify] = None,
        burst_window_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._notify = notify
        self._burst_window_s = burst_window_s
        self._clock = clock
        self._credential_notified = False
        self._last_transient_at: Optional[float] = None
        self._reported_messages: set = set()

    def report(self, error: CompletionError) -> bool:
        """Record an error and notify the user if the policy allows it.

        Returns:
            True if a notification was emitted
        """
        if isinstance(error, CompletionCancelledError):
            logger.debug("Completion cancelled")
            return False

        if isinstance(error, CREDENTIAL_ERRORS):
            if self._credential_notified:
                return False
            self._credential_notified = True
            return self._emit(NotificationLevel.ERROR, error)

        if error.transient:
            now = self._clock()
            in_burst = (
                self._last_transient_at is not None
                and now - self._last_transient_at <= self._burst_window_s
            )
            self._last_transient_at = now
            if in_burst:
                logger.debug(f"Suppressed repeated transient error: {error}")
                return False
            return self._emit(NotificationLevel.WARNING, error)

        key = (error.code, error.message)
        if key in self._reported_messages:
            return False
        self._reported_messages.add(key)
        return self._emit(NotificationLevel.ERROR, error)

    def record_success(self) -> None:
        """End any transient burst after a successful request."""
        self._last_transient_at = None
        self._reported_messages.clear()

    def reset_credential_notice(self) -> None:
        """Re-arm credential notifications after the credential changed."""
        self._credential_notified = False

    def _emit(self, level: NotificationLevel, error: CompletionError) -> bool:
        if level == NotificationLevel.ERROR:
            logger.error(f"Completion failed: {error}")
        else:
            logger.warning(f"Completion failed: {error}")
        if self._notify is None:
            return True
        try:
            self._notify(level, error.message)
        except Exception as e:
            logger.warning(f"Error notification callback failed: {e}")
        return True
