"""
HTTP error handling utilities for the App Store Connect API.

Maps httpx failures to user-friendly error messages and determines
which errors are retryable.
"""

from typing import Any, Optional

import httpx

from .errors import APIError

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def _status_code(exception: Any) -> Optional[int]:
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code
    return None


def is_retryable_http_error(exception: Any) -> bool:
    """Determine if an HTTP error is retryable.

    Transient errors like network timeouts, connection failures, rate
    limiting (429) and 5xx responses should be retried with exponential
    backoff.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exception, httpx.RemoteProtocolError):
        return True
    status = _status_code(exception)
    return status in RETRYABLE_STATUS_CODES


def _error_detail(error: httpx.HTTPStatusError) -> str:
    """Extract the first App Store Connect error detail from a response."""
    try:
        payload = error.response.json()
    except ValueError:
        return ""
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if not errors:
        return ""
    first = errors[0]
    return first.get("detail") or first.get("title") or ""


def map_http_error(error: Exception, operation: str) -> dict[str, str]:
    """Map an HTTP error to a user-friendly message with hints.

    Args:
        error: The httpx exception
        operation: Description of the operation that failed (e.g., "certificate listing")

    Returns:
        Dictionary with keys:
        - error: User-friendly error message
        - hint: Actionable hint for resolving the issue
        - status: The HTTP status code, or the failure class for transport errors
    """
    if isinstance(error, httpx.TimeoutException):
        return {
            "error": f"Request timed out during {operation}",
            "hint": (
                "1. Check network connectivity\n"
                "2. App Store Connect may be slow; retry later\n"
                "3. Increase the HTTP timeout in configuration"
            ),
            "status": "TIMEOUT",
        }

    if isinstance(error, httpx.TransportError):
        return {
            "error": f"Could not reach App Store Connect during {operation}",
            "hint": (
                "1. Check network connectivity and proxy settings\n"
                "2. Check the Apple developer system status page"
            ),
            "status": "NETWORK_ERROR",
        }

    status = _status_code(error)
    if status is None:
        return {
            "error": f"Unknown error during {operation}: {error}",
            "hint": "Check the server logs for details.",
            "status": "UNKNOWN",
        }

    detail = _error_detail(error)
    suffix = f": {detail}" if detail else ""

    if status == 401:
        return {
            "error": f"Authentication failed during {operation}{suffix}",
            "hint": (
                "1. Verify the API key ID and issuer ID\n"
                "2. Check the AuthKey .p8 file matches the key ID\n"
                "3. Confirm the key has not been revoked"
            ),
            "status": str(status),
        }

    if status == 403:
        return {
            "error": f"Permission denied during {operation}{suffix}",
            "hint": (
                "1. The API key needs the Admin or App Manager role\n"
                "2. Accept any pending agreements in App Store Connect"
            ),
            "status": str(status),
        }

    if status == 404:
        return {
            "error": f"Resource not found during {operation}{suffix}",
            "hint": (
                "1. Verify the app identifier is registered for the team\n"
                "2. Check the resource was not deleted"
            ),
            "status": str(status),
        }

    if status == 409:
        return {
            "error": f"Request conflicts with current state during {operation}{suffix}",
            "hint": (
                "1. The team may be at its certificate limit; revoke the oldest certificate\n"
                "2. A resource with the same name may already exist"
            ),
            "status": str(status),
        }

    if status == 429:
        return {
            "error": f"Rate limit exceeded during {operation}",
            "hint": (
                "1. Wait and retry later\n"
                "2. Reduce API call frequency"
            ),
            "status": str(status),
        }

    if status >= 500:
        return {
            "error": f"App Store Connect is unavailable during {operation}{suffix}",
            "hint": (
                "1. Retry after a delay\n"
                "2. Check the Apple developer system status page"
            ),
            "status": str(status),
        }

    return {
        "error": f"Request failed during {operation}{suffix}",
        "hint": "Check the request parameters.",
        "status": str(status),
    }


def api_error_from_http(error: Exception, operation: str, **context: Any) -> APIError:
    """Build an APIError from an httpx failure.

    Args:
        error: The httpx exception
        operation: Description of the operation that failed
        **context: Extra context to attach

    Returns:
        APIError with a code matching the failure class
    """
    mapped = map_http_error(error, operation)
    status = _status_code(error)
    if status == 401:
        code = "API_AUTH_FAILED"
    elif status == 409:
        code = "CERTIFICATE_QUOTA_EXHAUSTED"
    elif status == 429:
        code = "API_RATE_LIMIT"
    elif is_retryable_http_error(error):
        code = "API_UNAVAILABLE"
    else:
        code = "API_REQUEST_FAILED"

    return APIError(
        mapped["error"],
        error_code=code,
        recovery_suggestions=[line.split(". ", 1)[-1] for line in mapped["hint"].splitlines()],
        context=dict(context, operation=operation, status=mapped["status"]),
        original=error,
        status_code=status,
    )
