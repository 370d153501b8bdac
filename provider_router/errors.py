"""
Error Classifier
================
Single place where raw backend failures are translated into the
ClassifiedError taxonomy. Matching is done on the error text and its
transport state only, never on which adapter raised it.
"""

import asyncio
import re

import httpx
import openai

from .types import ClassifiedError, ConstructionError, ErrorKind

# Checked in this order: some backends report quota exhaustion with wording
# that overlaps the access-denied markers.
QUOTA_MARKERS = (
    "429",
    "quota",
    "too many requests",
    "rate limit",
    "rate_limit",
    "resource exhausted",
    "resource_exhausted",
)
ACCESS_DENIED_MARKERS = ("403", "forbidden", "unauthorized")

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    openai.APIConnectionError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

QUOTA_MESSAGE = (
    "API quota exceeded. You have reached the rate limit. Please try using "
    "a different provider or wait for the quota to reset."
)
ACCESS_DENIED_MESSAGE = "API access denied. Please check your API key and billing status."


def format_http_error(exc: httpx.HTTPStatusError) -> str:
    """Format detailed error message from HTTP exception."""
    response = exc.response
    status_code = response.status_code
    message = response.reason_phrase or str(exc)
    retry_after = response.headers.get("Retry-After")

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_info = payload.get("error")
        if isinstance(error_info, dict):
            error_message = error_info.get("message")
            if error_message:
                message = error_message
        elif isinstance(error_info, str) and error_info:
            # Ollama reports {"error": "model 'x' not found"}
            message = error_info

    if retry_after:
        message = f"{message} Retry-After: {retry_after}."

    return f"HTTP {status_code}: {message}"


def describe_error(error: BaseException) -> str:
    """Best human-readable text for an error, used for matching"""
    if isinstance(error, httpx.HTTPStatusError):
        return format_http_error(error)
    text = str(error)
    if not text:
        return type(error).__name__
    return text


def _transport_endpoint(error: BaseException) -> str | None:
    if isinstance(error, httpx.RequestError):
        try:
            url = error.request.url
        except RuntimeError:
            return None
        return f"{url.scheme}://{url.netloc.decode()}"
    return None


def classify(error: BaseException, endpoint: str | None = None) -> ClassifiedError:
    """
    Map a raw failure to a ClassifiedError.

    Args:
        error: The exception raised by an outbound call
        endpoint: Base URL of the backend that was being contacted, embedded
            in the message of transport failures

    Returns:
        ClassifiedError carrying the original exception as `raw`
    """
    if isinstance(error, ConstructionError):
        return ClassifiedError(ErrorKind.CONSTRUCTION_ERROR, str(error), error)

    text = describe_error(error)
    lowered = text.lower()

    if any(marker in lowered for marker in QUOTA_MARKERS):
        return ClassifiedError(ErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE, error)

    if any(marker in lowered for marker in ACCESS_DENIED_MARKERS):
        return ClassifiedError(ErrorKind.ACCESS_DENIED, ACCESS_DENIED_MESSAGE, error)

    if isinstance(error, TRANSPORT_ERRORS):
        target = endpoint or _transport_endpoint(error) or "the configured endpoint"
        return ClassifiedError(
            ErrorKind.UNAVAILABLE,
            f"Failed to reach backend: {text}. Make sure it is running on {target}",
            error,
        )

    return ClassifiedError(ErrorKind.UNKNOWN, text, error)


def unsupported(capability_name: str, backend_name: str) -> ClassifiedError:
    """Error returned by the dispatcher without attempting any call"""
    return ClassifiedError(
        ErrorKind.UNSUPPORTED_CAPABILITY,
        f"{capability_name} is not supported by the {backend_name} provider. "
        "Switch to Gemini or OpenAI for this request.",
    )


_KEY_PATTERN = re.compile(
    r"(sk-|AIza|api[_-]?key|bearer\s+)[a-zA-Z0-9\-_]{20,}",
    flags=re.IGNORECASE,
)


def sanitize_for_logging(text: str, max_len: int = 100) -> str:
    """Sanitize text for safe logging (no sensitive data)"""
    if not text:
        return ""
    sanitized = _KEY_PATTERN.sub("[REDACTED]", text[:max_len])
    return sanitized + ("..." if len(text) > max_len else "")
