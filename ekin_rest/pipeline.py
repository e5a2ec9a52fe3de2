"""Execute Pipeline - Pieces shared by the sync and async clients.

Each step returns a value or an exception object instead of raising, so the
retry loops in ekin_rest.client only ever see one of:

    Response        -- the attempt succeeded
    TransportError  -- no response was obtained
    ProtocolError   -- a response arrived with status >= 400

and the outer boundary collapses the final outcome into a Response.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import PydanticSchemaGenerationError, TypeAdapter, ValidationError

from ekin_rest.models import UNUSED_STATUS, Response

logger = logging.getLogger(__name__)


class RestClientError(Exception):
    """Base class for errors captured in Response.internal_error."""


class ConfigurationError(RestClientError):
    """The call could not be made: blank URL, unserializable body or bad proxy."""


class TransportError(RestClientError):
    """No response was obtained (connection failure, timeout, ...)."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ProtocolError(RestClientError):
    """A response was obtained with a non-success status."""

    def __init__(
        self,
        status_code: int,
        reason: str = "",
        body: str = "",
        headers: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(f"The remote server returned an error: ({status_code}) {reason}.")
        self.status_code = status_code
        self.reason = reason
        self.body = body
        self.headers = headers or {}


class RequestCancelled(RestClientError):
    """The caller's cancel event was set before the call completed."""


Outcome = Response | TransportError | ProtocolError


def effective_attempts(retry_count: int) -> int:
    """Number of attempts for a configured retry count (never below 1)."""
    return max(retry_count, 1)


def decode_content(raw: bytes) -> str:
    """Decode a body as UTF-8 text; undecodable bodies become ""."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        logger.debug("Discarding body that is not valid UTF-8: %s", e)
        return ""


def response_headers(response: httpx.Response) -> dict[str, list[str]]:
    """Lowercase header names with list values."""
    headers: dict[str, list[str]] = {}
    for key, value in response.headers.multi_items():
        headers.setdefault(key.lower(), []).append(value)
    return headers


def to_outcome(response: httpx.Response, content: str, elapsed_ms: float) -> Response | ProtocolError:
    """Turn a received response into a success Response or a ProtocolError."""
    headers = response_headers(response)
    if response.status_code >= 400:
        return ProtocolError(response.status_code, response.reason_phrase, content, headers)
    return Response(
        status=response.status_code,
        status_description=response.reason_phrase,
        content=content,
        headers=headers,
        elapsed_ms=elapsed_ms,
    )


def transport_error(e: Exception) -> TransportError:
    return TransportError(f"{type(e).__name__}: {e}", original=e)


def error_payload(error: RestClientError, error_type: Any | None) -> Any:
    """Decode the fault's body as ``error_type``, or return the fault itself.

    Only a ProtocolError carries a body. Blank bodies, a missing error type and
    bodies that do not fit the type all fall back to the raw fault, as does a
    type pydantic cannot build a schema for.
    """
    body = error.body if isinstance(error, ProtocolError) else ""
    if body.strip() and error_type is not None:
        try:
            return TypeAdapter(error_type).validate_json(body)
        except ValidationError as e:
            logger.debug("Error body does not fit %r: %s", error_type, e)
        except PydanticSchemaGenerationError as e:
            logger.warning("Error type %r cannot be decoded: %s", error_type, e)
    return error


def error_response(error: RestClientError, error_type: Any | None = None) -> Response:
    """Final Response for a failed call."""
    if isinstance(error, ProtocolError):
        return Response(
            status=error.status_code,
            status_description=error.reason,
            headers=error.headers,
            internal_error=error_payload(error, error_type),
        )
    return Response(
        status=UNUSED_STATUS,
        status_description=str(error),
        internal_error=error_payload(error, error_type),
    )


def configuration_error_response(message: str) -> Response:
    """Response for a call stopped before any network activity."""
    return Response(
        status=UNUSED_STATUS,
        status_description=message,
        internal_error=ConfigurationError(message),
    )


def cancelled_response() -> Response:
    return Response(
        status=UNUSED_STATUS,
        status_description="Request cancelled",
        internal_error=RequestCancelled("Request cancelled"),
    )


def no_response(retry_count: int) -> Response:
    """Fallback when the retry loop ends without producing any outcome."""
    message = f"No response could be retrieved from destination after {retry_count} retries"
    return Response(
        status=408,
        status_description=message,
        content="",
        internal_error=TransportError(message),
    )
