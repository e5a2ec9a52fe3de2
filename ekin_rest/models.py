"""Data models for ekin-rest.

All models use Pydantic v2. ClientConfig and PreparedRequest are frozen; a
Response is built once per call and handed back to the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, TypeVar

import httpx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PydanticSchemaGenerationError,
    TypeAdapter,
    ValidationError,
)

T = TypeVar("T")

# HTTP 306 is reserved ("Unused"). Used when no real protocol status applies:
# configuration errors, pure transport failures and cancelled calls.
UNUSED_STATUS = 306

DEFAULT_TIMEOUT = 100.0
DEFAULT_USER_AGENT = "EkinRest/1.3"


# =============================================================================
# Method Mapping
# =============================================================================


class Method(str, Enum):
    """HTTP verbs supported by the client. Values are the wire tokens."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"

    @property
    def has_body(self) -> bool:
        return self in (Method.POST, Method.PUT)


def method_token(method: Method | str) -> str:
    """Return the wire token for a verb. Unknown verbs raise ValueError."""
    return Method(method).value


# =============================================================================
# Client Configuration
# =============================================================================


class Credentials(BaseModel):
    """Username/password pair handed to httpx as an auth flow."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    username: str = Field(description="User name")
    password: str = Field(default="", description="Password")
    scheme: Literal["basic", "digest"] = Field(default="basic", description="Auth scheme")

    def to_auth(self) -> httpx.Auth:
        if self.scheme == "digest":
            return httpx.DigestAuth(self.username, self.password)
        return httpx.BasicAuth(self.username, self.password)


class ClientConfig(BaseModel):
    """Configuration for one logical destination.

    Frozen: derive a new destination with ``model_copy(update={...})``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    url: str = Field(default="", description="Target URL")
    credentials: Credentials | httpx.Auth | None = Field(
        default=None, description="Credentials attached to every request"
    )
    headers: dict[str, str] | None = Field(
        default=None, description="Headers sent verbatim (supports ${ENV_VAR} in config files)"
    )
    content_type: str = Field(default="application/json; charset=utf-8", description="Content-Type header")
    accept: str = Field(default="application/json", description="Accept header")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header")
    timeout: float | None = Field(
        default=None, description="Timeout in seconds (None or <= 0 uses DEFAULT_TIMEOUT)"
    )
    retry_count: int = Field(default=1, description="Attempts per call (values below 1 mean 1)")
    sleep_between_retries: float = Field(default=0.0, description="Delay in seconds between attempts")
    keep_alive: bool = Field(default=True, description="Send Connection: keep-alive")
    proxy: str | None = Field(default=None, description="Proxy URL")
    cache_control: str | None = Field(default=None, description="Cache-Control header value")
    enable_gzip: bool = Field(default=True, description="Negotiate gzip response encoding")

    @property
    def effective_timeout(self) -> float:
        if self.timeout is None or self.timeout <= 0:
            return DEFAULT_TIMEOUT
        return self.timeout


class ClientProfiles(BaseModel):
    """Top-level client profiles file structure."""

    model_config = ConfigDict(extra="forbid")

    clients: dict[str, ClientConfig] = Field(description="Profile name -> client config mapping")


# =============================================================================
# Request / Response
# =============================================================================


class PreparedRequest(BaseModel):
    """One ready-to-send request, derived from a ClientConfig at call time."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Method = Field(description="HTTP verb")
    url: str = Field(description="Target URL after truncation")
    headers: dict[str, str] = Field(default_factory=dict, description="Merged request headers")
    body: str | None = Field(default=None, description="Body text (POST/PUT only)")
    url_truncated: bool = Field(default=False, description="Whether the URL was shortened")

    @property
    def content(self) -> bytes | None:
        if self.body is None:
            return None
        return self.body.encode("utf-8")


class Response(BaseModel):
    """Normalized outcome of one call.

    ``internal_error`` set means the call did not succeed. ``status`` is the
    protocol status when one was received, otherwise UNUSED_STATUS.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: int = Field(default=UNUSED_STATUS, description="HTTP status code or UNUSED_STATUS")
    status_description: str = Field(default="", description="Reason phrase or diagnostic text")
    content: str = Field(default="", description="Body text (empty if undecodable)")
    internal_error: Any = Field(
        default=None, description="Captured fault or decoded error payload"
    )
    headers: dict[str, list[str]] = Field(
        default_factory=dict, description="Response headers (lowercase keys, array values)"
    )
    elapsed_ms: float | None = Field(default=None, description="Time of the final attempt")

    @property
    def succeeded(self) -> bool:
        return self.internal_error is None

    def decode_as(self, type_: type[T]) -> T | None:
        """Decode ``content`` as JSON into ``type_``.

        Returns None when content is blank, does not fit the type, or the type
        has no pydantic schema (plain classes without a validator).
        """
        if not self.content.strip():
            return None
        try:
            return TypeAdapter(type_).validate_json(self.content)
        except (ValidationError, PydanticSchemaGenerationError):
            return None
