"""Request Builder - Turns a ClientConfig into a ready-to-send request.

The builder never mutates the config. URL truncation, header merging and body
staging all land in a frozen PreparedRequest that lives for one call.
"""

from __future__ import annotations

import logging
from http.cookiejar import CookieJar
from typing import Any

import httpx

from ekin_rest.models import ClientConfig, Method, PreparedRequest

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2000

# URL-encoded comma. Long comma-separated query values are cut at a list
# boundary rather than mid-value.
ENCODED_COMMA = "%2C"


def is_blank_url(url: str | None) -> bool:
    """True if the URL is missing, empty or whitespace only."""
    return url is None or not url.strip()


def truncate_url(url: str, max_length: int = MAX_URL_LENGTH) -> str:
    """Shorten ``url`` to at most ``max_length`` characters.

    If the shortened URL contains an encoded comma, it is cut again just
    before the last one. A cut that splits an encoded comma in two drops the
    partial token.

    Args:
        url: The URL to shorten.
        max_length: Maximum length in characters.

    Returns:
        The URL unchanged if short enough, otherwise the shortened URL.
    """
    if len(url) <= max_length:
        return url

    cut = url[:max_length]
    index = cut.rfind(ENCODED_COMMA)
    if index != -1:
        return cut[:index]

    # No complete token fits; drop a token split by the cut ("%" or "%2").
    for partial in range(len(ENCODED_COMMA) - 1, 0, -1):
        start = max_length - partial
        if url.startswith(ENCODED_COMMA, start):
            return cut[:start]
    return cut


def build_headers(config: ClientConfig) -> dict[str, str]:
    """Merge caller headers with the content negotiation headers.

    Caller headers are kept verbatim. Accept, Content-Type and User-Agent are
    filled from the config only where the caller did not set them.
    """
    headers = httpx.Headers(config.headers or {})

    headers.setdefault("Accept", config.accept)
    headers.setdefault("Content-Type", config.content_type)
    headers.setdefault("User-Agent", config.user_agent)
    headers["Connection"] = "keep-alive" if config.keep_alive else "close"

    if config.cache_control:
        headers["Cache-Control"] = config.cache_control

    # httpx decodes gzip and deflate bodies itself; "identity" stops servers
    # from compressing when negotiation is off.
    headers["Accept-Encoding"] = "gzip" if config.enable_gzip else "identity"

    # Headers.raw keeps the caller's spelling of header names.
    encoding = headers.encoding
    return {key.decode(encoding): value.decode(encoding) for key, value in headers.raw}


def prepare_request(
    config: ClientConfig,
    method: Method,
    body: str | None = None,
) -> PreparedRequest:
    """Build the request for one call.

    Args:
        config: Client configuration. Must have a non-blank URL.
        method: HTTP verb.
        body: Staged body text. Sent only for POST and PUT.

    Returns:
        PreparedRequest with truncated URL, merged headers and body.
    """
    url = truncate_url(config.url)
    truncated = url != config.url
    if truncated:
        logger.warning(
            "URL shortened from %d to %d characters before sending", len(config.url), len(url)
        )

    return PreparedRequest(
        method=method,
        url=url,
        headers=build_headers(config),
        body=(body or "") if method.has_body else None,
        url_truncated=truncated,
    )


def build_client_kwargs(
    config: ClientConfig,
    transport: httpx.BaseTransport | httpx.AsyncBaseTransport | None = None,
    cookie_container: CookieJar | None = None,
) -> dict[str, Any]:
    """Build kwargs for httpx.Client / httpx.AsyncClient.

    Args:
        config: Client configuration.
        transport: Optional transport (tests pass httpx.MockTransport).
        cookie_container: Optional cookie jar shared across calls.

    Returns:
        Dictionary of kwargs for the httpx client constructor.
    """
    kwargs: dict[str, Any] = {
        "timeout": config.effective_timeout,
        "follow_redirects": True,
    }

    if config.credentials is not None:
        credentials = config.credentials
        kwargs["auth"] = credentials if isinstance(credentials, httpx.Auth) else credentials.to_auth()

    if transport is not None:
        kwargs["transport"] = transport
    elif config.proxy:
        kwargs["proxy"] = config.proxy

    # A CookieJar (not a dict or Cookies) is shared by httpx rather than copied.
    if cookie_container is not None:
        kwargs["cookies"] = cookie_container

    return kwargs
