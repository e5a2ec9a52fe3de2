"""Redirect Resolver - Follows HTTP redirects and meta-refresh tags to a final URL.

Independent of the REST clients: each hop is a plain GET with redirects
disabled, so 301/302 responses and HTML refresh tags can be inspected one at
a time. Failures come back as strings starting with "ERROR: ".
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urljoin

import httpx

from ekin_rest.pipeline import ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_HOPS = 50

ERROR_PREFIX = "ERROR: "
CONNECTION_FAILURE = ERROR_PREFIX + "Connection failure"
TOO_MANY_REDIRECTS = ERROR_PREFIX + "Too many redirects"

REDIRECT_STATUSES = frozenset({301, 302})

_META_REFRESH = re.compile(r"http-equiv\W*refresh.+?url\W+?(.+)", re.IGNORECASE)
# Self-closing slash before the ">" of the tag.
_SELF_CLOSING = re.compile(r"\s+/\s*$")


def get_redirected_url(
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_hops: int | None = DEFAULT_MAX_HOPS,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """Return the URL that ``url`` finally leads to.

    Args:
        url: Starting URL.
        timeout: Timeout in seconds for each hop.
        max_hops: Maximum number of redirects to follow. None means no limit.
        transport: Optional httpx transport (tests pass MockTransport).

    Returns:
        The final URL, ``url`` itself when it does not redirect, or a string
        starting with "ERROR: " when a hop fails.
    """
    with httpx.Client(timeout=timeout, follow_redirects=False, transport=transport) as http:
        return _resolve(http, url, max_hops)


def _resolve(http: httpx.Client, url: str, hops_left: int | None) -> str:
    try:
        redirected_url = _next_url(http, url)
    except ProtocolError as e:
        if e.status_code == 404:
            return ERROR_PREFIX + str(e)
        logger.debug("Redirect lookup for %s failed: %s", url, e)
        return CONNECTION_FAILURE
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.debug("Redirect lookup for %s failed: %s", url, e)
        return CONNECTION_FAILURE

    if not redirected_url.strip():
        return url
    if redirected_url == url:
        # Page redirects to itself.
        return redirected_url

    if hops_left is not None:
        if hops_left <= 0:
            return TOO_MANY_REDIRECTS
        hops_left -= 1
    logger.debug("%s redirects to %s", url, redirected_url)
    return _resolve(http, redirected_url, hops_left)


def _next_url(http: httpx.Client, url: str) -> str:
    """The URL one hop away from ``url``, or "" if there is none.

    Raises:
        ProtocolError: The response status is 400 or above.
        httpx.HTTPError: No response was obtained.
    """
    with http.stream("GET", url) as response:
        if response.status_code in REDIRECT_STATUSES:
            location = response.headers.get("Location", "")
            if location.startswith("/"):
                location = urljoin(str(response.url), location)
            return location

        if response.status_code >= 400:
            raise ProtocolError(response.status_code, response.reason_phrase)

        text = response.read().decode("ascii", errors="replace")
        return extract_meta_refresh(text)


def extract_meta_refresh(html: str) -> str:
    """Target of a ``<meta http-equiv="refresh" content="0; url=...">`` tag, or ""."""
    match = _META_REFRESH.search(html)
    if match is None:
        return ""

    tag = match.group(0)
    start = tag.lower().find("url=")
    if start <= 0:
        return ""
    start += len("url=")

    end = tag.find(">", start)
    if end <= 0:
        return ""
    target = _SELF_CLOSING.sub("", tag[start:end])
    return target.strip().strip("\"'")
