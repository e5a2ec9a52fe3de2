"""Cookie-aware web client."""

from __future__ import annotations

from http.cookiejar import CookieJar
from typing import Any

import httpx


class CookieWebClient(httpx.Client):
    """httpx.Client that keeps its cookies in a caller-visible CookieJar.

    The jar is used in place, not copied, so the same ``cookie_container`` can
    be handed to other CookieWebClients or to RestClient(cookie_container=...)
    to carry a session across them.

    Usage:
        with CookieWebClient() as web:
            web.post("https://example.com/login", data={"user": "alice"})
            page = web.get("https://example.com/account")
    """

    def __init__(self, cookie_container: CookieJar | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("follow_redirects", True)
        if "cookies" in kwargs:
            raise TypeError("Pass cookie_container instead of cookies")
        self._cookie_container = cookie_container if cookie_container is not None else CookieJar()
        super().__init__(cookies=self._cookie_container, **kwargs)

    @property
    def cookie_container(self) -> CookieJar:
        return self._cookie_container

