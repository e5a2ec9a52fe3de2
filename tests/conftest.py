"""Pytest configuration and helpers for ekin-rest tests.

This file provides:
- RecordingTransport: httpx.MockTransport that records every request it sees
- reply / scripted_transport: build transports that play back a fixed sequence
  of responses and faults
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

Handler = Callable[[httpx.Request], httpx.Response]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps the requests it was asked to send.

    Works with both httpx.Client and httpx.AsyncClient.
    """

    def __init__(self, handler: Handler) -> None:
        self.requests: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(recording)

    @property
    def call_count(self) -> int:
        return len(self.requests)


def reply(
    status_code: int = 200,
    content: bytes | str = b"",
    headers: dict[str, str] | None = None,
    json: Any = None,
) -> Handler:
    """Handler returning a fresh response each time it is called."""

    def handler(request: httpx.Request) -> httpx.Response:
        if json is not None:
            return httpx.Response(status_code, headers=headers, json=json)
        return httpx.Response(status_code, headers=headers, content=content)

    return handler


def scripted_transport(*steps: Handler | Exception) -> RecordingTransport:
    """Transport that plays ``steps`` in order; the last step repeats.

    A step is either a handler (see reply()) or an exception to raise.
    """
    remaining = list(steps)

    def handler(request: httpx.Request) -> httpx.Response:
        step = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(step, Exception):
            raise step
        return step(request)

    return RecordingTransport(handler)


def connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("Connection refused")


@pytest.fixture
def ok_transport() -> RecordingTransport:
    """Transport that always answers 200 with a small JSON body."""
    return scripted_transport(reply(200, json={"ok": True}))
