"""REST clients - GET/POST/PUT/DELETE against one configured URL.

Every entry point returns a Response. Blank URLs, unserializable bodies,
transport failures, error statuses and cancellation are all reported through
Response.status and Response.internal_error rather than raised.

Usage:
    client = RestClient("https://api.example.com/widgets", retry_count=3)
    response = client.post({"name": "gizmo"})
    if response.succeeded:
        widget = response.decode_as(Widget)

    async_client = AsyncRestClient(config, error_type=ApiError)
    response = await async_client.get()
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from http.cookiejar import CookieJar
from typing import Any, Self

import httpx

from ekin_rest.models import ClientConfig, Method, PreparedRequest, Response
from ekin_rest.pipeline import (
    Outcome,
    cancelled_response,
    configuration_error_response,
    decode_content,
    effective_attempts,
    error_response,
    no_response,
    to_outcome,
    transport_error,
)
from ekin_rest.request_builder import build_client_kwargs, is_blank_url, prepare_request
from ekin_rest.serialization import SerializationError, to_json

logger = logging.getLogger(__name__)

# Faults raised while building or sending a request. InvalidURL and
# UnicodeEncodeError (non-ASCII in URL or header names) are not HTTPErrors.
_SEND_ERRORS = (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError)

# Raised by the httpx client constructor for a malformed proxy URL, or a socks
# proxy without socksio installed.
_CLIENT_ERRORS = (ValueError, ImportError, httpx.InvalidURL)


class _BaseClient:
    """Configuration, body staging and request preparation shared by both clients."""

    def __init__(
        self,
        config: ClientConfig | str,
        *,
        error_type: Any | None = None,
        transport: httpx.BaseTransport | httpx.AsyncBaseTransport | None = None,
        cookie_container: CookieJar | None = None,
        **overrides: Any,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration, or a URL to build one from.
            error_type: Type used to decode error response bodies. Any type
                accepted by pydantic.TypeAdapter.
            transport: Optional httpx transport (tests pass MockTransport).
            cookie_container: Optional cookie jar kept across calls.
            **overrides: ClientConfig fields to set or replace.
        """
        if isinstance(config, str):
            config = ClientConfig(url=config, **overrides)
        elif overrides:
            config = config.model_copy(update=overrides)
        self._config = config
        self._error_type = error_type
        self._transport = transport
        self._cookie_container = cookie_container

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def error_type(self) -> Any | None:
        return self._error_type

    @property
    def cookie_container(self) -> CookieJar | None:
        return self._cookie_container

    def with_url(self, url: str) -> Self:
        """Return a client of the same kind for another URL."""
        return type(self)(
            self._config.model_copy(update={"url": url}),
            error_type=self._error_type,
            transport=self._transport,
            cookie_container=self._cookie_container,
        )

    def _client_kwargs(self) -> dict[str, Any]:
        return build_client_kwargs(self._config, self._transport, self._cookie_container)

    def _open(
        self, client_class: type[httpx.Client] | type[httpx.AsyncClient]
    ) -> httpx.Client | httpx.AsyncClient | Response:
        """Create the httpx client, or the Response explaining why it cannot be made."""
        try:
            return client_class(**self._client_kwargs())
        except _CLIENT_ERRORS as e:
            logger.warning("Cannot create HTTP client for %s: %s", self._config.url, e)
            return configuration_error_response(f"Invalid proxy: {e}")

    def _prepare(self, method: Method, body: str | None = None) -> PreparedRequest | Response:
        """Build the request, or the Response explaining why no request is possible."""
        if is_blank_url(self._config.url):
            return configuration_error_response("URL empty")
        try:
            return prepare_request(self._config, method, body)
        except UnicodeEncodeError as e:
            return configuration_error_response(f"Header is not ASCII: {e}")

    @staticmethod
    def _stage(
        body: Any,
        serialize_nulls: bool,
        allow_reference_loops: bool,
    ) -> str | Response:
        """Body text for POST/PUT. Strings are sent literally, anything else as JSON."""
        if isinstance(body, str):
            return body
        try:
            return to_json(
                body,
                serialize_nulls=serialize_nulls,
                allow_reference_loops=allow_reference_loops,
            )
        except SerializationError as e:
            logger.warning("Request body could not be serialized: %s", e)
            return configuration_error_response(f"JSON Serialization Error: {e}")

    def _log_retry(self, prepared: PreparedRequest, outcome: Outcome, remaining: int) -> None:
        logger.warning(
            "%s %s failed (%s), %d attempt(s) left",
            prepared.method.value, prepared.url, outcome, remaining,
        )


class RestClient(_BaseClient):
    """Synchronous client. Each call blocks until done, including retry delays.

    Calls accept an optional ``cancel`` threading.Event. It is checked before
    every attempt and wakes the delay between attempts.
    """

    def get(self, *, cancel: threading.Event | None = None) -> Response:
        return self._execute(Method.GET, cancel=cancel)

    def post(
        self,
        body: Any,
        *,
        serialize_nulls: bool = False,
        allow_reference_loops: bool = True,
        cancel: threading.Event | None = None,
    ) -> Response:
        """POST ``body``.

        Args:
            body: Text sent as-is, or an object serialized to JSON.
            serialize_nulls: Include None-valued members in the JSON.
            allow_reference_loops: Write back-references for cyclic objects
                instead of failing.
            cancel: Optional event that stops the call.
        """
        staged = self._stage(body, serialize_nulls, allow_reference_loops)
        if isinstance(staged, Response):
            return staged
        return self._execute(Method.POST, staged, cancel)

    def put(
        self,
        body: Any,
        *,
        serialize_nulls: bool = False,
        allow_reference_loops: bool = True,
        cancel: threading.Event | None = None,
    ) -> Response:
        """PUT ``body``. Arguments as for post()."""
        staged = self._stage(body, serialize_nulls, allow_reference_loops)
        if isinstance(staged, Response):
            return staged
        return self._execute(Method.PUT, staged, cancel)

    def delete(self, *, cancel: threading.Event | None = None) -> Response:
        return self._execute(Method.DELETE, cancel=cancel)

    def _execute(
        self,
        method: Method,
        body: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Response:
        prepared = self._prepare(method, body)
        if isinstance(prepared, Response):
            return prepared

        attempts = effective_attempts(self._config.retry_count)
        remaining = attempts
        http = self._open(httpx.Client)
        if isinstance(http, Response):
            return http
        with http:
            while remaining > 0:
                if cancel is not None and cancel.is_set():
                    return cancelled_response()

                logger.debug(
                    "%s %s (attempt %d of %d)",
                    method.value, prepared.url, attempts - remaining + 1, attempts,
                )
                outcome = self._attempt(http, prepared)
                if isinstance(outcome, Response):
                    return outcome

                remaining -= 1
                if remaining == 0:
                    return error_response(outcome, self._error_type)

                self._log_retry(prepared, outcome, remaining)
                if self._wait_before_retry(cancel):
                    return cancelled_response()

        return no_response(self._config.retry_count)

    def _attempt(self, http: httpx.Client, prepared: PreparedRequest) -> Outcome:
        """Send once. The streamed response is closed on every path."""
        start_time = time.perf_counter()
        try:
            request = http.build_request(
                prepared.method.value,
                prepared.url,
                headers=prepared.headers,
                content=prepared.content,
            )
            response = http.send(request, stream=True)
        except _SEND_ERRORS as e:
            return transport_error(e)

        try:
            try:
                content = decode_content(response.read())
            except httpx.HTTPError as e:
                logger.debug("Discarding body that could not be read: %s", e)
                content = ""
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            return to_outcome(response, content, elapsed_ms)
        finally:
            response.close()

    def _wait_before_retry(self, cancel: threading.Event | None) -> bool:
        """Sleep between attempts. Returns True if the call was cancelled."""
        delay = self._config.sleep_between_retries
        if cancel is not None:
            return cancel.wait(delay) if delay > 0 else cancel.is_set()
        if delay > 0:
            time.sleep(delay)
        return False


class AsyncRestClient(_BaseClient):
    """asyncio client with the same entry points as RestClient.

    Calls accept an optional ``cancel`` asyncio.Event. Cancelling the task
    itself propagates asyncio.CancelledError as usual.
    """

    async def get(self, *, cancel: asyncio.Event | None = None) -> Response:
        return await self._execute(Method.GET, cancel=cancel)

    async def post(
        self,
        body: Any,
        *,
        serialize_nulls: bool = False,
        allow_reference_loops: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> Response:
        staged = self._stage(body, serialize_nulls, allow_reference_loops)
        if isinstance(staged, Response):
            return staged
        return await self._execute(Method.POST, staged, cancel)

    async def put(
        self,
        body: Any,
        *,
        serialize_nulls: bool = False,
        allow_reference_loops: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> Response:
        staged = self._stage(body, serialize_nulls, allow_reference_loops)
        if isinstance(staged, Response):
            return staged
        return await self._execute(Method.PUT, staged, cancel)

    async def delete(self, *, cancel: asyncio.Event | None = None) -> Response:
        return await self._execute(Method.DELETE, cancel=cancel)

    async def _execute(
        self,
        method: Method,
        body: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Response:
        prepared = self._prepare(method, body)
        if isinstance(prepared, Response):
            return prepared

        attempts = effective_attempts(self._config.retry_count)
        remaining = attempts
        http = self._open(httpx.AsyncClient)
        if isinstance(http, Response):
            return http
        async with http:
            while remaining > 0:
                if cancel is not None and cancel.is_set():
                    return cancelled_response()

                logger.debug(
                    "%s %s (attempt %d of %d)",
                    method.value, prepared.url, attempts - remaining + 1, attempts,
                )
                outcome = await self._attempt(http, prepared)
                if isinstance(outcome, Response):
                    return outcome

                remaining -= 1
                if remaining == 0:
                    return error_response(outcome, self._error_type)

                self._log_retry(prepared, outcome, remaining)
                if await self._wait_before_retry(cancel):
                    return cancelled_response()

        return no_response(self._config.retry_count)

    async def _attempt(self, http: httpx.AsyncClient, prepared: PreparedRequest) -> Outcome:
        start_time = time.perf_counter()
        try:
            request = http.build_request(
                prepared.method.value,
                prepared.url,
                headers=prepared.headers,
                content=prepared.content,
            )
            response = await http.send(request, stream=True)
        except _SEND_ERRORS as e:
            return transport_error(e)

        try:
            try:
                content = decode_content(await response.aread())
            except httpx.HTTPError as e:
                logger.debug("Discarding body that could not be read: %s", e)
                content = ""
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            return to_outcome(response, content, elapsed_ms)
        finally:
            await response.aclose()

    async def _wait_before_retry(self, cancel: asyncio.Event | None) -> bool:
        delay = self._config.sleep_between_retries
        if cancel is None:
            if delay > 0:
                await asyncio.sleep(delay)
            return False
        if delay <= 0:
            return cancel.is_set()
        try:
            await asyncio.wait_for(cancel.wait(), delay)
        except asyncio.TimeoutError:
            return False
        return True
