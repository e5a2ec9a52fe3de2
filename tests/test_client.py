"""Tests for ekin_rest.client.RestClient.

Tests cover:
- Blank URLs short-circuit without any network attempt
- Entry points: verbs, literal and serialized bodies, serialization failures
- Retry loop: attempt counts, recovery, delays, protocol vs. transport faults
- Error payload decoding
- Body decoding (gzip, undecodable bytes)
- URL truncation, credentials, cookies, cancellation
"""

import gzip
import json
import threading
from http.cookiejar import CookieJar
from unittest.mock import patch

import httpx
import pytest
from pydantic import BaseModel

from ekin_rest.client import RestClient
from ekin_rest.models import UNUSED_STATUS, ClientConfig, Credentials
from ekin_rest.pipeline import (
    ConfigurationError,
    ProtocolError,
    RequestCancelled,
    TransportError,
)
from tests.conftest import RecordingTransport, connect_error, reply, scripted_transport

URL = "https://api.example.com/widgets"


class ApiError(BaseModel):
    code: int


class PlainApiError:
    code: int


class Widget(BaseModel):
    name: str
    price: float | None = None


def _call(client: RestClient, verb: str):
    if verb in ("post", "put"):
        return getattr(client, verb)("{}")
    return getattr(client, verb)()


class TestBlankUrl:
    """Blank URLs return a configuration error and never reach the transport."""

    @pytest.mark.parametrize("verb", ["get", "post", "put", "delete"])
    @pytest.mark.parametrize("url", ["", "   "])
    def test_no_network_attempt(self, verb: str, url: str, ok_transport: RecordingTransport) -> None:
        client = RestClient(url, transport=ok_transport)

        response = _call(client, verb)

        assert response.status == UNUSED_STATUS
        assert isinstance(response.internal_error, ConfigurationError)
        assert str(response.internal_error) == "URL empty"
        assert ok_transport.call_count == 0


class TestEntryPoints:
    def test_get(self, ok_transport: RecordingTransport) -> None:
        response = RestClient(URL, transport=ok_transport).get()

        assert response.succeeded
        assert response.status == 200
        assert response.status_description == "OK"
        assert json.loads(response.content) == {"ok": True}
        assert response.headers["content-type"] == ["application/json"]

        request = ok_transport.requests[0]
        assert request.method == "GET"
        assert str(request.url) == URL
        assert request.content == b""

    def test_delete(self, ok_transport: RecordingTransport) -> None:
        RestClient(URL, transport=ok_transport).delete()
        assert ok_transport.requests[0].method == "DELETE"

    def test_post_text_sent_literally(self, ok_transport: RecordingTransport) -> None:
        RestClient(URL, transport=ok_transport).post("name=gizmo")

        request = ok_transport.requests[0]
        assert request.method == "POST"
        assert request.content == b"name=gizmo"
        assert request.headers["content-type"] == "application/json; charset=utf-8"

    def test_put_object_serialized(self, ok_transport: RecordingTransport) -> None:
        RestClient(URL, transport=ok_transport).put(Widget(name="gizmo"))

        request = ok_transport.requests[0]
        assert request.method == "PUT"
        assert json.loads(request.content) == {"name": "gizmo"}

    def test_post_object_with_nulls(self, ok_transport: RecordingTransport) -> None:
        RestClient(URL, transport=ok_transport).post(Widget(name="gizmo"), serialize_nulls=True)

        assert json.loads(ok_transport.requests[0].content) == {"name": "gizmo", "price": None}

    @pytest.mark.parametrize("verb", ["post", "put"])
    def test_reference_loop_is_configuration_error(
        self, verb: str, ok_transport: RecordingTransport
    ) -> None:
        body: dict = {"name": "loop"}
        body["self"] = body

        response = getattr(RestClient(URL, transport=ok_transport), verb)(
            body, allow_reference_loops=False
        )

        assert response.status == UNUSED_STATUS
        assert isinstance(response.internal_error, ConfigurationError)
        assert str(response.internal_error).startswith("JSON Serialization Error:")
        assert ok_transport.call_count == 0

    def test_reference_loop_allowed_by_default(self, ok_transport: RecordingTransport) -> None:
        body: dict = {"name": "loop"}
        body["self"] = body

        response = RestClient(URL, transport=ok_transport).post(body)

        assert response.succeeded
        assert json.loads(ok_transport.requests[0].content) == {"name": "loop", "self": {"$ref": "#"}}

    @pytest.mark.parametrize("verb", ["get", "post", "put", "delete"])
    def test_invalid_proxy_is_configuration_error(self, verb: str) -> None:
        client = RestClient(URL, proxy="not-a-proxy")

        response = _call(client, verb)

        assert response.status == UNUSED_STATUS
        assert isinstance(response.internal_error, ConfigurationError)
        assert str(response.internal_error).startswith("Invalid proxy:")

    def test_non_ascii_header_is_configuration_error(self, ok_transport: RecordingTransport) -> None:
        client = RestClient(URL, headers={"X-Name": "héllo"}, transport=ok_transport)

        response = client.get()

        assert isinstance(response.internal_error, ConfigurationError)
        assert ok_transport.call_count == 0


class TestRetries:
    @pytest.mark.parametrize("retry_count, expected_calls", [(-2, 1), (0, 1), (1, 1), (3, 3)])
    def test_always_failing_transport(self, retry_count: int, expected_calls: int) -> None:
        transport = scripted_transport(connect_error())
        client = RestClient(URL, retry_count=retry_count, transport=transport)

        response = client.get()

        assert transport.call_count == expected_calls
        assert response.status == UNUSED_STATUS
        assert isinstance(response.internal_error, TransportError)
        assert isinstance(response.internal_error.original, httpx.ConnectError)

    def test_recovers_on_second_attempt(self) -> None:
        transport = scripted_transport(connect_error(), reply(201, content=b"second"))
        client = RestClient(URL, retry_count=3, transport=transport)

        response = client.get()

        assert transport.call_count == 2
        assert response.succeeded
        assert response.status == 201
        assert response.content == "second"

    def test_protocol_error_retried_then_reported(self) -> None:
        transport = scripted_transport(reply(500, content=b"boom"))
        client = RestClient(URL, retry_count=2, transport=transport)

        response = client.get()

        assert transport.call_count == 2
        assert response.status == 500
        assert isinstance(response.internal_error, ProtocolError)
        assert response.internal_error.body == "boom"
        assert response.content == ""

    def test_last_fault_wins(self) -> None:
        transport = scripted_transport(reply(503), connect_error())
        response = RestClient(URL, retry_count=2, transport=transport).get()

        assert response.status == UNUSED_STATUS
        assert isinstance(response.internal_error, TransportError)

    def test_sleeps_between_attempts_only(self) -> None:
        transport = scripted_transport(connect_error())
        client = RestClient(URL, retry_count=3, sleep_between_retries=0.25, transport=transport)

        with patch("ekin_rest.client.time.sleep") as mock_sleep:
            client.get()

        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(0.25)

    def test_no_sleep_without_delay(self) -> None:
        transport = scripted_transport(connect_error())
        client = RestClient(URL, retry_count=3, transport=transport)

        with patch("ekin_rest.client.time.sleep") as mock_sleep:
            client.get()

        mock_sleep.assert_not_called()

    def test_post_body_resent_on_retry(self) -> None:
        transport = scripted_transport(connect_error(), reply(200))
        RestClient(URL, retry_count=2, transport=transport).post("payload")

        assert [r.content for r in transport.requests] == [b"payload", b"payload"]


class TestErrorPayload:
    def test_decoded_error_body(self) -> None:
        transport = scripted_transport(reply(400, content=b'{"code":5}'))
        client = RestClient(URL, error_type=ApiError, transport=transport)

        response = client.get()

        assert response.status == 400
        assert response.internal_error == ApiError(code=5)
        assert not response.succeeded

    def test_malformed_error_body_falls_back_to_fault(self) -> None:
        transport = scripted_transport(reply(400, content=b"{code:"))
        client = RestClient(URL, error_type=ApiError, transport=transport)

        response = client.get()

        assert isinstance(response.internal_error, ProtocolError)
        assert response.internal_error.status_code == 400

    def test_no_error_type_keeps_fault(self) -> None:
        transport = scripted_transport(reply(422, content=b'{"code":5}'))
        response = RestClient(URL, transport=transport).get()

        assert isinstance(response.internal_error, ProtocolError)
        assert response.internal_error.body == '{"code":5}'

    def test_error_type_without_schema_keeps_fault(self) -> None:
        transport = scripted_transport(reply(400, content=b'{"code":5}'))
        client = RestClient(URL, error_type=PlainApiError, transport=transport)

        response = client.get()

        assert response.status == 400
        assert isinstance(response.internal_error, ProtocolError)

    def test_transport_failure_ignores_error_type(self) -> None:
        transport = scripted_transport(connect_error())
        response = RestClient(URL, error_type=ApiError, transport=transport).get()

        assert isinstance(response.internal_error, TransportError)


class TestBodyDecoding:
    def test_gzip_body_decompressed(self) -> None:
        transport = scripted_transport(
            reply(200, content=gzip.compress(b'{"zipped": true}'), headers={"Content-Encoding": "gzip"})
        )

        response = RestClient(URL, transport=transport).get()

        assert json.loads(response.content) == {"zipped": True}
        assert transport.requests[0].headers["accept-encoding"] == "gzip"

    def test_gzip_disabled_asks_for_identity(self, ok_transport: RecordingTransport) -> None:
        RestClient(URL, enable_gzip=False, transport=ok_transport).get()
        assert ok_transport.requests[0].headers["accept-encoding"] == "identity"

    def test_undecodable_body_is_empty(self) -> None:
        transport = scripted_transport(reply(200, content=b"\xff\xfe\xfa"))

        response = RestClient(URL, transport=transport).get()

        assert response.succeeded
        assert response.content == ""

    def test_corrupt_gzip_body_is_empty(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            # An explicit stream is decoded when the client reads it, not here.
            return httpx.Response(
                200,
                headers={"Content-Encoding": "gzip"},
                stream=httpx.ByteStream(b"not gzip"),
            )

        transport = RecordingTransport(handler)

        response = RestClient(URL, transport=transport).get()

        assert response.status == 200
        assert response.content == ""


class TestRequestShape:
    def test_long_url_truncated_per_call(self, ok_transport: RecordingTransport) -> None:
        url = URL + "?q=" + "a" * 2500
        client = RestClient(url, transport=ok_transport)

        client.get()

        assert str(ok_transport.requests[0].url) == url[:2000]
        assert client.config.url == url

    def test_caller_headers_sent(self, ok_transport: RecordingTransport) -> None:
        RestClient(URL, headers={"X-Api-Key": "k1"}, transport=ok_transport).get()

        headers = ok_transport.requests[0].headers
        assert headers["x-api-key"] == "k1"
        assert headers["user-agent"] == "EkinRest/1.3"
        assert headers["accept"] == "application/json"

    def test_credentials_attached(self, ok_transport: RecordingTransport) -> None:
        credentials = Credentials(username="alice", password="secret")
        RestClient(URL, credentials=credentials, transport=ok_transport).get()

        assert ok_transport.requests[0].headers["authorization"].startswith("Basic ")

    def test_config_object_with_overrides(self, ok_transport: RecordingTransport) -> None:
        config = ClientConfig(url=URL, retry_count=1)
        client = RestClient(config, retry_count=4, transport=ok_transport)

        assert client.config.retry_count == 4
        assert config.retry_count == 1

    def test_with_url(self, ok_transport: RecordingTransport) -> None:
        client = RestClient(URL, retry_count=2, error_type=ApiError, transport=ok_transport)
        other = client.with_url("https://api.example.com/orders")

        other.get()

        assert isinstance(other, RestClient)
        assert other.config.retry_count == 2
        assert other.error_type is ApiError
        assert client.config.url == URL
        assert str(ok_transport.requests[0].url) == "https://api.example.com/orders"

    def test_cookies_kept_across_calls(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if "session" in request.headers.get("cookie", ""):
                return httpx.Response(200, content=b"welcome back")
            return httpx.Response(200, headers={"Set-Cookie": "session=abc; Path=/"})

        transport = RecordingTransport(handler)
        jar = CookieJar()
        client = RestClient(URL, transport=transport, cookie_container=jar)

        client.get()
        response = client.get()

        assert response.content == "welcome back"
        assert any(cookie.name == "session" for cookie in jar)


class TestCancellation:
    def test_cancelled_before_start(self, ok_transport: RecordingTransport) -> None:
        cancel = threading.Event()
        cancel.set()

        response = RestClient(URL, transport=ok_transport).get(cancel=cancel)

        assert response.status == UNUSED_STATUS
        assert isinstance(response.internal_error, RequestCancelled)
        assert ok_transport.call_count == 0

    def test_cancel_stops_retries(self) -> None:
        cancel = threading.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            cancel.set()
            raise connect_error()

        transport = RecordingTransport(handler)
        client = RestClient(URL, retry_count=5, sleep_between_retries=30, transport=transport)

        response = client.post("x", cancel=cancel)

        assert transport.call_count == 1
        assert isinstance(response.internal_error, RequestCancelled)

    def test_unset_event_does_not_interfere(self) -> None:
        transport = scripted_transport(connect_error(), reply(200))
        client = RestClient(URL, retry_count=2, sleep_between_retries=0.01, transport=transport)

        response = client.get(cancel=threading.Event())

        assert response.succeeded
        assert transport.call_count == 2
