"""Tests for the provider HTTP client."""
from __future__ import annotations

import io
import json
from typing import List
from urllib import error as urllib_error

import pytest

from paysync.app.billing import ProviderClient, ProviderError, TransportError
from paysync.config import load_provider_config


class FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class RecordingOpener:
    def __init__(self, body: bytes = b"{}", error: Exception = None) -> None:
        self.body = body
        self.error = error
        self.requests: List = []
        self.timeouts: List = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.body)


@pytest.fixture
def config():
    return load_provider_config(
        {
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_API_BASE": "https://stripe.test/",
            "STRIPE_TIMEOUT_SECONDS": "7.5",
        }
    )


def test_post_sends_encoded_form_body(config):
    opener = RecordingOpener(json.dumps({"id": "cus_1", "email": "me@example.com"}).encode())
    client = ProviderClient(config, urlopen=opener)

    result = client.post("/v1/customers", {"email": "me@example.com"})

    request = opener.requests[0]
    assert result == {"id": "cus_1", "email": "me@example.com"}
    assert request.get_method() == "POST"
    assert request.full_url == "https://stripe.test/v1/customers"
    assert request.data == b"email=me%40example.com"
    assert request.get_header("Authorization") == "Bearer sk_test_123"
    assert request.get_header("Stripe-version") == "2020-08-27"
    assert request.get_header("Content-type") == "application/x-www-form-urlencoded"
    assert opener.timeouts == [7.5]


def test_get_puts_params_in_query_string(config):
    opener = RecordingOpener(b'{"id": "upcoming"}')
    client = ProviderClient(config, urlopen=opener)

    client.get("/v1/invoices/upcoming", {"customer": "cus_1"})

    request = opener.requests[0]
    assert request.get_method() == "GET"
    assert request.full_url == "https://stripe.test/v1/invoices/upcoming?customer=cus_1"
    assert request.data is None


def test_delete_request(config):
    opener = RecordingOpener(b'{"id": "cus_1", "deleted": true}')
    client = ProviderClient(config, urlopen=opener)

    assert client.delete("/v1/customers/cus_1") == {"id": "cus_1", "deleted": True}
    assert opener.requests[0].get_method() == "DELETE"


def test_error_response_is_decoded(config):
    body = json.dumps({"error": {"message": "No such customer: cus_x", "type": "invalid_request_error"}})
    error = urllib_error.HTTPError(
        "https://stripe.test/v1/customers/cus_x", 404, "Not Found", {}, io.BytesIO(body.encode())
    )
    client = ProviderClient(config, urlopen=RecordingOpener(error=error))

    with pytest.raises(ProviderError) as excinfo:
        client.get("/v1/customers/cus_x")

    assert excinfo.value.status == 404
    assert excinfo.value.message == "No such customer: cus_x"
    assert excinfo.value.type == "invalid_request_error"


def test_error_response_without_json_body(config):
    error = urllib_error.HTTPError("https://stripe.test/v1/prices/p", 500, "Server Error", {}, io.BytesIO(b"oops"))
    client = ProviderClient(config, urlopen=RecordingOpener(error=error))

    with pytest.raises(ProviderError) as excinfo:
        client.get("/v1/prices/p")

    assert excinfo.value.status == 500
    assert excinfo.value.message == "Server Error"
    assert excinfo.value.type is None


def test_network_failure_is_transport_error(config):
    client = ProviderClient(config, urlopen=RecordingOpener(error=urllib_error.URLError("connection refused")))

    with pytest.raises(TransportError):
        client.get("/v1/customers/cus_1")


def test_unreadable_body_is_transport_error(config):
    client = ProviderClient(config, urlopen=RecordingOpener(b"<html>"))

    with pytest.raises(TransportError):
        client.get("/v1/customers/cus_1")
