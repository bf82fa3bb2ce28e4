from __future__ import annotations

import httpx
import pytest

from invisible_setup.errors import MailpitError
from invisible_setup.mailpit import (
    MailpitClient,
    extract_code,
    extract_link,
    lookup_auth_details,
    resolve_endpoint,
)

MESSAGES = {
    "messages": [
        {"ID": "m3", "Subject": "Confirm your signup", "Date": "2026-01-03", "To": [{"Address": "User@Example.com"}]},
        {"ID": "m2", "Subject": "Hello", "Date": "2026-01-02", "To": [{"Address": "other@example.com"}]},
        {"ID": "m1", "Subject": "Old code", "Date": "2026-01-01", "To": [{"Address": "user@example.com"}]},
    ]
}

BODIES = {
    "m3": {
        "HTML": '<p>Your code is <b>482913</b></p><a href="https://chat.example.com/verify?token=a&amp;type=signup">Confirm</a>',
        "Text": "Your code is 482913",
    },
    "m1": {"HTML": "", "Text": "code 111111"},
}


def _transport(calls: list[str] | None = None) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        if request.url.path == "/api/v1/messages":
            return httpx.Response(200, json=MESSAGES)
        if request.url.path.startswith("/api/v1/message/"):
            message_id = request.url.path.rsplit("/", 1)[-1]
            if message_id in BODIES:
                return httpx.Response(200, json=BODIES[message_id])
        return httpx.Response(404, json={"error": "not found"})

    return httpx.MockTransport(_handler)


def test_resolve_endpoint() -> None:
    local = resolve_endpoint(None)
    assert local.api_base == "http://127.0.0.1:8025/api/v1"
    assert resolve_endpoint("localhost").ui_url == "http://127.0.0.1:8025"
    assert resolve_endpoint("203.0.113.8").api_base == "http://203.0.113.8:54324/api/v1"
    assert resolve_endpoint("example.com").ui_url == "http://example.com:54324"
    with pytest.raises(MailpitError):
        resolve_endpoint("http://example.com/")


def test_lookup_auth_details_uses_latest_message() -> None:
    calls: list[str] = []
    with MailpitClient(resolve_endpoint(None), transport=_transport(calls)) as client:
        details = lookup_auth_details(client, "user@example.com")

    assert details.message.id == "m3"
    assert details.code == "482913"
    assert details.link == "https://chat.example.com/verify?token=a&type=signup"
    assert [m.id for m in details.others] == ["m1"]
    assert calls == ["/api/v1/messages", "/api/v1/message/m3"]


def test_lookup_auth_details_no_match() -> None:
    with MailpitClient(resolve_endpoint(None), transport=_transport()) as client:
        assert lookup_auth_details(client, "nobody@example.com") is None


def test_client_errors_become_mailpit_errors() -> None:
    def _offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with MailpitClient(resolve_endpoint(None), transport=httpx.MockTransport(_offline)) as client:
        with pytest.raises(MailpitError, match="Could not connect"):
            client.messages()

    with MailpitClient(resolve_endpoint(None), transport=_transport()) as client:
        with pytest.raises(MailpitError, match="404"):
            client.message("missing")


def test_extract_code_prefers_html() -> None:
    assert extract_code("<p>123456</p>", "654321") == "123456"
    assert extract_code(None, "code: 654321.") == "654321"
    assert extract_code("1234567", None) is None


def test_extract_link_falls_back_to_text() -> None:
    assert extract_link("<p>no links</p>", "Open https://hub.example.com/auth?x=1).") == "https://hub.example.com/auth?x=1"
    assert extract_link(None, "http://insecure.example.com") is None
