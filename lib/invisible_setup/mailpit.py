from __future__ import annotations

import html
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import MailpitError

LOCAL_HOSTS = {"127.0.0.1", "localhost"}
LOCAL_PORT = 8025
REMOTE_PORT = 54324
RECENT_LIMIT = 5

_CODE_RE = re.compile(r"(?<!\d)\d{6}(?!\d)")
_HREF_RE = re.compile(r"""href=["'](https://[^"']+)["']""", re.IGNORECASE)
_TEXT_LINK_RE = re.compile(r"https://\S+")


@dataclass(frozen=True)
class MailpitEndpoint:
    api_base: str
    ui_url: str


@dataclass(frozen=True)
class MessageSummary:
    id: str
    subject: str
    date: str
    to: list[str] = field(default_factory=list)

    @property
    def recipient(self) -> str:
        return self.to[0] if self.to else ""


@dataclass
class AuthDetails:
    email: str
    message: MessageSummary
    code: str | None
    link: str | None
    others: list[MessageSummary] = field(default_factory=list)


def resolve_endpoint(server: str | None = None) -> MailpitEndpoint:
    host = (server or "127.0.0.1").strip() or "127.0.0.1"
    if host in LOCAL_HOSTS:
        ui = f"http://127.0.0.1:{LOCAL_PORT}"
    else:
        try:
            ipaddress.ip_address(host)
        except ValueError:
            if "/" in host or ":" in host:
                raise MailpitError(f"Invalid server address: {host}")
        ui = f"http://{host}:{REMOTE_PORT}"
    return MailpitEndpoint(api_base=f"{ui}/api/v1", ui_url=ui)


class MailpitClient:
    def __init__(
            self,
            endpoint: MailpitEndpoint,
            *,
            timeout_s: float = 10.0,
            transport: httpx.BaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self._client = httpx.Client(
            base_url=endpoint.api_base,
            timeout=timeout_s,
            headers={"User-Agent": "invisible-cli"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> MailpitClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get(self, path: str) -> Any:
        try:
            r = self._client.get(path)
        except httpx.RequestError as e:
            raise MailpitError(f"Could not connect to Mailpit at {self.endpoint.api_base}: {e}") from e
        if r.status_code >= 400:
            raise MailpitError(f"GET {path} failed with {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise MailpitError(f"GET {path} returned invalid JSON") from e

    def messages(self) -> list[MessageSummary]:
        data = self._get("/messages")
        items = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [_summary(item) for item in items if isinstance(item, dict)]

    def message(self, message_id: str) -> dict[str, Any]:
        data = self._get(f"/message/{message_id}")
        if not isinstance(data, dict):
            raise MailpitError(f"Unexpected response for message {message_id}")
        return data

    def messages_for(self, email: str, *, limit: int = RECENT_LIMIT) -> list[MessageSummary]:
        wanted = email.strip().lower()
        found = [m for m in self.messages() if m.recipient.lower() == wanted]
        return found[:limit]


def _summary(item: dict[str, Any]) -> MessageSummary:
    to_raw = item.get("To") or []
    to = [str(addr.get("Address") or "") for addr in to_raw if isinstance(addr, dict)]
    return MessageSummary(
        id=str(item.get("ID") or ""),
        subject=str(item.get("Subject") or ""),
        date=str(item.get("Date") or item.get("Created") or ""),
        to=to,
    )


def extract_code(html_body: str | None, text_body: str | None) -> str | None:
    for body in (html_body, text_body):
        if not body:
            continue
        match = _CODE_RE.search(body)
        if match:
            return match.group(0)
    return None


def extract_link(html_body: str | None, text_body: str | None) -> str | None:
    if html_body:
        match = _HREF_RE.search(html_body)
        if match:
            return html.unescape(match.group(1))
    if text_body:
        match = _TEXT_LINK_RE.search(text_body)
        if match:
            return match.group(0).rstrip(").,>")
    return None


def lookup_auth_details(client: MailpitClient, email: str) -> AuthDetails | None:
    found = client.messages_for(email)
    if not found:
        return None
    latest = found[0]
    full = client.message(latest.id)
    html_body = full.get("HTML") or None
    text_body = full.get("Text") or None
    return AuthDetails(
        email=email,
        message=latest,
        code=extract_code(html_body, text_body),
        link=extract_link(html_body, text_body),
        others=found[1:],
    )
