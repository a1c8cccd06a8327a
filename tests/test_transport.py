"""Tests for the HTTP verification transport and transport selection."""

from urllib.parse import parse_qs

import httpx
import pytest

from activator.config import Settings
from activator.errors import FormSubmissionError, RateLimited, TransportFatal
from activator.services.transport import (
    IDENTITY,
    SECRET,
    BrowserTransport,
    HttpTransport,
    build_transport,
    find_login_form,
)

LINK = "https://club.example.com/activate/abc123"

EXPIRED_HTML = """
<html><body><div id="sign-up-theme">
  <p>We cannot find an account matching the confirmation email.</p>
  <form action="/resend" method="post">
    <input type="hidden" name="csrf" value="tok-1">
    <input type="text" name="username">
    <input type="password" name="password">
    <input type="submit" name="go" value="Send">
  </form>
</div></body></html>
"""


def test_find_login_form() -> None:
    form = find_login_form(EXPIRED_HTML, "password")
    assert form is not None
    assert form.action == "/resend"
    assert form.method == "post"
    assert form.data == {"csrf": "tok-1", "username": "", "password": ""}


def test_find_login_form_ignores_unrelated_forms() -> None:
    html = '<form action="/search"><input name="q"></form>'
    assert find_login_form(html, "password") is None


@pytest.mark.asyncio
async def test_fetch_returns_page_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="Your account is now active.")

    transport = HttpTransport(http_transport=httpx.MockTransport(handler))
    page = await transport.fetch(LINK)

    assert "now active" in page.content
    await page.session.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [403, 429, 503])
async def test_throttling_statuses_raise_rate_limited(status: int) -> None:
    transport = HttpTransport(
        http_transport=httpx.MockTransport(lambda request: httpx.Response(status, text="Forbidden"))
    )
    with pytest.raises(RateLimited):
        await transport.fetch(LINK)


@pytest.mark.asyncio
async def test_server_error_is_fatal() -> None:
    transport = HttpTransport(
        http_transport=httpx.MockTransport(lambda request: httpx.Response(500, text="oops"))
    )
    with pytest.raises(TransportFatal):
        await transport.fetch(LINK)


@pytest.mark.asyncio
async def test_connection_error_is_fatal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = HttpTransport(http_transport=httpx.MockTransport(handler))
    with pytest.raises(TransportFatal):
        await transport.fetch(LINK)


@pytest.mark.asyncio
async def test_fill_and_submit_posts_credentials() -> None:
    posted: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            assert request.url.path == "/resend"
            posted.append(parse_qs(request.content.decode()))
            return httpx.Response(200, text="We have sent you an email to verify your account.")
        return httpx.Response(200, text=EXPIRED_HTML)

    transport = HttpTransport(http_transport=httpx.MockTransport(handler))
    page = await transport.fetch(LINK)
    result = await page.session.fill_and_submit({IDENTITY: "foo", SECRET: "pw"})
    await page.session.close()

    assert "sent you an email" in result
    assert posted == [{"csrf": ["tok-1"], "username": ["foo"], "password": ["pw"]}]


@pytest.mark.asyncio
async def test_fill_and_submit_without_form() -> None:
    transport = HttpTransport(
        http_transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<p>nothing</p>"))
    )
    page = await transport.fetch(LINK)
    with pytest.raises(FormSubmissionError):
        await page.session.fill_and_submit({IDENTITY: "foo", SECRET: "pw"})
    await page.session.close()


@pytest.mark.asyncio
async def test_throttled_submission_did_not_land() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(503, text="busy")
        return httpx.Response(200, text=EXPIRED_HTML)

    transport = HttpTransport(http_transport=httpx.MockTransport(handler))
    page = await transport.fetch(LINK)
    with pytest.raises(FormSubmissionError):
        await page.session.fill_and_submit({IDENTITY: "foo", SECRET: "pw"})
    await page.session.close()


def test_build_transport_selects_backend() -> None:
    assert isinstance(build_transport(Settings(_env_file=None, transport="http")), HttpTransport)
    assert isinstance(build_transport(Settings(_env_file=None, transport="browser")), BrowserTransport)
