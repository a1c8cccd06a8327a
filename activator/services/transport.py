"""Verification transports: fetch an activation link and drive the resubmit form.

Two interchangeable backends behind one interface:
- ``http``: httpx, reads the resubmit form from the page HTML and posts it
- ``browser``: Playwright, fills and submits the form in a real page

Every ``fetch`` opens an isolated session (own cookie jar / browser context)
that the caller must ``close()``.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from activator.config import Settings
from activator.errors import FormSubmissionError, RateLimited, TransportFatal

logger = logging.getLogger(__name__)

IDENTITY = "identity"
SECRET = "secret"

# Statuses the activation endpoint answers with while throttling
RATE_LIMIT_STATUSES = frozenset({403, 429, 503})
RATE_LIMIT_TITLE = "403 Forbidden"


class VerificationSession(Protocol):
    async def fill_and_submit(self, fields: Mapping[str, str]) -> str: ...

    async def navigate(self, url: str) -> str: ...

    async def close(self) -> None: ...


@dataclass
class VerificationPage:
    content: str
    session: VerificationSession


class VerificationTransport(Protocol):
    async def fetch(self, url: str) -> VerificationPage: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# Plain HTTP
# ---------------------------------------------------------------------------


@dataclass
class LoginForm:
    action: str
    method: str
    data: dict[str, str] = field(default_factory=dict)


def find_login_form(html: str, secret_field: str) -> LoginForm | None:
    """Return the first form on the page that carries a ``secret_field`` input."""
    soup = BeautifulSoup(html, "html.parser")
    for form in soup.find_all("form"):
        if form.find("input", attrs={"name": secret_field}) is None:
            continue
        data = {}
        for element in form.find_all("input"):
            name = element.get("name")
            if not name or element.get("type", "").lower() in ("submit", "button", "image"):
                continue
            data[name] = element.get("value", "")
        return LoginForm(
            action=form.get("action", ""),
            method=form.get("method", "post").lower(),
            data=data,
        )
    return None


async def _http_request(
    client: httpx.AsyncClient, method: str, url: str, **kwargs: object
) -> httpx.Response:
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransportFatal(f"Request to {url} timed out") from e
    except httpx.RequestError as e:
        raise TransportFatal(f"Request to {url} failed: {e}") from e

    if resp.status_code in RATE_LIMIT_STATUSES:
        raise RateLimited(f"HTTP {resp.status_code} from {url}")
    if resp.status_code >= 400:
        logger.error("%s %s returned %d: %s", method.upper(), url, resp.status_code, resp.text[:500])
        raise TransportFatal(f"HTTP {resp.status_code} from {url}")
    return resp


class HttpSession:
    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        content: str,
        identity_field: str,
        secret_field: str,
    ) -> None:
        self._client = client
        self._url = url
        self._content = content
        self._identity_field = identity_field
        self._secret_field = secret_field

    async def navigate(self, url: str) -> str:
        resp = await _http_request(self._client, "get", url)
        self._url = str(resp.url)
        self._content = resp.text
        return self._content

    async def fill_and_submit(self, fields: Mapping[str, str]) -> str:
        form = find_login_form(self._content, self._secret_field)
        if form is None:
            raise FormSubmissionError(f"No login form on {self._url}")

        data = dict(form.data)
        data[self._identity_field] = fields[IDENTITY]
        data[self._secret_field] = fields[SECRET]
        target = urljoin(self._url, form.action)

        logger.debug("Submitting form to %s...", target)
        try:
            if form.method == "get":
                resp = await _http_request(self._client, "get", target, params=data)
            else:
                resp = await _http_request(self._client, "post", target, data=data)
        except RateLimited as e:
            raise FormSubmissionError(f"Form submission throttled: {e}") from e

        self._url = str(resp.url)
        self._content = resp.text
        return self._content

    async def close(self) -> None:
        await self._client.aclose()


class HttpTransport:
    def __init__(
        self,
        *,
        timeout: float = 30.0,
        identity_field: str = "username",
        secret_field: str = "password",
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._identity_field = identity_field
        self._secret_field = secret_field
        self._http_transport = http_transport

    async def fetch(self, url: str) -> VerificationPage:
        client = httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._http_transport,
        )
        session = HttpSession(client, url, "", self._identity_field, self._secret_field)
        try:
            content = await session.navigate(url)
        except BaseException:
            await session.close()
            raise
        return VerificationPage(content=content, session=session)

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Browser automation
# ---------------------------------------------------------------------------


class BrowserSession:
    def __init__(
        self,
        context,  # playwright BrowserContext
        page,  # playwright Page
        *,
        ready_selector: str,
        timeout: float,
        identity_field: str,
        secret_field: str,
    ) -> None:
        self._context = context
        self._page = page
        self._ready_selector = ready_selector
        self._timeout_ms = timeout * 1000
        self._identity_field = identity_field
        self._secret_field = secret_field

    async def _wait_ready(self) -> str:
        try:
            await self._page.wait_for_selector(self._ready_selector, timeout=self._timeout_ms)
        except PlaywrightTimeoutError as e:
            title = await self._page.title()
            if title == RATE_LIMIT_TITLE:
                raise RateLimited(f"{RATE_LIMIT_TITLE} at {self._page.url}") from e
            raise TransportFatal(f"Page {self._page.url} never became ready: {e}") from e
        return await self._page.content()

    async def navigate(self, url: str) -> str:
        try:
            await self._page.goto(url, wait_until="domcontentloaded")
        except PlaywrightError as e:
            raise TransportFatal(f"Navigation to {url} failed: {e}") from e
        return await self._wait_ready()

    async def fill_and_submit(self, fields: Mapping[str, str]) -> str:
        identity = f'[name="{self._identity_field}"]'
        secret = f'[name="{self._secret_field}"]'
        try:
            await self._page.wait_for_selector(self._ready_selector, timeout=self._timeout_ms)
            logger.debug("Writing username...")
            await self._page.fill(identity, fields[IDENTITY], timeout=self._timeout_ms)
            logger.debug("Writing password...")
            await self._page.fill(secret, fields[SECRET], timeout=self._timeout_ms)
            logger.debug("Submitting form...")
            async with self._page.expect_navigation(timeout=self._timeout_ms):
                await self._page.press(secret, "Enter")
            await self._page.wait_for_selector(self._ready_selector, timeout=self._timeout_ms)
            return await self._page.content()
        except PlaywrightError as e:
            raise FormSubmissionError(f"Form submission on {self._page.url} did not land: {e}") from e

    async def close(self) -> None:
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.warning("Failed to close browser context: %s", e)


class BrowserTransport:
    """Playwright backend. One shared browser, one context per verification."""

    def __init__(
        self,
        *,
        browser_name: str = "chromium",
        headless: bool = True,
        ready_selector: str = "#sign-up-theme",
        timeout: float = 5.0,
        identity_field: str = "username",
        secret_field: str = "password",
    ) -> None:
        self._browser_name = browser_name
        self._headless = headless
        self._ready_selector = ready_selector
        self._timeout = timeout
        self._identity_field = identity_field
        self._secret_field = secret_field
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is None:
                logger.debug("Launching %s browser (headless=%s)", self._browser_name, self._headless)
                self._playwright = await async_playwright().start()
                launcher = getattr(self._playwright, self._browser_name)
                self._browser = await launcher.launch(headless=self._headless)
            return self._browser

    async def fetch(self, url: str) -> VerificationPage:
        try:
            browser = await self._ensure_browser()
            context = await browser.new_context()
            page = await context.new_page()
        except PlaywrightError as e:
            raise TransportFatal(f"Failed to start browser session: {e}") from e

        session = BrowserSession(
            context,
            page,
            ready_selector=self._ready_selector,
            timeout=self._timeout,
            identity_field=self._identity_field,
            secret_field=self._secret_field,
        )
        try:
            content = await session.navigate(url)
        except BaseException:
            await session.close()
            raise
        return VerificationPage(content=content, session=session)

    async def aclose(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


def build_transport(settings: Settings) -> VerificationTransport:
    if settings.transport == "browser":
        return BrowserTransport(
            browser_name=settings.browser_name,
            headless=settings.browser_headless,
            ready_selector=settings.page_ready_selector,
            timeout=settings.page_load_timeout,
            identity_field=settings.form_identity_field,
            secret_field=settings.form_secret_field,
        )
    return HttpTransport(
        timeout=settings.http_timeout,
        identity_field=settings.form_identity_field,
        secret_field=settings.form_secret_field,
    )
