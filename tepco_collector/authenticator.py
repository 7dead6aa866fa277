"""TEPCO browser login.

TEPCO's login page (Auth0 behind epauth.tepco.co.jp) cannot be driven with
plain HTTP requests, so login runs a real Chromium session via Playwright.
The bearer token is never shown on the page: it is captured from the first
request the Kurashi web app makes to the kcx API after login.

Every login attempt owns its own browser, which is closed on all exit paths.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Request, async_playwright

logger = logging.getLogger("tepco-collector.auth")

TEPCO_LOGIN_URL = "https://epauth.tepco.co.jp/u/login"
TEPCO_TOP_URL = "https://www.tepco.co.jp"
TEPCO_API_HOST = "kcx-api.tepco-z.com"

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-http2",  # TEPCO's CDN drops HTTP/2 streams from headless Chromium
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--no-first-run",
    "--no-default-browser-check",
]

EXTRA_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9,ja;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Upgrade-Insecure-Requests": "1",
}

# Hide the most common automation markers from bot detection
HIDE_AUTOMATION_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en', 'ja'] });
"""

LOGIN_FORM_SELECTORS = [
    'input[type="email"]',
    'input[name="email"]',
    'input[type="text"]',
    'input[placeholder*="email" i]',
    'input[placeholder*="メール" i]',
    'input[placeholder*="ログイン" i]',
    'input[id*="email" i]',
    'input[id*="login" i]',
]

USERNAME_SELECTOR = 'input[type="email"], input[name="email"], input[type="text"]'
PASSWORD_SELECTOR = 'input[type="password"], input[name="password"]'
SUBMIT_SELECTOR = (
    'button[type="submit"], input[type="submit"], '
    'button:has-text("ログイン"), button:has-text("Login")'
)

STORAGE_TOKEN_SCRIPT = """
() => localStorage.getItem('access_token') ||
      localStorage.getItem('bearer_token') ||
      sessionStorage.getItem('access_token') ||
      sessionStorage.getItem('bearer_token')
"""


class AuthErrorKind(str, Enum):
    """Ways a login attempt can fail."""

    CREDENTIALS_NOT_CONFIGURED = "credentials_not_configured"
    FLOW_UNREACHABLE = "flow_unreachable"
    LOGIN_FORM_NOT_FOUND = "login_form_not_found"
    TOKEN_NOT_OBSERVED = "token_not_observed"


class AuthenticationError(Exception):
    """A login step failed. Converted to an AuthResult at the login() boundary."""

    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a login attempt: a token, or the reason there is none."""

    token: Optional[str] = None
    error: Optional[AuthErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.token is not None

    @classmethod
    def success(cls, token: str) -> "AuthResult":
        return cls(token=token)

    @classmethod
    def failure(cls, kind: AuthErrorKind, detail: str = "") -> "AuthResult":
        return cls(error=kind, detail=detail or kind.value)


class Authenticator(Protocol):
    """Anything that can trade a username/password for a bearer token."""

    async def login(self, username: str, password: str) -> AuthResult:
        ...


class BearerTokenInterceptor:
    """Resolves a future with the first bearer token sent to the kcx API.

    Must be created inside a running event loop.
    """

    def __init__(self, api_host: str = TEPCO_API_HOST):
        self.api_host = api_host
        self._token: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_request(self, request: Request):
        """Page "request" event handler."""
        if self._token.done() or self.api_host not in request.url:
            return
        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            self._token.set_result(auth_header[len("Bearer "):])
            logger.info("Bearer token captured from network request")

    async def wait(self, timeout: float) -> Optional[str]:
        """Wait up to timeout seconds for a token. Returns None if none was seen."""
        try:
            return await asyncio.wait_for(asyncio.shield(self._token), timeout)
        except asyncio.TimeoutError:
            return None


class BrowserAuthenticator:
    """Logs in to TEPCO with a Playwright-driven Chromium.

    Attributes:
        login_url: Auth0 login page
        top_url: TEPCO top page, used as a referrer-building detour
        headless: Run Chromium without a window
        navigation_timeout_ms: Timeout for each page navigation
        token_wait_s: How long to wait for the token after submitting the form
    """

    def __init__(
        self,
        login_url: str = TEPCO_LOGIN_URL,
        top_url: str = TEPCO_TOP_URL,
        api_host: str = TEPCO_API_HOST,
        headless: bool = False,
        navigation_timeout_ms: int = 30000,
        token_wait_s: float = 10.0,
    ):
        self.login_url = login_url
        self.top_url = top_url
        self.api_host = api_host
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self.token_wait_s = token_wait_s

    async def login(self, username: str, password: str) -> AuthResult:
        """Run the browser login and return the captured bearer token.

        Never raises for login failures; the returned AuthResult names the kind.
        """
        if not username or not password:
            return AuthResult.failure(
                AuthErrorKind.CREDENTIALS_NOT_CONFIGURED,
                "TEPCO credentials not configured",
            )

        logger.info("Starting TEPCO browser login...")
        try:
            async with self._browser_session() as page:
                interceptor = BearerTokenInterceptor(self.api_host)
                page.on("request", interceptor.on_request)

                await self._navigate_to_login(page)
                await self._wait_for_login_form(page)
                await self._submit_credentials(page, username, password)
                token = await self._capture_token(page, interceptor)

        except AuthenticationError as e:
            logger.error(f"TEPCO login failed ({e.kind.value}): {e}")
            return AuthResult.failure(e.kind, str(e))
        except PlaywrightError as e:
            logger.error(f"TEPCO login failed (browser error): {e}")
            return AuthResult.failure(AuthErrorKind.FLOW_UNREACHABLE, str(e))

        logger.info("Login successful, bearer token captured")
        return AuthResult.success(token)

    @asynccontextmanager
    async def _browser_session(self) -> AsyncIterator[Page]:
        """One browser, context and page for a single login attempt."""
        async with async_playwright() as pw:
            try:
                browser = await pw.chromium.launch(headless=self.headless, args=BROWSER_ARGS)
            except PlaywrightError as e:
                raise AuthenticationError(
                    AuthErrorKind.FLOW_UNREACHABLE, f"Browser launch failed: {e}"
                ) from e
            try:
                context = await browser.new_context(
                    user_agent=USER_AGENT,
                    extra_http_headers=EXTRA_HEADERS,
                )
                page = await context.new_page()
                await page.add_init_script(HIDE_AUTOMATION_SCRIPT)
                yield page
            finally:
                await browser.close()

    async def _navigate_to_login(self, page: Page):
        """Step 1: Reach the login page, trying progressively slower strategies."""
        timeout = self.navigation_timeout_ms

        async def direct():
            await page.goto(self.login_url, wait_until="domcontentloaded", timeout=timeout)

        async def via_top_page():
            await page.goto(self.top_url, wait_until="domcontentloaded", timeout=timeout)
            await page.goto(self.login_url, wait_until="domcontentloaded", timeout=timeout)

        async def full_load():
            await page.goto(self.login_url, wait_until="load", timeout=timeout * 2)

        last_error: Optional[Exception] = None
        for strategy in (direct, via_top_page, full_load):
            try:
                await strategy()
                logger.debug(f"Step 1: Navigation succeeded ({strategy.__name__})")
                return
            except PlaywrightError as e:
                last_error = e
                logger.warning(f"Navigation strategy {strategy.__name__} failed: {e}")

        raise AuthenticationError(
            AuthErrorKind.FLOW_UNREACHABLE,
            f"Failed to navigate to TEPCO login: {last_error}",
        )

    async def _wait_for_login_form(self, page: Page):
        """Step 2: Find a visible username field."""
        logger.debug(f"Step 2: Looking for login form at {page.url}")

        if "authorize" in page.url or "auth0" in page.url:
            # Auth0 redirects once more before rendering the form
            await page.wait_for_timeout(5000)

        for selector in LOGIN_FORM_SELECTORS:
            try:
                await page.wait_for_selector(selector, timeout=5000, state="visible")
                logger.debug(f"  Found login form with selector: {selector}")
                return
            except PlaywrightError:
                continue

        title = await page.title()
        raise AuthenticationError(
            AuthErrorKind.LOGIN_FORM_NOT_FOUND,
            f"Login form not found on page '{title}' ({page.url})",
        )

    async def _submit_credentials(self, page: Page, username: str, password: str):
        """Step 3: Fill and submit the login form."""
        logger.debug("Step 3: Submitting credentials...")
        try:
            await page.fill(USERNAME_SELECTOR, username)
            await page.fill(PASSWORD_SELECTOR, password)
            await page.click(SUBMIT_SELECTOR)
        except PlaywrightError as e:
            raise AuthenticationError(
                AuthErrorKind.LOGIN_FORM_NOT_FOUND, f"Could not submit login form: {e}"
            ) from e

    async def _capture_token(self, page: Page, interceptor: BearerTokenInterceptor) -> str:
        """Step 4: Wait for the app's first API call, falling back to web storage."""
        logger.debug("Step 4: Waiting for bearer token...")
        token = await interceptor.wait(self.token_wait_s)
        if token:
            return token

        try:
            token = await page.evaluate(STORAGE_TOKEN_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"  Web storage lookup failed: {e}")
            token = None

        if not token:
            raise AuthenticationError(
                AuthErrorKind.TOKEN_NOT_OBSERVED,
                "Failed to capture bearer token during login",
            )
        logger.info("Bearer token captured from localStorage/sessionStorage")
        return token
