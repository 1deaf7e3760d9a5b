"""badge_etl.extractor

Visit extraction from the Three Rivers Parks WebTrac portal.

Flow per call to extract_visits():
  1. Launch a fresh, isolated browser session (no state shared across calls).
  2. Open the login page, fill the username/password fields, submit.
  3. Wait for the post-login redirect to settle (fixed 5s pause).
  4. Verify login: an explicit error banner, or the "Sign In / Register"
     prompt still on the page, raises LoginError.
  5. Open the visit-history page and wait for the table body.
  6. Capture the page HTML, then log out (best effort) and close the session.
  7. Parse the captured HTML into RawVisit records lazily.

Browser automation is behind the BrowserSession protocol. PlaywrightSession is
the production adapter; tests drive extract_visits() with a scripted fake and
exercise the BeautifulSoup parsers against fixture HTML.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Protocol

from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from badge_etl.errors import ExtractionError, LoginError, PortalTimeoutError
from badge_etl.models import RawVisit
from badge_etl.normalize import normalize_label, normalize_space, normalize_time, portal_date_to_iso

log = logging.getLogger(__name__)

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


# ---------------------------------------------------------------------------
# Portal configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PortalConfig:
    login_url: str = "https://mnthreeriversweb.myvscloud.com/webtrac/web/login.html"
    history_url: str = (
        "https://mnthreeriversweb.myvscloud.com/webtrac/web/history.html"
        "?historyoption=inquiry"
    )
    logout_url: str = "https://mnthreeriversweb.myvscloud.com/webtrac/web/logout.html"
    username_selector: str = 'input[name="weblogin_username"]'
    password_selector: str = 'input[name="weblogin_password"]'
    submit_selector: str = 'button[type="submit"]'
    error_selector: str = ".page-message.message.error"
    logout_selector: str = 'a[href*="logout"]'
    sign_in_marker: str = "Sign In / Register"
    body_selector: str = "table tbody"
    row_selector: str = "table tbody tr"
    # Seconds
    settle_delay: float = 5.0
    login_timeout: float = 60.0
    operation_timeout: float = 30.0
    history_wait_timeout: float = 10.0
    logout_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "PortalConfig":
        return cls(
            login_url=settings.login_url,
            history_url=settings.history_url,
            logout_url=settings.logout_url,
        )


# ---------------------------------------------------------------------------
# Browser session protocol + Playwright adapter
# ---------------------------------------------------------------------------

class BrowserSession(Protocol):
    def goto(self, url: str, timeout: float) -> None: ...
    def fill(self, selector: str, value: str) -> None: ...
    def click(self, selector: str) -> None: ...
    def wait_for_navigation(self, timeout: float) -> None: ...
    def wait_for_selector(self, selector: str, timeout: float) -> None: ...
    def query_text(self, selector: str) -> str | None: ...
    def content(self) -> str: ...
    def pause(self, seconds: float) -> None: ...
    def close(self) -> None: ...


SessionFactory = Callable[[], BrowserSession]


@contextlib.contextmanager
def _translate_errors(action: str):
    """Re-raise Playwright failures as ExtractionError subclasses."""
    try:
        yield
    except PlaywrightTimeoutError as exc:
        raise PortalTimeoutError(f"{action} timed out: {exc}") from exc
    except PlaywrightError as exc:
        raise ExtractionError(f"{action} failed: {exc}") from exc


class PlaywrightSession:
    """Headless Chromium session over playwright.sync_api.

    Each instance owns its own Playwright driver, browser and context, so
    sessions never share cookies or storage.
    """

    def __init__(
        self,
        headless: bool = True,
        user_agent: str = DESKTOP_USER_AGENT,
        default_timeout: float = 30.0,
    ) -> None:
        self._pw = sync_playwright().start()
        try:
            with _translate_errors("browser launch"):
                self._browser = self._pw.chromium.launch(
                    headless=headless,
                    args=[
                        "--no-sandbox",
                        "--disable-setuid-sandbox",
                        "--disable-dev-shm-usage",
                    ],
                )
                self._context = self._browser.new_context(
                    user_agent=user_agent,
                    viewport={"width": 1920, "height": 1080},
                )
                self._page = self._context.new_page()
                self._page.set_default_timeout(default_timeout * 1000)
                self._page.set_default_navigation_timeout(default_timeout * 1000)
        except ExtractionError:
            self._pw.stop()
            raise

    def goto(self, url: str, timeout: float) -> None:
        with _translate_errors(f"navigation to {url}"):
            self._page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)

    def fill(self, selector: str, value: str) -> None:
        with _translate_errors(f"fill {selector}"):
            self._page.fill(selector, value)

    def click(self, selector: str) -> None:
        with _translate_errors(f"click {selector}"):
            self._page.click(selector)

    def wait_for_navigation(self, timeout: float) -> None:
        with _translate_errors("navigation wait"):
            self._page.wait_for_load_state("domcontentloaded", timeout=timeout * 1000)

    def wait_for_selector(self, selector: str, timeout: float) -> None:
        with _translate_errors(f"wait for {selector}"):
            self._page.wait_for_selector(selector, state="attached", timeout=timeout * 1000)

    def query_text(self, selector: str) -> str | None:
        with _translate_errors(f"query {selector}"):
            el = self._page.query_selector(selector)
            return el.text_content() if el else None

    def content(self) -> str:
        with _translate_errors("read page content"):
            return self._page.content()

    def pause(self, seconds: float) -> None:
        self._page.wait_for_timeout(seconds * 1000)

    def close(self) -> None:
        try:
            self._context.close()
            self._browser.close()
        finally:
            self._pw.stop()


def playwright_session_factory(
    headless: bool = True,
    default_timeout: float = 30.0,
) -> SessionFactory:
    """Return a factory that launches a new isolated PlaywrightSession per call."""
    def factory() -> BrowserSession:
        return PlaywrightSession(headless=headless, default_timeout=default_timeout)
    return factory


# ---------------------------------------------------------------------------
# Pure parsers
# ---------------------------------------------------------------------------

def check_login_state(html: str, error_text: str | None, config: PortalConfig) -> None:
    """Raise LoginError if the post-login page shows a failed login.

    ``error_text`` is the text of the portal's error banner, if one was found.
    Otherwise the sign-in prompt still being visible means the credentials
    were not accepted.
    """
    banner = normalize_space(error_text)
    if banner:
        raise LoginError(f"Login failed: {banner}")
    if config.sign_in_marker in html:
        raise LoginError(
            f'Login verification failed: "{config.sign_in_marker}" still present'
        )
    # The banner may only be present in the captured HTML.
    soup = BeautifulSoup(html, "html.parser")
    el = soup.select_one(config.error_selector)
    if el is not None:
        text = normalize_space(el.get_text(" "))
        if text:
            raise LoginError(f"Login failed: {text}")


def parse_history_html(html: str, config: PortalConfig | None = None) -> Iterator[RawVisit]:
    """Yield one RawVisit per well-formed history row.

    Cells are positional: date, time, pass-type label. Rows with fewer than
    two cells (headers, spacers) or without a recognisable date are dropped.
    """
    config = config or PortalConfig()
    soup = BeautifulSoup(html, "html.parser")
    for tr in soup.select(config.row_selector):
        cells = [c.get_text(" ", strip=True) for c in tr.find_all("td")]
        if len(cells) < 2:
            continue
        iso = portal_date_to_iso(cells[0])
        if iso is None:
            log.debug("Skipping history row with unparseable date: %r", cells[0])
            continue
        yield RawVisit(
            date=iso,
            time=normalize_time(cells[1]),
            label=normalize_label(cells[2]) if len(cells) > 2 else None,
        )


# ---------------------------------------------------------------------------
# Session flow
# ---------------------------------------------------------------------------

def _login(session: BrowserSession, username: str, password: str, config: PortalConfig) -> None:
    session.goto(config.login_url, timeout=config.login_timeout)
    session.fill(config.username_selector, username)
    session.fill(config.password_selector, password)
    session.click(config.submit_selector)
    try:
        session.wait_for_navigation(timeout=config.operation_timeout)
    except PortalTimeoutError as exc:
        # The portal sometimes updates in place; the state check below decides.
        log.warning("No navigation after login submit: %s", exc)
    session.pause(config.settle_delay)
    check_login_state(session.content(), session.query_text(config.error_selector), config)
    log.info("Portal login verified")


def _fetch_history(session: BrowserSession, config: PortalConfig) -> str:
    session.goto(config.history_url, timeout=config.operation_timeout)
    # An empty body is an account with no visits yet
    session.wait_for_selector(config.body_selector, timeout=config.history_wait_timeout)
    return session.content()


def _logout(session: BrowserSession, config: PortalConfig) -> None:
    """Best-effort logout. Failures are logged and never raised."""
    try:
        session.click(config.logout_selector)
        return
    except ExtractionError as exc:
        log.warning("Logout click failed, falling back to logout URL: %s", exc)
    try:
        session.goto(config.logout_url, timeout=config.logout_timeout)
    except ExtractionError as exc:
        log.warning("Logout navigation failed: %s", exc)


def extract_visits(
    session_factory: SessionFactory,
    username: str,
    password: str,
    config: PortalConfig | None = None,
) -> Iterator[RawVisit]:
    """Log in, read the visit history and return a lazy iterator of RawVisit.

    The browser session is closed before this returns; iterating the result
    only parses the captured HTML.
    """
    config = config or PortalConfig()
    session = session_factory()
    try:
        _login(session, username, password, config)
        html = _fetch_history(session, config)
        _logout(session, config)
    finally:
        try:
            session.close()
        except Exception as exc:  # noqa: BLE001
            log.warning("Browser session close failed: %s", exc)
    return parse_history_html(html, config)
