"""Playwright browser session: one isolated browser per submission."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from pydantic import BaseModel, Field

from customs_portal.config import settings
from customs_portal.core.errors import SelectorNotFound, SessionError, UnexpectedDialog
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)

MODAL_SELECTOR = '[role="dialog"], [role="alertdialog"], .modal.show, .modal[style*="block"]'

_SNAPSHOT_SCRIPT = """
() => {
    const visibleText = (el) => {
        if (!el) return '';
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden') return '';
        return (el.innerText || el.textContent || '').trim();
    };
    const collect = (selector) => {
        const found = [];
        document.querySelectorAll(selector).forEach(el => {
            const text = visibleText(el);
            if (text && text.length < 500) found.push(text);
        });
        return found;
    };
    const formFields = [];
    document.querySelectorAll('input, select, textarea').forEach(el => {
        if (el.offsetParent === null) return;
        const value = el.type === 'password' ? '' : (el.value || '');
        formFields.push({
            type: el.type || el.tagName.toLowerCase(),
            name: el.name || el.id || '',
            value: value.length > 50 ? value.substring(0, 50) + '...' : value,
            required: !!el.required,
            disabled: !!el.disabled,
            validation_message: el.validationMessage || '',
        });
    });
    const dialogs = [];
    document.querySelectorAll('[role="dialog"], [role="alertdialog"], .modal, [class*="dialog"]').forEach(el => {
        if (el.offsetParent !== null) {
            const text = visibleText(el);
            if (text) dialogs.push(text.substring(0, 500));
        }
    });
    return {
        errors: collect('.error, .alert-error, .alert-danger, .validation-error'),
        successes: collect('.success, .alert-success'),
        form_fields: formFields.slice(0, 40),
        dialogs: dialogs,
        text: visibleText(document.body).substring(0, 2000),
    };
}
"""


class PageSnapshot(BaseModel):
    """Structured view of the live page handed to the recovery advisor."""
    url: str = Field("", description="Current URL")
    title: str = Field("", description="Document title")
    text: str = Field("", description="Visible text, truncated")
    form_fields: List[Dict[str, Any]] = Field(default_factory=list, description="Visible form fields")
    dialogs: List[str] = Field(default_factory=list, description="Visible modal texts")
    errors: List[str] = Field(default_factory=list, description="Visible error messages")
    successes: List[str] = Field(default_factory=list, description="Visible success messages")


class BrowserSession:
    """
    A single Playwright browser, context and page owned by one submission.

    Every operation is awaited; failures surface as the typed errors the
    workflow driver understands instead of raw Playwright exceptions.
    """

    def __init__(
        self,
        headless: bool = True,
        viewport_size: tuple = (1366, 900),
        action_timeout_ms: int = 10000,
        navigation_timeout_ms: int = 30000,
        probe_timeout_ms: int = 1500,
    ):
        """
        Initialize the session.

        Args:
            headless: Run browser in headless mode
            viewport_size: Browser viewport size (width, height)
            action_timeout_ms: Timeout for fills, clicks and selects
            navigation_timeout_ms: Timeout for page loads
            probe_timeout_ms: How long each selector candidate is awaited
        """
        self.headless = headless
        self.viewport_size = viewport_size
        self.action_timeout_ms = action_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.probe_timeout_ms = probe_timeout_ms
        self.logger = logger.bind(component="browser_session")

        self.playwright = None
        self.browser = None
        self.context = None
        self.page = None
        self.dialog_messages: List[str] = []

    @property
    def is_started(self) -> bool:
        return self.page is not None

    async def start(
        self,
        extra_headers: Optional[Dict[str, str]] = None,
        storage_state: Optional[str] = None,
    ) -> None:
        """
        Launch a fresh browser and context.

        Args:
            extra_headers: HTTP headers sent with every request (api_key auth)
            storage_state: Stored browser state file (delegated auth)
        """
        if self.is_started:
            return
        try:
            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(headless=self.headless)

            context_options: Dict[str, Any] = {
                "viewport": {"width": self.viewport_size[0], "height": self.viewport_size[1]},
            }
            if extra_headers:
                context_options["extra_http_headers"] = extra_headers
            if storage_state:
                context_options["storage_state"] = storage_state

            self.context = await self.browser.new_context(**context_options)
            self.context.set_default_timeout(self.action_timeout_ms)
            self.context.set_default_navigation_timeout(self.navigation_timeout_ms)
            self.page = await self.context.new_page()
            self.page.on("dialog", self._on_dialog)
        except PlaywrightError as e:
            await self.close()
            raise SessionError(f"Failed to launch browser: {e}") from e

        self.logger.info("Browser session started", headless=self.headless, viewport_size=self.viewport_size)

    async def _on_dialog(self, dialog) -> None:
        # Native alert/confirm dialogs are accepted so the workflow can continue
        self.dialog_messages.append(dialog.message)
        self.logger.info("Native dialog accepted", dialog_type=dialog.type, message=dialog.message)
        try:
            await dialog.accept()
        except PlaywrightError as e:
            self.logger.warning("Dialog accept failed", error=str(e))

    def drain_dialogs(self) -> List[str]:
        """Return and clear native dialog messages accepted since the last call."""
        messages, self.dialog_messages = self.dialog_messages, []
        return messages

    async def goto(self, url: str) -> None:
        self._require_page()
        try:
            await self.page.goto(url, wait_until="domcontentloaded")
        except PlaywrightError as e:
            raise SessionError(f"Navigation to {url} failed: {e}", url=url) from e
        await self.wait_for_load()
        self.logger.info("Navigated", url=url)

    async def wait_for_load(self) -> None:
        self._require_page()
        try:
            await self.page.wait_for_load_state("networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError:
            # Long-polling portals never go idle; the DOM is usable anyway
            self.logger.debug("Network did not settle", url=self.page.url)
        except PlaywrightError as e:
            raise SessionError(f"Page failed to load: {e}") from e

    async def locate(self, candidates: List[str], target: str) -> str:
        """
        Return the first selector candidate that matches a visible element.

        Raises:
            SelectorNotFound: no candidate matched.
        """
        self._require_page()
        for candidate in candidates:
            locator = self.page.locator(candidate).first
            try:
                await locator.wait_for(state="visible", timeout=self.probe_timeout_ms)
            except PlaywrightTimeoutError:
                continue
            except PlaywrightError as e:
                # Malformed selectors are skipped like missing ones
                self.logger.debug("Selector candidate rejected", selector=candidate, error=str(e))
                continue
            return candidate
        if await self.page.locator(MODAL_SELECTOR).count():
            raise UnexpectedDialog(await self.blocking_dialog_text() or "", f"No candidate visible for {target}")
        raise SelectorNotFound(target, candidates)

    async def fill(self, selector: str, value: str) -> None:
        await self._act(selector, "fill", lambda locator: locator.fill(value))

    async def select_option(self, selector: str, value: str) -> None:
        async def _select(locator):
            try:
                await locator.select_option(value=value)
            except PlaywrightError:
                await locator.select_option(label=value)

        await self._act(selector, "select", _select)

    async def set_checked(self, selector: str, checked: bool) -> None:
        await self._act(selector, "check", lambda locator: locator.set_checked(checked))

    async def set_value(self, selector: str, value: str) -> None:
        """Assign a value directly, for hidden inputs that cannot be typed into."""
        await self._act(
            selector,
            "assign",
            lambda locator: locator.evaluate("(el, value) => { el.value = value; }", value),
        )

    async def click(self, selector: str) -> None:
        await self._act(selector, "click", lambda locator: locator.click())

    async def _act(self, selector: str, action: str, operation) -> None:
        self._require_page()
        locator = self.page.locator(selector).first
        try:
            await operation(locator)
        except PlaywrightError as e:
            dialog_text = await self.blocking_dialog_text()
            if dialog_text is not None:
                raise UnexpectedDialog(dialog_text, str(e)) from e
            if self.page.is_closed():
                raise SessionError(f"Page closed during {action}: {e}") from e
            raise SelectorNotFound(selector, [selector]) from e
        self.logger.debug("Element action", action=action, selector=selector)

    async def blocking_dialog_text(self) -> Optional[str]:
        """Text of a visible HTML modal, or None."""
        self._require_page()
        modal = self.page.locator(MODAL_SELECTOR).first
        try:
            if await modal.count() and await modal.is_visible():
                return (await modal.inner_text()).strip()
        except PlaywrightError:
            return None
        return None

    async def dismiss_dialog(self, selector: Optional[str] = None) -> None:
        """Click a dismiss control, or press Escape when none is given."""
        self._require_page()
        if selector:
            await self.click(selector)
        else:
            await self.page.keyboard.press("Escape")

    async def wait(self, milliseconds: int) -> None:
        self._require_page()
        await self.page.wait_for_timeout(milliseconds)

    async def page_text(self) -> str:
        self._require_page()
        try:
            return await self.page.inner_text("body")
        except PlaywrightError as e:
            raise SessionError(f"Could not read page text: {e}") from e

    async def element_text(self, selector: str) -> Optional[str]:
        """Inner text of the first element matching ``selector``, None if absent."""
        self._require_page()
        try:
            locator = self.page.locator(selector).first
            if not await locator.count():
                return None
            return (await locator.inner_text()).strip()
        except PlaywrightError:
            return None

    async def current_url(self) -> str:
        self._require_page()
        return self.page.url

    async def screenshot(self, path: str) -> bool:
        """Capture a full-page screenshot; returns False instead of raising."""
        if not self.is_started:
            return False
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            await self.page.screenshot(path=path, full_page=True)
        except (PlaywrightError, OSError) as e:
            self.logger.warning("Screenshot failed", path=path, error=str(e))
            return False
        self.logger.debug("Screenshot captured", path=path)
        return True

    async def snapshot(self) -> PageSnapshot:
        self._require_page()
        try:
            state = await self.page.evaluate(_SNAPSHOT_SCRIPT)
            title = await self.page.title()
        except PlaywrightError as e:
            self.logger.warning("Page snapshot failed", error=str(e))
            return PageSnapshot(url=self.page.url)
        return PageSnapshot(url=self.page.url, title=title, **state)

    async def close(self) -> None:
        """Close the browser and cleanup resources."""
        for resource, closer in (
            (self.context, "close"),
            (self.browser, "close"),
            (self.playwright, "stop"),
        ):
            if resource is None:
                continue
            try:
                await getattr(resource, closer)()
            except PlaywrightError as e:
                self.logger.warning("Error closing browser resource", error=str(e))
        self.page = None
        self.context = None
        self.browser = None
        self.playwright = None
        self.logger.info("Browser session closed")

    def _require_page(self) -> None:
        if self.page is None:
            raise SessionError("Browser session is not started")


def create_browser_session(headless: Optional[bool] = None) -> BrowserSession:
    """
    Factory function to create a browser session from settings.

    Args:
        headless: Override the configured headless mode

    Returns:
        Configured BrowserSession instance
    """
    return BrowserSession(
        headless=settings.browser_headless if headless is None else headless,
        viewport_size=(settings.browser_viewport_width, settings.browser_viewport_height),
        action_timeout_ms=settings.browser_action_timeout_ms,
        navigation_timeout_ms=settings.browser_navigation_timeout_ms,
        probe_timeout_ms=settings.selector_probe_timeout_ms,
    )
