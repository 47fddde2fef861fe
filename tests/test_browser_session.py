"""Tests for the Playwright browser session wrapper."""

from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from customs_portal.browser.session import MODAL_SELECTOR, BrowserSession, create_browser_session
from customs_portal.core.errors import SelectorNotFound, SessionError, UnexpectedDialog


def make_locator(visible=True, count=1, text=""):
    locator = MagicMock()
    locator.first = locator
    locator.wait_for = AsyncMock(side_effect=None if visible else PlaywrightTimeoutError("Timeout 1500ms exceeded"))
    locator.count = AsyncMock(return_value=count)
    locator.is_visible = AsyncMock(return_value=visible)
    locator.inner_text = AsyncMock(return_value=text)
    for action in ("fill", "click", "select_option", "set_checked", "evaluate"):
        setattr(locator, action, AsyncMock())
    return locator


def make_page(locators=None, modal=None):
    """A mocked Playwright page whose ``locator()`` hands out the given locators."""
    locators = dict(locators or {})
    locators.setdefault(MODAL_SELECTOR, modal or make_locator(visible=False, count=0))
    page = MagicMock()
    page.url = "https://caps.example.gov/td"
    page.locator = MagicMock(side_effect=lambda selector: locators.setdefault(selector, make_locator(visible=False, count=0)))
    page.is_closed = MagicMock(return_value=False)
    page.goto = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.screenshot = AsyncMock()
    page.keyboard.press = AsyncMock()
    return page


class TestBrowserSession:
    """Test cases for BrowserSession."""

    @pytest.fixture
    def session(self):
        return BrowserSession(headless=True, probe_timeout_ms=10)

    def test_initialization(self, session):
        assert session.headless is True
        assert session.probe_timeout_ms == 10
        assert not session.is_started

    @pytest.mark.asyncio
    async def test_operations_require_started_session(self, session):
        with pytest.raises(SessionError):
            await session.goto("https://caps.example.gov")
        assert await session.screenshot("shots/x.png") is False

    @pytest.mark.asyncio
    async def test_start_passes_auth_options_to_context(self, session):
        page = make_page()
        context = MagicMock(new_page=AsyncMock(return_value=page), close=AsyncMock())
        browser = MagicMock(new_context=AsyncMock(return_value=context), close=AsyncMock())
        playwright = MagicMock(stop=AsyncMock())
        playwright.chromium.launch = AsyncMock(return_value=browser)

        with patch("customs_portal.browser.session.async_playwright") as mock_async_playwright:
            mock_async_playwright.return_value.start = AsyncMock(return_value=playwright)
            await session.start(extra_headers={"X-API-Key": "k-123"}, storage_state="state.json")

        assert session.is_started
        playwright.chromium.launch.assert_awaited_once_with(headless=True)
        options = browser.new_context.await_args.kwargs
        assert options["extra_http_headers"] == {"X-API-Key": "k-123"}
        assert options["storage_state"] == "state.json"
        page.on.assert_called_once_with("dialog", session._on_dialog)

    @pytest.mark.asyncio
    async def test_launch_failure_is_a_session_error(self, session):
        with patch("customs_portal.browser.session.async_playwright") as mock_async_playwright:
            mock_async_playwright.return_value.start = AsyncMock(side_effect=PlaywrightError("Executable doesn't exist"))

            with pytest.raises(SessionError):
                await session.start()

        assert not session.is_started

    @pytest.mark.asyncio
    async def test_locate_tries_candidates_in_order(self, session):
        first, second, third = make_locator(visible=False), make_locator(), make_locator()
        session.page = make_page({"#supplier": first, '[name="supplierName"]': second, "#other": third})

        found = await session.locate(["#supplier", '[name="supplierName"]', "#other"], "Supplier Name")

        assert found == '[name="supplierName"]'
        first.wait_for.assert_awaited_once_with(state="visible", timeout=10)
        third.wait_for.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_locate_skips_malformed_selectors(self, session):
        broken = make_locator()
        broken.wait_for = AsyncMock(side_effect=PlaywrightError("Unexpected token"))
        session.page = make_page({"input[[": broken, "#ok": make_locator()})

        assert await session.locate(["input[[", "#ok"], "Field") == "#ok"

    @pytest.mark.asyncio
    async def test_locate_without_match_raises_selector_not_found(self, session):
        session.page = make_page()

        with pytest.raises(SelectorNotFound) as exc_info:
            await session.locate(["#a", "#b"], "Supplier Name")

        assert exc_info.value.candidates == ["#a", "#b"]
        assert exc_info.value.target == "Supplier Name"

    @pytest.mark.asyncio
    async def test_locate_behind_modal_raises_unexpected_dialog(self, session):
        session.page = make_page(modal=make_locator(text="Your session is about to expire "))

        with pytest.raises(UnexpectedDialog) as exc_info:
            await session.locate(["#a"], "Supplier Name")

        assert exc_info.value.text == "Your session is about to expire"

    @pytest.mark.asyncio
    async def test_action_blocked_by_modal(self, session):
        field = make_locator()
        field.fill = AsyncMock(side_effect=PlaywrightError("Element is not visible"))
        session.page = make_page({"#a": field}, modal=make_locator(text="Please confirm"))

        with pytest.raises(UnexpectedDialog) as exc_info:
            await session.fill("#a", "Acme")

        assert exc_info.value.details["action_error"] == "Element is not visible"

    @pytest.mark.asyncio
    async def test_action_on_closed_page_is_a_session_error(self, session):
        button = make_locator()
        button.click = AsyncMock(side_effect=PlaywrightError("Target closed"))
        session.page = make_page({"#save": button})
        session.page.is_closed.return_value = True

        with pytest.raises(SessionError):
            await session.click("#save")

    @pytest.mark.asyncio
    async def test_failed_action_is_selector_not_found(self, session):
        field = make_locator()
        field.fill = AsyncMock(side_effect=PlaywrightError("Element is detached"))
        session.page = make_page({"#a": field})

        with pytest.raises(SelectorNotFound) as exc_info:
            await session.fill("#a", "Acme")

        assert exc_info.value.candidates == ["#a"]

    @pytest.mark.asyncio
    async def test_select_falls_back_from_value_to_label(self, session):
        carrier = make_locator()
        carrier.select_option = AsyncMock(side_effect=[PlaywrightError("No option with value"), None])
        session.page = make_page({"select#carrier": carrier})

        await session.select_option("select#carrier", "Federal Express")

        assert carrier.select_option.await_args_list == [
            call(value="Federal Express"),
            call(label="Federal Express"),
        ]

    @pytest.mark.asyncio
    async def test_navigation_failure_is_a_session_error(self, session):
        session.page = make_page()
        session.page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))

        with pytest.raises(SessionError) as exc_info:
            await session.goto("https://caps.example.gov/login")

        assert exc_info.value.details["url"] == "https://caps.example.gov/login"

    @pytest.mark.asyncio
    async def test_busy_network_does_not_block_navigation(self, session):
        session.page = make_page()
        session.page.wait_for_load_state = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout"))

        await session.goto("https://caps.example.gov/td")

        session.page.goto.assert_awaited_once_with("https://caps.example.gov/td", wait_until="domcontentloaded")

    @pytest.mark.asyncio
    async def test_native_dialogs_are_accepted_and_drained(self, session):
        dialog = MagicMock(message="Record saved", type="alert", accept=AsyncMock())

        await session._on_dialog(dialog)

        dialog.accept.assert_awaited_once()
        assert session.drain_dialogs() == ["Record saved"]
        assert session.drain_dialogs() == []

    @pytest.mark.asyncio
    async def test_dismiss_dialog_presses_escape_without_selector(self, session):
        session.page = make_page()

        await session.dismiss_dialog()

        session.page.keyboard.press.assert_awaited_once_with("Escape")

    @pytest.mark.asyncio
    async def test_screenshot_failure_returns_false(self, session, tmp_path):
        session.page = make_page()
        session.page.screenshot = AsyncMock(side_effect=PlaywrightError("Target closed"))

        assert await session.screenshot(str(tmp_path / "shots" / "01.png")) is False

    @pytest.mark.asyncio
    async def test_close_releases_resources_in_reverse_order(self, session):
        order = []
        session.page = make_page()
        session.context = MagicMock(close=AsyncMock(side_effect=lambda: order.append("context")))
        browser = MagicMock(close=AsyncMock(side_effect=PlaywrightError("Browser has been closed")))
        session.browser = browser
        session.playwright = MagicMock(stop=AsyncMock(side_effect=lambda: order.append("playwright")))

        await session.close()

        assert order == ["context", "playwright"]
        browser.close.assert_awaited_once()
        assert not session.is_started
        assert session.context is None and session.browser is None and session.playwright is None


def test_factory_uses_settings(monkeypatch):
    from customs_portal.config import settings

    monkeypatch.setattr(settings, "browser_headless", False)
    monkeypatch.setattr(settings, "selector_probe_timeout_ms", 750)

    session = create_browser_session()

    assert session.headless is False
    assert session.probe_timeout_ms == 750
    assert create_browser_session(headless=True).headless is True
