"""
Tests for the Executor operation surface.

Tests:
1. Script wrapping - bare expressions and statement lists.
2. Error conversion - typed errors and unexpected failures become results.
3. Navigation - replacement pages and the single session retry.
4. Element actions - click fallback, typing, select, keys.
5. Forms, tabs, batches and screenshots.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from axreplay import executor as executor_mod
from axreplay.errors import CDPError, ElementNotFound, SessionInvalid
from axreplay.executor import Executor, wrap_script
from axreplay.models import BatchOperation, FormField

from tests.conftest import make_browser, make_element, make_page


def build_executor(page=None, element=None, browser=None):
    browser = browser or make_browser(page)
    snapshotter = MagicMock()
    snapshotter.snapshot_text = AsyncMock(return_value="Page Interactive Elements:\n")
    resolver = MagicMock()
    resolver.find = AsyncMock(return_value=element)
    return Executor(browser, snapshotter=snapshotter, resolver=resolver)


# ============================================================
# 1. Script wrapping
# ============================================================


class TestWrapScript:
    """Scripts become function declarations for Runtime evaluation."""

    def test_function_passthrough(self):
        assert wrap_script("() => 1") == "() => 1"
        assert wrap_script("function () { return 2 }") == "function () { return 2 }"
        assert wrap_script("async () => await x()") == "async () => await x()"

    def test_single_expression(self):
        """A bare expression is returned from an arrow function."""
        assert wrap_script("document.title") == "() => (document.title)"
        assert wrap_script("document.title;") == "() => (document.title)"

    def test_statement_list(self):
        """Statements keep their own return."""
        assert wrap_script("const a = 1; return a") == "() => {\nconst a = 1; return a\n}"
        assert wrap_script("return 5") == "() => {\nreturn 5\n}"


# ============================================================
# 2. Error conversion
# ============================================================


class TestErrorConversion:
    """Operations never raise for browser-side failures."""

    async def test_element_not_found_result(self):
        """A missing element yields a failed result naming the identifier."""
        ex = build_executor(make_page())
        ex.resolver.find.side_effect = ElementNotFound("#nope", 10)
        result = await ex.click("#nope")
        assert result.success is False
        assert result.data["error_type"] == "element_not_found"
        assert result.data["identifier"] == "#nope"
        assert result.data["timeout"] == 10.0
        assert "#nope" in result.error

    async def test_unexpected_exception_is_recovered(self):
        """Anything else is reported as a recovered panic."""
        ex = build_executor(make_page())
        ex.resolver.find.side_effect = ValueError("driver exploded")
        result = await ex.get_text("#x")
        assert result.success is False
        assert result.data["error_type"] == "recovered_panic"
        assert "driver exploded" in result.error

    async def test_no_active_page(self):
        ex = build_executor(None)
        result = await ex.get_page_info()
        assert result.success is False
        assert result.data["error_type"] == "session_invalid"

    async def test_snapshot_failure_does_not_fail_operation(self):
        """A failing attached snapshot is skipped, not propagated."""
        page = make_page()
        ex = build_executor(page, make_element())
        ex.snapshotter.snapshot_text.side_effect = CDPError("Accessibility.enable", "boom")
        result = await ex.hover("#menu")
        assert result.success is True
        assert "accessibility_snapshot" not in (result.data or {})


# ============================================================
# 3. Navigation
# ============================================================


class TestNavigate:
    """Navigation reuses, replaces or retries the active page."""

    async def test_navigate_attaches_snapshot(self):
        page = make_page(url="https://example.com/a", title="A")
        page.send.return_value = {"frameId": "F"}
        ex = build_executor(page)
        result = await ex.navigate("https://example.com/a")
        assert result.success is True
        assert result.data["url"] == "https://example.com/a"
        assert result.data["title"] == "A"
        assert result.data["accessibility_snapshot"].startswith("Page Interactive Elements:")
        ex.browser.open_page.assert_not_awaited()

    async def test_starts_browser_when_not_running(self):
        page = make_page()
        ex = build_executor(page)
        ex.browser.is_running.return_value = False
        await ex.navigate("https://example.com/")
        ex.browser.start.assert_awaited_once()

    async def test_dead_page_replaced(self):
        """A disconnected active page is replaced by a fresh one."""
        dead = make_page(target_id="dead")
        dead.is_alive = False
        fresh = make_page(target_id="fresh", url="https://example.com/b")
        browser = make_browser(dead)
        browser.open_page.return_value = fresh
        ex = build_executor(browser=browser)
        result = await ex.navigate("https://example.com/b")
        assert result.success is True
        browser.open_page.assert_awaited_once_with("https://example.com/b")
        dead.send.assert_not_awaited()

    async def test_unresponsive_page_replaced(self):
        """A page that cannot report readyState is replaced."""
        stuck = make_page(target_id="stuck")
        stuck.ready_state.side_effect = SessionInvalid("Session closed")
        fresh = make_page(target_id="fresh")
        browser = make_browser(stuck)
        browser.open_page.return_value = fresh
        ex = build_executor(browser=browser)
        assert (await ex.navigate("https://example.com/")).success
        browser.open_page.assert_awaited_once()

    async def test_session_error_retried_once(self):
        """A session error during Page.navigate retries once on a new page."""
        page = make_page()
        page.send.side_effect = SessionInvalid("Session with given id not found")
        fresh = make_page(target_id="fresh")
        browser = make_browser(page)
        browser.open_page.return_value = fresh
        ex = build_executor(browser=browser)
        assert (await ex.navigate("https://example.com/")).success
        browser.open_page.assert_awaited_once()

    async def test_retry_failure_is_reported(self):
        """If the retry fails too, the failure is returned without further retries."""
        page = make_page()
        page.send.side_effect = SessionInvalid("Session closed")
        browser = make_browser(page)
        browser.open_page.side_effect = SessionInvalid("Target closed")
        ex = build_executor(browser=browser)
        result = await ex.navigate("https://example.com/")
        assert result.success is False
        assert result.data["error_type"] == "session_invalid"
        assert browser.open_page.await_count == 1

    async def test_navigation_error_text(self):
        """Page.navigate errorText fails the operation without a retry."""
        page = make_page()
        page.send.return_value = {"errorText": "net::ERR_NAME_NOT_RESOLVED"}
        ex = build_executor(page)
        result = await ex.navigate("https://nope.invalid/")
        assert result.success is False
        assert "ERR_NAME_NOT_RESOLVED" in result.error
        ex.browser.open_page.assert_not_awaited()


# ============================================================
# 4. Element actions
# ============================================================


class TestElementActions:
    """Clicks, typing, select and keys."""

    async def test_click_synthetic(self):
        el = make_element()
        ex = build_executor(make_page(), el)
        result = await ex.click("@e3")
        assert result.success is True
        assert result.data["method"] == "synthetic"
        el.click.assert_not_awaited()

    async def test_click_falls_back_to_native(self):
        """A failing synthetic click is retried with real mouse events."""
        el = make_element()
        el.call.side_effect = CDPError("Runtime.callFunctionOn", "Illegal invocation")
        ex = build_executor(make_page(), el)
        result = await ex.click("#buy")
        assert result.success is True
        assert result.data["method"] == "native"
        el.click.assert_awaited_once_with("left", 1)

    async def test_right_click_is_native(self):
        el = make_element()
        ex = build_executor(make_page(), el)
        result = await ex.click("#buy", button="right")
        assert result.data["method"] == "native"
        el.click.assert_awaited_once_with("right", 1)

    async def test_type_inserts_text(self):
        page = make_page()
        el = make_element(tag="INPUT")
        ex = build_executor(page, el)
        result = await ex.type_text("#q", "hello")
        assert result.success is True
        page.insert_text.assert_awaited_once_with("hello")
        el.focus.assert_awaited_once()

    async def test_select_by_value_when_text_misses(self):
        el = make_element(tag="SELECT")
        el.call.side_effect = [False, True]
        ex = build_executor(make_page(), el)
        result = await ex.select("#country", "no")
        assert result.success is True
        assert result.data["matched_by"] == "value"

    async def test_select_missing_option(self):
        el = make_element(tag="SELECT")
        el.call.side_effect = [False, False]
        ex = build_executor(make_page(), el)
        result = await ex.select("#country", "xx")
        assert result.success is False
        assert result.data["error_type"] == "element_not_found"

    async def test_press_key_with_modifier(self):
        """Ctrl+A holds Control around the key and inserts no text."""
        page = make_page()
        ex = build_executor(page)
        result = await ex.press_key("a", ctrl=True)
        assert result.success is True
        events = [(c.args[0], c.args[1]) for c in page.key.await_args_list]
        assert events == [("rawKeyDown", "Control"), ("keyDown", "a"), ("keyUp", "a"), ("keyUp", "Control")]
        assert page.key.await_args_list[1].kwargs["text"] == ""
        assert page.key.await_args_list[1].kwargs["modifiers"] == 2

    async def test_unknown_key(self):
        ex = build_executor(make_page())
        result = await ex.press_key("Hyper")
        assert result.success is False

    async def test_wait_for_hidden_when_absent(self):
        """An element that cannot be found counts as hidden."""
        ex = build_executor(make_page())
        ex.resolver.find.side_effect = ElementNotFound("#spinner", 0)
        result = await ex.wait_for("#spinner", state="hidden", timeout=1)
        assert result.success is True

    async def test_upload_missing_file(self, tmp_path):
        ex = build_executor(make_page(), make_element())
        result = await ex.upload_files("#file", [str(tmp_path / "nope.txt")])
        assert result.success is False
        assert "nope.txt" in result.error


# ============================================================
# 5. Forms, tabs, batches and screenshots
# ============================================================


class TestFillForm:
    """fill_form maps field names to elements and fills by type."""

    async def test_checkbox_toggled_only_on_mismatch(self):
        page = make_page()
        unchecked = make_element(tag="INPUT", attributes={"type": "checkbox"}, properties={"checked": False})
        checked = make_element(tag="INPUT", attributes={"type": "checkbox"}, properties={"checked": True})

        async def query(selector):
            if selector == 'input[name="terms"]':
                return unchecked
            if selector == 'input[name="news"]':
                return checked
            return None

        page.query_selector.side_effect = query
        ex = build_executor(page)
        result = await ex.fill_form([{"name": "terms", "value": "true"}, FormField(name="news", value="yes")])
        assert result.success is True
        assert result.data["filled_count"] == 2
        unchecked.click.assert_awaited_once()
        checked.click.assert_not_awaited()

    async def test_partial_failure_still_succeeds(self):
        """Some fields filled means success, with errors listed."""
        page = make_page()
        box = make_element(tag="INPUT", attributes={"type": "text"})

        async def query(selector):
            return box if selector == 'input[name="user"]' else None

        page.query_selector.side_effect = query
        page.evaluate.return_value = {}
        ex = build_executor(page)
        result = await ex.fill_form([{"name": "user", "value": "ann"}, {"name": "ghost", "value": "x"}],
                                    timeout=0.01)
        assert result.success is True
        assert result.data["filled_count"] == 1
        assert result.data["errors"][0].startswith("ghost:")
        page.insert_text.assert_awaited_once_with("ann")

    async def test_text_field_cleared_then_set(self):
        """Existing text is selected and deleted before the new value is inserted."""
        page = make_page()
        area = make_element(tag="TEXTAREA")

        async def query(selector):
            return area if selector == 'textarea[name="bio"]' else None

        page.query_selector.side_effect = query
        ex = build_executor(page)
        result = await ex.fill_form([{"name": "bio", "value": "hello"}])
        assert result.success is True
        declarations = [c.args[0] for c in area.call.await_args_list]
        assert declarations == [executor_mod._SELECT_ALL_JS, executor_mod._FIRE_INPUT_EVENTS_JS]
        assert [c.args[:2] for c in page.key.await_args_list] == [("keyDown", "Backspace"), ("keyUp", "Backspace")]
        page.insert_text.assert_awaited_once_with("hello")

    async def test_label_text_locates_field(self):
        """A field with no matching name, id or placeholder is found through its <label>."""
        page = make_page()
        page.evaluate.return_value = {"objectId": "email-input"}

        async def call_function(object_id, declaration, *args, **kwargs):
            if "tagName" in declaration:
                return "INPUT"
            if "getAttribute" in declaration:
                return "email"
            return True

        page.call_function.side_effect = call_function
        ex = build_executor(page)
        result = await ex.fill_form([{"name": "Email address", "value": "ann@example.com"}])
        assert result.success is True
        assert result.data["filled_count"] == 1
        assert '"Email address"' in page.evaluate.await_args_list[0].args[0]
        assert page.call_function.await_args_list[0].args[0] == "email-input"
        page.insert_text.assert_awaited_once_with("ann@example.com")

    async def test_submit_clicks_first_visible_control(self):
        page = make_page()
        hidden = make_element(visible=False, name="hidden")
        shown = make_element(name="shown")

        async def query_all(selector):
            return [hidden, shown] if selector == "button[type='submit']" else []

        page.query_selector_all.side_effect = query_all
        ex = build_executor(page)
        result = await ex.fill_form([], submit=True)
        assert result.data["submitted"] is True
        shown.click.assert_awaited_once()
        hidden.click.assert_not_awaited()

    async def test_submit_falls_back_to_enter(self):
        """With no submit control, Enter is pressed in the first text field."""
        page = make_page()
        first = make_element(tag="INPUT", name="first")
        second = make_element(tag="INPUT", name="second")

        async def query_all(selector):
            return [first, second] if selector.startswith("input[type='text']") else []

        page.query_selector_all.side_effect = query_all
        ex = build_executor(page)
        result = await ex.fill_form([], submit=True)
        assert result.data["submitted"] is True
        first.focus.assert_awaited_once()
        second.focus.assert_not_awaited()
        page.key.assert_any_await("keyDown", "Enter", "Enter", text="\r", key_code=13)

    async def test_submit_without_controls_reports_error(self):
        page = make_page()
        ex = build_executor(page)
        result = await ex.fill_form([], submit=True)
        assert result.data["submitted"] is False
        assert result.data["errors"][0].startswith("submit:")


class TestTabsAndBatch:
    async def test_switch_out_of_range(self):
        page = make_page()
        ex = build_executor(page)
        result = await ex.tabs("switch", index=5)
        assert result.success is False
        assert "out of range" in result.error

    async def test_list_tabs_marks_active(self):
        first, second = make_page("a"), make_page("b", url="https://b.example/")
        browser = make_browser(second, pages=[first, second])
        ex = build_executor(browser=browser)
        result = await ex.tabs("list")
        assert result.data["count"] == 2
        assert [t["active"] for t in result.data["tabs"]] == [False, True]

    async def test_batch_stops_on_error(self):
        """stop_on_error halts the batch after the first failure."""
        el = make_element()
        ex = build_executor(make_page(), el)
        ex.resolver.find.side_effect = [ElementNotFound("#a"), el]
        batch = await ex.execute_batch([
            BatchOperation(type="click", params={"identifier": "#a"}, stop_on_error=True),
            {"type": "click", "params": {"identifier": "#b"}},
        ])
        assert batch.total_count == 2
        assert batch.failed_count == 1
        assert len(batch.results) == 1

    async def test_batch_continues_by_default(self):
        el = make_element()
        ex = build_executor(make_page(), el)
        ex.resolver.find.side_effect = [ElementNotFound("#a"), el]
        batch = await ex.execute_batch([
            {"type": "click", "params": {"identifier": "#a"}},
            {"type": "click", "params": {"identifier": "#b"}},
            {"type": "teleport", "params": {}},
        ])
        assert (batch.success_count, batch.failed_count) == (1, 2)


class TestScreenshot:
    async def test_saved_to_directory(self, tmp_path):
        page = make_page()
        ex = build_executor(page)
        ex.screenshot_dir = str(tmp_path)
        result = await ex.screenshot()
        assert result.success is True
        assert result.data["format"] == "png"
        assert result.data["size"] == 4
        assert result.data["path"].endswith(".png")
        assert (tmp_path / result.data["path"].split("/")[-1]).read_bytes() == b"\x89PNG"

    async def test_rejects_unknown_format(self):
        ex = build_executor(make_page())
        result = await ex.screenshot(fmt="gif")
        assert result.success is False
