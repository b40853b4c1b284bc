"""Public operation surface.

Every public coroutine on :class:`Executor` returns an :class:`OperationResult`
and never raises for browser-side failures. Typed errors become
``success=False`` results carrying the identifier and timeout that failed;
anything unexpected coming out of the driver is logged and reported as a
``RecoveredPanic``. Operations that change the page attach a fresh
accessibility snapshot under ``data["accessibility_snapshot"]``.
"""

import asyncio
import base64
import functools
import inspect
import logging
import os
from datetime import datetime
from typing import Any

from axreplay import config
from axreplay.browser import BrowserManager
from axreplay.errors import (
    AutomationError, CDPError, ElementNotFound, OperationTimeout, RecoveredPanic,
    SessionInvalid, StaleReference, is_session_error,
)
from axreplay.models import BatchOperation, BatchResult, FormField, OperationResult, TabInfo
from axreplay.page import CDPPage, Element
from axreplay.refs import RefCache
from axreplay.resolver import Resolver, css_string
from axreplay.snapshot import Snapshotter

logger = logging.getLogger(__name__)

DEFAULT_NAVIGATE_TIMEOUT = 60.0
DEFAULT_ELEMENT_TIMEOUT = 10.0
DEFAULT_WAIT_TIMEOUT = 30.0
SNAPSHOT_TIMEOUT = 10.0
LIVENESS_TIMEOUT = 2.0
# Pause after scrolling so scroll-triggered layout shifts settle before clicking
SCROLL_SETTLE = 0.3

# name → (key, code, windowsVirtualKeyCode, text)
_NAMED_KEYS = {
    "enter": ("Enter", "Enter", 13, "\r"),
    "return": ("Enter", "Enter", 13, "\r"),
    "tab": ("Tab", "Tab", 9, ""),
    "escape": ("Escape", "Escape", 27, ""),
    "esc": ("Escape", "Escape", 27, ""),
    "backspace": ("Backspace", "Backspace", 8, ""),
    "delete": ("Delete", "Delete", 46, ""),
    "arrowup": ("ArrowUp", "ArrowUp", 38, ""),
    "up": ("ArrowUp", "ArrowUp", 38, ""),
    "arrowdown": ("ArrowDown", "ArrowDown", 40, ""),
    "down": ("ArrowDown", "ArrowDown", 40, ""),
    "arrowleft": ("ArrowLeft", "ArrowLeft", 37, ""),
    "left": ("ArrowLeft", "ArrowLeft", 37, ""),
    "arrowright": ("ArrowRight", "ArrowRight", 39, ""),
    "right": ("ArrowRight", "ArrowRight", 39, ""),
    "home": ("Home", "Home", 36, ""),
    "end": ("End", "End", 35, ""),
    "pageup": ("PageUp", "PageUp", 33, ""),
    "pagedown": ("PageDown", "PageDown", 34, ""),
    "space": (" ", "Space", 32, " "),
}

# modifier → (CDP bit, key, code, keyCode)
_MODIFIERS = {
    "alt": (1, "Alt", "AltLeft", 18),
    "ctrl": (2, "Control", "ControlLeft", 17),
    "meta": (4, "Meta", "MetaLeft", 91),
    "shift": (8, "Shift", "ShiftLeft", 16),
}

_SYNTHETIC_CLICK_JS = """function() {
    this.focus && this.focus();
    const r = this.getBoundingClientRect();
    const init = {bubbles: true, cancelable: true, view: window, button: 0,
                  clientX: r.left + r.width / 2, clientY: r.top + r.height / 2};
    this.dispatchEvent(new PointerEvent('pointerdown', init));
    this.dispatchEvent(new MouseEvent('mousedown', init));
    this.dispatchEvent(new PointerEvent('pointerup', init));
    this.dispatchEvent(new MouseEvent('mouseup', init));
    this.click();
    return true;
}"""

_SELECT_ALL_JS = """function() {
    const el = (this.tagName === 'INPUT' || this.tagName === 'TEXTAREA')
        ? this : (this.querySelector('input:not([type=hidden]),textarea') || this);
    el.focus();
    try { el.setSelectionRange(0, (el.value || '').length); }
    catch (e) {
        const r = document.createRange();
        r.selectNodeContents(el);
        const s = window.getSelection();
        s.removeAllRanges();
        s.addRange(r);
    }
}"""

_FIRE_INPUT_EVENTS_JS = """function() {
    this.dispatchEvent(new Event('input', {bubbles: true}));
    this.dispatchEvent(new Event('change', {bubbles: true}));
}"""

_SELECT_BY_TEXT_JS = """function(text) {
    if (!this.options) return false;
    for (const opt of this.options) {
        if (opt.text.trim() === text) {
            opt.selected = true;
            this.dispatchEvent(new Event('input', {bubbles: true}));
            this.dispatchEvent(new Event('change', {bubbles: true}));
            return true;
        }
    }
    return false;
}"""

_SELECT_BY_VALUE_JS = """function(value) {
    this.value = value;
    this.dispatchEvent(new Event('change', {bubbles: true}));
    return this.value === value;
}"""

_LABEL_TARGET_JS = """function(text) {
    const needle = text.toLowerCase();
    for (const label of document.querySelectorAll('label')) {
        if (!(label.innerText || '').toLowerCase().includes(needle)) continue;
        const forId = label.getAttribute('for');
        if (forId) {
            const el = document.getElementById(forId);
            if (el) return el;
        }
        const inner = label.querySelector('input, textarea, select');
        if (inner) return inner;
    }
    return null;
}"""

_SUBMIT_SELECTORS = (
    "button[type='submit']",
    "input[type='submit']",
    "button:not([type])",
    "button",
)

_TRUTHY = {"true", "1", "yes", "on"}


def wrap_script(script: str) -> str:
    """Turn a bare statement list or expression into a function declaration."""
    script = script.strip()
    if script.startswith(("()", "function", "async ")):
        return script
    if "\n" not in script and ";" not in script.rstrip(";") and not script.startswith("return "):
        return f"() => ({script.rstrip(';')})"
    return f"() => {{\n{script}\n}}"


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _failure(name: str, exc: BaseException, identifier: str | None, timeout: float | None) -> OperationResult:
    error = str(exc)
    data: dict[str, Any] = {"error_type": getattr(exc, "error_type", "cdp_error")}
    if identifier:
        data["identifier"] = identifier
        if identifier not in error:
            error = f"{error} (identifier: {identifier})"
    if timeout is None:
        timeout = getattr(exc, "timeout", None)
    if timeout is not None:
        data["timeout"] = timeout
    return OperationResult.fail(f"{name} failed", error, data)


def operation(name: str):
    """Convert raised errors into failed results at the operation boundary."""

    def decorator(func):
        sig = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            bound = sig.bind(self, *args, **kwargs)
            bound.apply_defaults()
            identifier = bound.arguments.get("identifier")
            timeout = bound.arguments.get("timeout")
            try:
                return await func(self, *args, **kwargs)
            except (AutomationError, CDPError) as e:
                logger.warning(f"[{name}] {e}")
                return _failure(name, e, identifier, timeout)
            except Exception as e:
                logger.exception(f"[{name}] Unexpected driver failure")
                panic = RecoveredPanic(f"{name}: {type(e).__name__}: {e}")
                return _failure(name, panic, identifier, timeout)

        return wrapper

    return decorator


class Executor:
    def __init__(self, browser: BrowserManager, snapshotter: Snapshotter | None = None,
                 resolver: Resolver | None = None, screenshot_dir: str | None = None):
        self.browser = browser
        if snapshotter is None:
            cache = resolver.ref_cache if resolver is not None else RefCache()
            snapshotter = Snapshotter(cache)
        self.snapshotter = snapshotter
        self.resolver = resolver or Resolver(snapshotter.ref_cache)
        self.screenshot_dir = screenshot_dir or config.SCREENSHOT_DIR

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _page(self) -> CDPPage:
        page = await self.browser.get_active_page()
        if page is None:
            raise SessionInvalid("no active page")
        return page

    async def _find(self, page: CDPPage, identifier: str, timeout: float) -> Element:
        return await self.resolver.find(page, identifier, timeout)

    async def _probe(self, page: CDPPage, identifier: str) -> Element | None:
        try:
            return await self.resolver.find(page, identifier, timeout=0)
        except (ElementNotFound, StaleReference):
            return None

    async def _wait_until(self, element: Element, state: str, timeout: float, identifier: str):
        check = element.is_visible if state == "visible" else element.is_enabled
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await check():
            if loop.time() >= deadline:
                raise OperationTimeout(f"wait for {state}", timeout, identifier)
            await asyncio.sleep(0.1)

    async def _attach_snapshot(self, page: CDPPage, result: OperationResult,
                               timeout: float = SNAPSHOT_TIMEOUT) -> OperationResult:
        try:
            text = await self.snapshotter.snapshot_text(page, timeout)
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Snapshot] Skipped for result: {e}")
            return result
        data = dict(result.data or {})
        data["accessibility_snapshot"] = text
        return result.model_copy(update={"data": data})

    # ── Navigation ────────────────────────────────────────────────────────

    async def _is_responsive(self, page: CDPPage) -> bool:
        try:
            await page.ready_state(timeout=LIVENESS_TIMEOUT)
            return True
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Navigate] Existing page is unresponsive ({e}), opening a new one")
            return False

    @operation("Navigate")
    async def navigate(self, url: str, timeout: float | None = None,
                       wait_until: str = "load") -> OperationResult:
        timeout = timeout or DEFAULT_NAVIGATE_TIMEOUT
        logger.info(f"[Navigate] {url} (timeout={timeout}s, wait_until={wait_until})")
        if not await self.browser.is_running():
            await self.browser.start()
            logger.info("[Navigate] Browser started")

        page = await self.browser.get_active_page()
        if page is None or not page.is_alive or not await self._is_responsive(page):
            page = await self.browser.open_page(url)
        else:
            try:
                result = await page.send("Page.navigate", {"url": url}, timeout=timeout)
                if result.get("errorText"):
                    raise CDPError("Page.navigate", result["errorText"])
            except (SessionInvalid, CDPError) as e:
                if not is_session_error(e):
                    raise
                logger.warning(f"[Navigate] Session error ({e}), retrying once on a new page")
                page = await self.browser.open_page(url)

        try:
            await page.wait_for_load(timeout, wait_until)
        except OperationTimeout as e:
            # A partially loaded page is still usable
            logger.warning(f"[Navigate] {e} (continuing)")

        info = await page.page_info()
        result = OperationResult.ok(f"Successfully navigated to {url}", {"url": info["url"] or url,
                                                                       "title": info["title"]})
        return await self._attach_snapshot(page, result)

    async def _history(self, name: str, expression: str) -> OperationResult:
        page = await self._page()
        await page.evaluate(expression)
        await asyncio.sleep(0.5)
        try:
            await page.wait_for_load(DEFAULT_ELEMENT_TIMEOUT)
        except OperationTimeout as e:
            logger.warning(f"[{name}] {e} (continuing)")
        info = await page.page_info()
        return await self._attach_snapshot(page, OperationResult.ok(f"{name} completed", info))

    @operation("GoBack")
    async def go_back(self) -> OperationResult:
        return await self._history("GoBack", "window.history.back()")

    @operation("GoForward")
    async def go_forward(self) -> OperationResult:
        return await self._history("GoForward", "window.history.forward()")

    @operation("Reload")
    async def reload(self) -> OperationResult:
        page = await self._page()
        await page.send("Page.reload")
        try:
            await page.wait_for_load(DEFAULT_ELEMENT_TIMEOUT)
        except OperationTimeout as e:
            logger.warning(f"[Reload] {e} (continuing)")
        return await self._attach_snapshot(page, OperationResult.ok("Page reloaded", await page.page_info()))

    # ── Element actions ───────────────────────────────────────────────────

    @operation("Click")
    async def click(self, identifier: str, timeout: float | None = None, wait_visible: bool = True,
                    wait_enabled: bool = True, button: str = "left", click_count: int = 1) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        element = await self._find(page, identifier, timeout)
        if wait_visible:
            await self._wait_until(element, "visible", timeout, identifier)
        if wait_enabled:
            await self._wait_until(element, "enabled", timeout, identifier)
        await element.scroll_into_view()
        await asyncio.sleep(SCROLL_SETTLE)

        method = "synthetic"
        if button != "left" or click_count != 1:
            method = "native"
            await element.click(button, click_count)
        else:
            try:
                await element.call(_SYNTHETIC_CLICK_JS, timeout=timeout)
            except (CDPError, OperationTimeout) as e:
                logger.warning(f"[Click] Synthetic click failed ({e}), falling back to native click")
                method = "native"
                await element.click(button, click_count)

        logger.info(f"[Click] {identifier} ({method})")
        result = OperationResult.ok(f"Successfully clicked {identifier}", {"method": method})
        return await self._attach_snapshot(page, result)

    @operation("Type")
    async def type_text(self, identifier: str, text: str, timeout: float | None = None, clear: bool = True,
                        wait_visible: bool = True, delay: float = 0.0) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        element = await self._find(page, identifier, timeout)
        if wait_visible:
            await self._wait_until(element, "visible", timeout, identifier)
        await element.focus()
        if clear:
            await element.call(_SELECT_ALL_JS)
            await page.key("keyDown", "Backspace", "Backspace", key_code=8)
            await page.key("keyUp", "Backspace", "Backspace", key_code=8)
        if delay > 0:
            for char in text:
                await page.key("keyDown", char, text=char)
                await page.key("keyUp", char)
                await asyncio.sleep(delay)
        else:
            await page.insert_text(text)
        await element.call(_FIRE_INPUT_EVENTS_JS)
        logger.info(f"[Type] {len(text)} chars into {identifier}")
        result = OperationResult.ok(f"Successfully typed into {identifier}", {"text": text})
        return await self._attach_snapshot(page, result)

    async def _select_option(self, element: Element, value: str, identifier: str) -> str:
        if await element.call(_SELECT_BY_TEXT_JS, value):
            return "text"
        if await element.call(_SELECT_BY_VALUE_JS, value):
            return "value"
        raise ElementNotFound(f"option {value!r} in {identifier}")

    @operation("Select")
    async def select(self, identifier: str, value: str, timeout: float | None = None,
                     wait_visible: bool = True) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        element = await self._find(page, identifier, timeout)
        if wait_visible:
            await self._wait_until(element, "visible", timeout, identifier)
        matched_by = await self._select_option(element, value, identifier)
        result = OperationResult.ok(f"Successfully selected {value!r} in {identifier}",
                                    {"value": value, "matched_by": matched_by})
        return await self._attach_snapshot(page, result)

    @operation("Hover")
    async def hover(self, identifier: str, timeout: float | None = None,
                    wait_visible: bool = True) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        element = await self._find(page, identifier, timeout)
        if wait_visible:
            await self._wait_until(element, "visible", timeout, identifier)
        await element.hover()
        return await self._attach_snapshot(page, OperationResult.ok(f"Successfully hovered {identifier}"))

    @operation("WaitFor")
    async def wait_for(self, identifier: str, state: str = "visible",
                       timeout: float | None = None) -> OperationResult:
        timeout = timeout or DEFAULT_WAIT_TIMEOUT
        if state not in ("visible", "hidden", "enabled", "attached"):
            raise AutomationError(f"unknown wait state: {state}")
        page = await self._page()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            element = await self._probe(page, identifier)
            if state == "attached" and element is not None:
                break
            if state == "visible" and element is not None and await element.is_visible():
                break
            if state == "enabled" and element is not None and await element.is_enabled():
                break
            if state == "hidden" and (element is None or not await element.is_visible()):
                break
            if loop.time() >= deadline:
                raise OperationTimeout(f"wait for {state}", timeout, identifier)
            await asyncio.sleep(0.25)
        return OperationResult.ok(f"Element {identifier} is {state}", {"state": state})

    @operation("GetText")
    async def get_text(self, identifier: str, timeout: float | None = None) -> OperationResult:
        page = await self._page()
        element = await self._find(page, identifier, timeout or DEFAULT_ELEMENT_TIMEOUT)
        text = await element.text()
        return OperationResult.ok(f"Got text of {identifier}", {"text": text})

    @operation("GetValue")
    async def get_value(self, identifier: str, timeout: float | None = None) -> OperationResult:
        page = await self._page()
        element = await self._find(page, identifier, timeout or DEFAULT_ELEMENT_TIMEOUT)
        value = await element.value()
        return OperationResult.ok(f"Got value of {identifier}", {"value": value})

    @operation("UploadFile")
    async def upload_files(self, identifier: str, file_paths: list[str],
                           timeout: float | None = None) -> OperationResult:
        missing = [p for p in file_paths if not os.path.exists(p)]
        if missing:
            raise AutomationError(f"files not found: {', '.join(missing)}")
        page = await self._page()
        element = await self._find(page, identifier, timeout or DEFAULT_ELEMENT_TIMEOUT)
        await element.set_files([os.path.abspath(p) for p in file_paths])
        result = OperationResult.ok(f"Uploaded {len(file_paths)} file(s) to {identifier}",
                                    {"files": file_paths})
        return await self._attach_snapshot(page, result)

    @operation("Drag")
    async def drag(self, identifier: str, target: str, timeout: float | None = None) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        source = await self._find(page, identifier, timeout)
        destination = await self._find(page, target, timeout)
        sx, sy = await source.center()
        tx, ty = await destination.center()
        await page.mouse("mouseMoved", sx, sy)
        await page.mouse("mousePressed", sx, sy)
        steps = 10
        for i in range(1, steps + 1):
            await page.mouse("mouseMoved", sx + (tx - sx) * i / steps, sy + (ty - sy) * i / steps)
            await asyncio.sleep(0.01)
        await page.mouse("mouseReleased", tx, ty)
        result = OperationResult.ok(f"Dragged {identifier} to {target}",
                                    {"from": {"x": sx, "y": sy}, "to": {"x": tx, "y": ty}})
        return await self._attach_snapshot(page, result)

    # ── Keyboard and viewport ─────────────────────────────────────────────

    @operation("PressKey")
    async def press_key(self, key: str, ctrl: bool = False, shift: bool = False,
                        alt: bool = False, meta: bool = False) -> OperationResult:
        page = await self._page()
        named = _NAMED_KEYS.get(key.lower())
        if named is None:
            if len(key) != 1:
                raise AutomationError(f"unknown key: {key}")
            named = (key, "", 0, key)
        key_name, code, key_code, text = named

        held = [m for m, on in (("ctrl", ctrl), ("shift", shift), ("alt", alt), ("meta", meta)) if on]
        modifiers = 0
        for m in held:
            bit, m_key, m_code, m_code_num = _MODIFIERS[m]
            modifiers |= bit
            await page.key("rawKeyDown", m_key, m_code, key_code=m_code_num, modifiers=modifiers)
        # Text insertion is suppressed while a command modifier is held
        insert = text if not (ctrl or alt or meta) else ""
        await page.key("keyDown", key_name, code, text=insert, key_code=key_code, modifiers=modifiers)
        await page.key("keyUp", key_name, code, key_code=key_code, modifiers=modifiers)
        for m in reversed(held):
            bit, m_key, m_code, m_code_num = _MODIFIERS[m]
            modifiers &= ~bit
            await page.key("keyUp", m_key, m_code, key_code=m_code_num, modifiers=modifiers)

        combo = "+".join(held + [key])
        return await self._attach_snapshot(page, OperationResult.ok(f"Successfully pressed key: {combo}"))

    @operation("Resize")
    async def resize(self, width: int, height: int) -> OperationResult:
        page = await self._page()
        await page.send("Emulation.setDeviceMetricsOverride", {
            "width": width, "height": height, "deviceScaleFactor": 1, "mobile": False,
        })
        return OperationResult.ok(f"Resized viewport to {width}x{height}", {"width": width, "height": height})

    @operation("ScrollToBottom")
    async def scroll_to_bottom(self) -> OperationResult:
        page = await self._page()
        await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
        await asyncio.sleep(0.3)
        return await self._attach_snapshot(page, OperationResult.ok("Scrolled to bottom"))

    # ── Reading the page ──────────────────────────────────────────────────

    async def _extract_one(self, element: Element, kind: str, attr: str, fields: list[str]) -> dict:
        if kind == "html":
            return {"html": await element.html()}
        if kind == "attribute":
            return {attr: await element.attribute(attr)} if attr else {}
        if kind == "property":
            return {attr: await element.property(attr)} if attr else {}
        if fields:
            data = {}
            for field in fields:
                if field == "text":
                    data["text"] = await element.text()
                elif field == "html":
                    data["html"] = await element.html()
                elif field == "value":
                    data["value"] = await element.value()
                elif field in ("href", "src"):
                    value = await element.attribute(field)
                    if value is not None:
                        data[field] = value
            return data
        return {"text": await element.text()}

    @operation("Extract")
    async def extract(self, identifier: str, kind: str = "text", attr: str = "", multiple: bool = False,
                      fields: list[str] | None = None, timeout: float | None = None) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        fields = fields or []
        page = await self._page()
        if multiple:
            if identifier.startswith(("/", "(")):
                elements = await page.query_xpath(identifier)
            else:
                elements = await page.query_selector_all(identifier)
            result: Any = [await self._extract_one(el, kind, attr, fields) for el in elements]
        else:
            element = await self._find(page, identifier, timeout)
            result = await self._extract_one(element, kind, attr, fields)
        return OperationResult.ok("Successfully extracted data", {"result": result})

    @operation("Screenshot")
    async def screenshot(self, fmt: str = "png", quality: int = 80, full_page: bool = False,
                         save: bool = True) -> OperationResult:
        if fmt not in ("png", "jpeg"):
            raise AutomationError(f"unsupported screenshot format: {fmt}")
        page = await self._page()
        raw = await page.screenshot(fmt, quality, full_page)
        data: dict[str, Any] = {
            "data": base64.b64encode(raw).decode("ascii"),
            "format": fmt,
            "size": len(raw),
        }
        if save:
            os.makedirs(self.screenshot_dir, exist_ok=True)
            ext = "jpg" if fmt == "jpeg" else "png"
            path = os.path.join(self.screenshot_dir,
                                f"screenshot_{datetime.now().strftime('%Y%m%d_%H%M%S')}.{ext}")
            with open(path, "wb") as f:
                f.write(raw)
            data["path"] = path
        return OperationResult.ok(f"Screenshot captured ({len(raw)} bytes)", data)

    @operation("Evaluate")
    async def evaluate(self, script: str, timeout: float | None = None) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        value = await page.evaluate(f"({wrap_script(script)})()", timeout=timeout, await_promise=True)
        return OperationResult.ok("Script executed", {"result": value})

    @operation("Snapshot")
    async def snapshot(self, timeout: float | None = None) -> OperationResult:
        timeout = timeout or SNAPSHOT_TIMEOUT
        page = await self._page()
        try:
            snap = await asyncio.wait_for(self.snapshotter.snapshot(page), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeout("snapshot", timeout) from e
        return OperationResult.ok(f"Captured {len(snap.refs)} references", {
            "accessibility_snapshot": snap.text,
            "ref_count": len(snap.refs),
        })

    @operation("GetPageInfo")
    async def get_page_info(self) -> OperationResult:
        page = await self._page()
        return OperationResult.ok("Got page info", await page.page_info())

    @operation("GetPageText")
    async def get_page_text(self) -> OperationResult:
        page = await self._page()
        text = await page.evaluate("document.body ? document.body.innerText : ''")
        return OperationResult.ok("Got page text", {"text": text or ""})

    @operation("GetPageContent")
    async def get_page_content(self) -> OperationResult:
        page = await self._page()
        html = await page.evaluate("document.documentElement.outerHTML")
        return OperationResult.ok("Got page content", {"html": html or ""})

    # ── Tabs ──────────────────────────────────────────────────────────────

    async def _tab_infos(self) -> tuple[list[CDPPage], list[TabInfo]]:
        pages = await self.browser.list_pages()
        active = await self.browser.get_active_page()
        active_id = active.target_id if active else None
        infos = [
            TabInfo(index=i, title=p.title, url=p.url, active=p.target_id == active_id)
            for i, p in enumerate(pages)
        ]
        return pages, infos

    @operation("Tabs")
    async def tabs(self, action: str = "list", url: str = "", index: int = 0) -> OperationResult:
        if action == "new":
            page = await self.browser.new_page(url or "about:blank")
            if url:
                try:
                    await page.wait_for_load(DEFAULT_NAVIGATE_TIMEOUT)
                except OperationTimeout as e:
                    logger.warning(f"[Tabs] {e} (continuing)")
            _, infos = await self._tab_infos()
            return OperationResult.ok(f"Opened new tab {url or 'about:blank'}",
                                      {"tabs": [t.model_dump() for t in infos]})

        pages, infos = await self._tab_infos()
        if action == "list":
            return OperationResult.ok(f"Found {len(infos)} tab(s)",
                                      {"tabs": [t.model_dump() for t in infos], "count": len(infos)})
        if action not in ("switch", "close"):
            raise AutomationError(f"unknown tabs action: {action}")
        if not 0 <= index < len(pages):
            raise AutomationError(f"tab index {index} out of range (0-{len(pages) - 1})")

        page = pages[index]
        if action == "switch":
            await self.browser.activate_page(page)
            info = await page.page_info()
            return await self._attach_snapshot(page, OperationResult.ok(f"Switched to tab {index}", info))
        await self.browser.close_page(page)
        _, infos = await self._tab_infos()
        return OperationResult.ok(f"Closed tab {index}", {"tabs": [t.model_dump() for t in infos]})

    @operation("ClosePage")
    async def close_page(self) -> OperationResult:
        page = await self._page()
        await self.browser.close_page(page)
        return OperationResult.ok("Page closed")

    # ── Forms ─────────────────────────────────────────────────────────────

    async def _form_element(self, page: CDPPage, name: str, timeout: float) -> Element:
        quoted = css_string(name)
        selectors = [
            f"input[name={quoted}]", f"input[id={quoted}]",
            f"textarea[name={quoted}]", f"textarea[id={quoted}]",
            f"select[name={quoted}]", f"select[id={quoted}]",
            f"input[placeholder={quoted}]", f"input[aria-label={quoted}]",
        ]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for selector in selectors:
                element = await page.query_selector(selector)
                if element is not None:
                    return element
            remote = await page.evaluate(f"({_LABEL_TARGET_JS})({css_string(name)})", return_by_value=False)
            if remote.get("objectId"):
                return Element(page, remote["objectId"])
            if loop.time() >= deadline:
                raise ElementNotFound(f"form field {name!r}", timeout)
            await asyncio.sleep(0.25)

    async def _fill_field(self, page: CDPPage, field: FormField, timeout: float):
        element = await self._form_element(page, field.name, timeout)
        tag = (await element.tag_name()).lower()
        input_type = (field.type or await element.attribute("type") or "text").lower()

        if tag == "select":
            await self._select_option(element, str(field.value), field.name)
            return
        if tag == "input" and input_type in ("checkbox", "radio"):
            wanted = _is_truthy(field.value)
            checked = bool(await element.property("checked"))
            if wanted != checked:
                await element.click()
            return
        if tag not in ("input", "textarea"):
            raise AutomationError(f"unsupported element type for {field.name!r}: {tag}")

        await element.scroll_into_view()
        await element.call(_SELECT_ALL_JS)
        await page.key("keyDown", "Backspace", "Backspace", key_code=8)
        await page.key("keyUp", "Backspace", "Backspace", key_code=8)
        await page.insert_text(str(field.value))
        await element.call(_FIRE_INPUT_EVENTS_JS)

    async def _submit_form(self, page: CDPPage):
        for selector in _SUBMIT_SELECTORS:
            for element in await page.query_selector_all(selector):
                if await element.is_visible():
                    await element.click()
                    return
        inputs = await page.query_selector_all(
            "input[type='text'], input[type='email'], input[type='password']")
        if not inputs:
            raise ElementNotFound("submit button")
        await inputs[0].focus()
        await page.key("keyDown", "Enter", "Enter", text="\r", key_code=13)
        await page.key("keyUp", "Enter", "Enter", key_code=13)

    @operation("FillForm")
    async def fill_form(self, fields: list[FormField | dict], submit: bool = False,
                        timeout: float | None = None) -> OperationResult:
        timeout = timeout or DEFAULT_ELEMENT_TIMEOUT
        page = await self._page()
        fields = [f if isinstance(f, FormField) else FormField(**f) for f in fields]
        errors: list[str] = []
        filled = 0
        for field in fields:
            try:
                await self._fill_field(page, field, timeout)
                filled += 1
            except (AutomationError, CDPError) as e:
                logger.warning(f"[FillForm] {field.name}: {e}")
                errors.append(f"{field.name}: {e}")

        submitted = False
        if submit:
            try:
                await self._submit_form(page)
                submitted = True
            except (AutomationError, CDPError) as e:
                errors.append(f"submit: {e}")

        data = {"filled_count": filled, "total_fields": len(fields), "errors": errors, "submitted": submitted}
        success = not errors or filled > 0
        if success:
            result = OperationResult.ok(f"Filled {filled}/{len(fields)} field(s)", data)
        else:
            result = OperationResult.fail("FillForm failed", "; ".join(errors), data)
        return await self._attach_snapshot(page, result)

    # ── Batches ───────────────────────────────────────────────────────────

    async def _dispatch(self, op: BatchOperation) -> OperationResult:
        p = op.params
        if op.type == "navigate":
            return await self.navigate(p.get("url", ""), p.get("timeout"), p.get("wait_until", "load"))
        if op.type == "click":
            return await self.click(p.get("identifier", ""), p.get("timeout"))
        if op.type == "type":
            return await self.type_text(p.get("identifier", ""), p.get("text", ""), p.get("timeout"),
                                        p.get("clear", True))
        if op.type == "select":
            return await self.select(p.get("identifier", ""), p.get("value", ""), p.get("timeout"))
        if op.type == "wait":
            return await self.wait_for(p.get("identifier", ""), p.get("state", "visible"), p.get("timeout"))
        if op.type == "screenshot":
            return await self.screenshot(p.get("format", "png"), p.get("quality", 80), p.get("full_page", False))
        return OperationResult.fail("Batch step failed", f"unknown operation type: {op.type}",
                                    {"error_type": "automation_error"})

    async def execute_batch(self, operations: list[BatchOperation | dict]) -> BatchResult:
        batch = BatchResult(total_count=len(operations))
        loop = asyncio.get_running_loop()
        started = loop.time()
        for raw in operations:
            op = raw if isinstance(raw, BatchOperation) else BatchOperation(**raw)
            result = await self._dispatch(op)
            batch.results.append(result)
            if result.success:
                batch.success_count += 1
            else:
                batch.failed_count += 1
                if op.stop_on_error:
                    logger.warning(f"[Batch] Stopping at {op.type}: {result.error}")
                    break
        batch.end_time = datetime.now(batch.start_time.tzinfo)
        batch.duration_ms = int((loop.time() - started) * 1000)
        return batch
