"""Page and element handles on top of a :class:`CDPConnection`.

``CDPPage`` owns the connection to one page target. ``Element`` wraps a
Runtime remote object id and exposes the handful of DOM queries the resolver
and executor need. Transport failures are normalized here: timeouts become
:class:`OperationTimeout`, dropped sessions become :class:`SessionInvalid`.
"""

import asyncio
import base64
import json
import logging

import aiohttp

from axreplay.cdp import CDPConnection, get_ws_url
from axreplay.errors import CDPError, OperationTimeout, SessionInvalid

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 10.0


class CDPPage:
    """One browser tab (a CDP ``page`` target)."""

    def __init__(self, target_id: str, url: str = "", title: str = "",
                 ws_url: str | None = None, base_url: str | None = None):
        self.target_id = target_id
        self.url = url
        self.title = title
        self.ws_url = ws_url
        self.base_url = base_url
        self._conn: CDPConnection | None = None

    def __repr__(self) -> str:
        return f"CDPPage({self.target_id!r}, url={self.url!r})"

    @property
    def is_alive(self) -> bool:
        return self._conn is not None and self._conn.is_alive

    async def connect(self):
        if self.is_alive:
            return
        if not self.ws_url:
            self.ws_url = await get_ws_url(self.target_id, self.base_url)
        self._conn = CDPConnection(self.ws_url)
        await self._conn.connect()
        logger.debug(f"[Page] Connected to {self.target_id}")

    async def close(self):
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def send(self, method: str, params: dict | None = None,
                   timeout: float = DEFAULT_COMMAND_TIMEOUT) -> dict:
        if self._conn is None:
            raise SessionInvalid(f"Session closed: page {self.target_id} is not connected")
        try:
            return await self._conn.send(method, params, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(method, timeout) from e
        except CDPError as e:
            if e.is_session_error():
                raise SessionInvalid(str(e)) from e
            raise
        except (aiohttp.ClientError, ConnectionError) as e:
            raise SessionInvalid(f"Session closed: {e}") from e

    # ── Script evaluation ─────────────────────────────────────────────────

    async def evaluate(self, expression: str, timeout: float = DEFAULT_COMMAND_TIMEOUT,
                       context_id: int | None = None, await_promise: bool = False,
                       return_by_value: bool = True):
        """Evaluate *expression* and return its JSON value (or the raw remote object)."""
        params = {
            "expression": expression,
            "returnByValue": return_by_value,
            "awaitPromise": await_promise,
        }
        if context_id is not None:
            params["contextId"] = context_id
        result = await self.send("Runtime.evaluate", params, timeout=timeout)
        _raise_for_exception("Runtime.evaluate", result)
        remote = result.get("result", {})
        if return_by_value:
            return remote.get("value")
        return remote

    async def call_function(self, object_id: str, declaration: str, *args,
                            timeout: float = DEFAULT_COMMAND_TIMEOUT,
                            return_by_value: bool = True, await_promise: bool = False):
        params = {
            "objectId": object_id,
            "functionDeclaration": declaration,
            "arguments": [{"value": a} for a in args],
            "returnByValue": return_by_value,
            "awaitPromise": await_promise,
        }
        result = await self.send("Runtime.callFunctionOn", params, timeout=timeout)
        _raise_for_exception("Runtime.callFunctionOn", result)
        remote = result.get("result", {})
        if return_by_value:
            return remote.get("value")
        return remote

    async def _array_elements(self, remote: dict) -> list["Element"]:
        object_id = remote.get("objectId")
        if not object_id:
            return []
        props = await self.send("Runtime.getProperties", {
            "objectId": object_id, "ownProperties": True,
        })
        items = []
        for prop in props.get("result", []):
            name = prop.get("name", "")
            oid = prop.get("value", {}).get("objectId")
            if name.isdigit() and oid:
                items.append((int(name), Element(self, oid)))
        items.sort(key=lambda item: item[0])
        return [el for _, el in items]

    # ── Queries ───────────────────────────────────────────────────────────

    async def query_selector(self, selector: str) -> "Element | None":
        remote = await self.evaluate(
            f"document.querySelector({json.dumps(selector)})", return_by_value=False)
        oid = remote.get("objectId")
        return Element(self, oid) if oid else None

    async def query_selector_all(self, selector: str) -> list["Element"]:
        remote = await self.evaluate(
            f"Array.from(document.querySelectorAll({json.dumps(selector)}))",
            return_by_value=False)
        return await self._array_elements(remote)

    async def query_xpath(self, xpath: str) -> list["Element"]:
        expression = f"""(() => {{
            const out = [];
            const snap = document.evaluate({json.dumps(xpath)}, document, null,
                XPathResult.ORDERED_NODE_SNAPSHOT_TYPE, null);
            for (let i = 0; i < snap.snapshotLength; i++) out.push(snap.snapshotItem(i));
            return out;
        }})()"""
        remote = await self.evaluate(expression, return_by_value=False)
        return await self._array_elements(remote)

    async def resolve_backend_node(self, backend_node_id: int) -> "Element | None":
        try:
            result = await self.send("DOM.resolveNode", {"backendNodeId": backend_node_id})
        except CDPError as e:
            logger.debug(f"[Page] resolveNode({backend_node_id}) failed: {e}")
            return None
        oid = result.get("object", {}).get("objectId")
        return Element(self, oid) if oid else None

    # ── Page state ────────────────────────────────────────────────────────

    async def current_url(self) -> str:
        self.url = await self.evaluate("window.location.href") or ""
        return self.url

    async def page_info(self) -> dict:
        info = await self.evaluate("({title: document.title, url: window.location.href})") or {}
        self.url = info.get("url", self.url)
        self.title = info.get("title", self.title)
        return {"url": self.url, "title": self.title}

    async def ready_state(self, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
        return await self.evaluate("document.readyState", timeout=timeout) or ""

    async def wait_for_load(self, timeout: float = 30.0, wait_until: str = "load"):
        """Poll ``document.readyState`` until the requested lifecycle point."""
        accepted = ("complete",) if wait_until == "load" else ("interactive", "complete")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise OperationTimeout("wait_for_load", timeout, f"waiting for {wait_until}")
            try:
                state = await self.ready_state(timeout=min(remaining, 2.0))
            except OperationTimeout:
                state = ""
            if state in accepted:
                return
            await asyncio.sleep(0.2)

    async def navigate(self, url: str, timeout: float = 60.0, wait_until: str = "load"):
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await self.send("Page.navigate", {"url": url}, timeout=timeout)
        if result.get("errorText"):
            raise CDPError("Page.navigate", result["errorText"])
        remaining = max(timeout - (loop.time() - started), 0.1)
        await self.wait_for_load(remaining, wait_until)
        self.url = url

    async def frame_tree(self) -> dict:
        result = await self.send("Page.getFrameTree")
        return result.get("frameTree", {})

    async def child_frames(self) -> list[dict]:
        """Flattened list of every non-main frame (``{"id", "url", ...}``)."""
        out: list[dict] = []

        def walk(node: dict):
            for child in node.get("childFrames", []):
                out.append(child.get("frame", {}))
                walk(child)

        walk(await self.frame_tree())
        return out

    async def create_isolated_world(self, frame_id: str, world_name: str) -> int:
        result = await self.send("Page.createIsolatedWorld", {
            "frameId": frame_id,
            "worldName": world_name,
            "grantUniveralAccess": True,
        })
        return result["executionContextId"]

    async def set_bypass_csp(self, enabled: bool):
        await self.send("Page.setBypassCSP", {"enabled": enabled})

    async def screenshot(self, fmt: str = "png", quality: int = 80,
                         full_page: bool = False, timeout: float = 30.0) -> bytes:
        params: dict = {"format": fmt}
        if fmt == "jpeg":
            params["quality"] = quality
        if full_page:
            metrics = await self.send("Page.getLayoutMetrics")
            size = metrics.get("cssContentSize") or metrics.get("contentSize", {})
            params["captureBeyondViewport"] = True
            params["clip"] = {
                "x": 0, "y": 0,
                "width": size.get("width", 0), "height": size.get("height", 0),
                "scale": 1,
            }
        result = await self.send("Page.captureScreenshot", params, timeout=timeout)
        return base64.b64decode(result.get("data", ""))

    async def mouse(self, event_type: str, x: float, y: float,
                    button: str = "left", click_count: int = 1):
        params = {"type": event_type, "x": x, "y": y}
        if event_type != "mouseMoved":
            params["button"] = button
            params["clickCount"] = click_count
        await self.send("Input.dispatchMouseEvent", params)

    async def key(self, event_type: str, key: str, code: str = "", text: str = "",
                  key_code: int = 0, modifiers: int = 0):
        params: dict = {"type": event_type, "key": key, "modifiers": modifiers}
        if code:
            params["code"] = code
        if text:
            params["text"] = text
        if key_code:
            params["windowsVirtualKeyCode"] = key_code
        await self.send("Input.dispatchKeyEvent", params)

    async def insert_text(self, text: str):
        await self.send("Input.insertText", {"text": text})


def _raise_for_exception(method: str, result: dict):
    details = result.get("exceptionDetails")
    if not details:
        return
    exc = details.get("exception", {})
    text = exc.get("description") or details.get("text") or "script exception"
    raise CDPError(method, text)


class Element:
    """A live DOM node reachable through a Runtime remote object id."""

    def __init__(self, page: CDPPage, object_id: str):
        self.page = page
        self.object_id = object_id

    def __repr__(self) -> str:
        return f"Element({self.object_id!r})"

    async def call(self, declaration: str, *args, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        return await self.page.call_function(self.object_id, declaration, *args, timeout=timeout)

    async def text(self) -> str:
        return await self.call(
            "function(){return (this.innerText !== undefined ? this.innerText : this.textContent) || '';}"
        ) or ""

    async def searchable_text(self) -> str:
        """Visible text plus the attributes an accessible name is usually derived from."""
        return await self.call("""function(){
            if (this.nodeType !== 1) return this.textContent || '';
            const parts = [this.innerText || this.textContent || ''];
            for (const a of ['aria-label', 'title', 'placeholder', 'alt']) {
                const v = this.getAttribute(a);
                if (v) parts.push(v);
            }
            if (typeof this.value === 'string') parts.push(this.value);
            if (this.labels) for (const l of this.labels) parts.push(l.innerText || '');
            return parts.join(' ');
        }""") or ""

    async def html(self) -> str:
        return await self.call("function(){return this.outerHTML || '';}") or ""

    async def attribute(self, name: str):
        return await self.call(
            "function(n){return this.getAttribute ? this.getAttribute(n) : null;}", name)

    async def property(self, name: str):
        return await self.call("function(n){const v = this[n]; return v === undefined ? null : v;}", name)

    async def value(self) -> str:
        return await self.call("function(){return this.value === undefined ? '' : String(this.value);}") or ""

    async def tag_name(self) -> str:
        return (await self.call("function(){return this.tagName || '';}") or "").upper()

    async def node_type(self) -> int:
        return await self.call("function(){return this.nodeType;}") or 0

    async def parent_element(self) -> "Element | None":
        remote = await self.page.call_function(
            self.object_id, "function(){return this.parentElement;}", return_by_value=False)
        oid = remote.get("objectId")
        return Element(self.page, oid) if oid else None

    async def is_visible(self) -> bool:
        return bool(await self.call("""function(){
            const el = this.nodeType === 1 ? this : this.parentElement;
            if (!el || !el.isConnected) return false;
            const style = window.getComputedStyle(el);
            if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
            const r = el.getBoundingClientRect();
            return r.width > 0 && r.height > 0;
        }"""))

    async def is_enabled(self) -> bool:
        return bool(await self.call(
            "function(){return !(this.disabled || this.getAttribute && this.getAttribute('aria-disabled') === 'true');}"
        ))

    async def is_interactable(self) -> bool:
        """Visible and not covered by another element at its center point."""
        return bool(await self.call("""function(){
            const el = this.nodeType === 1 ? this : this.parentElement;
            if (!el) return false;
            const r = el.getBoundingClientRect();
            if (r.width === 0 || r.height === 0) return false;
            const x = r.left + r.width / 2, y = r.top + r.height / 2;
            if (x < 0 || y < 0 || x > window.innerWidth || y > window.innerHeight) return true;
            const hit = document.elementFromPoint(x, y);
            return !!hit && (hit === el || el.contains(hit) || hit.contains(el));
        }"""))

    async def scroll_into_view(self):
        await self.call("function(){this.scrollIntoView({block:'center',inline:'center',behavior:'instant'});}")

    async def focus(self):
        await self.call("function(){this.focus();}")

    async def center(self) -> tuple[float, float]:
        """Viewport center of the element, scrolled into view first."""
        await self.scroll_into_view()
        await asyncio.sleep(0.1)
        try:
            bm = await self.page.send("DOM.getBoxModel", {"objectId": self.object_id})
            quads = bm["model"]["border"]
            xs, ys = quads[0::2], quads[1::2]
            cx, cy = sum(xs) / 4, sum(ys) / 4
            if cx > 0 and cy > 0:
                return cx, cy
        except (CDPError, KeyError) as e:
            logger.debug(f"[Page] getBoxModel failed, using bounding rect: {e}")
        pos = await self.call(
            "function(){const r=this.getBoundingClientRect();"
            "return {x:r.left+r.width/2,y:r.top+r.height/2};}"
        ) or {}
        return float(pos.get("x", 0)), float(pos.get("y", 0))

    async def click(self, button: str = "left", click_count: int = 1):
        """Native click: real mouse events dispatched at the element center."""
        x, y = await self.center()
        await self.page.mouse("mouseMoved", x, y)
        await self.page.mouse("mousePressed", x, y, button, click_count)
        await self.page.mouse("mouseReleased", x, y, button, click_count)

    async def hover(self):
        x, y = await self.center()
        await self.page.mouse("mouseMoved", x, y)

    async def set_files(self, paths: list[str]):
        await self.page.send("DOM.setFileInputFiles", {"files": paths, "objectId": self.object_id})
