"""Raw CDP transport: one WebSocket per target plus the ``/json`` HTTP endpoints.

Commands are matched to responses by message id; a single reader task per
connection resolves the pending futures. When the socket drops, every pending
command fails with :class:`SessionInvalid` instead of waiting for its timeout.
"""

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

import aiohttp

from axreplay import config
from axreplay.errors import CDPError, SessionInvalid

logger = logging.getLogger(__name__)

_http_session: aiohttp.ClientSession | None = None


async def _get_http_session() -> aiohttp.ClientSession:
    """Reuse a single aiohttp session for all HTTP calls."""
    global _http_session
    if _http_session is None or _http_session.closed:
        _http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
    return _http_session


async def close_http_session():
    global _http_session
    if _http_session is not None and not _http_session.closed:
        await _http_session.close()
    _http_session = None


async def _http_json(method: str, path: str, base_url: str | None = None) -> Any:
    session = await _get_http_session()
    url = f"{base_url or config.cdp_http_url()}{path}"
    async with session.request(method, url) as resp:
        if resp.status >= 400:
            body = await resp.text()
            raise CDPError(path, f"HTTP {resp.status}: {body.strip()}")
        text = await resp.text()
        try:
            return json.loads(text)
        except ValueError:
            # /json/activate and /json/close answer with plain text
            return text


async def list_targets(base_url: str | None = None) -> list[dict]:
    """All debuggable targets (pages, iframes, workers) in browser order."""
    return await _http_json("GET", "/json/list", base_url)


async def new_target(url: str = "about:blank", base_url: str | None = None) -> dict:
    return await _http_json("PUT", f"/json/new?{quote(url, safe=':/?&=%#')}", base_url)


async def activate_target(target_id: str, base_url: str | None = None):
    await _http_json("GET", f"/json/activate/{target_id}", base_url)


async def close_target(target_id: str, base_url: str | None = None):
    await _http_json("GET", f"/json/close/{target_id}", base_url)


async def browser_version(base_url: str | None = None) -> dict:
    return await _http_json("GET", "/json/version", base_url)


async def get_ws_url(target_id: str, base_url: str | None = None) -> str:
    """Get the WebSocket debugger URL for a CDP target."""
    for target in await list_targets(base_url):
        if target["id"] == target_id:
            return target["webSocketDebuggerUrl"]
    raise SessionInvalid(f"Target {target_id} not found in CDP targets")


class CDPConnection:
    """One WebSocket to a CDP target, with responses matched to requests by id.

    A reader task resolves the future of each pending ``send``. When the socket
    drops or the connection is closed, every future still pending fails with
    :class:`SessionInvalid`.
    """

    def __init__(self, ws_url: str):
        self.ws_url = ws_url
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._msg_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._ws is not None
            and not self._ws.closed
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def connect(self):
        self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self.ws_url, max_msg_size=50 * 1024 * 1024)
        self._reader_task = asyncio.create_task(self._read_loop())
        self._closed = False

    async def close(self):
        self._closed = True
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._ws:
            await self._ws.close()
        if self._session:
            await self._session.close()
        self._fail_pending("connection closed")

    def _fail_pending(self, reason: str):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(SessionInvalid(f"Session closed: {reason}"))
        self._pending.clear()

    async def _read_loop(self):
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    msg_id = data.get("id")
                    fut = self._pending.get(msg_id) if msg_id is not None else None
                    if fut is not None and not fut.done():
                        fut.set_result(data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._fail_pending("Target closed")

    async def send(self, method: str, params: dict | None = None, timeout: float = 10.0) -> dict:
        """Send a CDP command and wait for the response."""
        if self._ws is None or self._ws.closed:
            raise SessionInvalid(f"Session closed: cannot send {method}")
        self._msg_id += 1
        msg_id = self._msg_id
        message = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[msg_id] = future

        await self._ws.send_json(message)
        try:
            result = await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(msg_id, None)

        if "error" in result:
            raise CDPError(method, result["error"])
        return result.get("result", {})

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.close()
