"""Browser collaborator: the interface the executor and recorder depend on.

Process lifecycle (launching Chromium, profiles, proxies) lives outside this
package. ``CDPBrowser`` is the default implementation and attaches to an
already running browser through its remote debugging endpoint.
"""

import asyncio
import logging
from typing import Protocol, runtime_checkable

import aiohttp

from axreplay import cdp, config
from axreplay.errors import CDPError, OperationTimeout, SessionInvalid
from axreplay.page import CDPPage

logger = logging.getLogger(__name__)


@runtime_checkable
class BrowserManager(Protocol):
    async def get_active_page(self) -> CDPPage | None: ...

    async def is_running(self) -> bool: ...

    async def start(self) -> None: ...

    async def open_page(self, url: str, language: str = "", instance_id: str = "") -> CDPPage: ...

    async def list_pages(self) -> list[CDPPage]: ...

    async def new_page(self, url: str = "about:blank") -> CDPPage: ...

    async def activate_page(self, page: CDPPage) -> None: ...

    async def close_page(self, page: CDPPage) -> None: ...


def is_valid_recording_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


class CDPBrowser:
    """Attach to a running Chromium over ``/json`` and pool one connection per page."""

    def __init__(self, base_url: str | None = None):
        self.base_url = base_url or config.cdp_http_url()
        self._pages: dict[str, CDPPage] = {}
        self._active_id: str | None = None
        self._lock = asyncio.Lock()

    async def is_running(self) -> bool:
        try:
            await cdp.browser_version(self.base_url)
            return True
        except (aiohttp.ClientError, OSError, CDPError, asyncio.TimeoutError) as e:
            logger.debug(f"[Browser] Not reachable at {self.base_url}: {e}")
            return False

    async def start(self):
        if not await self.is_running():
            raise SessionInvalid(
                f"browser is not reachable at {self.base_url}; "
                "start Chromium with --remote-debugging-port"
            )
        logger.info(f"[Browser] Attached to {self.base_url}")

    async def _refresh(self) -> list[CDPPage]:
        targets = await cdp.list_targets(self.base_url)
        seen = set()
        pages = []
        async with self._lock:
            for target in targets:
                if target.get("type") != "page":
                    continue
                tid = target["id"]
                seen.add(tid)
                page = self._pages.get(tid)
                if page is None:
                    page = CDPPage(tid, ws_url=target.get("webSocketDebuggerUrl"), base_url=self.base_url)
                    self._pages[tid] = page
                page.url = target.get("url", page.url)
                page.title = target.get("title", page.title)
                pages.append(page)
            for tid in list(self._pages):
                if tid not in seen:
                    await self._pages.pop(tid).close()
            if self._active_id not in seen:
                self._active_id = None
        return pages

    async def list_pages(self) -> list[CDPPage]:
        return await self._refresh()

    async def get_active_page(self) -> CDPPage | None:
        pages = await self._refresh()
        if not pages:
            return None
        page = next((p for p in pages if p.target_id == self._active_id), pages[0])
        self._active_id = page.target_id
        await page.connect()
        return page

    async def new_page(self, url: str = "about:blank") -> CDPPage:
        target = await cdp.new_target(url, self.base_url)
        page = CDPPage(target["id"], url=target.get("url", url),
                       ws_url=target.get("webSocketDebuggerUrl"), base_url=self.base_url)
        async with self._lock:
            self._pages[page.target_id] = page
            self._active_id = page.target_id
        await page.connect()
        return page

    async def open_page(self, url: str, language: str = "", instance_id: str = "") -> CDPPage:
        """Open a fresh page, replacing a dead one. *instance_id* is informational."""
        logger.info(f"[Browser] Opening page {url} (instance={instance_id or 'default'})")
        page = await self.new_page("about:blank")
        if language:
            try:
                await page.send("Emulation.setLocaleOverride", {"locale": language})
            except CDPError as e:
                logger.warning(f"[Browser] Locale override {language} rejected: {e}")
        if url:
            try:
                await page.navigate(url)
            except OperationTimeout as e:
                logger.warning(f"[Browser] {e} (page left loading)")
        return page

    async def activate_page(self, page: CDPPage):
        await cdp.activate_target(page.target_id, self.base_url)
        self._active_id = page.target_id
        await page.connect()

    async def close_page(self, page: CDPPage):
        await page.close()
        await cdp.close_target(page.target_id, self.base_url)
        async with self._lock:
            self._pages.pop(page.target_id, None)
            if self._active_id == page.target_id:
                self._active_id = None

    async def close(self):
        async with self._lock:
            for page in self._pages.values():
                await page.close()
            self._pages.clear()
        await cdp.close_http_session()
