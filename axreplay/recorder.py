"""Action recording across the main page, its iframes, and tabs opened while recording.

A :class:`Recorder` is an ``Idle -> Recording -> Idle`` session object. While
recording it runs independent polling loops as asyncio tasks:

- iframe watcher (1s): injects the iframe recorder into new or navigated frames
- tab watcher (1s): picks up new ``http(s)`` tabs and records ``open_tab``
- navigation watcher (300ms, one per surface): reinjects after navigation
- synchronizer (500ms): pulls each surface's buffer and merges them

Polling is used instead of CDP event subscriptions because events are not
delivered reliably across frame and context teardown.

Each surface (a tab) keeps the latest buffer read from it, replacing earlier
reads of the same page load since the page rewrites its last entry while
typing or scrolling. Reads from earlier page loads are archived, so actions
survive a cross-origin navigation that wipes the page's own storage. A
surface that cannot be read is logged and skipped, and a failing loop tick
never ends the loop; only failing to inject into the main page at start is
fatal.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

import aiohttp
from pydantic import ValidationError

from axreplay import config
from axreplay.browser import BrowserManager, is_valid_recording_url
from axreplay.errors import (
    AutomationError, CDPError, InjectionFailed, OperationTimeout, PartialSyncLoss, RecordingStateError,
    is_session_error,
)
from axreplay.hooks import CodeGenerator, NullCodeGenerator
from axreplay.i18n import load_script, message
from axreplay.models import ScriptAction
from axreplay.page import CDPPage

logger = logging.getLogger(__name__)

SYNC_INTERVAL = 0.5
IFRAME_INTERVAL = 1.0
TAB_INTERVAL = 1.0
NAV_INTERVAL = 0.3
NAV_SETTLE = 0.8
INJECT_SETTLE = 0.5
CLEANUP_TIMEOUT = 2.0
SURFACE_TIMEOUT = 3.0
LOOP_SHUTDOWN_TIMEOUT = 3.0

ISOLATED_WORLD = "axreplay-recorder"

_RESET_BUFFER_JS = """(() => {
    try {
        sessionStorage.removeItem('__axreplay_actions__');
        sessionStorage.removeItem('__axreplay_recording_state__');
    } catch (e) {}
    delete window.__stopRecordingRequest__;
    return true;
})()"""

_SET_FLAG_JS = "window.__axreplayRecordingMode__ = true; window.__axreplayAIEnabled__ = {ai}; true"

_READ_ACTIONS_JS = """(() => {
    try {
        const saved = sessionStorage.getItem('__axreplay_actions__');
        if (saved) return JSON.parse(saved);
    } catch (e) {}
    return window.__recordedActions__ || [];
})()"""

_CHECK_INJECTED_JS = (
    "({flag: window.__axreplayRecordingMode__ === true, recorder: !!window.__axreplayRecorder__})"
)

_STOP_REQUESTED_JS = "!!window.__stopRecordingRequest__"

_FORWARD_STOP_JS = (
    "window.__stopRecordingRequest__ = window.__stopRecordingRequest__ || {timestamp: Date.now()}; true"
)

_TAKE_AI_REQUEST_JS = """(() => {
    const req = window.__aiExtractionRequest__;
    if (!req || req.__taken__) return null;
    req.__taken__ = true;
    return {type: req.type || 'formfill', html: req.html || '', description: req.description || ''};
})()"""

_CLEANUP_JS = """(() => {
    if (window.__recorderUI__ && window.__recorderUI__.panel) {
        try { window.__recorderUI__.panel.remove(); } catch (e) {}
    }
    if (window.__highlightElement__) {
        try { window.__highlightElement__.remove(); } catch (e) {}
    }
    if (window.__axreplayIframeListener__) {
        window.removeEventListener('message', window.__axreplayIframeListener__);
    }
    for (const name of ['__axreplayRecorder__', '__axreplayRecordingMode__', '__axreplayAIEnabled__',
                        '__axreplayIframeListener__', '__recordedActions__', '__recorderUI__',
                        '__highlightElement__', '__inputTimers__', '__aiFormFillMode__',
                        '__aiExtractionRequest__', '__aiExtractionResponse__', '__stopRecordingRequest__']) {
        delete window[name];
    }
    try {
        sessionStorage.removeItem('__axreplay_actions__');
        sessionStorage.removeItem('__axreplay_recording_state__');
    } catch (e) {}
    return true;
})()"""

_STOP_IFRAME_JS = "window.__axreplayIframeRecorder__ && window.__axreplayIframeRecorder__.stop(); true"


def merge_actions(buffers: Iterable[Iterable[ScriptAction]]) -> list[ScriptAction]:
    """Union of every buffer keyed by timestamp, ascending.

    Two distinct actions sharing a millisecond collapse into the later one seen.
    """
    unique: dict[int, ScriptAction] = {}
    for buffer in buffers:
        for action in buffer:
            unique[action.timestamp] = action
    return sorted(unique.values(), key=lambda a: a.timestamp)


def parse_actions(raw: Any) -> list[ScriptAction]:
    if not isinstance(raw, list):
        return []
    actions = []
    for item in raw:
        try:
            actions.append(ScriptAction.model_validate(item))
        except ValidationError as e:
            logger.warning(f"[Recorder] Dropping malformed action {item!r}: {e}")
    return actions


def continues(previous: list[ScriptAction], current: list[ScriptAction]) -> bool:
    """Whether *current* is a later read of the same page buffer as *previous*.

    The in-page recorder only appends, or rewrites its last entry in place
    (input and scroll coalescing), so every earlier entry keeps its timestamp.
    """
    if not previous:
        return True
    if len(current) < len(previous):
        return False
    if any(a.timestamp != b.timestamp for a, b in zip(previous[:-1], current)):
        return False
    return current[len(previous) - 1].type == previous[-1].type


@dataclass
class _Surface:
    page: CDPPage
    last_url: str = ""
    # latest read of the page buffer, and reads from earlier page loads
    current: list[ScriptAction] = field(default_factory=list)
    archived: list[ScriptAction] = field(default_factory=list)
    # frame id → (frame url, isolated world context id)
    frames: dict[str, tuple[str, int]] = field(default_factory=dict)
    nav_task: asyncio.Task | None = None

    def absorb(self, actions: list[ScriptAction]):
        if not actions:
            # Wiped by navigation; keep what was read last
            return
        if not continues(self.current, actions):
            self.archived.extend(self.current)
        self.current = actions

    def actions(self) -> list[ScriptAction]:
        return self.archived + self.current


class Recorder:
    def __init__(self, browser: BrowserManager, code_generator: CodeGenerator | None = None,
                 default_language: str | None = None):
        self.browser = browser
        self.code_generator = code_generator or NullCodeGenerator()
        self.default_language = default_language or config.DEFAULT_LANGUAGE
        self._lock = asyncio.Lock()
        self._recording = False
        self._reset()

    def _reset(self):
        self._language = self.default_language
        self._start_time: datetime | None = None
        self._start_url = ""
        self._main: _Surface | None = None
        self._surfaces: dict[str, _Surface] = {}
        self._known: set[str] = set()
        self._synthetic: list[ScriptAction] = []
        self._actions: list[ScriptAction] = []
        self._stop_requested = False
        self._tasks: list[asyncio.Task] = []
        self._recorder_script = ""
        self._iframe_script = ""
        self._listener_script = ""

    @property
    def is_recording(self) -> bool:
        return self._recording

    # ── Start ─────────────────────────────────────────────────────────────

    async def start(self, page: CDPPage, url: str = "", language: str | None = None):
        async with self._lock:
            if self._recording:
                raise RecordingStateError("recording is already in progress")
            self._reset()
            self._recording = True
            self._language = language or self.default_language
            self._start_time = datetime.now(timezone.utc)
            self._start_url = url or page.url

        try:
            await self._begin(page)
        except BaseException:
            await self._abort()
            raise
        logger.info(f"[Recorder] Started on {self._start_url} (language={self._language})")

    async def _begin(self, page: CDPPage):
        self._recorder_script = load_script("recorder.js", self._language)
        self._iframe_script = load_script("iframe_recorder.js", self._language)
        self._listener_script = load_script("iframe_listener.js", self._language)

        try:
            for existing in await self.browser.list_pages():
                if is_valid_recording_url(existing.url):
                    self._known.add(existing.target_id)
        except (AutomationError, CDPError, aiohttp.ClientError, OSError) as e:
            logger.warning(f"[Recorder] Could not list existing tabs: {e}")
        self._known.add(page.target_id)

        await asyncio.sleep(INJECT_SETTLE)
        await self._prepare(page, fatal=True)
        self._main = await self._register(page)

        self._spawn(self._loop("iframe", IFRAME_INTERVAL, self._iframe_tick))
        self._spawn(self._loop("tab", TAB_INTERVAL, self._tab_tick))
        self._spawn(self._loop("sync", SYNC_INTERVAL, self._sync_tick))

    async def _abort(self):
        tasks = self._all_tasks()
        async with self._lock:
            self._recording = False
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reset()

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        return task

    def _all_tasks(self) -> list[asyncio.Task]:
        tasks = list(self._tasks)
        tasks.extend(s.nav_task for s in self._surfaces.values() if s.nav_task is not None)
        return tasks

    async def _prepare(self, page: CDPPage, fatal: bool):
        """Bypass CSP, set the recording flag, and inject the page scripts."""
        try:
            await page.set_bypass_csp(True)
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Recorder] Could not bypass CSP on {page.url}: {e}")

        try:
            if fatal:
                probe = await page.evaluate("1 + 1", timeout=SURFACE_TIMEOUT)
                if probe != 2:
                    raise InjectionFailed(f"script execution probe returned {probe!r}")
                await page.evaluate(_RESET_BUFFER_JS, timeout=SURFACE_TIMEOUT)
            ai = "true" if self.code_generator.enabled else "false"
            await page.evaluate(_SET_FLAG_JS.format(ai=ai), timeout=SURFACE_TIMEOUT)
            await page.evaluate(self._recorder_script, timeout=SURFACE_TIMEOUT)
        except (AutomationError, CDPError) as e:
            if fatal:
                raise InjectionFailed(f"cannot inject recorder into {page.url}: {e}") from e
            logger.warning(f"[Recorder] Injection into {page.url} failed: {e}")
            return

        try:
            await page.evaluate(self._listener_script, timeout=SURFACE_TIMEOUT)
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Recorder] iframe listener injection failed on {page.url}: {e}")

    async def _register(self, page: CDPPage) -> _Surface:
        surface = _Surface(page=page, last_url=page.url)
        try:
            surface.last_url = await page.current_url()
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Recorder] Could not read URL of {page.target_id}: {e}")
        await self._inject_frames(surface)
        async with self._lock:
            self._surfaces[page.target_id] = surface
        surface.nav_task = asyncio.ensure_future(
            self._loop("navigation", NAV_INTERVAL, lambda: self._nav_tick(surface)))
        return surface

    async def _inject_frames(self, surface: _Surface):
        page = surface.page
        try:
            frames = await page.child_frames()
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Recorder] Frame listing failed on {page.url}: {e}")
            return
        for frame in frames:
            frame_id, frame_url = frame.get("id"), frame.get("url", "")
            if not frame_id:
                continue
            known = surface.frames.get(frame_id)
            if known is not None and known[0] == frame_url:
                continue
            try:
                context_id = await page.create_isolated_world(frame_id, ISOLATED_WORLD)
                await page.evaluate(self._iframe_script, context_id=context_id, timeout=SURFACE_TIMEOUT)
            except (AutomationError, CDPError) as e:
                logger.warning(f"[Recorder] iframe {frame_url or frame_id} injection failed: {e}")
                continue
            surface.frames[frame_id] = (frame_url, context_id)
            logger.info(f"[Recorder] Injected into iframe {frame_url or frame_id}")

    # ── Loops ─────────────────────────────────────────────────────────────

    async def _loop(self, name: str, interval: float, tick: Callable[[], Awaitable[None]]):
        while self._recording:
            await asyncio.sleep(interval)
            if not self._recording:
                break
            try:
                await tick()
            except (AutomationError, CDPError) as e:
                if name == "navigation" and is_session_error(e):
                    # The tab is gone; its pulled buffer stays in the merge
                    logger.info(f"[Recorder] Surface closed, navigation watcher ending: {e}")
                    break
                logger.warning(f"[Recorder] {name} tick failed: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[Recorder] {name} tick failed unexpectedly: {e}")

    async def _iframe_tick(self):
        for surface in list(self._surfaces.values()):
            await self._inject_frames(surface)

    async def _tab_tick(self):
        for page in await self.browser.list_pages():
            if page.target_id in self._known or not is_valid_recording_url(page.url):
                continue
            self._known.add(page.target_id)
            logger.info(f"[Recorder] New tab detected: {page.url}")
            try:
                await page.connect()
                try:
                    await page.wait_for_load(10.0)
                except OperationTimeout as e:
                    logger.warning(f"[Recorder] {e} (injecting anyway)")
                await asyncio.sleep(INJECT_SETTLE)
                await self._prepare(page, fatal=False)
                await self._register(page)
            except (AutomationError, CDPError, aiohttp.ClientError, OSError) as e:
                logger.warning(f"[Recorder] Could not attach to new tab {page.url}: {e}")
                continue
            text = f"{message('OPEN_NEW_TAB', self._language)} {page.url}"
            action = ScriptAction(type="open_tab", timestamp=int(time.time() * 1000),
                                  url=page.url, text=text, description=text)
            async with self._lock:
                self._synthetic.append(action)

    async def _nav_tick(self, surface: _Surface):
        page = surface.page
        url = await page.current_url()
        if url == surface.last_url:
            return
        logger.info(f"[Recorder] Navigation {surface.last_url} -> {url}")
        surface.last_url = url
        await asyncio.sleep(NAV_SETTLE)
        if not self._recording or not is_valid_recording_url(url):
            return
        state = await page.evaluate(_CHECK_INJECTED_JS, timeout=SURFACE_TIMEOUT) or {}
        if state.get("flag") and state.get("recorder"):
            return
        logger.info(f"[Recorder] Reinjecting after navigation to {url}")
        await self._prepare(page, fatal=False)
        surface.frames.clear()
        await self._inject_frames(surface)

    async def _pull(self, surface: _Surface) -> bool:
        try:
            raw = await surface.page.evaluate(_READ_ACTIONS_JS, timeout=SURFACE_TIMEOUT)
        except (AutomationError, CDPError) as e:
            loss = PartialSyncLoss(f"surface {surface.page.target_id}: {e}")
            logger.warning(f"[Recorder] {loss}")
            return False
        surface.absorb(parse_actions(raw))
        return True

    async def _stop_signalled(self, surface: _Surface) -> bool:
        try:
            return bool(await surface.page.evaluate(_STOP_REQUESTED_JS, timeout=SURFACE_TIMEOUT))
        except (AutomationError, CDPError) as e:
            logger.debug(f"[Recorder] Stop-signal check failed on {surface.page.target_id}: {e}")
            return False

    async def _sync_tick(self):
        surfaces = list(self._surfaces.values())
        stop_seen = False
        for surface in surfaces:
            if await self._stop_signalled(surface):
                stop_seen = True
            await self._take_ai_request(surface)
            await self._pull(surface)

        async with self._lock:
            if stop_seen and not self._stop_requested:
                self._stop_requested = True
                logger.info("[Recorder] Stop requested from the page")
                if self._main is not None:
                    try:
                        await self._main.page.evaluate(_FORWARD_STOP_JS, timeout=SURFACE_TIMEOUT)
                    except (AutomationError, CDPError) as e:
                        logger.warning(f"[Recorder] Could not forward stop request: {e}")
            merged = self._merged()
            if merged != self._actions:
                logger.info(f"[Recorder] Synced {len(merged)} actions (was {len(self._actions)})")
            self._actions = merged

    def _merged(self) -> list[ScriptAction]:
        buffers = [s.actions() for s in self._surfaces.values()]
        buffers.append(self._synthetic)
        return merge_actions(buffers)

    # ── AI requests ───────────────────────────────────────────────────────

    async def _take_ai_request(self, surface: _Surface):
        if not self.code_generator.enabled:
            return
        try:
            request = await surface.page.evaluate(_TAKE_AI_REQUEST_JS, timeout=SURFACE_TIMEOUT)
        except (AutomationError, CDPError) as e:
            logger.debug(f"[Recorder] AI request check failed: {e}")
            return
        if request:
            self._spawn(self._answer_ai_request(surface.page, request))

    async def _answer_ai_request(self, page: CDPPage, request: dict):
        logger.info(f"[Recorder] Generating {request['type']} code ({len(request['html'])} chars of HTML)")
        try:
            code = await self.code_generator.generate(request["type"], request["html"], request["description"])
            response = {"success": True, "code": code}
        except Exception as e:
            logger.exception("[Recorder] Code generation failed")
            response = {"success": False, "error": str(e)}
        try:
            await page.evaluate(f"window.__aiExtractionResponse__ = {json.dumps(response)}; true",
                                timeout=SURFACE_TIMEOUT)
        except (AutomationError, CDPError) as e:
            logger.warning(f"[Recorder] Could not deliver generated code: {e}")

    # ── Stop ──────────────────────────────────────────────────────────────

    async def stop(self) -> list[ScriptAction]:
        async with self._lock:
            if not self._recording:
                raise RecordingStateError("recording is not in progress")
            self._recording = False
        tasks = self._all_tasks()

        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=LOOP_SHUTDOWN_TIMEOUT)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"[Recorder] Loop ended with an error: {task.exception()!r}")

        surfaces = list(self._surfaces.values())
        for surface in surfaces:
            try:
                url = await surface.page.current_url()
            except (AutomationError, CDPError) as e:
                logger.warning(f"[Recorder] Skipping final sync of {surface.page.target_id}: {e}")
                continue
            if is_valid_recording_url(url):
                await self._pull(surface)

        for surface in surfaces:
            try:
                await asyncio.wait_for(self._cleanup(surface), timeout=CLEANUP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"[Recorder] Cleanup of {surface.page.target_id} timed out")
            except (AutomationError, CDPError) as e:
                logger.warning(f"[Recorder] Cleanup of {surface.page.target_id} failed: {e}")

        async with self._lock:
            actions = self._merged()
            self._reset()
        logger.info(f"[Recorder] Stopped with {len(actions)} actions")
        return actions

    async def _cleanup(self, surface: _Surface):
        page = surface.page
        await page.evaluate(_CLEANUP_JS, timeout=CLEANUP_TIMEOUT)
        for _, context_id in surface.frames.values():
            try:
                await page.evaluate(_STOP_IFRAME_JS, context_id=context_id, timeout=CLEANUP_TIMEOUT)
            except (AutomationError, CDPError) as e:
                logger.debug(f"[Recorder] iframe context {context_id} already gone: {e}")
        await page.set_bypass_csp(False)

    # ── Status ────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        duration = 0.0
        if self._recording and self._start_time is not None:
            duration = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "is_recording": self._recording,
            "start_url": self._start_url,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "duration": duration,
            "language": self._language,
            "surface_count": len(self._surfaces),
            "action_count": len(self._actions),
            "stop_requested": self._stop_requested,
        }
