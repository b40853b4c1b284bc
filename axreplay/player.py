"""Replay recorded ScriptActions through the Executor."""

import asyncio
import json
import logging
from typing import Any

from axreplay.executor import Executor
from axreplay.models import OperationResult, PlayResult, ScriptAction

logger = logging.getLogger(__name__)

STEP_TIMEOUT = 10.0
_EXTRACT_KINDS = {"extract_text": "text", "extract_html": "html", "extract_attribute": "attribute"}
_KEY_MODIFIERS = ("ctrl", "shift", "alt", "meta")


def parse_key_combo(combo: str) -> tuple[str, dict[str, bool]]:
    """Split ``"ctrl+shift+a"`` into the key and its modifier flags."""
    parts = [p.strip() for p in combo.split("+")]
    if len(parts) > 1 and parts[-1] == "":
        # "ctrl++" presses the plus key
        parts = parts[:-2] + ["+"]
    flags = {m: False for m in _KEY_MODIFIERS}
    key = parts[-1] if parts else ""
    for part in parts[:-1]:
        name = part.lower()
        if name == "control":
            name = "ctrl"
        elif name in ("cmd", "command"):
            name = "meta"
        if name in flags:
            flags[name] = True
    return key, flags


def _target(action: ScriptAction) -> str:
    if action.xpath:
        return action.xpath if action.xpath.startswith(("/", "(")) else f"xpath:{action.xpath}"
    return action.selector or ""


class Player:
    def __init__(self, executor: Executor):
        self.executor = executor

    async def play(self, actions: list[ScriptAction | dict]) -> PlayResult:
        result = PlayResult()
        extract_count = 0
        for i, raw in enumerate(actions, 1):
            action = raw if isinstance(raw, ScriptAction) else ScriptAction.model_validate(raw)
            logger.info(f"[Player] Step {i}/{len(actions)}: {action.type} {action.description or ''}".rstrip())
            if action.type in _EXTRACT_KINDS:
                extract_count += 1
            step = await self._step(action)
            if step.success:
                result.success_count += 1
                if action.type in _EXTRACT_KINDS:
                    name = action.variable_name or f"extract_{extract_count}"
                    result.extracted_data[name] = (step.data or {}).get("result")
            else:
                result.fail_count += 1
                error = f"step {i} ({action.type}): {step.error or step.message}"
                result.errors.append(error)
                logger.warning(f"[Player] {error}")
        logger.info(f"[Player] Finished: {result.success_count} ok, {result.fail_count} failed")
        return result

    async def _step(self, action: ScriptAction) -> OperationResult:
        ex = self.executor
        target = _target(action)
        kind = action.type

        if kind == "click":
            return await ex.click(target, STEP_TIMEOUT)
        if kind == "input":
            return await ex.type_text(target, action.value or "", STEP_TIMEOUT)
        if kind == "select":
            return await ex.select(target, action.value or "", STEP_TIMEOUT)
        if kind == "navigate":
            return await ex.navigate(action.url or "")
        if kind in ("wait", "sleep"):
            if kind == "wait" and target:
                return await ex.wait_for(target, "visible", (action.duration or STEP_TIMEOUT * 1000) / 1000)
            seconds = (action.duration or 0) / 1000
            await asyncio.sleep(seconds)
            return OperationResult.ok(f"Waited {seconds:.1f}s")
        if kind in _EXTRACT_KINDS:
            return await ex.extract(target, _EXTRACT_KINDS[kind], action.attribute_name or "",
                                    bool(action.multiple), timeout=STEP_TIMEOUT)
        if kind == "execute_js":
            return await ex.evaluate(action.js_code or action.value or "")
        if kind == "upload_file":
            return await ex.upload_files(target, action.file_paths or [], STEP_TIMEOUT)
        if kind == "scroll":
            x, y = action.scroll_x or 0, action.scroll_y or 0
            return await ex.evaluate(f"window.scrollTo({json.dumps(x)}, {json.dumps(y)})")
        if kind == "keyboard":
            key, flags = parse_key_combo(action.key or action.value or "")
            return await ex.press_key(key, **flags)
        if kind == "open_tab":
            return await ex.tabs("new", url=action.url or "")
        if kind == "switch_tab":
            return await ex.tabs("switch", index=_tab_index(action))
        return OperationResult.fail("Replay step failed", f"unsupported action type: {kind}",
                                    {"error_type": "automation_error"})


def _tab_index(action: ScriptAction) -> int:
    value: Any = action.value
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
