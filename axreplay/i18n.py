"""Localized strings for the in-page recorder overlay.

Scripts carry ``{{KEY}}`` placeholders; ``localize`` fills them from the
table for the requested language, falling back to English.
"""

import re
from importlib import resources

FALLBACK_LANGUAGE = "en-US"

MESSAGES = {
    "en-US": {
        "RECORDING_STATUS": "Recording",
        "STOP_RECORDING": "Stop recording",
        "STOPPING": "Stopping...",
        "STEPS_UNIT": "steps",
        "AUTO_WAIT": "Wait",
        "SECONDS_UNIT": "s",
        "AI_FORMFILL": "AI form fill",
        "AI_PICK_FORM": "Click the form to fill",
        "AI_GENERATING": "Generating code...",
        "AI_FAILED": "Code generation failed",
        "CLICK_PREFIX": "Click",
        "INPUT_PREFIX": "Type",
        "SELECT_PREFIX": "Select",
        "KEY_PREFIX": "Press",
        "SCROLL_PREFIX": "Scroll to",
        "UPLOAD_PREFIX": "Upload",
        "OPEN_NEW_TAB": "Open new tab:",
    },
    "zh-CN": {
        "RECORDING_STATUS": "录制中",
        "STOP_RECORDING": "停止录制",
        "STOPPING": "正在停止...",
        "STEPS_UNIT": "步",
        "AUTO_WAIT": "等待",
        "SECONDS_UNIT": "秒",
        "AI_FORMFILL": "AI 填充表单",
        "AI_PICK_FORM": "点击要填充的表单",
        "AI_GENERATING": "正在生成代码...",
        "AI_FAILED": "代码生成失败",
        "CLICK_PREFIX": "点击",
        "INPUT_PREFIX": "输入",
        "SELECT_PREFIX": "选择",
        "KEY_PREFIX": "按键",
        "SCROLL_PREFIX": "滚动到",
        "UPLOAD_PREFIX": "上传",
        "OPEN_NEW_TAB": "打开新标签页:",
    },
}

_PLACEHOLDER_RE = re.compile(r"\{\{([A-Z_]+)\}\}")


def _js_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("'", "\\'").replace('"', '\\"').replace("\n", "\\n")


def message(key: str, language: str = FALLBACK_LANGUAGE) -> str:
    table = MESSAGES.get(language, MESSAGES[FALLBACK_LANGUAGE])
    return table.get(key) or MESSAGES[FALLBACK_LANGUAGE].get(key, key)


def localize(script: str, language: str = FALLBACK_LANGUAGE) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: _js_escape(message(m.group(1), language)), script)


def load_script(name: str, language: str = FALLBACK_LANGUAGE) -> str:
    source = resources.files("axreplay").joinpath("scripts", name).read_text(encoding="utf-8")
    return localize(source, language)
