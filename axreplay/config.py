"""Runtime settings read from the environment.

Every value has a default suitable for a local Chromium started with
``--remote-debugging-port=9222``.
"""

import os

CDP_HOST = os.environ.get("AXREPLAY_CDP_HOST", "127.0.0.1")
CDP_PORT = int(os.environ.get("AXREPLAY_CDP_PORT", "9222"))

SERVER_HOST = os.environ.get("AXREPLAY_SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.environ.get("AXREPLAY_SERVER_PORT", "8000"))

LOG_LEVEL = os.environ.get("AXREPLAY_LOG_LEVEL", "INFO").upper()

SCREENSHOT_DIR = os.environ.get("AXREPLAY_SCREENSHOT_DIR", "screenshots")

# Language of the in-page recorder overlay
DEFAULT_LANGUAGE = os.environ.get("AXREPLAY_LANGUAGE", "en-US")


def cdp_http_url() -> str:
    return f"http://{CDP_HOST}:{CDP_PORT}"
