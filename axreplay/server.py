"""HTTP surface for the executor, recorder and player."""

import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from axreplay import config
from axreplay.browser import CDPBrowser, is_valid_recording_url
from axreplay.cdp import close_http_session
from axreplay.errors import AutomationError, CDPError, RecordingStateError
from axreplay.executor import Executor
from axreplay.hooks import NullScriptPublisher, ScriptPublisher
from axreplay.models import BatchOperation, BatchResult, FormField, OperationResult, PlayResult, ScriptAction
from axreplay.player import Player
from axreplay.recorder import Recorder

logger = logging.getLogger(__name__)

app = FastAPI(title="axreplay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

browser = CDPBrowser()
executor = Executor(browser)
recorder = Recorder(browser)
player = Player(executor)
publisher: ScriptPublisher = NullScriptPublisher()


class NavigateRequest(BaseModel):
    url: str
    timeout: float | None = None
    wait_until: str = "load"


class ElementRequest(BaseModel):
    identifier: str
    timeout: float | None = None


class ClickRequest(ElementRequest):
    wait_visible: bool = True
    wait_enabled: bool = True
    button: str = "left"
    click_count: int = 1


class TypeRequest(ElementRequest):
    text: str
    clear: bool = True
    delay: float = 0.0


class SelectRequest(ElementRequest):
    value: str


class WaitRequest(ElementRequest):
    state: str = "visible"


class UploadRequest(ElementRequest):
    file_paths: list[str]


class DragRequest(ElementRequest):
    target: str


class KeyRequest(BaseModel):
    key: str
    ctrl: bool = False
    shift: bool = False
    alt: bool = False
    meta: bool = False


class ResizeRequest(BaseModel):
    width: int
    height: int


class ExtractRequest(ElementRequest):
    kind: str = "text"
    attr: str = ""
    multiple: bool = False
    fields: list[str] = Field(default_factory=list)


class ScreenshotRequest(BaseModel):
    format: str = "png"
    quality: int = 80
    full_page: bool = False
    save: bool = True


class EvaluateRequest(BaseModel):
    script: str
    timeout: float | None = None


class TabsRequest(BaseModel):
    action: str = "list"
    url: str = ""
    index: int = 0


class FillFormRequest(BaseModel):
    fields: list[FormField]
    submit: bool = False
    timeout: float | None = None


class BatchRequest(BaseModel):
    operations: list[BatchOperation]


class RecordStartRequest(BaseModel):
    url: str = ""
    language: str | None = None


class RecordStopRequest(BaseModel):
    name: str = ""


class PlayRequest(BaseModel):
    actions: list[ScriptAction]


@app.on_event("shutdown")
async def shutdown_event():
    await browser.close()
    await close_http_session()


@app.get("/")
def read_root():
    return {"status": "axreplay running"}


# ── Executor ──────────────────────────────────────────────────────────────

@app.post("/navigate", response_model=OperationResult)
async def navigate(req: NavigateRequest):
    return await executor.navigate(req.url, req.timeout, req.wait_until)


@app.post("/back", response_model=OperationResult)
async def go_back():
    return await executor.go_back()


@app.post("/forward", response_model=OperationResult)
async def go_forward():
    return await executor.go_forward()


@app.post("/reload", response_model=OperationResult)
async def reload():
    return await executor.reload()


@app.post("/click", response_model=OperationResult)
async def click(req: ClickRequest):
    return await executor.click(req.identifier, req.timeout, req.wait_visible, req.wait_enabled,
                                req.button, req.click_count)


@app.post("/type", response_model=OperationResult)
async def type_text(req: TypeRequest):
    return await executor.type_text(req.identifier, req.text, req.timeout, req.clear, delay=req.delay)


@app.post("/select", response_model=OperationResult)
async def select(req: SelectRequest):
    return await executor.select(req.identifier, req.value, req.timeout)


@app.post("/hover", response_model=OperationResult)
async def hover(req: ElementRequest):
    return await executor.hover(req.identifier, req.timeout)


@app.post("/wait", response_model=OperationResult)
async def wait_for(req: WaitRequest):
    return await executor.wait_for(req.identifier, req.state, req.timeout)


@app.post("/text", response_model=OperationResult)
async def get_text(req: ElementRequest):
    return await executor.get_text(req.identifier, req.timeout)


@app.post("/value", response_model=OperationResult)
async def get_value(req: ElementRequest):
    return await executor.get_value(req.identifier, req.timeout)


@app.post("/upload", response_model=OperationResult)
async def upload_files(req: UploadRequest):
    return await executor.upload_files(req.identifier, req.file_paths, req.timeout)


@app.post("/drag", response_model=OperationResult)
async def drag(req: DragRequest):
    return await executor.drag(req.identifier, req.target, req.timeout)


@app.post("/key", response_model=OperationResult)
async def press_key(req: KeyRequest):
    return await executor.press_key(req.key, req.ctrl, req.shift, req.alt, req.meta)


@app.post("/resize", response_model=OperationResult)
async def resize(req: ResizeRequest):
    return await executor.resize(req.width, req.height)


@app.post("/scroll-bottom", response_model=OperationResult)
async def scroll_to_bottom():
    return await executor.scroll_to_bottom()


@app.post("/extract", response_model=OperationResult)
async def extract(req: ExtractRequest):
    return await executor.extract(req.identifier, req.kind, req.attr, req.multiple, req.fields, req.timeout)


@app.post("/screenshot", response_model=OperationResult)
async def screenshot(req: ScreenshotRequest):
    return await executor.screenshot(req.format, req.quality, req.full_page, req.save)


@app.post("/evaluate", response_model=OperationResult)
async def evaluate(req: EvaluateRequest):
    return await executor.evaluate(req.script, req.timeout)


@app.get("/snapshot", response_model=OperationResult)
async def snapshot(timeout: float | None = None):
    return await executor.snapshot(timeout)


@app.get("/page", response_model=OperationResult)
async def get_page_info():
    return await executor.get_page_info()


@app.get("/page/text", response_model=OperationResult)
async def get_page_text():
    return await executor.get_page_text()


@app.get("/page/content", response_model=OperationResult)
async def get_page_content():
    return await executor.get_page_content()


@app.post("/tabs", response_model=OperationResult)
async def tabs(req: TabsRequest):
    return await executor.tabs(req.action, req.url, req.index)


@app.post("/close", response_model=OperationResult)
async def close_page():
    return await executor.close_page()


@app.post("/form", response_model=OperationResult)
async def fill_form(req: FillFormRequest):
    return await executor.fill_form(req.fields, req.submit, req.timeout)


@app.post("/batch", response_model=BatchResult)
async def execute_batch(req: BatchRequest):
    return await executor.execute_batch(req.operations)


# ── Recorder ──────────────────────────────────────────────────────────────

@app.post("/recorder/start")
async def start_recording(req: RecordStartRequest):
    if recorder.is_recording:
        raise HTTPException(status_code=409, detail="recording is already in progress")
    if req.url and not is_valid_recording_url(req.url):
        raise HTTPException(status_code=400, detail=f"cannot record on {req.url}: only http(s) pages")

    language = req.language or config.DEFAULT_LANGUAGE
    try:
        if req.url:
            page = await browser.open_page(req.url, language)
        else:
            page = await browser.get_active_page()
        if page is None:
            raise HTTPException(status_code=400, detail="no active page to record")
        await recorder.start(page, req.url, language)
    except RecordingStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (AutomationError, CDPError) as e:
        logger.error(f"[Recorder] Start failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "recording", **recorder.status()}


@app.post("/recorder/stop")
async def stop_recording(req: RecordStopRequest | None = None):
    try:
        actions = await recorder.stop()
    except RecordingStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    wire = [a.to_wire() for a in actions]
    if req is not None and req.name:
        await publisher.publish(req.name, actions)
    return {"status": "stopped", "count": len(wire), "actions": wire}


@app.get("/recorder/status")
async def recording_status() -> dict[str, Any]:
    return recorder.status()


# ── Player ────────────────────────────────────────────────────────────────

@app.post("/play", response_model=PlayResult)
async def play(req: PlayRequest):
    return await player.play(req.actions)


def main():
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
