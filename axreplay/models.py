"""Data types shared across the package.

Wire types (sent to or received from callers and injected scripts) are
pydantic models; internal value objects are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Semantic tree ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SemanticNode:
    id: str
    role: str
    label: str = ""
    text: str = ""
    description: str = ""
    value: str = ""
    placeholder: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    backend_node_id: int = 0
    is_interactive: bool = False
    is_enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    child_ids: tuple[str, ...] = ()

    @property
    def ignored(self) -> bool:
        return bool(self.metadata.get("ignored"))


@dataclass
class SemanticTree:
    elements: dict[str, SemanticNode] = field(default_factory=dict)
    backend_map: dict[int, SemanticNode] = field(default_factory=dict)
    root: SemanticNode | None = None
    ax_nodes: dict[str, dict] = field(default_factory=dict)

    def children(self, node: SemanticNode) -> list[SemanticNode]:
        return [self.elements[c] for c in node.child_ids if c in self.elements]

    def interactive(self) -> list[SemanticNode]:
        return [n for n in self.elements.values() if n.is_interactive and not n.ignored]


@dataclass(frozen=True)
class RefData:
    role: str
    name: str
    backend_id: int = 0
    href: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    nth: int = 0


# ── Wire types ───────────────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.now(timezone.utc)


class OperationResult(BaseModel):
    success: bool
    message: str = ""
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    data: dict[str, Any] | None = None

    @classmethod
    def ok(cls, message: str, data: dict[str, Any] | None = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, error: str, data: dict[str, Any] | None = None) -> "OperationResult":
        return cls(success=False, message=message, error=error, data=data)


class ScriptAction(BaseModel):
    """One recorded user action, in the shape the in-page recorder emits."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: str
    timestamp: int = 0
    selector: str | None = None
    xpath: str | None = None
    value: str | None = None
    url: str | None = None
    duration: int | None = None
    x: int | None = None
    y: int | None = None
    text: str | None = None
    tag_name: str | None = None
    attrs: dict[str, str] | None = None
    key: str | None = None
    extract_type: str | None = None
    attribute_name: str | None = None
    js_code: str | None = None
    variable_name: str | None = None
    extracted_data: Any = None
    file_paths: list[str] | None = None
    file_names: list[str] | None = None
    description: str | None = None
    multiple: bool | None = None
    accept: str | None = None
    remark: str | None = None
    scroll_x: int | None = None
    scroll_y: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TabInfo(BaseModel):
    index: int
    title: str = ""
    url: str = ""
    active: bool = False
    type: str = "page"


class FormField(BaseModel):
    name: str
    value: Any = ""
    type: str = ""


class BatchOperation(BaseModel):
    type: str
    params: dict[str, Any] = Field(default_factory=dict)
    stop_on_error: bool = False


class BatchResult(BaseModel):
    results: list[OperationResult] = Field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    start_time: datetime = Field(default_factory=_now)
    end_time: datetime | None = None
    duration_ms: int = 0


class PlayResult(BaseModel):
    success_count: int = 0
    fail_count: int = 0
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.fail_count == 0
