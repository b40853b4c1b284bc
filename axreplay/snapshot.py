"""Accessibility-tree capture and its text serialization.

``Snapshotter.capture`` fetches the full AX tree in one call and projects every
raw node into a :class:`SemanticNode`. ``serialize`` renders the interactive
subset as the text an agent reads, and ``build_refs`` derives the RefID hints
the resolver uses to find those nodes again.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from axreplay.errors import (
    AccessibilityUnavailable, CDPError, EmptyTree, OperationTimeout, SessionInvalid,
)
from axreplay.models import RefData, SemanticNode, SemanticTree
from axreplay.page import CDPPage
from axreplay.refs import RefCache, format_ref_id

logger = logging.getLogger(__name__)

INTERACTIVE_ROLES = {
    "button", "link", "textbox", "searchbox", "combobox",
    "checkbox", "radio", "slider", "spinbutton", "switch", "tab",
    "menuitem", "menuitemcheckbox", "menuitemradio",
    "option", "treeitem", "gridcell",
}

CLICKABLE_ROLES = {
    "button", "link", "checkbox", "radio", "switch", "tab",
    "menuitem", "menuitemcheckbox", "menuitemradio",
    "option", "treeitem", "gridcell",
}

INPUT_ROLES = {"textbox", "searchbox", "combobox", "spinbutton", "slider"}

_TEXT_ROLES = {"StaticText", "text", "InlineTextBox"}

_METADATA_PROPS = (
    "focused", "readonly", "required", "checked", "expanded",
    "selected", "pressed", "modal", "multiline", "url",
)

# DOM attributes worth carrying into RefData
_KEPT_ATTRIBUTES = {"id", "href", "name", "class", "type", "placeholder", "aria-label", "role"}

SNAPSHOT_TIMEOUT = 10.0


def _parse_props(properties: list) -> dict:
    """Flatten AX node properties list into a simple dict."""
    out = {}
    for p in properties:
        val = p.get("value", {})
        out[p["name"]] = val.get("value")
    return out


def _ax_value(node: dict, key: str) -> str:
    value = (node.get(key) or {}).get("value")
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def project_node(node: dict, dom_attrs: dict[int, dict[str, str]] | None = None) -> SemanticNode:
    """Project one raw ``Accessibility.AXNode`` into a SemanticNode."""
    role = _ax_value(node, "role")
    name = _ax_value(node, "name")
    props = _parse_props(node.get("properties", []))
    backend_id = node.get("backendDOMNodeId") or 0

    attributes = dict((dom_attrs or {}).get(backend_id, {}))
    if props.get("url") and "href" not in attributes:
        attributes["href"] = str(props["url"])

    metadata = {"ignored": bool(node.get("ignored"))}
    for key in _METADATA_PROPS:
        if key in props:
            metadata[key] = props[key]

    return SemanticNode(
        id=str(node["nodeId"]),
        role=role,
        label=name,
        text=name if role in _TEXT_ROLES else "",
        description=_ax_value(node, "description"),
        value=_ax_value(node, "value"),
        placeholder=str(props.get("placeholder") or attributes.get("placeholder") or ""),
        attributes=attributes,
        backend_node_id=backend_id,
        is_interactive=role in INTERACTIVE_ROLES,
        is_enabled=not props.get("disabled"),
        metadata=metadata,
        child_ids=tuple(str(c) for c in node.get("childIds", [])),
    )


def build_tree(nodes: list[dict], dom_attrs: dict[int, dict[str, str]] | None = None) -> SemanticTree:
    if not nodes:
        raise EmptyTree("accessibility tree returned no nodes")
    tree = SemanticTree()
    for raw in nodes:
        tree.ax_nodes[str(raw["nodeId"])] = raw
    for raw in nodes:
        node = project_node(raw, dom_attrs)
        tree.elements[node.id] = node
        if node.backend_node_id:
            tree.backend_map[node.backend_node_id] = node
        if tree.root is None and not raw.get("parentId"):
            tree.root = node
    if tree.root is None:
        tree.root = tree.elements[str(nodes[0]["nodeId"])]
    return tree


# ── Serialization ────────────────────────────────────────────────────────────

def _addressable(node: SemanticNode) -> bool:
    return not node.ignored and node.backend_node_id > 0


def clickable_nodes(tree: SemanticTree) -> list[SemanticNode]:
    return [n for n in tree.elements.values() if _addressable(n) and n.role in CLICKABLE_ROLES]


def input_nodes(tree: SemanticTree) -> list[SemanticNode]:
    return [n for n in tree.elements.values() if _addressable(n) and n.role in INPUT_ROLES]


def _display_label(node: SemanticNode) -> str:
    label = node.label or node.placeholder
    if not label and node.attributes.get("id"):
        label = f"id:{node.attributes['id']}"
    if not label and node.attributes.get("name"):
        label = f"name:{node.attributes['name']}"
    return label or f"<{node.role}>"


def _format_line(index: int, node: SemanticNode) -> str:
    label = _display_label(node)
    line = f"  [{index}] {label} (role: {node.role}) [ref: {format_ref_id(node.id)}]"
    if node.value:
        line += f" [value: {node.value[:80]}]"
    if node.placeholder and node.placeholder != label:
        line += f" [placeholder: {node.placeholder}]"
    checked = node.metadata.get("checked")
    if checked is not None and checked != "false" and checked is not False:
        line += " [checked: true]"
    if not node.is_enabled:
        line += " [disabled: true]"
    return line


def serialize(tree: SemanticTree) -> str:
    """Render the tree as the plain-text snapshot handed to agents."""
    lines = ["Page Interactive Elements:", ""]
    clickable = clickable_nodes(tree)
    inputs = input_nodes(tree)

    if clickable:
        lines.append("Clickable Elements:")
        lines.extend(_format_line(i, n) for i, n in enumerate(clickable, start=1))
        lines.append("")
    if inputs:
        lines.append("Input Elements:")
        lines.extend(_format_line(i, n) for i, n in enumerate(inputs, start=1))
        lines.append("")
    return "\n".join(lines)


def build_refs(tree: SemanticTree) -> dict[str, RefData]:
    """RefID hints for every serialized node, with ``nth`` among equal role/name pairs."""
    refs: dict[str, RefData] = {}
    seen: dict[tuple[str, str], int] = {}
    for node in clickable_nodes(tree) + input_nodes(tree):
        key = (node.role, node.label)
        nth = seen.get(key, 0)
        seen[key] = nth + 1
        refs[f"e{node.id}"] = RefData(
            role=node.role,
            name=node.label,
            backend_id=node.backend_node_id,
            href=node.attributes.get("href", ""),
            attributes={k: v for k, v in node.attributes.items() if k in ("id", "name", "href", "type")},
            nth=nth,
        )
    return refs


@dataclass
class Snapshot:
    tree: SemanticTree
    text: str
    refs: dict[str, RefData] = field(default_factory=dict)


# ── Capture ──────────────────────────────────────────────────────────────────

async def _dom_attributes(page: CDPPage) -> dict[int, dict[str, str]]:
    """Backend id → selected DOM attributes, best effort."""
    try:
        result = await page.send("DOM.getDocument", {"depth": -1, "pierce": True}, timeout=5.0)
    except (CDPError, OperationTimeout) as e:
        logger.warning(f"[Snapshot] DOM attribute lookup failed: {e}")
        return {}
    out: dict[int, dict[str, str]] = {}
    stack = [result.get("root", {})]
    while stack:
        node = stack.pop()
        attrs = node.get("attributes") or []
        kept = {k: v for k, v in zip(attrs[0::2], attrs[1::2]) if k in _KEPT_ATTRIBUTES}
        if kept and node.get("backendNodeId"):
            out[node["backendNodeId"]] = kept
        stack.extend(node.get("children") or [])
        stack.extend(node.get("shadowRoots") or [])
        if node.get("contentDocument"):
            stack.append(node["contentDocument"])
    return out


class Snapshotter:
    def __init__(self, ref_cache: RefCache | None = None):
        self.ref_cache = ref_cache if ref_cache is not None else RefCache()

    async def capture(self, page: CDPPage) -> SemanticTree:
        # Reset the domain; a stale enable can hand back an outdated tree
        try:
            await page.send("Accessibility.disable")
        except (CDPError, OperationTimeout) as e:
            logger.debug(f"[Snapshot] Accessibility.disable before capture: {e}")
        try:
            await page.send("Accessibility.enable")
        except (CDPError, OperationTimeout, SessionInvalid) as e:
            raise AccessibilityUnavailable(f"cannot enable accessibility: {e}") from e
        try:
            result = await page.send("Accessibility.getFullAXTree", timeout=15.0)
            nodes = result.get("nodes", [])
            logger.info(f"[Snapshot] Total nodes from CDP: {len(nodes)}")
            if not nodes:
                raise EmptyTree("accessibility tree returned no nodes")
            dom_attrs = await _dom_attributes(page)
            return build_tree(nodes, dom_attrs)
        finally:
            try:
                await page.send("Accessibility.disable")
            except (CDPError, OperationTimeout, SessionInvalid) as e:
                logger.warning(f"[Snapshot] Accessibility.disable failed: {e}")

    async def snapshot(self, page: CDPPage) -> Snapshot:
        """Capture, serialize, and replace the RefID cache."""
        tree = await self.capture(page)
        refs = build_refs(tree)
        self.ref_cache.replace(refs)
        return Snapshot(tree=tree, text=serialize(tree), refs=refs)

    async def snapshot_text(self, page: CDPPage, timeout: float = SNAPSHOT_TIMEOUT) -> str:
        try:
            snap = await asyncio.wait_for(self.snapshot(page), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeout("snapshot", timeout) from e
        return snap.text
