"""Turn identifiers into live elements.

Two entry points:

- ``resolve`` maps a RefID from the last snapshot back to a live element
  through a five-stage cascade (backend handle, exact attribute, role+name,
  generic text, text-node parent). Failure is always a ``StaleReference``;
  a RefID never falls through to unrelated lookups.
- ``find`` handles everything else: CSS selector, XPath, button text, link
  text, ``aria-label`` and ``placeholder`` substrings, polled in that order
  until a shared deadline.
"""

import asyncio
import logging

from axreplay.errors import CDPError, ElementNotFound, OperationTimeout, StaleReference
from axreplay.models import RefData
from axreplay.page import CDPPage, Element
from axreplay.refs import RefCache, is_ref_id, normalize_ref_id

logger = logging.getLogger(__name__)

DEFAULT_FIND_TIMEOUT = 10.0
_POLL_INTERVAL = 0.2
_NAME_PROBE_CHARS = 20
_FALLBACK_TEXT_CHARS = 30

_TEXT_INPUT_TYPES = "not(@type) or @type='text' or @type='email' or @type='password' or @type='tel' or @type='url'"

# role → XPath location paths for elements that carry that role
_ROLE_PATHS = {
    "button": ["//button", "//input[@type='button' or @type='submit' or @type='reset' or @type='image']",
               "//*[@role='button']"],
    "link": ["//a[@href]", "//*[@role='link']"],
    "textbox": [f"//input[{_TEXT_INPUT_TYPES}]", "//textarea", "//*[@role='textbox']",
                "//*[@contenteditable='true']"],
    "searchbox": ["//input[@type='search']", "//*[@role='searchbox']"],
    "combobox": ["//select", "//input[@list]", "//*[@role='combobox']"],
    "checkbox": ["//input[@type='checkbox']", "//*[@role='checkbox']"],
    "radio": ["//input[@type='radio']", "//*[@role='radio']"],
    "slider": ["//input[@type='range']", "//*[@role='slider']"],
    "spinbutton": ["//input[@type='number']", "//*[@role='spinbutton']"],
    "switch": ["//*[@role='switch']"],
    "tab": ["//*[@role='tab']"],
    "menuitem": ["//*[@role='menuitem']"],
    "menuitemcheckbox": ["//*[@role='menuitemcheckbox']"],
    "menuitemradio": ["//*[@role='menuitemradio']"],
    "option": ["//option", "//*[@role='option']"],
    "treeitem": ["//*[@role='treeitem']"],
    "gridcell": ["//td", "//*[@role='gridcell']"],
}


def xpath_literal(text: str) -> str:
    """Quote *text* as an XPath 1.0 string literal."""
    if "'" not in text:
        return f"'{text}'"
    if '"' not in text:
        return f'"{text}"'
    parts = text.split("'")
    return "concat(" + ", \"'\", ".join(f"'{p}'" for p in parts) + ")"


def css_string(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _name_condition(name: str) -> str:
    lit = xpath_literal(name)
    return (
        f"contains(normalize-space(.), {lit}) or @aria-label={lit} or @title={lit}"
        f" or @placeholder={lit} or @value={lit} or @alt={lit}"
        f" or @id=//label[contains(normalize-space(.), {lit})]/@for"
        f" or ancestor::label[contains(normalize-space(.), {lit})]"
    )


def build_role_xpath(role: str, name: str) -> str:
    """Broad XPath for elements with *role* whose accessible name matches *name*."""
    paths = _ROLE_PATHS.get(role, [f"//*[@role={xpath_literal(role)}]"])
    union = " | ".join(paths)
    name = " ".join(name.split())
    if not name:
        return f"({union})"
    return f"({union})[{_name_condition(name)}]"


def build_text_fallback_xpath(name: str) -> str:
    lit = xpath_literal(" ".join(name.split())[:_FALLBACK_TEXT_CHARS])
    return (
        f"//*[contains(normalize-space(.), {lit}) and ("
        "self::a or self::button or "
        "@role='button' or @role='link' or @role='menuitem' or "
        "contains(@class, 'btn') or contains(@class, 'link') or contains(@class, 'click') or "
        "@onclick or @cursor='pointer')]"
    )


def _normalize(text: str) -> str:
    return " ".join(text.split()).lower()


class Resolver:
    def __init__(self, ref_cache: RefCache | None = None):
        self.ref_cache = ref_cache if ref_cache is not None else RefCache()

    # ── RefID cascade ─────────────────────────────────────────────────────

    async def resolve(self, page: CDPPage, ref_id: str) -> Element:
        key = normalize_ref_id(ref_id)
        if self.ref_cache.is_stale():
            age = self.ref_cache.age()
            reason = "no snapshot taken" if age is None else f"snapshot is {age:.0f}s old"
            logger.warning(f"[Resolver] {ref_id}: {reason}")
            raise StaleReference(ref_id, reason)
        ref = self.ref_cache.get(key)
        if ref is None:
            logger.warning(f"[Resolver] {ref_id} not in cache ({len(self.ref_cache)} refs)")
            raise StaleReference(ref_id, "not present in the latest snapshot")

        logger.info(
            f"[Resolver] {ref_id}: role={ref.role} name={ref.name[:40]!r} "
            f"backend={ref.backend_id} href={ref.href!r} nth={ref.nth}"
        )
        element = await self._resolve_cascade(page, ref_id, ref)
        return await self._element_for(ref_id, element)

    async def _resolve_cascade(self, page: CDPPage, ref_id: str, ref: RefData) -> Element:
        if ref.backend_id:
            element = await page.resolve_backend_node(ref.backend_id)
            if element is not None:
                if await self.validate(element, ref):
                    logger.info(f"[Resolver] {ref_id} resolved via backend node")
                    return element
                logger.warning(f"[Resolver] {ref_id}: backend node no longer matches, trying attributes")

        element = await self._by_attributes(page, ref)
        if element is not None:
            logger.info(f"[Resolver] {ref_id} resolved via attributes")
            return element

        xpath = build_role_xpath(ref.role, ref.name)
        matches = await self._query_xpath(page, xpath)
        if matches:
            if ref.nth >= len(matches):
                raise StaleReference(ref_id, f"nth={ref.nth} out of range ({len(matches)} matches)")
            logger.info(f"[Resolver] {ref_id} resolved via role/name ({len(matches)} matches)")
            return matches[ref.nth]

        if ref.name:
            matches = await self._query_xpath(page, build_text_fallback_xpath(ref.name))
            if matches:
                logger.info(f"[Resolver] {ref_id} resolved via text fallback ({len(matches)} matches)")
                return matches[ref.nth] if ref.nth < len(matches) else matches[0]

        raise StaleReference(ref_id, f"no element matches role={ref.role} name={ref.name!r}")

    async def validate(self, element: Element, ref: RefData) -> bool:
        """Backend ids are recycled by the engine; confirm the node is still the one captured."""
        if ref.href:
            href = await element.attribute("href")
            resolved = await element.property("href")
            return ref.href in (href, resolved)
        if ref.name:
            probe = _normalize(ref.name)[:_NAME_PROBE_CHARS]
            return probe in _normalize(await element.searchable_text())
        return True

    async def _by_attributes(self, page: CDPPage, ref: RefData) -> Element | None:
        if ref.href:
            xpath = f"//a[@href={xpath_literal(ref.href)}]"
        elif ref.attributes.get("id"):
            xpath = f"//*[@id={xpath_literal(ref.attributes['id'])}]"
        else:
            return None
        matches = await self._query_xpath(page, xpath)
        if len(matches) == 1:
            return matches[0]
        if matches:
            logger.debug(f"[Resolver] {xpath} is ambiguous ({len(matches)} matches)")
        return None

    async def _query_xpath(self, page: CDPPage, xpath: str) -> list[Element]:
        try:
            return await page.query_xpath(xpath)
        except CDPError as e:
            logger.warning(f"[Resolver] XPath query failed: {xpath}: {e}")
            return []

    async def _element_for(self, ref_id: str, element: Element) -> Element:
        # Text nodes are never directly actionable
        if await element.node_type() == 3:
            parent = await element.parent_element()
            if parent is None:
                raise StaleReference(ref_id, "text node has no parent element")
            return parent
        return element

    # ── Direct identifiers ────────────────────────────────────────────────

    async def find(self, page: CDPPage, identifier: str,
                   timeout: float = DEFAULT_FIND_TIMEOUT) -> Element:
        identifier = identifier.strip()
        lowered = identifier.lower()
        if lowered.startswith("xpath:"):
            identifier = identifier[6:].strip()
        elif lowered.startswith("css:"):
            identifier = identifier[4:].strip()

        if is_ref_id(identifier):
            if timeout <= 0:
                return await self.resolve(page, identifier)
            try:
                return await asyncio.wait_for(self.resolve(page, identifier), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise OperationTimeout("resolve", timeout, identifier) from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            element = await self._find_once(page, identifier)
            if element is not None:
                return element
            if loop.time() + _POLL_INTERVAL > deadline:
                raise ElementNotFound(identifier, timeout)
            await asyncio.sleep(_POLL_INTERVAL)

    async def _find_once(self, page: CDPPage, identifier: str) -> Element | None:
        element = await self._try_css(page, identifier)
        if element is not None:
            return element

        if identifier.startswith(("/", "(", "./")):
            matches = await self._query_xpath(page, identifier)
            if matches:
                return await self.choose(matches)

        lit = xpath_literal(identifier)
        for xpath in (
            f"(//button | //input[@type='button' or @type='submit'] | //*[@role='button'])"
            f"[contains(normalize-space(.), {lit}) or contains(@value, {lit})]",
            f"//a[contains(normalize-space(.), {lit})]",
        ):
            matches = await self._query_xpath(page, xpath)
            if matches:
                return matches[0]

        for attr in ("aria-label", "placeholder"):
            element = await self._try_css(page, f"[{attr}*={css_string(identifier)}]")
            if element is not None:
                return element
        return None

    async def _try_css(self, page: CDPPage, selector: str) -> Element | None:
        try:
            return await page.query_selector(selector)
        except CDPError:
            # Not a valid CSS selector
            return None

    async def choose(self, matches: list[Element]) -> Element:
        """Interactable beats visible beats first match."""
        if len(matches) == 1:
            return matches[0]
        logger.info(f"[Resolver] {len(matches)} XPath matches, selecting the interactable one")
        visible: list[Element] = []
        for element in matches:
            if not await element.is_visible():
                continue
            if await element.is_interactable():
                return element
            visible.append(element)
        if visible:
            logger.warning("[Resolver] No interactable match, using first visible")
            return visible[0]
        logger.warning("[Resolver] No visible match, using first")
        return matches[0]
