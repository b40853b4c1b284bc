"""
Tests for identifier resolution.

Tests:
1. XPath building - literal quoting and role/name paths.
2. RefID cascade - backend handle, attributes, role/name, text fallback.
3. Direct identifiers - prefixes, strategy order, XPath match selection.
"""

import pytest

from axreplay.errors import CDPError, ElementNotFound, StaleReference
from axreplay.models import RefData
from axreplay.refs import RefCache
from axreplay.resolver import Resolver, build_role_xpath, build_text_fallback_xpath, xpath_literal

from tests.conftest import make_element, make_page


def resolver_with(**refs):
    cache = RefCache()
    cache.replace(refs)
    return Resolver(cache)


# ============================================================
# 1. XPath building
# ============================================================


class TestXPathBuilding:
    """XPath expressions generated from RefData hints."""

    def test_literal_quoting(self):
        """Single, double and mixed quotes produce valid XPath literals."""
        assert xpath_literal("Save") == "'Save'"
        assert xpath_literal("It's") == '"It\'s"'
        assert xpath_literal("""a'b"c""") == """concat('a', "'", 'b"c')"""

    def test_role_xpath_unions_role_paths(self):
        """Button role covers native buttons, inputs and ARIA buttons."""
        xpath = build_role_xpath("button", "Sign  in")
        assert xpath.startswith("(//button | //input[")
        assert "//*[@role='button']" in xpath
        assert "'Sign in'" in xpath
        assert "@aria-label='Sign in'" in xpath

    def test_unknown_role_uses_role_attribute(self):
        assert build_role_xpath("feed", "") == "(//*[@role='feed'])"

    def test_text_fallback_truncates_name(self):
        """Generic text fallback probes only the first 30 characters."""
        name = "x" * 50
        assert "'" + "x" * 30 + "'" in build_text_fallback_xpath(name)
        assert "x" * 31 not in build_text_fallback_xpath(name)


# ============================================================
# 2. RefID cascade
# ============================================================


class TestResolveCascade:
    """RefIDs map back to live elements through the five-stage cascade."""

    async def test_no_snapshot_is_stale(self):
        """Resolving before any snapshot raises StaleReference."""
        with pytest.raises(StaleReference):
            await Resolver(RefCache()).resolve(make_page(), "@e1")

    async def test_unknown_ref_is_stale(self):
        """A RefID missing from the cache raises StaleReference, never ElementNotFound."""
        resolver = resolver_with(e1=RefData(role="button", name="Go"))
        with pytest.raises(StaleReference):
            await resolver.resolve(make_page(), "@e2")

    async def test_backend_node_validated(self):
        """Stage 1 returns the backend node when its text still matches."""
        page = make_page()
        el = make_element(searchable="  Sign In  now")
        page.resolve_backend_node.return_value = el
        resolver = resolver_with(e3=RefData(role="button", name="Sign in", backend_id=42))
        assert await resolver.resolve(page, "@e3") is el
        page.resolve_backend_node.assert_awaited_once_with(42)
        page.query_xpath.assert_not_awaited()

    async def test_recycled_backend_node_falls_through(self):
        """A backend node with different text is rejected; the unique id match wins."""
        page = make_page()
        page.resolve_backend_node.return_value = make_element(searchable="Something else")
        by_id = make_element(searchable="Submit", name="by-id")
        page.query_xpath.return_value = [by_id]
        resolver = resolver_with(e3=RefData(role="button", name="Submit", backend_id=42,
                                            attributes={"id": "submit"}))
        assert await resolver.resolve(page, "e3") is by_id
        assert page.query_xpath.await_args.args[0] == "//*[@id='submit']"

    async def test_href_validation(self):
        """Links are validated by href, not text."""
        page = make_page()
        el = make_element(attributes={"href": "/docs"}, properties={"href": "https://example.com/docs"})
        page.resolve_backend_node.return_value = el
        resolver = resolver_with(e5=RefData(role="link", name="Docs", backend_id=9,
                                            href="https://example.com/docs"))
        assert await resolver.resolve(page, "@e5") is el

    async def test_role_name_uses_nth(self):
        """Stage 3 picks the nth match among equal role/name elements."""
        page = make_page()
        first, second = make_element(name="a"), make_element(name="b")
        page.query_xpath.return_value = [first, second]
        resolver = resolver_with(e8=RefData(role="button", name="Save", nth=1))
        assert await resolver.resolve(page, "@e8") is second

    async def test_nth_out_of_range_is_stale(self):
        """Fewer matches than nth means the page changed."""
        page = make_page()
        page.query_xpath.return_value = [make_element()]
        resolver = resolver_with(e8=RefData(role="button", name="Save", nth=3))
        with pytest.raises(StaleReference):
            await resolver.resolve(page, "@e8")

    async def test_text_fallback(self):
        """Stage 4 searches clickable-looking elements by text."""
        page = make_page()
        target = make_element(name="fallback")
        page.query_xpath.side_effect = [[], [target]]
        resolver = resolver_with(e9=RefData(role="button", name="Checkout"))
        assert await resolver.resolve(page, "@e9") is target

    async def test_text_node_resolves_to_parent(self):
        """Stage 5 swaps a text node for its parent element."""
        page = make_page()
        text_node = make_element(node_type=3, searchable="Menu")
        parent = make_element(name="parent")
        text_node.parent_element.return_value = parent
        page.resolve_backend_node.return_value = text_node
        resolver = resolver_with(e4=RefData(role="menuitem", name="Menu", backend_id=7))
        assert await resolver.resolve(page, "@e4") is parent

    async def test_orphan_text_node_names_ref(self):
        """A text node without a parent is stale, and the error names the RefID."""
        page = make_page()
        page.resolve_backend_node.return_value = make_element(node_type=3, searchable="Menu")
        resolver = resolver_with(e4=RefData(role="menuitem", name="Menu", backend_id=7))
        with pytest.raises(StaleReference) as exc:
            await resolver.resolve(page, "@e4")
        assert exc.value.ref_id == "@e4"
        assert "@e4" in str(exc.value)

    async def test_nothing_matches_is_stale(self):
        page = make_page()
        resolver = resolver_with(e4=RefData(role="button", name="Gone"))
        with pytest.raises(StaleReference):
            await resolver.resolve(page, "@e4")


# ============================================================
# 3. Direct identifiers
# ============================================================


class TestFind:
    """Non-RefID identifiers are tried as CSS, XPath and text."""

    async def test_css_prefix_stripped(self):
        """css: prefix is removed before querying."""
        page = make_page()
        el = make_element()
        page.query_selector.return_value = el
        assert await Resolver().find(page, "css:#login") is el
        page.query_selector.assert_awaited_with("#login")

    async def test_xpath_prefers_interactable(self):
        """Among several XPath matches the interactable one is chosen."""
        page = make_page()
        page.query_selector.side_effect = CDPError("Runtime.evaluate", "SyntaxError")
        hidden = make_element(visible=False, name="hidden")
        covered = make_element(interactable=False, name="covered")
        usable = make_element(name="usable")
        page.query_xpath.return_value = [hidden, covered, usable]
        assert await Resolver().find(page, "xpath://button[@type='submit']") is usable

    async def test_xpath_falls_back_to_first_visible(self):
        page = make_page()
        page.query_selector.side_effect = CDPError("Runtime.evaluate", "SyntaxError")
        hidden = make_element(visible=False, name="hidden")
        covered = make_element(interactable=False, name="covered")
        page.query_xpath.return_value = [hidden, covered]
        assert await Resolver().find(page, "//button") is covered

    async def test_placeholder_strategy(self):
        """Plain text falls through to the placeholder substring match."""
        page = make_page()
        el = make_element(name="email")

        async def query(selector):
            return el if selector == '[placeholder*="Email address"]' else None

        page.query_selector.side_effect = query
        assert await Resolver().find(page, "Email address", timeout=0) is el

    async def test_button_text_strategy(self):
        page = make_page()
        button = make_element(name="btn")

        async def xpath(expr):
            return [button] if expr.startswith("(//button") else []

        page.query_xpath.side_effect = xpath
        assert await Resolver().find(page, "Continue", timeout=0) is button

    async def test_not_found(self):
        """Exhausting every strategy raises ElementNotFound with the identifier."""
        with pytest.raises(ElementNotFound) as exc:
            await Resolver().find(make_page(), "#missing", timeout=0)
        assert exc.value.identifier == "#missing"

    async def test_ref_id_never_falls_through(self):
        """A RefID failure does not try CSS or text lookups."""
        page = make_page()
        with pytest.raises(StaleReference):
            await Resolver().find(page, "@e99", timeout=1)
        page.query_selector.assert_not_awaited()
