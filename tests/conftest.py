"""Shared fakes: pages, elements and browsers built from unittest.mock."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from axreplay.page import CDPPage, Element


def make_element(text="", searchable=None, visible=True, enabled=True, interactable=True,
                 node_type=1, tag="BUTTON", attributes=None, properties=None, name="el"):
    """An Element double whose reads return fixed values."""
    attributes = attributes or {}
    properties = properties or {}
    el = MagicMock(spec=Element)
    el.object_id = name
    el.text = AsyncMock(return_value=text)
    el.searchable_text = AsyncMock(return_value=text if searchable is None else searchable)
    el.html = AsyncMock(return_value=f"<{tag.lower()}>{text}</{tag.lower()}>")
    el.attribute = AsyncMock(side_effect=lambda n: attributes.get(n))
    el.property = AsyncMock(side_effect=lambda n: properties.get(n))
    el.value = AsyncMock(return_value=str(properties.get("value", "")))
    el.tag_name = AsyncMock(return_value=tag.upper())
    el.node_type = AsyncMock(return_value=node_type)
    el.parent_element = AsyncMock(return_value=None)
    el.is_visible = AsyncMock(return_value=visible)
    el.is_enabled = AsyncMock(return_value=enabled)
    el.is_interactable = AsyncMock(return_value=interactable)
    el.call = AsyncMock(return_value=True)
    el.scroll_into_view = AsyncMock()
    el.focus = AsyncMock()
    el.center = AsyncMock(return_value=(10.0, 20.0))
    el.click = AsyncMock()
    el.hover = AsyncMock()
    el.set_files = AsyncMock()
    return el


def make_page(target_id="page-1", url="https://example.com/", title="Example"):
    """A CDPPage double; every protocol call is an AsyncMock."""
    page = MagicMock(spec=CDPPage)
    page.target_id = target_id
    page.url = url
    page.title = title
    page.is_alive = True
    page.connect = AsyncMock()
    page.close = AsyncMock()
    page.send = AsyncMock(return_value={})
    page.evaluate = AsyncMock(return_value=None)
    page.call_function = AsyncMock(return_value=None)
    page.query_selector = AsyncMock(return_value=None)
    page.query_selector_all = AsyncMock(return_value=[])
    page.query_xpath = AsyncMock(return_value=[])
    page.resolve_backend_node = AsyncMock(return_value=None)
    page.current_url = AsyncMock(return_value=url)
    page.page_info = AsyncMock(return_value={"url": url, "title": title})
    page.ready_state = AsyncMock(return_value="complete")
    page.wait_for_load = AsyncMock()
    page.navigate = AsyncMock()
    page.child_frames = AsyncMock(return_value=[])
    page.create_isolated_world = AsyncMock(return_value=1)
    page.set_bypass_csp = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    page.mouse = AsyncMock()
    page.key = AsyncMock()
    page.insert_text = AsyncMock()
    return page


def make_browser(page=None, pages=None):
    """A BrowserManager double with one active page."""
    browser = MagicMock()
    browser.get_active_page = AsyncMock(return_value=page)
    browser.is_running = AsyncMock(return_value=True)
    browser.start = AsyncMock()
    browser.open_page = AsyncMock(return_value=page)
    browser.list_pages = AsyncMock(return_value=list(pages if pages is not None else ([page] if page else [])))
    browser.new_page = AsyncMock(return_value=page)
    browser.activate_page = AsyncMock()
    browser.close_page = AsyncMock()
    return browser


@pytest.fixture
def page():
    return make_page()


@pytest.fixture
def browser(page):
    return make_browser(page)
