import time

import pytest

from page_pilot.browser.host import BrowserFocus, BrowserHost
from page_pilot.browser.page_agent import PageAgent
from page_pilot.dom.views import ElementRef, GroundingSnapshot
from page_pilot.exceptions import BrowserError, ElementNotFoundError


class FakePage:
    def __init__(self, url='about:blank', title=''):
        self.url = url
        self._title = title
        self.handlers = {}
        self.history = []
        self.closed = False
        self.fronted = 0
        self.handle_result = None

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def title(self):
        return self._title

    async def goto(self, url, wait_until=None, timeout=None):
        if 'unreachable' in url:
            raise RuntimeError('net::ERR_NAME_NOT_RESOLVED')
        self.history.append(self.url)
        self.url = url
        self._title = url.split('//')[-1]

    async def go_back(self, wait_until=None, timeout=None):
        if not self.history:
            return None
        self.url = self.history.pop()
        return object()

    async def bring_to_front(self):
        self.fronted += 1

    async def close(self):
        self.closed = True
        for handler in self.handlers.get('close', []):
            handler(self)

    async def evaluate_handle(self, script, arg=None):
        self.handle_args = arg
        return FakeHandle(self.handle_result)


class FakeHandle:
    def __init__(self, element):
        self.element = element
        self.disposed = False

    def as_element(self):
        return self.element

    async def dispose(self):
        self.disposed = True


class FakeContext:
    def __init__(self, pages=()):
        self.pages = list(pages)
        self.handlers = []

    def on(self, event, handler):
        assert event == 'page'
        self.handlers.append(handler)

    def open_from_page(self, page):
        """A page opened by script or target=_blank."""
        self.pages.append(page)
        for handler in self.handlers:
            handler(page)

    async def new_page(self):
        page = FakePage()
        self.open_from_page(page)
        return page


@pytest.mark.asyncio
async def test_existing_pages_get_ids_in_order():
    host = BrowserHost(FakeContext([FakePage('https://a.example/'), FakePage('https://b.example/')]))

    assert host.tab_ids() == [1, 2]
    assert host.active_tab_id == 1


@pytest.mark.asyncio
async def test_new_tab_navigates_and_activates():
    context = FakeContext([FakePage()])
    host = BrowserHost(context)

    tab_id = await host.new_tab('https://shop.example/')

    assert tab_id == 2
    assert host.tab_ids() == [1, 2]
    assert host.active_tab_id == 2
    assert host.get_page(2).url == 'https://shop.example/'


@pytest.mark.asyncio
async def test_navigation_failure_is_a_browser_error():
    host = BrowserHost(FakeContext([FakePage()]))

    with pytest.raises(BrowserError, match='Navigation to https://unreachable.test failed'):
        await host.navigate(1, 'https://unreachable.test')


@pytest.mark.asyncio
async def test_go_back_reports_missing_history():
    host = BrowserHost(FakeContext([FakePage()]))

    assert await host.go_back(1) is False
    await host.navigate(1, 'https://a.example/')
    assert await host.go_back(1) is True
    assert host.get_page(1).url == 'about:blank'


@pytest.mark.asyncio
async def test_unknown_tab_is_a_browser_error():
    host = BrowserHost(FakeContext([FakePage()]))

    with pytest.raises(BrowserError, match='Tab 7 not found'):
        host.get_page(7)


@pytest.mark.asyncio
async def test_closing_active_tab_falls_back():
    host = BrowserHost(FakeContext([FakePage(), FakePage()]))
    await host.activate(2)

    await host.close_tab(2)

    assert host.tab_ids() == [1]
    assert host.active_tab_id == 1
    assert host.fallback_tab_id() == 1


@pytest.mark.asyncio
async def test_ensure_focus_repairs_or_opens_a_tab():
    context = FakeContext()
    host = BrowserHost(context)
    focus = BrowserFocus(tab_id=5)

    tab_id = await host.ensure_focus(focus)

    assert tab_id == focus.tab_id == 1
    assert len(context.pages) == 1


@pytest.mark.asyncio
async def test_tabs_summary_marks_focus():
    host = BrowserHost(FakeContext([FakePage('https://a.example/', 'A'), FakePage('https://b.example/', 'B')]))

    summary = await host.tabs_summary(focus_tab_id=2)

    assert summary == '  Tab[1] [active]: A\n     https://a.example/\n→ Tab[2]: B\n     https://b.example/'


@pytest.mark.asyncio
async def test_claim_new_tab_returns_page_opened_tab_once():
    context = FakeContext([FakePage()])
    host = BrowserHost(context)
    started = time.monotonic()
    await host.new_tab()
    context.open_from_page(FakePage('https://popup.example/'))

    claimed = await host.claim_new_tab(started, window=0)

    assert claimed == 3
    assert await host.claim_new_tab(started, window=0) is None


@pytest.mark.asyncio
async def test_tab_grouping_is_unavailable():
    host = BrowserHost(FakeContext([FakePage()]))

    assert await host.add_to_agent_group(1) is False


@pytest.mark.asyncio
async def test_page_agent_is_reused_per_tab():
    host = BrowserHost(FakeContext([FakePage()]))

    assert host.page_agent(1) is host.page_agent(1)


@pytest.mark.asyncio
async def test_resolve_uses_latest_pass():
    page = FakePage()
    page.handle_result = 'element'
    agent = PageAgent(page)
    agent.snapshot = GroundingSnapshot(
        serialized_text='[1]<button />',
        selector_map={1: ElementRef(pass_id=4, node_id=17, tag='button')},
        interactive_count=1,
        url='',
        title='',
        pass_id=4,
    )

    assert await agent.resolve(1) == 'element'
    assert page.handle_args == [4, 17]
    with pytest.raises(ElementNotFoundError):
        await agent.resolve(2)


@pytest.mark.asyncio
async def test_resolve_fails_when_node_is_gone():
    page = FakePage()
    agent = PageAgent(page)
    agent.snapshot = GroundingSnapshot(
        serialized_text='[1]<button />',
        selector_map={1: ElementRef(pass_id=1, node_id=2, tag='button')},
        interactive_count=1,
        url='',
        title='',
    )

    with pytest.raises(ElementNotFoundError, match='Element with index 1 not found'):
        await agent.resolve(1)


@pytest.mark.asyncio
async def test_resolve_before_any_pass_fails():
    with pytest.raises(ElementNotFoundError):
        await PageAgent(FakePage()).resolve(1)
