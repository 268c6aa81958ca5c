import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from page_pilot.browser.page_agent import PageAgent
from page_pilot.exceptions import BrowserError
from page_pilot.utils import truncate

if TYPE_CHECKING:
	from playwright.async_api import BrowserContext, Page

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 30_000


@dataclass
class BrowserFocus:
	"""The tab the agent currently controls.

	Owned by the running task and handed to the controller by reference, so
	tab switches made by one action are seen by the next.
	"""

	tab_id: int | None = None


@dataclass(frozen=True)
class TabInfo:
	tab_id: int
	url: str
	title: str
	is_active: bool


class BrowserHost:
	"""Tab and window primitives over one Playwright browser context.

	Tabs get small integer ids in creation order. Pages opened by the page itself
	(``target=_blank`` links, ``window.open``) are registered as they appear so a
	click that opens a tab can hand focus to it.
	"""

	def __init__(self, context: 'BrowserContext'):
		self.context = context
		self._pages: dict[int, 'Page'] = {}
		self._page_agents: dict[int, PageAgent] = {}
		self._opened_at: dict[int, float] = {}
		self._claimed: set[int] = set()
		self._ids = itertools.count(1)
		self.active_tab_id: int | None = None

		for page in context.pages:
			self._register(page)
		context.on('page', self._register)

	def _tab_id_for(self, page: 'Page') -> int | None:
		for tab_id, known in self._pages.items():
			if known is page:
				return tab_id
		return None

	def _register(self, page: 'Page') -> int:
		existing = self._tab_id_for(page)
		if existing is not None:
			return existing
		tab_id = next(self._ids)
		self._pages[tab_id] = page
		self._opened_at[tab_id] = time.monotonic()
		page.on('close', lambda _page, tab_id=tab_id: self._forget(tab_id))
		if self.active_tab_id is None:
			self.active_tab_id = tab_id
		logger.debug(f'Tab {tab_id} registered: {page.url}')
		return tab_id

	def _forget(self, tab_id: int) -> None:
		self._pages.pop(tab_id, None)
		self._page_agents.pop(tab_id, None)
		self._opened_at.pop(tab_id, None)
		if self.active_tab_id == tab_id:
			self.active_tab_id = next(iter(self._pages), None)
		logger.debug(f'Tab {tab_id} closed')

	# Queries ---------------------------------------------------------------

	def tab_ids(self) -> list[int]:
		return list(self._pages)

	def has_tab(self, tab_id: int | None) -> bool:
		return tab_id is not None and tab_id in self._pages

	def get_page(self, tab_id: int | None) -> 'Page':
		if tab_id is None or tab_id not in self._pages:
			raise BrowserError(f'Tab {tab_id} not found')
		return self._pages[tab_id]

	def page_agent(self, tab_id: int | None) -> PageAgent:
		page = self.get_page(tab_id)
		agent = self._page_agents.get(tab_id)
		if agent is None or agent.page is not page:
			agent = PageAgent(page)
			self._page_agents[tab_id] = agent
		return agent

	async def tab_info(self, tab_id: int) -> TabInfo:
		page = self.get_page(tab_id)
		try:
			title = await page.title()
		except Exception:
			title = ''
		return TabInfo(tab_id=tab_id, url=page.url, title=title, is_active=tab_id == self.active_tab_id)

	async def list_tabs(self) -> list[TabInfo]:
		return [await self.tab_info(tab_id) for tab_id in self.tab_ids()]

	async def tabs_summary(self, focus_tab_id: int | None) -> str:
		"""Open tabs, one entry each, with an arrow marking the focused one."""
		tabs = await self.list_tabs()
		if not tabs:
			return 'No tabs open'
		entries = []
		for tab in tabs:
			marker = '→ ' if tab.tab_id == focus_tab_id else '  '
			active = ' [active]' if tab.is_active else ''
			entries.append(f'{marker}Tab[{tab.tab_id}]{active}: {truncate(tab.title, 50)}\n     {truncate(tab.url, 60)}')
		return '\n'.join(entries)

	def fallback_tab_id(self) -> int | None:
		"""Tab to focus when the focused one disappears: the active tab, else the first open one."""
		if self.has_tab(self.active_tab_id):
			return self.active_tab_id
		return next(iter(self._pages), None)

	# Commands --------------------------------------------------------------

	async def ensure_focus(self, focus: BrowserFocus) -> int:
		"""Point ``focus`` at an open tab, opening a blank one if none exist."""
		if not self.has_tab(focus.tab_id):
			focus.tab_id = self.fallback_tab_id()
		if focus.tab_id is None:
			focus.tab_id = await self.new_tab()
		return focus.tab_id

	async def new_tab(self, url: str | None = None) -> int:
		try:
			page = await self.context.new_page()
		except Exception as e:
			raise BrowserError(f'Could not open a new tab: {e}') from e
		tab_id = self._register(page)
		self._claimed.add(tab_id)
		if url:
			await self.navigate(tab_id, url)
		await self.activate(tab_id)
		return tab_id

	async def navigate(self, tab_id: int, url: str) -> None:
		page = self.get_page(tab_id)
		try:
			await page.goto(url, wait_until='domcontentloaded', timeout=NAVIGATION_TIMEOUT_MS)
		except Exception as e:
			raise BrowserError(f'Navigation to {url} failed: {e}') from e

	async def go_back(self, tab_id: int) -> bool:
		"""Returns False when there is no history entry to go back to."""
		page = self.get_page(tab_id)
		try:
			response = await page.go_back(wait_until='domcontentloaded', timeout=NAVIGATION_TIMEOUT_MS)
		except Exception as e:
			raise BrowserError(f'Go back failed: {e}') from e
		return response is not None

	async def activate(self, tab_id: int) -> None:
		page = self.get_page(tab_id)
		try:
			await page.bring_to_front()
		except Exception as e:
			logger.warning(f'Could not bring tab {tab_id} to front: {e}')
		self.active_tab_id = tab_id

	async def close_tab(self, tab_id: int) -> None:
		page = self.get_page(tab_id)
		try:
			await page.close()
		except Exception as e:
			raise BrowserError(f'Failed to close tab {tab_id}: {e}') from e
		self._forget(tab_id)

	async def claim_new_tab(self, since: float, window: float = 0.5) -> int | None:
		"""Return a tab the page opened at or after ``since``, waiting up to ``window`` seconds for one."""
		deadline = since + window
		while True:
			for tab_id, opened in self._opened_at.items():
				if opened >= since and tab_id not in self._claimed:
					self._claimed.add(tab_id)
					return tab_id
			if time.monotonic() >= deadline:
				return None
			await asyncio.sleep(0.05)

	async def add_to_agent_group(self, tab_id: int) -> bool:
		"""Group a tab the agent opened. Playwright has no tab groups, so this only records intent."""
		logger.debug(f'Tab grouping unavailable, leaving tab {tab_id} ungrouped')
		return False
