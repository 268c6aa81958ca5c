import logging
from typing import TYPE_CHECKING

from page_pilot.dom.service import DomService
from page_pilot.dom.views import GroundingSnapshot
from page_pilot.exceptions import ElementNotFoundError
from page_pilot.utils import RetryPolicy

if TYPE_CHECKING:
	from playwright.async_api import ElementHandle, Page

logger = logging.getLogger(__name__)

_RESOLVE_JS = """([passId, nodeId]) => {
	const registry = window.__pagePilot;
	return registry && registry.resolve ? registry.resolve(passId, nodeId) : null;
}"""


class PageAgent:
	"""Execution agent for one tab: grounding passes and index resolution.

	Indices resolve against the latest pass only. A miss is reported as
	`ElementNotFoundError`, never remapped.
	"""

	def __init__(self, page: 'Page', dom_service: DomService | None = None):
		self.page = page
		self.dom_service = dom_service or DomService(page)
		self.snapshot: GroundingSnapshot | None = None

	async def ping(self) -> bool:
		"""True once the document can be scripted again (e.g. after a navigation)."""
		state = await self.page.evaluate('() => document.readyState')
		return state in ('interactive', 'complete')

	async def extract_grounding(self, policy: RetryPolicy | None = None) -> GroundingSnapshot:
		if policy is None:
			snapshot = await self.dom_service.extract()
		else:
			snapshot = await self.dom_service.extract_with_retry(policy)
		self.snapshot = snapshot
		return snapshot

	async def resolve(self, index: int) -> 'ElementHandle':
		ref = self.snapshot.selector_map.get(index) if self.snapshot else None
		if ref is None:
			raise ElementNotFoundError(index)
		handle = await self.page.evaluate_handle(_RESOLVE_JS, [ref.pass_id, ref.node_id])
		element = handle.as_element()
		if element is None:
			await handle.dispose()
			logger.debug(f'Index {index} (pass {ref.pass_id}, node {ref.node_id}) no longer resolves')
			raise ElementNotFoundError(index)
		return element
