import asyncio
import itertools
import logging
from importlib import resources
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
	from playwright.async_api import Page

from page_pilot.dom.views import (
	GroundingNode,
	GroundingSnapshot,
	ElementRef,
	RawNode,
	SelectorMap,
	Viewport,
)
from page_pilot.utils import RetryPolicy, time_execution_async, truncate

logger = logging.getLogger(__name__)

DISABLED_ELEMENTS = frozenset({'style', 'script', 'head', 'meta', 'link', 'title', 'noscript'})

# SVG internals are dropped outright; the <svg> element itself is kept.
SVG_ELEMENTS = frozenset(
	{
		'path',
		'rect',
		'g',
		'circle',
		'ellipse',
		'line',
		'polyline',
		'polygon',
		'use',
		'defs',
		'clippath',
		'mask',
		'pattern',
		'image',
		'text',
		'tspan',
		'textpath',
		'symbol',
		'lineargradient',
		'radialgradient',
	}
)

INCLUDE_ATTRIBUTES = (
	'id',
	'name',
	'class',
	'type',
	'role',
	'value',
	'placeholder',
	'checked',
	'selected',
	'disabled',
	'readonly',
	'aria-label',
	'aria-labelledby',
	'aria-describedby',
	'aria-expanded',
	'aria-selected',
	'aria-checked',
	'aria-disabled',
	'aria-hidden',
	'aria-haspopup',
	'aria-controls',
	'title',
	'alt',
	'href',
	'src',
	'required',
	'pattern',
	'min',
	'max',
	'step',
	'maxlength',
	'data-testid',
	'data-id',
	'data-action',
)

INTERACTIVE_TAGS = frozenset(
	{'a', 'button', 'input', 'select', 'textarea', 'details', 'summary', 'audio', 'video', 'embed', 'object', 'iframe'}
)

INTERACTIVE_ROLES = frozenset(
	{
		'button',
		'link',
		'checkbox',
		'radio',
		'tab',
		'menuitem',
		'option',
		'switch',
		'textbox',
		'combobox',
		'listbox',
		'slider',
		'spinbutton',
		'searchbox',
		'menu',
		'menubar',
		'tablist',
		'tree',
		'grid',
	}
)

CLICK_HANDLER_ATTRIBUTES = ('onclick', 'ng-click', '@click', 'v-on:click')

INPUT_FORMAT_HINTS = {
	'date': 'YYYY-MM-DD',
	'time': 'HH:MM',
	'datetime-local': 'YYYY-MM-DDTHH:MM',
	'month': 'YYYY-MM',
	'week': 'YYYY-W##',
}

VIEWPORT_MARGIN = 500
MAX_ATTRIBUTE_LENGTH = 100
INLINE_TEXT_LIMIT = 100
STANDALONE_TEXT_LIMIT = 200
IFRAME_WRAPPER_TAG = '#iframe-content'

_SCROLLING_OVERFLOW = ('auto', 'scroll')


def _input_type(raw: RawNode) -> str:
	return (raw.attributes.get('type') or 'text').strip().lower()


def is_visible(raw: RawNode, viewport: Viewport, margin: int = VIEWPORT_MARGIN) -> bool:
	if raw.is_wrapper:
		return True
	if raw.display == 'none' or raw.visibility == 'hidden':
		return False
	# File inputs are routinely hidden behind a styled label (0x0, transparent or off-screen) but stay usable.
	if raw.tag == 'input' and _input_type(raw) == 'file':
		return True
	rect = raw.rect
	if rect is None or (rect.width == 0 and rect.height == 0):
		return False
	if raw.opacity <= 0:
		return False
	return (
		rect.bottom > -margin
		and rect.y < viewport.height + margin
		and rect.right > -margin
		and rect.x < viewport.width + margin
	)


def is_interactive(raw: RawNode) -> bool:
	if raw.is_wrapper:
		return False
	if raw.tag in INTERACTIVE_TAGS:
		return True
	role = raw.attributes.get('role')
	if role and role in INTERACTIVE_ROLES:
		return True
	if any(attr in raw.attributes for attr in CLICK_HANDLER_ATTRIBUTES):
		return True
	if raw.cursor == 'pointer':
		return True
	if raw.attributes.get('contenteditable') == 'true':
		return True
	tabindex = raw.attributes.get('tabindex')
	if tabindex is not None:
		try:
			return int(tabindex.strip()) >= 0
		except ValueError:
			return False
	return False


def is_scrollable(raw: RawNode) -> bool:
	if raw.is_wrapper:
		return False
	has_overflow = (
		raw.overflow in _SCROLLING_OVERFLOW or raw.overflow_x in _SCROLLING_OVERFLOW or raw.overflow_y in _SCROLLING_OVERFLOW
	)
	if not has_overflow:
		return False
	return raw.scroll_height > raw.client_height or raw.scroll_width > raw.client_width


def build_attributes(raw: RawNode) -> dict[str, str]:
	"""Allow-listed attributes plus synthesized hints (input formats, live values, select options)."""
	if raw.is_wrapper:
		return dict(raw.attributes)

	attrs: dict[str, str] = {}
	for name in INCLUDE_ATTRIBUTES:
		value = raw.attributes.get(name)
		if value is not None and value.strip() != '':
			attrs[name] = truncate(value, MAX_ATTRIBUTE_LENGTH)

	if raw.tag == 'input':
		fmt = INPUT_FORMAT_HINTS.get(_input_type(raw))
		if fmt:
			attrs['format'] = fmt
		if raw.value and 'value' not in attrs:
			attrs['value'] = truncate(raw.value, MAX_ATTRIBUTE_LENGTH)

	if raw.tag == 'select':
		if 0 <= raw.selected_index < len(raw.options):
			attrs['selected-text'] = raw.options[raw.selected_index][:50]
		if raw.options:
			hint = ' | '.join(option[:30] for option in raw.options[:4])
			if len(raw.options) > 4:
				hint += f' ... +{len(raw.options) - 4} more'
			attrs['options'] = hint

	return attrs


class GroundingBuilder:
	"""Turns the collector's raw tree into indexed grounding nodes.

	Pure: the same raw tree and viewport always give the same nodes and indices.
	Indices are assigned in post-order (children before their container) and start at 1.
	"""

	def __init__(self, viewport: Viewport, pass_id: int, margin: int = VIEWPORT_MARGIN):
		self.viewport = viewport
		self.pass_id = pass_id
		self.margin = margin

	def build(self, raw_root: RawNode | None) -> tuple[GroundingNode | None, SelectorMap]:
		if raw_root is None:
			return None, {}
		root = self._convert(raw_root)
		selector_map: SelectorMap = {}
		if root is not None:
			self._assign_indices(root, selector_map)
		return root, selector_map

	def _convert(self, raw: RawNode) -> GroundingNode | None:
		if raw.tag in DISABLED_ELEMENTS or raw.tag in SVG_ELEMENTS:
			return None

		children = [child for child in (self._convert(c) for c in raw.children) if child is not None]

		if raw.is_wrapper:
			if not children:
				return None
			return GroundingNode(
				tag=IFRAME_WRAPPER_TAG,
				attributes=build_attributes(raw),
				text='',
				is_visible=True,
				is_interactive=False,
				is_scrollable=False,
				children=children,
			)

		visible = is_visible(raw, self.viewport, self.margin)
		interactive = is_interactive(raw)
		scrollable = is_scrollable(raw)

		if not visible and not interactive and not scrollable and not children:
			return None

		return GroundingNode(
			tag=raw.tag,
			attributes=build_attributes(raw),
			text=raw.text,
			is_visible=visible,
			is_interactive=interactive,
			is_scrollable=scrollable,
			bounds=raw.rect if visible else None,
			children=children,
			node_id=raw.node_id,
		)

	def _assign_indices(self, node: GroundingNode, selector_map: SelectorMap) -> None:
		# Post-order: descendants are numbered before the container holding them.
		for child in node.children:
			self._assign_indices(child, selector_map)
		if node.node_id is not None and node.is_visible and (node.is_interactive or node.is_scrollable):
			node.index = len(selector_map) + 1
			selector_map[node.index] = ElementRef(pass_id=self.pass_id, node_id=node.node_id, tag=node.tag)


def serialize_tree(root: GroundingNode | None) -> str:
	"""Render the grounding tree as the indented text block shown to the model."""
	if root is None:
		return ''
	lines: list[str] = []
	_serialize_node(root, 0, lines)
	return '\n'.join(lines)


def _serialize_node(node: GroundingNode, depth: int, lines: list[str]) -> None:
	indent = '\t' * depth
	emitted = False

	if node.index > 0 or node.is_scrollable or node.tag == 'svg':
		if node.is_scrollable and node.index == 0:
			prefix = '|SCROLL|'
		elif node.index > 0:
			prefix = f'|SCROLL[{node.index}]' if node.is_scrollable else f'[{node.index}]'
		else:
			prefix = ''

		line = f'{indent}{prefix}<{node.tag}'
		if node.attributes:
			line += ' ' + ' '.join(f'{key}={value}' for key, value in node.attributes.items())
		line += ' />'
		if node.text and len(node.text) < INLINE_TEXT_LIMIT:
			line += f' "{node.text}"'
		lines.append(line)
		emitted = True

	if not emitted and node.text:
		lines.append(f'{indent}{truncate(node.text, STANDALONE_TEXT_LIMIT)}')

	child_depth = depth + 1 if node.index > 0 or node.is_scrollable else depth
	for child in node.children:
		_serialize_node(child, child_depth, lines)


def build_snapshot(data: dict[str, Any], pass_id: int, margin: int = VIEWPORT_MARGIN) -> GroundingSnapshot:
	"""Build a snapshot from the collector's JSON result."""
	viewport_data = data.get('viewport') or {}
	viewport = Viewport(width=int(viewport_data.get('width') or 0), height=int(viewport_data.get('height') or 0))
	raw_root = RawNode.from_dict(data['root']) if data.get('root') else None

	root, selector_map = GroundingBuilder(viewport, pass_id, margin).build(raw_root)
	return GroundingSnapshot(
		serialized_text=serialize_tree(root),
		selector_map=selector_map,
		interactive_count=len(selector_map),
		url=data.get('url') or '',
		title=data.get('title') or '',
		pass_id=pass_id,
		root=root,
	)


class DomService:
	logger: logging.Logger

	def __init__(self, page: 'Page', logger: logging.Logger | None = None):
		self.page = page
		self.logger = logger or logging.getLogger(__name__)
		self.js_code = resources.files('page_pilot.dom').joinpath('collector.js').read_text()
		self._pass_ids = itertools.count(1)
		self.last_pass_id = 0

	async def _page_title(self) -> str:
		try:
			return await self.page.title()
		except Exception:
			return ''

	@time_execution_async('--extract_grounding')
	async def extract(self) -> GroundingSnapshot:
		"""Run one extraction pass. Never raises: an unreadable page gives an empty snapshot."""
		pass_id = next(self._pass_ids)
		self.last_pass_id = pass_id
		try:
			data = await self.page.evaluate(self.js_code, {'passId': pass_id})
		except Exception as e:
			self.logger.debug(f'Grounding pass {pass_id} failed: {type(e).__name__}: {e}')
			return GroundingSnapshot.empty(url=self.page.url, title=await self._page_title(), pass_id=pass_id)

		if not isinstance(data, dict):
			return GroundingSnapshot.empty(url=self.page.url, title=await self._page_title(), pass_id=pass_id)

		snapshot = build_snapshot(data, pass_id)
		self.logger.debug(f'Grounding pass {pass_id}: {snapshot.interactive_count} indexed elements on {snapshot.url}')
		return snapshot

	async def extract_with_retry(self, policy: RetryPolicy) -> GroundingSnapshot:
		"""Re-extract while the page still renders as empty (usually mid-load)."""
		snapshot = GroundingSnapshot.empty(url=self.page.url)
		for attempt in range(policy.max_attempts):
			snapshot = await self.extract()
			if not snapshot.is_empty:
				return snapshot
			if attempt < policy.max_attempts - 1:
				self.logger.debug(f'Empty grounding on attempt {attempt + 1}/{policy.max_attempts}, retrying')
				await asyncio.sleep(policy.delay_for(attempt))
		return snapshot
