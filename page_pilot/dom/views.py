from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Bounds:
	x: float
	y: float
	width: float
	height: float

	@property
	def right(self) -> float:
		return self.x + self.width

	@property
	def bottom(self) -> float:
		return self.y + self.height


@dataclass(frozen=True)
class Viewport:
	width: int
	height: int


@dataclass
class RawNode:
	"""Facts the in-page collector reports for one element.

	The collector does no filtering beyond skipping non-content tags; every
	decision about visibility, interactivity and indexing is made in Python.
	"""

	tag: str
	node_id: int | None = None
	attributes: dict[str, str] = field(default_factory=dict)
	text: str = ''
	display: str = ''
	visibility: str = ''
	opacity: float = 1.0
	cursor: str = ''
	overflow: str = ''
	overflow_x: str = ''
	overflow_y: str = ''
	rect: Bounds | None = None
	scroll_width: int = 0
	scroll_height: int = 0
	client_width: int = 0
	client_height: int = 0
	value: str | None = None
	options: list[str] = field(default_factory=list)
	selected_index: int = -1
	is_wrapper: bool = False
	children: list[RawNode] = field(default_factory=list)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> RawNode:
		rect = data.get('rect')
		try:
			opacity = float(data.get('opacity', 1.0))
		except (TypeError, ValueError):
			opacity = 1.0
		return cls(
			tag=str(data.get('tag', '')).lower(),
			node_id=data.get('node_id'),
			attributes={str(k): str(v) for k, v in (data.get('attributes') or {}).items()},
			text=data.get('text') or '',
			display=data.get('display') or '',
			visibility=data.get('visibility') or '',
			opacity=opacity,
			cursor=data.get('cursor') or '',
			overflow=data.get('overflow') or '',
			overflow_x=data.get('overflow_x') or '',
			overflow_y=data.get('overflow_y') or '',
			rect=Bounds(rect['x'], rect['y'], rect['width'], rect['height']) if rect else None,
			scroll_width=int(data.get('scroll_width') or 0),
			scroll_height=int(data.get('scroll_height') or 0),
			client_width=int(data.get('client_width') or 0),
			client_height=int(data.get('client_height') or 0),
			value=data.get('value'),
			options=[str(o) for o in data.get('options') or []],
			selected_index=int(data.get('selected_index', -1)),
			is_wrapper=bool(data.get('is_wrapper', False)),
			children=[cls.from_dict(c) for c in data.get('children') or []],
		)


@dataclass
class GroundingNode:
	tag: str
	attributes: dict[str, str]
	text: str
	is_visible: bool
	is_interactive: bool
	is_scrollable: bool
	bounds: Bounds | None = None
	children: list[GroundingNode] = field(default_factory=list)
	index: int = 0
	node_id: int | None = None


@dataclass(frozen=True)
class ElementRef:
	"""Handle to a live element, valid only for the extraction pass that produced it."""

	pass_id: int
	node_id: int
	tag: str


SelectorMap = dict[int, ElementRef]


@dataclass
class GroundingSnapshot:
	serialized_text: str
	selector_map: SelectorMap
	interactive_count: int
	url: str
	title: str
	pass_id: int = 0
	root: GroundingNode | None = None

	@classmethod
	def empty(cls, url: str = '', title: str = '', pass_id: int = 0) -> GroundingSnapshot:
		return cls(serialized_text='', selector_map={}, interactive_count=0, url=url, title=title, pass_id=pass_id)

	@property
	def is_empty(self) -> bool:
		return not self.serialized_text
