from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from .host import BrowserFocus, BrowserHost
	from .page_agent import PageAgent

# Playwright is only imported when one of these is first used
_LAZY_IMPORTS = {
	'BrowserFocus': ('.host', 'BrowserFocus'),
	'BrowserHost': ('.host', 'BrowserHost'),
	'PageAgent': ('.page_agent', 'PageAgent'),
}


def __getattr__(name: str):
	if name in _LAZY_IMPORTS:
		module_path, attr_name = _LAZY_IMPORTS[name]
		from importlib import import_module

		module = import_module(module_path, package=__name__)
		attr = getattr(module, attr_name)
		globals()[name] = attr
		return attr
	raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = list(_LAZY_IMPORTS.keys())
