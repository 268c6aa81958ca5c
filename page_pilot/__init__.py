import os

from page_pilot.logging_config import setup_logging

if os.environ.get('PAGE_PILOT_SETUP_LOGGING', 'true').lower() != 'false':
	logger = setup_logging()
else:
	import logging

	logger = logging.getLogger('page_pilot')


# Heavy modules (provider SDKs, playwright) are only imported on first attribute access.
_LAZY_EXPORTS = {
	# Agent core
	'Agent': ('page_pilot.agent.service', 'Agent'),
	'AgentSettings': ('page_pilot.agent.settings', 'AgentSettings'),
	'MessageManager': ('page_pilot.agent.message_manager.service', 'MessageManager'),
	'MessageManagerSettings': ('page_pilot.agent.message_manager.views', 'MessageManagerSettings'),
	'SystemPrompt': ('page_pilot.agent.prompts', 'SystemPrompt'),
	'QueueChannel': ('page_pilot.agent.channel', 'QueueChannel'),
	# Browser
	'BrowserHost': ('page_pilot.browser.host', 'BrowserHost'),
	'PageAgent': ('page_pilot.browser.page_agent', 'PageAgent'),
	# Controller and DOM
	'Controller': ('page_pilot.controller.service', 'Controller'),
	'ActionResult': ('page_pilot.controller.views', 'ActionResult'),
	'DomService': ('page_pilot.dom.service', 'DomService'),
	# Providers
	'ProviderClient': ('page_pilot.llm.service', 'ProviderClient'),
	'NormalizedModelTurn': ('page_pilot.llm.views', 'NormalizedModelTurn'),
	# Storage
	'SettingsStore': ('page_pilot.storage.settings', 'SettingsStore'),
	'TaskStore': ('page_pilot.storage.tasks', 'TaskStore'),
}


def __getattr__(name: str):
	entry = _LAZY_EXPORTS.get(name)
	if not entry:
		raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
	module_path, attr_name = entry
	try:
		from importlib import import_module

		module = import_module(module_path)
		attr = getattr(module, attr_name)
		globals()[name] = attr
		return attr
	except Exception as e:
		raise ImportError(f'Failed to import {name} from {module_path}: {e}') from e


__all__ = list(_LAZY_EXPORTS.keys())
