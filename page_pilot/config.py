"""Environment-backed configuration.

Values are read on every access so that tests (and long-lived processes) pick up
changes to ``os.environ`` without re-importing the package.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or raw == '':
		return default
	return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
	@property
	def PAGE_PILOT_LOGGING_LEVEL(self) -> str:
		return os.getenv('PAGE_PILOT_LOGGING_LEVEL', 'info').lower()

	@property
	def PAGE_PILOT_HOME(self) -> Path:
		return Path(os.getenv('PAGE_PILOT_HOME', '~/.config/page_pilot')).expanduser()

	@property
	def PAGE_PILOT_SETTINGS_PATH(self) -> Path:
		override = os.getenv('PAGE_PILOT_SETTINGS_PATH')
		if override:
			return Path(override).expanduser()
		return self.PAGE_PILOT_HOME / 'settings.json'

	@property
	def PAGE_PILOT_TASKS_DIR(self) -> Path:
		override = os.getenv('PAGE_PILOT_TASKS_DIR')
		if override:
			return Path(override).expanduser()
		return self.PAGE_PILOT_HOME / 'tasks'

	@property
	def PAGE_PILOT_DEFAULT_SEARCH_ENGINE(self) -> str:
		return os.getenv('PAGE_PILOT_DEFAULT_SEARCH_ENGINE', 'google').lower()

	@property
	def PAGE_PILOT_HEADLESS(self) -> bool:
		return _env_bool('PAGE_PILOT_HEADLESS', False)


CONFIG = Config()
