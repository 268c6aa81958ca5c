"""Model settings: which backends are configured and which one is active."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional

import anyio
from pydantic import BaseModel, Field, ValidationError

from page_pilot.config import CONFIG
from page_pilot.llm.views import ModelConfig, OpenAIModelConfig

logger = logging.getLogger(__name__)


def _default_models() -> list[ModelConfig]:
	return [
		OpenAIModelConfig(
			id='default',
			name='OpenAI GPT-4',
			model='gpt-4',
			api_endpoint='https://api.openai.com/v1/chat/completions',
			api_key='',
			max_tokens=4096,
			temperature=0.7,
		)
	]


class Settings(BaseModel):
	active_model_id: str = 'default'
	models: list[ModelConfig] = Field(default_factory=_default_models)
	theme: Literal['light', 'dark', 'system'] = 'dark'
	max_iterations: Optional[int] = Field(None, ge=1, description='Step budget per task; the agent default applies when unset.')

	def get_active_model(self) -> ModelConfig | None:
		return next((m for m in self.models if m.id == self.active_model_id), None)


class SettingsStore:
	"""Reads and writes `Settings` as one JSON file."""

	def __init__(self, path: str | Path | None = None):
		self.path = Path(path) if path is not None else CONFIG.PAGE_PILOT_SETTINGS_PATH

	async def get_settings(self) -> Settings:
		"""Stored settings, or the defaults when the file is missing or unreadable."""
		file = anyio.Path(self.path)
		if not await file.exists():
			return Settings()
		try:
			return Settings.model_validate_json(await file.read_text(encoding='utf-8'))
		except (ValidationError, ValueError) as e:
			logger.warning(f'⚠️  Ignoring invalid settings file {self.path}: {e}')
			return Settings()

	async def save_settings(self, settings: Settings) -> None:
		await anyio.Path(self.path.parent).mkdir(parents=True, exist_ok=True)
		await anyio.Path(self.path).write_text(settings.model_dump_json(indent=2), encoding='utf-8')

	async def get_active_model(self) -> ModelConfig | None:
		return (await self.get_settings()).get_active_model()
