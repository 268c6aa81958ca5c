"""Per-task persistence: the operator transcript and the resumable conversation.

Layout under the tasks directory::

	<task_id>.json               transcript (UI messages) and last-update timestamp
	<task_id>.conversation.json  conversation snapshot for resume
	latest.json                  {"task_id": ...}, the task a new request continues
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

import anyio
from pydantic import BaseModel, Field, ValidationError

from page_pilot.agent.message_manager.views import ConversationSnapshot
from page_pilot.agent.views import UIMessage
from page_pilot.config import CONFIG
from page_pilot.exceptions import ConversationRestoreError

logger = logging.getLogger(__name__)

TASK_PREFIX = 'task_'
LATEST_FILE = 'latest.json'
CONVERSATION_SUFFIX = '.conversation.json'
PREVIEW_LENGTH = 60


def new_task_id() -> str:
	# Millisecond stamp plus a random suffix: two tasks started in the same millisecond stay apart.
	return f'{TASK_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}'


class TaskState(BaseModel):
	ui_messages: list[UIMessage] = Field(default_factory=list)
	timestamp: float = Field(default_factory=time.time)


class TaskMetadata(BaseModel):
	id: str
	timestamp: float
	preview: str
	message_count: int


def _preview(messages: list[UIMessage]) -> str:
	first = next((m for m in messages if m.role == 'user' and m.type == 'text'), None)
	if first is None:
		return 'New Task'
	text = (first.content or '')[:PREVIEW_LENGTH] or 'No preview'
	return text + ('...' if len(text) >= PREVIEW_LENGTH else '')


class TaskStore:
	def __init__(self, directory: str | Path | None = None):
		self.directory = Path(directory) if directory is not None else CONFIG.PAGE_PILOT_TASKS_DIR

	def _task_file(self, task_id: str) -> anyio.Path:
		return anyio.Path(self.directory / f'{task_id}.json')

	def _conversation_file(self, task_id: str) -> anyio.Path:
		return anyio.Path(self.directory / f'{task_id}{CONVERSATION_SUFFIX}')

	def _latest_file(self) -> anyio.Path:
		return anyio.Path(self.directory / LATEST_FILE)

	async def _write(self, file: anyio.Path, text: str) -> None:
		await anyio.Path(self.directory).mkdir(parents=True, exist_ok=True)
		await file.write_text(text, encoding='utf-8')

	async def _task_ids(self) -> list[str]:
		directory = anyio.Path(self.directory)
		if not await directory.exists():
			return []
		ids = []
		async for entry in directory.iterdir():
			name = entry.name
			if name.startswith(TASK_PREFIX) and name.endswith('.json') and not name.endswith(CONVERSATION_SUFFIX):
				ids.append(name[: -len('.json')])
		return ids

	# Task state --------------------------------------------------------------

	async def task_exists(self, task_id: str) -> bool:
		return await self._task_file(task_id).exists()

	async def load_state(self, task_id: str) -> TaskState:
		"""Stored transcript for ``task_id``; empty when the task is new or unreadable."""
		file = self._task_file(task_id)
		if not await file.exists():
			return TaskState()
		try:
			return TaskState.model_validate_json(await file.read_text(encoding='utf-8'))
		except (ValidationError, ValueError) as e:
			logger.error(f'Failed to load task {task_id}: {e}')
			return TaskState()

	async def add_ui_message(self, task_id: str, message: UIMessage) -> None:
		"""Append to the transcript and mark the task as the latest one."""
		state = await self.load_state(task_id)
		state.ui_messages.append(message)
		state.timestamp = time.time()
		await self._write(self._task_file(task_id), state.model_dump_json())
		await self._set_latest(task_id)

	async def save_conversation(self, snapshot: ConversationSnapshot) -> None:
		await self._write(self._conversation_file(snapshot.task_id), snapshot.model_dump_json())

	async def load_conversation(self, task_id: str) -> Optional[ConversationSnapshot]:
		"""Saved snapshot, or None when there is none. Raises ConversationRestoreError if unreadable."""
		file = self._conversation_file(task_id)
		if not await file.exists():
			return None
		try:
			return ConversationSnapshot.model_validate_json(await file.read_text(encoding='utf-8'))
		except (ValidationError, ValueError) as e:
			raise ConversationRestoreError(f'Conversation for {task_id} is unreadable: {e}') from e

	# Latest pointer ----------------------------------------------------------

	async def latest_task_id(self) -> Optional[str]:
		file = self._latest_file()
		if not await file.exists():
			return None
		try:
			return json.loads(await file.read_text(encoding='utf-8')).get('task_id')
		except (ValueError, AttributeError):
			return None

	async def _set_latest(self, task_id: Optional[str]) -> None:
		if task_id is None:
			file = self._latest_file()
			if await file.exists():
				await file.unlink()
			return
		await self._write(self._latest_file(), json.dumps({'task_id': task_id}))

	# History -----------------------------------------------------------------

	async def list_tasks(self) -> list[TaskMetadata]:
		"""All stored tasks, newest first."""
		tasks = []
		for task_id in await self._task_ids():
			state = await self.load_state(task_id)
			tasks.append(
				TaskMetadata(
					id=task_id,
					timestamp=state.timestamp,
					preview=_preview(state.ui_messages),
					message_count=len(state.ui_messages),
				)
			)
		return sorted(tasks, key=lambda t: t.timestamp, reverse=True)

	async def delete_task(self, task_id: str) -> None:
		"""Remove a task; if it was the latest, the newest remaining task becomes latest."""
		for file in (self._task_file(task_id), self._conversation_file(task_id)):
			if await file.exists():
				await file.unlink()
		if await self.latest_task_id() == task_id:
			remaining = await self.list_tasks()
			await self._set_latest(remaining[0].id if remaining else None)

	async def clear_all(self) -> None:
		for task_id in await self._task_ids():
			for file in (self._task_file(task_id), self._conversation_file(task_id)):
				if await file.exists():
					await file.unlink()
		await self._set_latest(None)
