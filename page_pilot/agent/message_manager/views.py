from __future__ import annotations

import json
import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

SNAPSHOT_SCHEMA_VERSION = 1


class TextBlock(BaseModel):
    type: Literal['text'] = 'text'
    text: str


class ToolUseBlock(BaseModel):
    type: Literal['tool_use'] = 'tool_use'
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal['tool_result'] = 'tool_result'
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator='type')]


class APIMessage(BaseModel):
    """A persistent conversation turn."""

    role: Literal['user', 'assistant']
    content: Union[str, list[ContentBlock]]

    def text(self) -> str:
        """Content as sent to providers; block lists are JSON encoded."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps([block.model_dump() for block in self.content], ensure_ascii=False)


class HistoryItem(BaseModel):
    """Summary of one step. Append-only; shown to the operator, never to the model."""

    step_number: int
    evaluation: str = 'N/A'
    memory: str = ''
    next_goal: str = ''
    action_results: str = ''


class ExtractionResult(BaseModel):
    query: str
    content: str
    step_number: int


class MessageHistory(BaseModel):
    system_message: str | None = None
    messages: list[APIMessage] = Field(default_factory=list)
    # Transient: replaced every step and appended only when messages are requested
    state_message: str | None = None
    context_messages: list[str] = Field(default_factory=list)


def _initial_history_items() -> list[HistoryItem]:
    return [
        HistoryItem(
            step_number=0,
            evaluation='N/A',
            memory='Agent initialized',
            next_goal='Analyze current page and begin task execution',
        )
    ]


class MessageManagerState(BaseModel):
    history: MessageHistory = Field(default_factory=MessageHistory)
    agent_history_items: list[HistoryItem] = Field(default_factory=_initial_history_items)
    read_state_description: str = ''
    extraction_results: list[ExtractionResult] = Field(default_factory=list)


class MessageManagerSettings(BaseModel):
    max_input_tokens: int = Field(128000, description='Budget for persistent turns plus the state message.')
    estimated_chars_per_token: int = Field(3, description='Characters counted as one token.')
    max_extraction_results: int = Field(10, description='Extraction results kept for re-display.')


class ConversationSnapshot(BaseModel):
    """Everything needed to resume a task's conversation.

    ``schema_version`` is bumped whenever the stored shape changes; restore
    refuses versions it does not know.
    """

    model_config = ConfigDict(extra='forbid')

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    task_id: str
    saved_at: float = Field(default_factory=time.time)
    state: MessageManagerState
