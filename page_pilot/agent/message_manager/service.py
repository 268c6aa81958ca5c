from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Sequence

from page_pilot.agent.message_manager.views import (
    SNAPSHOT_SCHEMA_VERSION,
    APIMessage,
    ConversationSnapshot,
    ExtractionResult,
    HistoryItem,
    MessageManagerSettings,
    MessageManagerState,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from page_pilot.agent.prompts import follow_up_message, initial_task_message, render_state_message
from page_pilot.exceptions import ConversationRestoreError
from page_pilot.llm.views import ChatMessage, ToolCall

if TYPE_CHECKING:
    from page_pilot.dom.views import GroundingSnapshot

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = '\n... [truncated]'


class MessageManager:
    """
    Owns the model-facing conversation: the system prompt, the persistent turns,
    and the single transient state turn that is rebuilt every step.

    The state turn is never stored among the persistent turns; it is appended
    only when messages are requested, so grounding never piles up in history.
    """

    def __init__(
        self,
        settings: MessageManagerSettings | None = None,
        state: MessageManagerState | None = None,
    ):
        self.settings = settings or MessageManagerSettings()
        self.state = state or MessageManagerState()

    # Conversation turns ----------------------------------------------------

    def set_system_message(self, content: str) -> None:
        self.state.history.system_message = content

    def add_initial_task_message(self, task: str) -> None:
        self._add_user_message(initial_task_message(task))

    def add_follow_up_message(self, task: str) -> None:
        self._add_user_message(follow_up_message(task))

    def _add_user_message(self, content: str) -> None:
        self.state.history.messages.append(APIMessage(role='user', content=content))

    def add_assistant_message(self, thinking: str, tool_calls: Sequence[ToolCall]) -> None:
        """Record the model's reasoning and tool calls; calls must already carry ids."""
        blocks: list = []
        if thinking:
            blocks.append(TextBlock(text=thinking))
        for call in tool_calls:
            blocks.append(ToolUseBlock(id=call.id or call.name, name=call.name, input=dict(call.input)))
        self.state.history.messages.append(APIMessage(role='assistant', content=blocks))

    def add_tool_results_message(self, results: Sequence[ToolResultBlock]) -> None:
        if not results:
            return
        self.state.history.messages.append(APIMessage(role='user', content=list(results)))

    def add_context_message(self, content: str) -> None:
        """Queue a one-time notice for the next state turn."""
        self.state.history.context_messages.append(content)

    def create_state_message(
        self,
        snapshot: GroundingSnapshot,
        step_number: int,
        tabs_info: str | None = None,
    ) -> str:
        """Replace the transient state turn with fresh grounding, then trim to budget."""
        history = self.state.history
        history.state_message = render_state_message(
            snapshot,
            step_number,
            tabs_info=tabs_info,
            read_state=self.state.read_state_description,
            extraction_results=self.state.extraction_results,
            notices=history.context_messages,
        )
        history.context_messages = []
        self.clear_read_state()
        self.trim_messages_if_needed()
        return history.state_message

    def get_messages(self) -> list[ChatMessage]:
        """System prompt, persistent turns, then the state turn (when present)."""
        history = self.state.history
        messages: list[ChatMessage] = []
        if history.system_message:
            messages.append(ChatMessage(role='system', content=history.system_message))
        messages.extend(ChatMessage(role=m.role, content=m.text()) for m in history.messages)
        if history.state_message:
            messages.append(ChatMessage(role='user', content=history.state_message))
        return messages

    # Side data -------------------------------------------------------------

    def add_history_item(self, item: HistoryItem) -> None:
        self.state.agent_history_items.append(item)

    def set_read_state(self, content: str) -> None:
        self.state.read_state_description = content

    def clear_read_state(self) -> None:
        self.state.read_state_description = ''

    def add_extraction_result(self, query: str, content: str, step_number: int) -> None:
        results = self.state.extraction_results
        results.append(ExtractionResult(query=query, content=content, step_number=step_number))
        overflow = len(results) - self.settings.max_extraction_results
        if overflow > 0:
            del results[:overflow]

    # Token accounting ------------------------------------------------------

    def count_text_tokens(self, text: str) -> int:
        return len(text) // self.settings.estimated_chars_per_token

    def count_message_tokens(self, message: APIMessage) -> int:
        if isinstance(message.content, str):
            return self.count_text_tokens(message.content)
        tokens = 0
        for block in message.content:
            if isinstance(block, TextBlock):
                tokens += self.count_text_tokens(block.text)
            else:
                tokens += self.count_text_tokens(json.dumps(block.model_dump(), ensure_ascii=False))
        return tokens

    def conversation_tokens(self) -> int:
        """Persistent turns plus the state turn; the system prompt is not counted."""
        history = self.state.history
        tokens = sum(self.count_message_tokens(m) for m in history.messages)
        if history.state_message:
            tokens += self.count_text_tokens(history.state_message)
        return tokens

    def total_tokens(self) -> int:
        system = self.state.history.system_message
        return self.conversation_tokens() + (self.count_text_tokens(system) if system else 0)

    def trim_messages_if_needed(self) -> None:
        """Drop the oldest persistent turns while over budget, then cut the state turn's tail."""
        limit = self.settings.max_input_tokens
        history = self.state.history
        tokens = self.conversation_tokens()

        while tokens > limit and history.messages:
            removed = history.messages.pop(0)
            removed_tokens = self.count_message_tokens(removed)
            tokens -= removed_tokens
            logger.debug(f'Trimmed {removed.role} message ({removed_tokens} tokens), conversation now {tokens} tokens')

        if tokens > limit and history.state_message:
            overage_chars = (tokens - limit) * self.settings.estimated_chars_per_token
            keep = max(0, len(history.state_message) - overage_chars - len(TRUNCATION_MARKER))
            history.state_message = history.state_message[:keep] + TRUNCATION_MARKER
            logger.debug(f'Truncated state message to {keep} chars')

    # Persistence -----------------------------------------------------------

    def serialize(self, task_id: str) -> ConversationSnapshot:
        return ConversationSnapshot(task_id=task_id, state=self.state.model_copy(deep=True))

    def restore(self, snapshot: ConversationSnapshot) -> None:
        if snapshot.schema_version != SNAPSHOT_SCHEMA_VERSION:
            raise ConversationRestoreError(
                f'Unsupported conversation schema version {snapshot.schema_version} '
                f'(expected {SNAPSHOT_SCHEMA_VERSION})'
            )
        self.state = snapshot.state.model_copy(deep=True)
