from __future__ import annotations

import re
import time
import traceback
import uuid
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from page_pilot.exceptions import LLMException

REASONING_PATTERN = re.compile(r'EVAL:\s*(.+?)\s*\n\s*MEMORY:\s*(.+?)\s*\n\s*GOAL:\s*(.+?)(?:\n|$)', re.DOTALL)


class AgentBrain(BaseModel):
    """The model's self-reported reasoning for one step."""

    evaluation: str = 'N/A'
    memory: str = ''
    next_goal: str = ''

    @property
    def is_empty(self) -> bool:
        return self.evaluation == 'N/A' and not self.memory and not self.next_goal


def parse_reasoning(text: str | None) -> AgentBrain:
    """Pull EVAL / MEMORY / GOAL out of free text. Anything missing keeps its default."""
    match = REASONING_PATTERN.search(text or '')
    if not match:
        return AgentBrain()
    evaluation, memory, next_goal = (group.strip() for group in match.groups())
    return AgentBrain(evaluation=evaluation or 'N/A', memory=memory, next_goal=next_goal)


def _now_ms() -> int:
    return int(time.time() * 1000)


class UIMessage(BaseModel):
    """One entry of the operator-facing transcript."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: Literal['text', 'thinking', 'tool_use', 'tool_result', 'system']
    role: Literal['user', 'assistant', 'system']
    content: Optional[str] = None
    evaluation: Optional[str] = None
    memory: Optional[str] = None
    next_goal: Optional[str] = None
    tool: Optional[str] = None
    input: Optional[dict[str, Any]] = None
    success: Optional[bool] = None
    error: Optional[str] = None
    step_number: Optional[int] = None
    timestamp: int = Field(default_factory=_now_ms)


# Events sent to the operator channel


class UIMessageEvent(BaseModel):
    type: Literal['ui_message'] = 'ui_message'
    message: UIMessage


class PromptDebugEvent(BaseModel):
    """The exact prompt sent to the model, rendered as one text blob."""

    type: Literal['prompt_debug'] = 'prompt_debug'
    step_number: int
    prompt_text: str
    url: str = ''
    interactive_count: int = 0
    message_count: int = 0
    total_chars: int = 0


class ErrorEvent(BaseModel):
    type: Literal['error'] = 'error'
    error: str


class DoneEvent(BaseModel):
    type: Literal['done'] = 'done'
    success: Optional[bool] = None


OperatorEvent = Union[UIMessageEvent, PromptDebugEvent, ErrorEvent, DoneEvent]


class AgentError:
    """Container for agent error handling"""

    NO_MODEL = 'No model configured. Please configure a model in settings.'
    NO_CREDENTIALS = 'Credentials not configured. Please add your API key or AWS credentials in settings.'
    MAX_ITERATIONS = '⚠️ Reached maximum iterations. Stopping.'

    @staticmethod
    def format_error(error: Exception, include_trace: bool = False) -> str:
        """Format error message based on error type and optionally include trace"""
        if isinstance(error, LLMException):
            return str(error)
        if include_trace:
            return f'{type(error).__name__}: {error}\nStacktrace:\n{traceback.format_exc()}'
        return f'{type(error).__name__}: {error}'
