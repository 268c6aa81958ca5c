"""Request builders and response normalizers, one set per provider.

Each ``normalize_*`` function maps a raw response body (as a plain dict) onto
``NormalizedModelTurn``. Adding a provider means adding a pair of functions here;
nothing upstream changes.
"""

import json
import logging
from typing import Any, Iterable, Sequence

from page_pilot.llm.views import ChatMessage, NormalizedModelTurn, ToolCall, ToolSpec

logger = logging.getLogger(__name__)

# Placeholder used when a strictly alternating API would otherwise start on an assistant turn.
CONVERSATION_START_PLACEHOLDER = '(conversation start)'


def decode_tool_input(raw: Any, tool_name: str) -> dict[str, Any] | None:
	"""Decode tool arguments. Returns None (and logs) when they are unusable."""
	if raw is None or raw == '':
		return {}
	if isinstance(raw, dict):
		return raw
	if isinstance(raw, str):
		try:
			decoded = json.loads(raw)
		except json.JSONDecodeError as e:
			logger.warning(f'Dropping tool call {tool_name!r}: arguments are not valid JSON ({e})')
			return None
		if isinstance(decoded, dict):
			return decoded
	logger.warning(f'Dropping tool call {tool_name!r}: arguments are not an object ({type(raw).__name__})')
	return None


def merge_consecutive_roles(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
	"""Fold adjacent same-role turns together and make sure the conversation opens with a user turn."""
	merged: list[ChatMessage] = []
	for message in messages:
		if message.role == 'system':
			continue
		if merged and merged[-1].role == message.role:
			merged[-1] = ChatMessage(role=message.role, content=f'{merged[-1].content}\n\n{message.content}')
		else:
			merged.append(message)
	if merged and merged[0].role == 'assistant':
		merged.insert(0, ChatMessage(role='user', content=CONVERSATION_START_PLACEHOLDER))
	return merged


def _joined_text(parts: Iterable[str]) -> str:
	return '\n'.join(part for part in parts if part)


# --- OpenAI and OpenAI-compatible ---------------------------------------------


def to_openai_messages(system_prompt: str, messages: Sequence[ChatMessage]) -> list[dict[str, str]]:
	payload = [{'role': 'system', 'content': system_prompt}]
	payload.extend({'role': m.role, 'content': m.content} for m in messages if m.role != 'system')
	return payload


def to_openai_tools(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
	return [
		{
			'type': 'function',
			'function': {'name': t.name, 'description': t.description, 'parameters': t.input_schema},
		}
		for t in tools
	]


def normalize_openai_response(data: dict[str, Any], lenient: bool = False) -> NormalizedModelTurn:
	"""Normalize a chat completions body.

	``lenient`` is used for self-hosted compatible servers, which report tool calls
	under the legacy ``function_call`` reason or with ``finish_reason='stop'``.
	"""
	choices = data.get('choices') or []
	if not choices or not isinstance(choices[0], dict):
		return NormalizedModelTurn.failure('Malformed response: no choices returned')

	choice = choices[0]
	message = choice.get('message') or {}
	finish_reason = choice.get('finish_reason')
	content = message.get('content')
	text = content if isinstance(content, str) else ''

	raw_calls = list(message.get('tool_calls') or [])
	if lenient and message.get('function_call'):
		raw_calls.append({'id': None, 'function': message['function_call']})

	is_tool_use = finish_reason == 'tool_calls' or (lenient and (finish_reason == 'function_call' or bool(raw_calls)))
	if is_tool_use:
		calls = []
		for raw in raw_calls:
			function = raw.get('function') or {}
			name = function.get('name')
			if not name:
				logger.warning('Dropping tool call without a function name')
				continue
			arguments = decode_tool_input(function.get('arguments'), name)
			if arguments is None:
				continue
			calls.append(ToolCall(id=raw.get('id'), name=name, input=arguments))
		return NormalizedModelTurn(stop_reason='tool_use', text_content=text or None, tool_calls=tuple(calls), thinking=text)

	if finish_reason == 'length':
		return NormalizedModelTurn(stop_reason='max_tokens', text_content=text or None, thinking=text)
	return NormalizedModelTurn(stop_reason='end_turn', text_content=text, thinking=text)


# --- Anthropic ----------------------------------------------------------------


def to_anthropic_messages(messages: Sequence[ChatMessage]) -> list[dict[str, str]]:
	return [{'role': m.role, 'content': m.content} for m in merge_consecutive_roles(messages)]


def to_anthropic_tools(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
	return [{'name': t.name, 'description': t.description, 'input_schema': t.input_schema} for t in tools]


def normalize_anthropic_response(data: dict[str, Any]) -> NormalizedModelTurn:
	content = data.get('content')
	if not isinstance(content, list):
		return NormalizedModelTurn.failure('Malformed response: missing content blocks')

	texts = [block.get('text') or '' for block in content if isinstance(block, dict) and block.get('type') == 'text']
	stop_reason = data.get('stop_reason')

	if stop_reason == 'tool_use':
		calls = []
		for block in content:
			if not isinstance(block, dict) or block.get('type') != 'tool_use':
				continue
			name = block.get('name') or ''
			arguments = decode_tool_input(block.get('input'), name)
			if not name or arguments is None:
				continue
			calls.append(ToolCall(id=block.get('id'), name=name, input=arguments))
		thinking = _joined_text(texts)
		return NormalizedModelTurn(stop_reason='tool_use', text_content=thinking or None, tool_calls=tuple(calls), thinking=thinking)

	first_text = texts[0] if texts else ''
	if stop_reason == 'max_tokens':
		return NormalizedModelTurn(stop_reason='max_tokens', text_content=first_text or None, thinking=first_text)
	return NormalizedModelTurn(stop_reason='end_turn', text_content=first_text, thinking=first_text)


# --- Bedrock Converse -------------------------------------------------------


def to_bedrock_messages(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
	return [{'role': m.role, 'content': [{'text': m.content}]} for m in merge_consecutive_roles(messages)]


def to_bedrock_tool_config(tools: Sequence[ToolSpec]) -> dict[str, Any]:
	return {
		'tools': [
			{'toolSpec': {'name': t.name, 'description': t.description, 'inputSchema': {'json': t.input_schema}}}
			for t in tools
		]
	}


def normalize_bedrock_response(data: dict[str, Any]) -> NormalizedModelTurn:
	message = (data.get('output') or {}).get('message') or {}
	content = message.get('content')
	if not isinstance(content, list):
		return NormalizedModelTurn.failure('Malformed response: missing output message')

	texts = [block['text'] for block in content if isinstance(block, dict) and isinstance(block.get('text'), str)]
	stop_reason = data.get('stopReason')

	if stop_reason == 'tool_use':
		calls = []
		for block in content:
			tool_use = block.get('toolUse') if isinstance(block, dict) else None
			if not tool_use:
				continue
			name = tool_use.get('name') or ''
			arguments = decode_tool_input(tool_use.get('input'), name)
			if not name or arguments is None:
				continue
			calls.append(ToolCall(id=tool_use.get('toolUseId'), name=name, input=arguments))
		thinking = _joined_text(texts)
		return NormalizedModelTurn(stop_reason='tool_use', text_content=thinking or None, tool_calls=tuple(calls), thinking=thinking)

	first_text = texts[0] if texts else ''
	if stop_reason == 'max_tokens':
		return NormalizedModelTurn(stop_reason='max_tokens', text_content=first_text or None, thinking=first_text)
	return NormalizedModelTurn(stop_reason='end_turn', text_content=first_text, thinking=first_text)
