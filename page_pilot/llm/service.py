import asyncio
import logging
from functools import partial
from typing import Any, Sequence

import boto3
from anthropic import APIConnectionError as AnthropicConnectionError
from anthropic import APIStatusError as AnthropicStatusError
from anthropic import AsyncAnthropic
from botocore.exceptions import BotoCoreError, ClientError
from openai import APIConnectionError as OpenAIConnectionError
from openai import APIStatusError as OpenAIStatusError
from openai import AsyncOpenAI

from page_pilot.exceptions import LLMException
from page_pilot.llm import adapters
from page_pilot.llm.views import (
	AnthropicModelConfig,
	BedrockModelConfig,
	ChatMessage,
	CustomModelConfig,
	ModelConfig,
	NormalizedModelTurn,
	OpenAIModelConfig,
	ToolSpec,
)
from page_pilot.utils import time_execution_async

logger = logging.getLogger(__name__)


def has_valid_credentials(model: ModelConfig | None) -> bool:
	if model is None:
		return False
	if isinstance(model, BedrockModelConfig):
		return bool(model.aws_access_key_id and model.aws_secret_access_key and model.aws_region)
	return bool(model.api_key)


def base_url_from_endpoint(endpoint: str, suffixes: Sequence[str]) -> str:
	"""SDK clients want a base URL; settings hold the full request endpoint."""
	trimmed = endpoint.rstrip('/')
	for suffix in suffixes:
		if trimmed.endswith(suffix):
			return trimmed[: -len(suffix)]
	return trimmed


class ProviderClient:
	"""Sends one conversation to the configured backend and returns a normalized turn.

	`call` never raises: a missing model, transport failure, non-success status
	or unreadable body all come back as ``stop_reason='error'``. Nothing is retried.
	"""

	@time_execution_async('--provider_call')
	async def call(
		self,
		model: ModelConfig | None,
		system_prompt: str,
		messages: Sequence[ChatMessage],
		tools: Sequence[ToolSpec] | None = None,
	) -> NormalizedModelTurn:
		if model is None:
			return NormalizedModelTurn.failure('No model configured')

		try:
			raw = await self._send(model, system_prompt, list(messages), list(tools or []))
		except LLMException as e:
			logger.error(f'❌ {model.provider} request failed: {e}')
			return NormalizedModelTurn.failure(f'{model.provider} API error: {e}')
		except Exception as e:
			logger.error(f'❌ {model.provider} request failed: {type(e).__name__}: {e}')
			return NormalizedModelTurn.failure(f'{type(e).__name__}: {e}')

		try:
			turn = self._normalize(model, raw)
		except Exception as e:
			logger.error(f'❌ Could not read {model.provider} response: {type(e).__name__}: {e}')
			return NormalizedModelTurn.failure(f'Malformed response: {e}')

		logger.debug(f'{model.provider} turn: stop_reason={turn.stop_reason}, tool_calls={len(turn.tool_calls)}')
		return turn

	async def _send(
		self,
		model: ModelConfig,
		system_prompt: str,
		messages: list[ChatMessage],
		tools: list[ToolSpec],
	) -> dict[str, Any]:
		if isinstance(model, (OpenAIModelConfig, CustomModelConfig)):
			return await self._send_openai(model, system_prompt, messages, tools)
		if isinstance(model, AnthropicModelConfig):
			return await self._send_anthropic(model, system_prompt, messages, tools)
		if isinstance(model, BedrockModelConfig):
			return await self._send_bedrock(model, system_prompt, messages, tools)
		raise LLMException(None, f'Unsupported provider: {getattr(model, "provider", model)!r}')

	@staticmethod
	def _normalize(model: ModelConfig, raw: dict[str, Any]) -> NormalizedModelTurn:
		if isinstance(model, CustomModelConfig):
			return adapters.normalize_openai_response(raw, lenient=True)
		if isinstance(model, OpenAIModelConfig):
			return adapters.normalize_openai_response(raw)
		if isinstance(model, AnthropicModelConfig):
			return adapters.normalize_anthropic_response(raw)
		return adapters.normalize_bedrock_response(raw)

	async def _send_openai(
		self,
		model: OpenAIModelConfig | CustomModelConfig,
		system_prompt: str,
		messages: list[ChatMessage],
		tools: list[ToolSpec],
	) -> dict[str, Any]:
		client = AsyncOpenAI(
			api_key=model.api_key,
			base_url=base_url_from_endpoint(model.api_endpoint, ('/chat/completions',)),
			max_retries=0,
		)
		request: dict[str, Any] = {
			'model': model.model,
			'messages': adapters.to_openai_messages(system_prompt, messages),
			'max_tokens': model.max_tokens,
			'temperature': model.temperature,
		}
		if tools:
			request['tools'] = adapters.to_openai_tools(tools)
			request['tool_choice'] = 'auto'
		try:
			response = await client.chat.completions.create(**request)
		except OpenAIStatusError as e:
			raise LLMException(e.status_code, e.message) from e
		except OpenAIConnectionError as e:
			raise LLMException(None, f'Connection error: {e}') from e
		finally:
			await client.close()
		return response.model_dump()

	async def _send_anthropic(
		self,
		model: AnthropicModelConfig,
		system_prompt: str,
		messages: list[ChatMessage],
		tools: list[ToolSpec],
	) -> dict[str, Any]:
		client = AsyncAnthropic(
			api_key=model.api_key,
			base_url=base_url_from_endpoint(model.api_endpoint, ('/v1/messages', '/messages')),
			max_retries=0,
		)
		request: dict[str, Any] = {
			'model': model.model,
			'system': system_prompt,
			'messages': adapters.to_anthropic_messages(messages),
			'max_tokens': model.max_tokens,
			'temperature': model.temperature,
		}
		if tools:
			request['tools'] = adapters.to_anthropic_tools(tools)
		try:
			response = await client.messages.create(**request)
		except AnthropicStatusError as e:
			raise LLMException(e.status_code, e.message) from e
		except AnthropicConnectionError as e:
			raise LLMException(None, f'Connection error: {e}') from e
		finally:
			await client.close()
		return response.model_dump()

	async def _send_bedrock(
		self,
		model: BedrockModelConfig,
		system_prompt: str,
		messages: list[ChatMessage],
		tools: list[ToolSpec],
	) -> dict[str, Any]:
		client = boto3.client(
			'bedrock-runtime',
			region_name=model.aws_region,
			aws_access_key_id=model.aws_access_key_id,
			aws_secret_access_key=model.aws_secret_access_key,
			aws_session_token=model.aws_session_token or None,
		)
		request: dict[str, Any] = {
			'modelId': model.model,
			'system': [{'text': system_prompt}],
			'messages': adapters.to_bedrock_messages(messages),
			'inferenceConfig': {'maxTokens': model.max_tokens, 'temperature': model.temperature},
		}
		if tools:
			request['toolConfig'] = adapters.to_bedrock_tool_config(tools)

		# boto3 is synchronous
		loop = asyncio.get_running_loop()
		try:
			return await loop.run_in_executor(None, partial(client.converse, **request))
		except ClientError as e:
			status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
			message = e.response.get('Error', {}).get('Message') or str(e)
			raise LLMException(status, message) from e
		except BotoCoreError as e:
			raise LLMException(None, str(e)) from e
