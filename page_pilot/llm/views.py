from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

StopReason = Literal['end_turn', 'tool_use', 'error', 'max_tokens']

DEFAULT_OPENAI_ENDPOINT = 'https://api.openai.com/v1/chat/completions'
DEFAULT_ANTHROPIC_ENDPOINT = 'https://api.anthropic.com/v1/messages'


class _BaseModelConfig(BaseModel):
	model_config = ConfigDict(extra='ignore')

	id: str
	name: str
	model: str
	max_tokens: int = 4096
	temperature: float = 0.7


class OpenAIModelConfig(_BaseModelConfig):
	provider: Literal['openai'] = 'openai'
	api_endpoint: str = DEFAULT_OPENAI_ENDPOINT
	api_key: str = ''


class AnthropicModelConfig(_BaseModelConfig):
	provider: Literal['anthropic'] = 'anthropic'
	api_endpoint: str = DEFAULT_ANTHROPIC_ENDPOINT
	api_key: str = ''


class CustomModelConfig(_BaseModelConfig):
	"""Any OpenAI-compatible chat completions endpoint."""

	provider: Literal['custom'] = 'custom'
	api_endpoint: str
	api_key: str = ''


class BedrockModelConfig(_BaseModelConfig):
	provider: Literal['bedrock'] = 'bedrock'
	aws_access_key_id: str = ''
	aws_secret_access_key: str = ''
	aws_session_token: str | None = None
	aws_region: str = ''


ModelConfig = Annotated[
	Union[OpenAIModelConfig, AnthropicModelConfig, CustomModelConfig, BedrockModelConfig],
	Field(discriminator='provider'),
]


class ChatMessage(BaseModel):
	"""One conversation turn as sent to a provider; structured content is already JSON text."""

	model_config = ConfigDict(frozen=True)

	role: Literal['system', 'user', 'assistant']
	content: str


class ToolSpec(BaseModel):
	model_config = ConfigDict(frozen=True)

	name: str
	description: str
	input_schema: dict[str, Any]


class ToolCall(BaseModel):
	model_config = ConfigDict(frozen=True)

	name: str
	input: dict[str, Any] = Field(default_factory=dict)
	id: str | None = None


class NormalizedModelTurn(BaseModel):
	"""Provider-independent outcome of one model call."""

	model_config = ConfigDict(frozen=True)

	stop_reason: StopReason
	text_content: str | None = None
	tool_calls: tuple[ToolCall, ...] = ()
	thinking: str = ''
	error: str | None = None

	@classmethod
	def failure(cls, message: str) -> NormalizedModelTurn:
		return cls(stop_reason='error', error=message)
