import importlib.resources
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
	from page_pilot.agent.message_manager.views import ExtractionResult
	from page_pilot.dom.views import GroundingSnapshot

ELEMENT_FORMAT_HELP = """Interactive elements are shown as [index]<type>text</type> where:
- index: Numeric identifier for interaction (use this in tool calls)
- type: HTML element type (button, input, link, etc.)
- text: Element description or content"""


class SystemPrompt:
	def __init__(
		self,
		tool_descriptions: str,
		override_system_message: str | None = None,
		extend_system_message: str | None = None,
	):
		if override_system_message:
			prompt = override_system_message
		else:
			self._load_prompt_template()
			prompt = self.prompt_template.format(tools=tool_descriptions)

		if extend_system_message:
			prompt += f'\n{extend_system_message}'

		self.system_message = prompt

	def _load_prompt_template(self) -> None:
		"""Load the prompt template from the markdown file."""
		try:
			with importlib.resources.files('page_pilot.agent').joinpath('system_prompt.md').open('r', encoding='utf-8') as f:
				self.prompt_template = f.read()
		except Exception as e:
			raise RuntimeError(f'Failed to load system prompt template: {e}')

	def get_system_message(self) -> str:
		return self.system_message


def initial_task_message(task: str) -> str:
	return (
		f'<user_request>\n{task}\n</user_request>\n\n'
		'Please analyze the current page and begin executing the task. Use the provided tools to interact with the browser.'
	)


def follow_up_message(task: str) -> str:
	return (
		f'<follow_up_request>\n{task}\n</follow_up_request>\n\n'
		'This is a follow-up task. Continue from where you left off and complete this new request.'
	)


def format_extraction_results(results: Sequence['ExtractionResult']) -> str:
	return '\n'.join(
		f'[Extraction {i} from Step {r.step_number}]\nQuery: "{r.query}"\nResult:\n{r.content}\n'
		for i, r in enumerate(results, start=1)
	)


def render_state_message(
	snapshot: 'GroundingSnapshot',
	step_number: int,
	tabs_info: str | None = None,
	read_state: str = '',
	extraction_results: Sequence['ExtractionResult'] = (),
	notices: Sequence[str] = (),
) -> str:
	"""The transient "current state" turn: one-time and persistent side data, then fresh grounding."""
	parts = []
	if read_state:
		parts.append(f'<read_state>\n{read_state}\n</read_state>')
	if extraction_results:
		parts.append(f'<extracted_data>\n{format_extraction_results(extraction_results)}\n</extracted_data>')
	if notices:
		parts.append('<notices>\n' + '\n'.join(notices) + '\n</notices>')
	if tabs_info:
		parts.append(
			'<open_tabs>\nThe arrow (→) indicates your current focused tab. Use switch_tab(tab_id) to change focus.\n'
			f'{tabs_info}\n</open_tabs>'
		)
	parts.append(
		'<browser_state>\n'
		f'Current URL: {snapshot.url}\n'
		f'Title: {snapshot.title}\n'
		f'Interactive Elements: {snapshot.interactive_count}\n\n'
		f'{ELEMENT_FORMAT_HELP}\n\n'
		f'{snapshot.serialized_text or "Page loading..."}\n'
		'</browser_state>'
	)
	parts.append(f'<step_info>Step {step_number}</step_info>')
	return '\n\n'.join(parts).strip()
