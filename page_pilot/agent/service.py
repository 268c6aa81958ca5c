from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Optional

from page_pilot.agent.channel import OperatorChannel
from page_pilot.agent.message_manager.service import MessageManager
from page_pilot.agent.message_manager.views import HistoryItem, ToolResultBlock
from page_pilot.agent.prompts import SystemPrompt
from page_pilot.agent.settings import NAVIGATION_ACTIONS, AgentSettings
from page_pilot.agent.views import AgentBrain, AgentError, PromptDebugEvent, UIMessage, parse_reasoning
from page_pilot.browser.host import BrowserFocus, BrowserHost
from page_pilot.controller.service import Controller
from page_pilot.controller.views import DoneAction
from page_pilot.dom.views import GroundingSnapshot
from page_pilot.exceptions import ConversationRestoreError
from page_pilot.llm.service import ProviderClient, has_valid_credentials
from page_pilot.llm.views import ChatMessage, ModelConfig, NormalizedModelTurn, ToolCall
from page_pilot.logging_config import RESULT_LEVEL
from page_pilot.storage.settings import SettingsStore
from page_pilot.storage.tasks import TaskStore, new_task_id

logger = logging.getLogger(__name__)

TRUNCATED_RESPONSE_NOTICE = '⚠️ The response was cut off at the model\'s output token limit.'
NO_VALID_TOOL_CALLS_NOTICE = (
    'Your last response asked to use tools, but none of the tool calls could be read. '
    'Call one of the available tools with valid JSON arguments.'
)


def format_prompt_blob(messages: list[ChatMessage]) -> str:
    """The exact prompt as one text blob, for the operator's debug view."""
    separator = '=' * 80
    return '\n'.join(
        f'{separator}\nMESSAGE {i}: {message.role.upper()}\n{separator}\n\n{message.content}\n'
        for i, message in enumerate(messages, start=1)
    )


def format_action_result(call: ToolCall, success: bool, error: Optional[str]) -> str:
    return f'{call.name}({json.dumps(call.input, ensure_ascii=False)}) → {"OK" if success else error}'


class Agent:
    """
    Step loop: observe the focused tab, ask the model, run its tool calls, repeat.

    One `run` is one task. It ends with exactly one ``done`` or ``error`` event
    on the channel, unless the operator disconnects first.
    """

    def __init__(
        self,
        host: BrowserHost,
        channel: OperatorChannel,
        settings_store: Optional[SettingsStore] = None,
        task_store: Optional[TaskStore] = None,
        provider: Optional[ProviderClient] = None,
        controller: Optional[Controller] = None,
        settings: Optional[AgentSettings] = None,
        focus: Optional[BrowserFocus] = None,
    ):
        self.host = host
        self.channel = channel
        self.settings = settings or AgentSettings()
        self.settings_store = settings_store or SettingsStore()
        self.task_store = task_store or TaskStore()
        self.provider = provider or ProviderClient()
        self.controller = controller or Controller(host, provider=self.provider, settings=self.settings.controller)
        self.focus = focus or BrowserFocus()
        self.message_manager = MessageManager(settings=self.settings.message_manager)
        self.task_id: Optional[str] = None
        self._finished = False

    # Terminal events --------------------------------------------------------

    async def _finish_done(self, success: Optional[bool] = None) -> None:
        if self._finished:
            return
        self._finished = True
        await self.channel.done(success)

    async def _finish_error(self, error: str) -> None:
        if self._finished:
            return
        self._finished = True
        logger.error(f'❌ {error}')
        await self.channel.error(error)

    async def _emit(self, message: UIMessage, notify: bool = True) -> None:
        if self.task_id:
            await self.task_store.add_ui_message(self.task_id, message)
        if notify:
            await self.channel.ui_message(message)

    # Entry point ------------------------------------------------------------

    async def run(self, task: str, task_id: Optional[str] = None, new_task: bool = False) -> None:
        """Run ``task``, continuing the latest stored task unless ``new_task`` or an explicit id is given."""
        self._finished = False
        stored = await self.settings_store.get_settings()
        model = stored.get_active_model()
        if model is None:
            await self._finish_error(AgentError.NO_MODEL)
            return
        if not has_valid_credentials(model):
            await self._finish_error(AgentError.NO_CREDENTIALS)
            return

        max_iterations = stored.max_iterations or self.settings.max_iterations
        try:
            await self._prepare(task, task_id, new_task)
            await self._loop(model, max_iterations)
        except Exception as e:
            logger.error(f'Agent loop failed: {type(e).__name__}: {e}', exc_info=True)
            await self._finish_error(AgentError.format_error(e))

    async def _prepare(self, task: str, task_id: Optional[str], new_task: bool) -> None:
        if task_id is None and not new_task:
            task_id = await self.task_store.latest_task_id()
        self.task_id = task_id or new_task_id()

        await self.host.ensure_focus(self.focus)

        system_message = SystemPrompt(
            self.controller.registry.describe_tools(),
            override_system_message=self.settings.override_system_message,
            extend_system_message=self.settings.extend_system_message,
        ).get_system_message()

        # Each task owns its conversation; never carry turns over from a previous run.
        self.message_manager = MessageManager(settings=self.settings.message_manager)
        restored = False
        if await self.task_store.task_exists(self.task_id):
            try:
                snapshot = await self.task_store.load_conversation(self.task_id)
                if snapshot is not None:
                    self.message_manager.restore(snapshot)
                    restored = True
            except ConversationRestoreError as e:
                logger.warning(f'⚠️  Starting a fresh conversation for {self.task_id}: {e}')

        self.message_manager.set_system_message(system_message)
        if restored:
            logger.info(f'📂  Resuming task {self.task_id}')
            self.message_manager.add_follow_up_message(task)
        else:
            logger.info(f'🚀  Starting task {self.task_id}: {task}')
            self.message_manager.add_initial_task_message(task)

        # The operator already shows its own request; it is only recorded.
        await self._emit(UIMessage(type='text', role='user', content=task), notify=False)

    # Loop -------------------------------------------------------------------

    async def _refresh_grounding(self, navigation: bool = False, step_start: bool = False) -> GroundingSnapshot:
        tab_id = await self.host.ensure_focus(self.focus)
        page_agent = self.host.page_agent(tab_id)
        if step_start:
            return await page_agent.extract_grounding(self.settings.step_refresh_policy)
        if navigation:
            return await page_agent.extract_grounding(self.settings.navigation_refresh_policy)
        return await page_agent.extract_grounding()

    async def _save_conversation(self) -> None:
        if self.task_id:
            await self.task_store.save_conversation(self.message_manager.serialize(self.task_id))

    async def _loop(self, model: ModelConfig, max_iterations: int) -> None:
        mm = self.message_manager
        tools = self.controller.registry.tool_specs()
        recent_queries: deque[str] = deque(maxlen=self.settings.extraction_repeat_window)

        for step_number in range(1, max_iterations + 1):
            if not self.channel.connected:
                logger.info('🛑 Operator disconnected, stopping')
                return

            logger.info(f'📍 Step {step_number}')
            snapshot = await self._refresh_grounding(step_start=True)
            tabs_info = await self.host.tabs_summary(self.focus.tab_id)
            mm.create_state_message(snapshot, step_number, tabs_info)

            messages = mm.get_messages()
            prompt_text = format_prompt_blob(messages)
            await self.channel.prompt_debug(
                PromptDebugEvent(
                    step_number=step_number,
                    prompt_text=prompt_text,
                    url=snapshot.url,
                    interactive_count=snapshot.interactive_count,
                    message_count=len(messages),
                    total_chars=len(prompt_text),
                )
            )

            turn = await self.provider.call(
                model,
                mm.state.history.system_message or '',
                [m for m in messages if m.role != 'system'],
                tools,
            )

            if turn.stop_reason == 'error':
                await self._finish_error(turn.error or 'Unknown LLM error')
                return

            if turn.stop_reason in ('end_turn', 'max_tokens'):
                await self._finish_with_text(turn)
                return

            if await self._run_tool_calls(turn, step_number, model, recent_queries):
                return

        logger.warning(f'⚠️  Step budget of {max_iterations} exhausted')
        await self._emit(UIMessage(type='system', role='system', content=AgentError.MAX_ITERATIONS))
        await self._finish_done()

    async def _finish_with_text(self, turn: NormalizedModelTurn) -> None:
        if turn.text_content:
            self.message_manager.add_assistant_message(turn.text_content, [])
            await self._emit(UIMessage(type='text', role='assistant', content=turn.text_content))
        if turn.stop_reason == 'max_tokens':
            await self._emit(UIMessage(type='system', role='system', content=TRUNCATED_RESPONSE_NOTICE))
        await self._save_conversation()
        await self._finish_done()

    async def _run_tool_calls(
        self,
        turn: NormalizedModelTurn,
        step_number: int,
        model: ModelConfig,
        recent_queries: deque[str],
    ) -> bool:
        """Execute one batch of tool calls in order. Returns True when the task is over."""
        mm = self.message_manager
        reasoning = turn.thinking or turn.text_content or ''
        brain = parse_reasoning(reasoning)
        if not brain.is_empty:
            await self._emit(
                UIMessage(
                    type='thinking',
                    role='assistant',
                    evaluation=brain.evaluation,
                    memory=brain.memory,
                    next_goal=brain.next_goal,
                    step_number=step_number,
                )
            )

        calls = [
            ToolCall(name=call.name, input=call.input, id=f'tool_{step_number}_{i}')
            for i, call in enumerate(turn.tool_calls)
        ]
        if not calls:
            logger.warning('⚠️  Model asked for tools but sent no usable tool calls')
            mm.add_context_message(NO_VALID_TOOL_CALLS_NOTICE)
            mm.add_history_item(self._history_item(step_number, brain, []))
            return False

        mm.add_assistant_message(reasoning, calls)
        results: list[ToolResultBlock] = []
        action_results: list[str] = []
        done_params: Optional[DoneAction] = None
        disconnected = False

        for call in calls:
            if not self.channel.connected:
                logger.info('🛑 Operator disconnected, skipping remaining actions')
                disconnected = True
                break

            if call.name == 'done':
                done_params = self._parse_done(call)
                action_results.append(format_action_result(call, True, None))
                results.append(ToolResultBlock(tool_use_id=call.id, content=done_params.text))
                break

            await self._emit(
                UIMessage(type='tool_use', role='assistant', tool=call.name, input=dict(call.input), step_number=step_number)
            )

            query = call.input.get('query') if call.name == 'extract_content' else None
            if isinstance(query, str) and query:
                if list(recent_queries).count(query) >= self.settings.extraction_repeat_threshold:
                    mm.add_context_message(
                        f'Note: You\'ve extracted "{query}" multiple times. The extracted content is available in '
                        'history. Consider calling done() if you have the information needed.'
                    )
                recent_queries.append(query)

            result = await self.controller.execute(self.focus, call, model)

            if result.success:
                await asyncio.sleep(self.settings.settle_delay(call.name))
                await self._refresh_grounding(navigation=call.name in NAVIGATION_ACTIONS)
                if isinstance(query, str) and query and result.content:
                    mm.set_read_state(result.content)
                    mm.add_extraction_result(query, result.content, step_number)

            action_results.append(format_action_result(call, result.success, result.error))
            results.append(ToolResultBlock(tool_use_id=call.id, content=result.outcome_text, is_error=not result.success))
            await self._emit(
                UIMessage(
                    type='tool_result',
                    role='assistant',
                    tool=call.name,
                    success=result.success,
                    content=result.content,
                    error=result.error,
                    step_number=step_number,
                )
            )

        mm.add_history_item(self._history_item(step_number, brain, action_results))
        mm.add_tool_results_message(results)
        await self._save_conversation()

        if done_params is not None:
            icon = '✅' if done_params.success else '❌'
            logger.log(RESULT_LEVEL, f'{icon} Task finished: {done_params.text}')
            await self._emit(UIMessage(type='text', role='assistant', content=f'{icon} {done_params.text}'))
            await self._finish_done(done_params.success)
            return True
        return disconnected

    def _parse_done(self, call: ToolCall) -> DoneAction:
        try:
            _, params = self.controller.parse_params(call)
        except ValueError as e:
            logger.warning(f'Invalid done() arguments, using defaults: {e}')
            return DoneAction()
        return params

    @staticmethod
    def _history_item(step_number: int, brain: AgentBrain, action_results: list[str]) -> HistoryItem:
        return HistoryItem(
            step_number=step_number,
            evaluation=brain.evaluation,
            memory=brain.memory,
            next_goal=brain.next_goal,
            action_results='\n'.join(action_results),
        )
