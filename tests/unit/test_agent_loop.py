import pytest

from page_pilot.agent.channel import QueueChannel
from page_pilot.agent.message_manager.views import ToolResultBlock
from page_pilot.agent.service import NO_VALID_TOOL_CALLS_NOTICE, TRUNCATED_RESPONSE_NOTICE, Agent, format_prompt_blob
from page_pilot.agent.settings import AgentSettings
from page_pilot.agent.views import AgentError, DoneEvent, ErrorEvent, PromptDebugEvent, UIMessageEvent, parse_reasoning
from page_pilot.controller.service import ControllerSettings
from page_pilot.dom.views import GroundingSnapshot
from page_pilot.exceptions import ElementNotFoundError
from page_pilot.llm.views import ChatMessage, NormalizedModelTurn, OpenAIModelConfig, ToolCall
from page_pilot.storage.settings import Settings
from page_pilot.storage.tasks import TaskStore

MODEL = OpenAIModelConfig(id='default', name='GPT', model='gpt-4o', api_key='sk-test')
REASONING = 'EVAL: N/A\nMEMORY: on the search page\nGOAL: click the first result'


def tool_turn(*calls, thinking=REASONING):
    return NormalizedModelTurn(
        stop_reason='tool_use', thinking=thinking, tool_calls=tuple(ToolCall(name=n, input=i) for n, i in calls)
    )


def text_turn(text, stop_reason='end_turn'):
    return NormalizedModelTurn(stop_reason=stop_reason, text_content=text)


class FakeElement:
    def __init__(self, log, index):
        self.log = log
        self.index = index

    async def click(self, timeout=None):
        self.log.append(f'click {self.index}')


class FakePage:
    url = 'https://shop.example/'

    async def content(self):
        return '<h1>Widget</h1><p>Price: $42</p>'


class FakePageAgent:
    def __init__(self, log):
        self.log = log
        self.page = FakePage()
        self.policies = []

    async def extract_grounding(self, policy=None):
        self.log.append('extract')
        self.policies.append(policy)
        return GroundingSnapshot(
            serialized_text='[1]<button /> "Buy"\n[2]<a /> "Reviews"',
            selector_map={},
            interactive_count=2,
            url=self.page.url,
            title='Widget',
        )

    async def resolve(self, index):
        if index not in (1, 2):
            raise ElementNotFoundError(index)
        return FakeElement(self.log, index)

    async def ping(self):
        return True


class FakeHost:
    def __init__(self):
        self.log = []
        self.agent = FakePageAgent(self.log)
        self.navigations = []

    async def ensure_focus(self, focus):
        focus.tab_id = focus.tab_id or 1
        return focus.tab_id

    def has_tab(self, tab_id):
        return tab_id == 1

    def page_agent(self, tab_id):
        return self.agent

    def get_page(self, tab_id):
        return self.agent.page

    async def tabs_summary(self, focus_tab_id):
        return '→ Tab[1]: Widget\n     https://shop.example/'

    async def navigate(self, tab_id, url):
        self.log.append(f'navigate {url}')
        self.navigations.append(url)

    async def claim_new_tab(self, since, window=0.5):
        return None


class FakeProvider:
    """Replays scripted agent turns; extraction calls (no tools) get a fixed answer."""

    def __init__(self, *turns, extraction_answer='The price is $42'):
        self.turns = list(turns)
        self.extraction_answer = extraction_answer
        self.calls = []
        self.extraction_calls = 0

    async def call(self, model, system_prompt, messages, tools=None):
        if not tools:
            self.extraction_calls += 1
            return text_turn(self.extraction_answer)
        self.calls.append((system_prompt, list(messages)))
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn


class FakeSettingsStore:
    def __init__(self, settings=None):
        self.settings = settings or Settings(models=[MODEL])

    async def get_settings(self):
        return self.settings


FAST = AgentSettings(
    navigation_settle_delay=0,
    action_settle_delay=0,
    step_refresh_delay=0,
    navigation_refresh_delay=0,
    controller=ControllerSettings(readiness_delay=0, new_tab_window=0),
)


def make_agent(provider, tmp_path, settings=None, channel=None, host=None):
    return Agent(
        host=host or FakeHost(),
        channel=channel or QueueChannel(),
        settings_store=FakeSettingsStore(settings),
        task_store=TaskStore(tmp_path),
        provider=provider,
        settings=FAST,
    )


def ui_events(events):
    return [e.message for e in events if isinstance(e, UIMessageEvent)]


def terminal_events(events):
    return [e for e in events if isinstance(e, (DoneEvent, ErrorEvent))]


@pytest.mark.asyncio
async def test_click_then_done(tmp_path):
    provider = FakeProvider(tool_turn(('click', {'index': 1})), tool_turn(('done', {'text': 'Bought it', 'success': True})))
    agent = make_agent(provider, tmp_path)

    await agent.run('buy the widget', new_task=True)
    events = agent.channel.drain()

    assert [type(e).__name__ for e in events] == [
        'PromptDebugEvent',
        'UIMessageEvent',
        'UIMessageEvent',
        'UIMessageEvent',
        'PromptDebugEvent',
        'UIMessageEvent',
        'UIMessageEvent',
        'DoneEvent',
    ]
    messages = ui_events(events)
    assert [m.type for m in messages] == ['thinking', 'tool_use', 'tool_result', 'thinking', 'text']
    assert messages[0].next_goal == 'click the first result'
    assert messages[2].success is True and messages[2].content == 'Clicked element 1'
    assert messages[-1].content == '✅ Bought it'
    assert events[-1].success is True
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_grounding_is_refreshed_after_each_successful_action(tmp_path):
    host = FakeHost()
    provider = FakeProvider(
        tool_turn(('click', {'index': 1}), ('navigate', {'url': 'shop.example/cart'})),
        tool_turn(('done', {})),
    )
    agent = make_agent(provider, tmp_path, host=host)

    await agent.run('open the cart', new_task=True)

    assert host.log == ['extract', 'click 1', 'extract', 'navigate https://shop.example/cart', 'extract', 'extract']
    step, after_click, after_navigate, _ = host.agent.policies
    assert step == FAST.step_refresh_policy
    assert after_click is None
    assert after_navigate == FAST.navigation_refresh_policy


@pytest.mark.asyncio
async def test_missing_credentials_error_without_model_call(tmp_path):
    provider = FakeProvider()
    settings = Settings(models=[MODEL.model_copy(update={'api_key': ''})])
    agent = make_agent(provider, tmp_path, settings=settings)

    await agent.run('anything')
    events = agent.channel.drain()

    assert events == [ErrorEvent(error=AgentError.NO_CREDENTIALS)]
    assert provider.calls == []


@pytest.mark.asyncio
async def test_missing_model_is_reported(tmp_path):
    agent = make_agent(FakeProvider(), tmp_path, settings=Settings(active_model_id='nope', models=[MODEL]))

    await agent.run('anything')

    assert agent.channel.drain() == [ErrorEvent(error=AgentError.NO_MODEL)]


@pytest.mark.asyncio
async def test_step_budget_exhaustion_reports_then_done(tmp_path):
    provider = FakeProvider(*[tool_turn(('wait', {'seconds': 0})) for _ in range(3)])
    agent = make_agent(provider, tmp_path, settings=Settings(models=[MODEL], max_iterations=3))

    await agent.run('wait around', new_task=True)
    events = agent.channel.drain()

    assert len(provider.calls) == 3
    assert ui_events(events)[-1].content == AgentError.MAX_ITERATIONS
    assert terminal_events(events) == [DoneEvent(success=None)]
    assert events[-1] == DoneEvent(success=None)


@pytest.mark.asyncio
async def test_done_skips_the_rest_of_the_batch(tmp_path):
    host = FakeHost()
    provider = FakeProvider(tool_turn(('click', {'index': 1}), ('done', {'text': 'ok'}), ('click', {'index': 2})))
    agent = make_agent(provider, tmp_path, host=host)

    await agent.run('click once', new_task=True)
    events = agent.channel.drain()

    assert 'click 1' in host.log and 'click 2' not in host.log
    assert terminal_events(events) == [DoneEvent(success=True)]
    results = agent.message_manager.state.history.messages[-1].content
    assert [block.tool_use_id for block in results] == ['tool_1_0', 'tool_1_1']
    assert isinstance(results[-1], ToolResultBlock) and results[-1].content == 'ok'


@pytest.mark.asyncio
async def test_unsuccessful_done_reports_failure(tmp_path):
    provider = FakeProvider(tool_turn(('done', {'text': 'Site is down', 'success': False})))
    agent = make_agent(provider, tmp_path)

    await agent.run('check the site', new_task=True)
    events = agent.channel.drain()

    assert ui_events(events)[-1].content == '❌ Site is down'
    assert events[-1] == DoneEvent(success=False)


@pytest.mark.asyncio
async def test_failed_action_is_reported_and_loop_continues(tmp_path):
    provider = FakeProvider(tool_turn(('click', {'index': 9})), tool_turn(('done', {})))
    agent = make_agent(provider, tmp_path)

    await agent.run('click a ghost', new_task=True)
    events = agent.channel.drain()

    result = next(m for m in ui_events(events) if m.type == 'tool_result')
    assert result.success is False
    assert result.error == 'Element with index 9 not found'
    assert len(provider.calls) == 2
    _, second_prompt = provider.calls[1]
    assert 'Element with index 9 not found' in second_prompt[-2].content


@pytest.mark.asyncio
async def test_repeated_extraction_gets_a_nudge(tmp_path):
    provider = FakeProvider(
        *[tool_turn(('extract_content', {'query': 'price'})) for _ in range(3)],
        tool_turn(('done', {'text': '$42'})),
    )
    agent = make_agent(provider, tmp_path)

    await agent.run('what does it cost', new_task=True)

    assert provider.extraction_calls == 3
    prompts = [messages[-1].content for _, messages in provider.calls]
    assert '<extracted_data>' in prompts[1]
    assert 'The price is $42' in prompts[1]
    assert all('multiple times' not in p for p in prompts[:3])
    assert 'You\'ve extracted "price" multiple times' in prompts[3]


@pytest.mark.asyncio
async def test_end_turn_text_is_the_answer(tmp_path):
    agent = make_agent(FakeProvider(text_turn('The widget costs $42.')), tmp_path)

    await agent.run('what does it cost', new_task=True)
    events = agent.channel.drain()

    assert [m.content for m in ui_events(events)] == ['The widget costs $42.']
    assert events[-1] == DoneEvent(success=None)


@pytest.mark.asyncio
async def test_truncated_response_surfaces_text_and_notice(tmp_path):
    agent = make_agent(FakeProvider(text_turn('The widget co', stop_reason='max_tokens')), tmp_path)

    await agent.run('what does it cost', new_task=True)
    events = agent.channel.drain()

    assert [m.content for m in ui_events(events)] == ['The widget co', TRUNCATED_RESPONSE_NOTICE]
    assert terminal_events(events) == [DoneEvent(success=None)]


@pytest.mark.asyncio
async def test_provider_error_is_one_error_event(tmp_path):
    agent = make_agent(FakeProvider(NormalizedModelTurn.failure('Error 401: invalid api key')), tmp_path)

    await agent.run('anything', new_task=True)
    events = agent.channel.drain()

    assert terminal_events(events) == [ErrorEvent(error='Error 401: invalid api key')]


@pytest.mark.asyncio
async def test_unexpected_exception_is_one_error_event(tmp_path):
    agent = make_agent(FakeProvider(RuntimeError('boom')), tmp_path)

    await agent.run('anything', new_task=True)
    events = agent.channel.drain()

    assert terminal_events(events) == [ErrorEvent(error='RuntimeError: boom')]


@pytest.mark.asyncio
async def test_tool_use_without_valid_calls_adds_notice(tmp_path):
    provider = FakeProvider(NormalizedModelTurn(stop_reason='tool_use', tool_calls=()), text_turn('done'))
    agent = make_agent(provider, tmp_path)

    await agent.run('anything', new_task=True)

    _, second_prompt = provider.calls[1]
    assert NO_VALID_TOOL_CALLS_NOTICE in second_prompt[-1].content


@pytest.mark.asyncio
async def test_disconnect_stops_silently(tmp_path):
    channel = QueueChannel()
    channel.disconnect()
    provider = FakeProvider()
    agent = make_agent(provider, tmp_path, channel=channel)

    await agent.run('anything', new_task=True)

    assert channel.drain() == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_follow_up_resumes_the_latest_task(tmp_path):
    first = make_agent(FakeProvider(text_turn('It costs $42.')), tmp_path)
    await first.run('what does the widget cost', new_task=True)

    provider = FakeProvider(text_turn('Shipping is free.'))
    second = make_agent(provider, tmp_path)
    await second.run('and shipping?')

    assert second.task_id == first.task_id
    _, messages = provider.calls[0]
    contents = [m.content for m in messages]
    assert '<user_request>\nwhat does the widget cost\n</user_request>' in contents[0]
    assert any('It costs $42.' in c for c in contents)
    assert any(c.startswith('<follow_up_request>\nand shipping?') for c in contents)

    transcript = await TaskStore(tmp_path).load_state(first.task_id)
    assert [m.content for m in transcript.ui_messages if m.role == 'user'] == ['what does the widget cost', 'and shipping?']


@pytest.mark.asyncio
async def test_new_task_does_not_resume(tmp_path):
    first = make_agent(FakeProvider(text_turn('a')), tmp_path)
    await first.run('first task', task_id='task_1')

    provider = FakeProvider(text_turn('b'))
    second = make_agent(provider, tmp_path)
    await second.run('second task', new_task=True)

    assert second.task_id != 'task_1'
    _, messages = provider.calls[0]
    assert all('first task' not in m.content for m in messages)


@pytest.mark.asyncio
async def test_reused_agent_starts_each_new_task_with_a_fresh_conversation(tmp_path):
    provider = FakeProvider(text_turn('first answer'), text_turn('second answer'))
    agent = make_agent(provider, tmp_path)

    await agent.run('FIRST TASK SECRET')
    first_task_id = agent.task_id
    await agent.run('second task', new_task=True)

    assert agent.task_id != first_task_id
    _, messages = provider.calls[1]
    contents = [m.content for m in messages]
    assert all('FIRST TASK SECRET' not in c for c in contents)
    assert all('first answer' not in c for c in contents)
    assert contents[0].startswith('<user_request>\nsecond task\n</user_request>')
    assert agent.channel.drain()[-1] == DoneEvent(success=None)


@pytest.mark.asyncio
async def test_unknown_task_id_starts_fresh_on_a_reused_agent(tmp_path):
    provider = FakeProvider(text_turn('a'), text_turn('b'))
    agent = make_agent(provider, tmp_path)

    await agent.run('first task', task_id='task_1')
    await agent.run('other task', task_id='task_2')

    _, messages = provider.calls[1]
    assert all('first task' not in m.content for m in messages)


@pytest.mark.asyncio
async def test_prompt_debug_matches_sent_messages(tmp_path):
    provider = FakeProvider(text_turn('hi'))
    agent = make_agent(provider, tmp_path)

    await agent.run('say hi', new_task=True)
    debug = next(e for e in agent.channel.drain() if isinstance(e, PromptDebugEvent))

    system, messages = provider.calls[0]
    assert debug.prompt_text == format_prompt_blob([ChatMessage(role='system', content=system), *messages])
    assert debug.interactive_count == 2
    assert debug.url == 'https://shop.example/'
    assert debug.message_count == 3


def test_reasoning_parser():
    brain = parse_reasoning('EVAL: Success - page loaded\nMEMORY: 2 of 5 items\nGOAL: open item 3\ntrailing')

    assert brain.evaluation == 'Success - page loaded'
    assert brain.memory == '2 of 5 items'
    assert brain.next_goal == 'open item 3'
    assert parse_reasoning('no structure here').is_empty
    assert parse_reasoning(None).is_empty
