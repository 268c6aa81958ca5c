import pytest

from page_pilot.agent.message_manager.views import ConversationSnapshot, MessageManagerState
from page_pilot.agent.views import UIMessage
from page_pilot.exceptions import ConversationRestoreError
from page_pilot.llm.views import AnthropicModelConfig, BedrockModelConfig
from page_pilot.storage.settings import Settings, SettingsStore
from page_pilot.storage.tasks import TASK_PREFIX, TaskStore, new_task_id


def user(text):
    return UIMessage(type='text', role='user', content=text)


# Settings


@pytest.mark.asyncio
async def test_missing_settings_file_gives_defaults(tmp_path):
    settings = await SettingsStore(tmp_path / 'settings.json').get_settings()

    assert settings.active_model_id == 'default'
    assert settings.get_active_model().provider == 'openai'
    assert settings.get_active_model().api_key == ''


@pytest.mark.asyncio
async def test_invalid_settings_file_gives_defaults(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text('{"models": "nope"', encoding='utf-8')

    settings = await SettingsStore(path).get_settings()

    assert settings == Settings()


@pytest.mark.asyncio
async def test_settings_round_trip_keeps_backend_types(tmp_path):
    store = SettingsStore(tmp_path / 'nested' / 'settings.json')
    settings = Settings(
        active_model_id='claude',
        models=[
            AnthropicModelConfig(id='claude', name='Claude', model='claude-sonnet-4', api_key='k'),
            BedrockModelConfig(id='br', name='Bedrock', model='anthropic.claude', aws_region='us-east-1'),
        ],
        max_iterations=25,
    )

    await store.save_settings(settings)
    loaded = await store.get_settings()

    assert loaded == settings
    assert isinstance(await store.get_active_model(), AnthropicModelConfig)


def test_unknown_active_model_is_none():
    assert Settings(active_model_id='gone').get_active_model() is None


# Tasks


@pytest.mark.asyncio
async def test_add_ui_message_appends_and_marks_latest(tmp_path):
    store = TaskStore(tmp_path)

    await store.add_ui_message('task_1', user('find the price'))
    await store.add_ui_message('task_1', UIMessage(type='text', role='assistant', content='$42'))

    state = await store.load_state('task_1')
    assert [m.content for m in state.ui_messages] == ['find the price', '$42']
    assert await store.task_exists('task_1')
    assert await store.latest_task_id() == 'task_1'


@pytest.mark.asyncio
async def test_unknown_task_has_empty_state(tmp_path):
    store = TaskStore(tmp_path)

    assert (await store.load_state('task_404')).ui_messages == []
    assert await store.latest_task_id() is None
    assert await store.list_tasks() == []


@pytest.mark.asyncio
async def test_list_tasks_newest_first_with_preview(tmp_path):
    store = TaskStore(tmp_path)
    await store.add_ui_message('task_1', user('short one'))
    await store.add_ui_message('task_2', user('x' * 80))
    await store.save_conversation(ConversationSnapshot(task_id='task_2', state=MessageManagerState()))

    tasks = await store.list_tasks()

    assert [t.id for t in tasks] == ['task_2', 'task_1']
    assert tasks[0].preview == 'x' * 60 + '...'
    assert tasks[1].preview == 'short one'
    assert tasks[1].message_count == 1


@pytest.mark.asyncio
async def test_task_without_user_message_previews_as_new(tmp_path):
    store = TaskStore(tmp_path)
    await store.add_ui_message('task_1', UIMessage(type='system', role='system', content='hello'))

    assert (await store.list_tasks())[0].preview == 'New Task'


@pytest.mark.asyncio
async def test_delete_latest_moves_pointer(tmp_path):
    store = TaskStore(tmp_path)
    await store.add_ui_message('task_1', user('one'))
    await store.add_ui_message('task_2', user('two'))

    await store.delete_task('task_2')

    assert not await store.task_exists('task_2')
    assert await store.latest_task_id() == 'task_1'

    await store.delete_task('task_1')
    assert await store.latest_task_id() is None


@pytest.mark.asyncio
async def test_clear_all(tmp_path):
    store = TaskStore(tmp_path)
    await store.add_ui_message('task_1', user('one'))
    await store.save_conversation(ConversationSnapshot(task_id='task_1', state=MessageManagerState()))

    await store.clear_all()

    assert await store.list_tasks() == []
    assert await store.load_conversation('task_1') is None
    assert await store.latest_task_id() is None


@pytest.mark.asyncio
async def test_conversation_round_trip(tmp_path):
    store = TaskStore(tmp_path)
    snapshot = ConversationSnapshot(task_id='task_1', state=MessageManagerState())

    await store.save_conversation(snapshot)

    assert await store.load_conversation('task_1') == snapshot
    assert await store.load_conversation('task_2') is None


@pytest.mark.asyncio
async def test_unreadable_conversation_raises(tmp_path):
    (tmp_path / 'task_1.conversation.json').write_text('{broken', encoding='utf-8')

    with pytest.raises(ConversationRestoreError):
        await TaskStore(tmp_path).load_conversation('task_1')


def test_task_ids_started_together_are_distinct():
    ids = {new_task_id() for _ in range(50)}

    assert len(ids) == 50
    assert all(task_id.startswith(TASK_PREFIX) for task_id in ids)
