"""Run one task from the command line: ``python -m page_pilot "find the weather in Paris"``."""

import argparse
import asyncio
import logging

from playwright.async_api import async_playwright

from page_pilot.agent.channel import QueueChannel
from page_pilot.agent.service import Agent
from page_pilot.agent.views import DoneEvent, ErrorEvent, OperatorEvent, PromptDebugEvent, UIMessageEvent
from page_pilot.browser.host import BrowserHost
from page_pilot.config import CONFIG
from page_pilot.storage.settings import SettingsStore
from page_pilot.storage.tasks import TaskStore

logger = logging.getLogger('page_pilot')


def _print_event(event: OperatorEvent, show_prompts: bool) -> None:
	if isinstance(event, UIMessageEvent):
		message = event.message
		if message.type == 'thinking':
			print(f'🧠 Eval: {message.evaluation}\n   Memory: {message.memory}\n   Goal: {message.next_goal}')
		elif message.type == 'tool_use':
			print(f'🛠️  {message.tool}({message.input})')
		elif message.type == 'tool_result':
			print(f'   {"✅" if message.success else "❌"} {message.content or message.error or ""}')
		else:
			print(message.content or '')
	elif isinstance(event, PromptDebugEvent):
		if show_prompts:
			print(event.prompt_text)
		else:
			print(f'📍 Step {event.step_number}: {event.url} ({event.interactive_count} elements, {event.total_chars} chars)')
	elif isinstance(event, ErrorEvent):
		print(f'❌ {event.error}')
	elif isinstance(event, DoneEvent):
		print('🏁 Done')


async def _pump(channel: QueueChannel, show_prompts: bool) -> None:
	while True:
		event = await channel.queue.get()
		_print_event(event, show_prompts)
		if isinstance(event, (DoneEvent, ErrorEvent)):
			return


async def main(args: argparse.Namespace) -> None:
	headless = args.headless or CONFIG.PAGE_PILOT_HEADLESS
	async with async_playwright() as playwright:
		browser = await playwright.chromium.launch(headless=headless)
		context = await browser.new_context()
		try:
			host = BrowserHost(context)
			if args.url:
				tab_id = await host.new_tab(args.url)
			else:
				tab_id = await host.new_tab()
			channel = QueueChannel()
			agent = Agent(
				host,
				channel,
				settings_store=SettingsStore(args.settings),
				task_store=TaskStore(args.tasks_dir),
			)
			agent.focus.tab_id = tab_id
			pump = asyncio.create_task(_pump(channel, args.show_prompts))
			await agent.run(args.task, new_task=args.new)
			await pump
		finally:
			await context.close()
			await browser.close()


def cli() -> None:
	parser = argparse.ArgumentParser(prog='page_pilot', description='Let a model drive a browser to complete a task.')
	parser.add_argument('task', help='What the agent should do')
	parser.add_argument('--url', help='Page to open before starting')
	parser.add_argument('--new', action='store_true', help='Start a new task instead of continuing the latest one')
	parser.add_argument('--headless', action='store_true', help='Run Chromium without a window')
	parser.add_argument('--settings', default=None, help='Settings JSON file (default: PAGE_PILOT_SETTINGS_PATH)')
	parser.add_argument('--tasks-dir', default=None, help='Task storage directory (default: PAGE_PILOT_TASKS_DIR)')
	parser.add_argument('--show-prompts', action='store_true', help='Print the full prompt sent each step')
	args = parser.parse_args()
	try:
		asyncio.run(main(args))
	except KeyboardInterrupt:
		logger.info('Interrupted')


if __name__ == '__main__':
	cli()
