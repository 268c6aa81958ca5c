import asyncio
import logging
import re
import time
from functools import partial
from typing import TYPE_CHECKING, Optional
from urllib.parse import quote_plus

import markdownify
from pydantic import BaseModel, Field, ValidationError

from page_pilot.browser.host import BrowserFocus, BrowserHost
from page_pilot.browser.page_agent import PageAgent
from page_pilot.config import CONFIG
from page_pilot.controller.registry import RegisteredAction, Registry
from page_pilot.controller.views import (
    ActionResult,
    ClickElementAction,
    CloseTabAction,
    DoneAction,
    ExtractContentAction,
    FindTextAction,
    GetDropdownOptionsAction,
    InputTextAction,
    NavigateAction,
    NoParamsAction,
    ScrollAction,
    SearchAction,
    SelectDropdownOptionAction,
    SendKeysAction,
    SwitchTabAction,
    WaitAction,
)
from page_pilot.exceptions import BrowserError, ElementNotFoundError
from page_pilot.llm.views import ChatMessage, ModelConfig, ToolCall
from page_pilot.utils import RetryPolicy, poll_until, time_execution_async

if TYPE_CHECKING:
    from page_pilot.llm.service import ProviderClient

logger = logging.getLogger(__name__)

SEARCH_URLS = {
    'google': 'https://www.google.com/search?q={query}',
    'duckduckgo': 'https://duckduckgo.com/?q={query}',
    'bing': 'https://www.bing.com/search?q={query}',
}

# Failures meaning "the page went away under us"; anything else is terminal for the action.
TRANSIENT_ERROR_SIGNATURES = (
    'message channel closed',
    'back/forward cache',
    'receiving end does not exist',
    'could not establish connection',
    'execution context was destroyed',
    'frame was detached',
    'cannot find context with specified id',
    'target page, context or browser has been closed',
)

EXTRACTION_SYSTEM_PROMPT = """You extract information from the text of a single web page.
Use ONLY the page text provided by the user. Do not rely on prior knowledge and do not guess.
Answer the query concisely and keep structure (lists, tables) where it helps.
If the page does not contain the requested information, say so explicitly and briefly describe what the page does contain."""


def is_transient_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(signature in message for signature in TRANSIENT_ERROR_SIGNATURES)


def truncate_at_paragraph(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars``, preferring the last paragraph break before the limit."""
    if len(text) <= max_chars:
        return text
    head = text[:max_chars]
    cut = head.rfind('\n\n')
    if cut > 0:
        head = head[:cut]
    return head.rstrip() + '\n\n[... content truncated ...]'


class ControllerSettings(BaseModel):
    max_dispatch_attempts: int = Field(3, description='Tries for a page-level action hitting transient failures.')
    readiness_attempts: int = Field(3, description='Readiness polls between transient retries.')
    readiness_delay: float = Field(1.0, description='Seconds between readiness polls.')
    action_timeout: float = Field(10.0, description='Hard timeout per page-level dispatch, in seconds.')
    new_tab_window: float = Field(0.5, description='A tab opened this soon after a click takes focus.')
    max_extraction_chars: int = Field(30000, description='Page text sent to the extraction model call.')
    default_search_engine: str = Field(default_factory=lambda: CONFIG.PAGE_PILOT_DEFAULT_SEARCH_ENGINE)

    @property
    def readiness_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.readiness_attempts, delay=self.readiness_delay)


class Controller:
    """Action Executor: runs one tool call against the focused tab and reports exactly one result."""

    def __init__(
        self,
        host: BrowserHost,
        provider: Optional['ProviderClient'] = None,
        settings: ControllerSettings | None = None,
        exclude_actions: list[str] | None = None,
    ):
        self.host = host
        self.provider = provider
        self.settings = settings or ControllerSettings()
        self.registry = Registry(exclude_actions)

        # Navigation Actions

        @self.registry.action(
            'Search the web using a search engine. Use when you need to find information online.',
            param_model=SearchAction,
        )
        async def search(params: SearchAction, focus: BrowserFocus, host: BrowserHost):
            engine = (params.engine or self.settings.default_search_engine).lower()
            template = SEARCH_URLS.get(engine)
            if template is None:
                logger.warning(f'Unknown search engine {engine!r}, using google')
                engine, template = 'google', SEARCH_URLS['google']
            await host.navigate(focus.tab_id, template.format(query=quote_plus(params.query)))
            msg = f'🔍  Searched {engine} for "{params.query}"'
            logger.info(msg)
            return ActionResult(content=f'Searched {engine} for "{params.query}"')

        @self.registry.action(
            'Navigate to a URL. Use when you need to go to a specific webpage.',
            param_model=NavigateAction,
        )
        async def navigate(params: NavigateAction, focus: BrowserFocus, host: BrowserHost):
            url = params.url.strip()
            if not re.match(r'^[a-zA-Z][a-zA-Z0-9+.-]*:', url):
                url = f'https://{url}'
            if params.new_tab:
                tab_id = await host.new_tab(url)
                await host.add_to_agent_group(tab_id)
                focus.tab_id = tab_id
                logger.info(f'🔗  Opened {url} in new tab {tab_id}')
                return ActionResult(content=f'Opened {url} in new tab {tab_id}', new_tab_id=tab_id)
            await host.navigate(focus.tab_id, url)
            logger.info(f'🔗  Navigated to {url}')
            return ActionResult(content=f'Navigated to {url}')

        @self.registry.action('Go back to the previous page in browser history.', param_model=NoParamsAction)
        async def go_back(params: NoParamsAction, focus: BrowserFocus, host: BrowserHost):
            if not await host.go_back(focus.tab_id):
                return ActionResult.failure('No previous page in history')
            logger.info('🔙  Navigated back')
            return ActionResult(content='Navigated back')

        @self.registry.action(
            'Wait for a specified number of seconds (max 30). Use when page needs time to load.',
            param_model=WaitAction,
        )
        async def wait(params: WaitAction):
            logger.info(f'🕒  Waiting for {params.seconds:g} seconds')
            await asyncio.sleep(params.seconds)
            return ActionResult(content=f'Waited {params.seconds:g} seconds')

        # Tab Management Actions

        @self.registry.action(
            'Switch agent focus to a different browser tab. Use when you need to work with a tab shown in <open_tabs>.',
            param_model=SwitchTabAction,
            section='Tab Management',
        )
        async def switch_tab(params: SwitchTabAction, focus: BrowserFocus, host: BrowserHost):
            if not host.has_tab(params.tab_id):
                return ActionResult.failure(f'Tab {params.tab_id} not found')
            focus.tab_id = params.tab_id
            await host.activate(params.tab_id)
            info = await host.tab_info(params.tab_id)
            msg = f'Switched to tab {params.tab_id}: {info.title or info.url or "unknown"}'
            logger.info(f'🔄  {msg}')
            return ActionResult(content=msg)

        @self.registry.action(
            'Close a browser tab. Use to close tabs you no longer need.',
            param_model=CloseTabAction,
            section='Tab Management',
        )
        async def close_tab(params: CloseTabAction, focus: BrowserFocus, host: BrowserHost):
            if not host.has_tab(params.tab_id):
                return ActionResult.failure(f'Tab {params.tab_id} not found')
            info = await host.tab_info(params.tab_id)
            await host.close_tab(params.tab_id)
            if focus.tab_id == params.tab_id:
                focus.tab_id = host.fallback_tab_id()
            msg = f'Closed tab {params.tab_id}: {info.title or info.url or "unknown"}'
            logger.info(f'❌  {msg}')
            return ActionResult(content=msg)

        # Element Interaction Actions

        @self.registry.action(
            'Click on an element by its index number [id] shown in the DOM.',
            param_model=ClickElementAction,
            scope='page',
            section='Element Interaction',
        )
        async def click(params: ClickElementAction, page_agent: PageAgent, focus: BrowserFocus, host: BrowserHost):
            element = await page_agent.resolve(params.index)
            started = time.monotonic()
            await element.click(timeout=5_000)
            msg = f'Clicked element {params.index}'
            new_tab_id = await host.claim_new_tab(started, self.settings.new_tab_window)
            if new_tab_id is not None:
                focus.tab_id = new_tab_id
                await host.activate(new_tab_id)
                await host.add_to_agent_group(new_tab_id)
                msg += f', which opened tab {new_tab_id} (focus moved there)'
            logger.info(f'🖱️  {msg}')
            return ActionResult(content=msg, new_tab_id=new_tab_id)

        @self.registry.action(
            'Type text into an input element. By default clears existing text first.',
            param_model=InputTextAction,
            scope='page',
            section='Element Interaction',
        )
        async def input_text(params: InputTextAction, page_agent: PageAgent):
            element = await page_agent.resolve(params.index)
            if params.clear:
                await element.fill(params.text, timeout=5_000)
            else:
                await element.focus()
                await page_agent.page.keyboard.insert_text(params.text)
            msg = f'Typed "{params.text}" into element {params.index}'
            logger.info(f'⌨️  {msg}')
            return ActionResult(content=msg)

        @self.registry.action(
            'Scroll the page or a specific element. Use down=true to scroll down, down=false to scroll up. '
            'Use pages to control scroll amount (default: 1.0).',
            param_model=ScrollAction,
            scope='page',
            section='Element Interaction',
        )
        async def scroll(params: ScrollAction, page_agent: PageAgent):
            args = {'pages': params.pages, 'down': params.down}
            if params.index is None:
                await page_agent.page.evaluate(
                    '(a) => window.scrollBy(0, a.pages * window.innerHeight * (a.down ? 1 : -1))', args
                )
                target = 'the page'
            else:
                element = await page_agent.resolve(params.index)
                await element.evaluate(
                    '(el, a) => el.scrollBy(0, a.pages * (el.clientHeight || window.innerHeight) * (a.down ? 1 : -1))',
                    args,
                )
                target = f'element {params.index}'
            msg = f'Scrolled {"down" if params.down else "up"} {params.pages:g} pages in {target}'
            logger.info(f'🔍  {msg}')
            return ActionResult(content=msg)

        @self.registry.action(
            'Send keyboard keys. Use for shortcuts like "Enter", "Tab", "Escape", or combinations like "Control+a", "Control+c".',
            param_model=SendKeysAction,
            scope='page',
            section='Element Interaction',
        )
        async def send_keys(params: SendKeysAction, page_agent: PageAgent):
            await page_agent.page.keyboard.press(params.keys)
            logger.info(f'⌨️  Sent keys: {params.keys}')
            return ActionResult(content=f'Sent keys: {params.keys}')

        # Dropdown Actions

        @self.registry.action(
            'Get all options from a dropdown/select element. Use before selecting an option.',
            param_model=GetDropdownOptionsAction,
            scope='page',
            section='Dropdowns',
        )
        async def get_dropdown_options(params: GetDropdownOptionsAction, page_agent: PageAgent):
            options = await self._read_options(page_agent, params.index)
            if options is None:
                return ActionResult.failure(f'Element {params.index} is not a dropdown')
            lines = [f'{option["index"]}: text={option["text"]}' for option in options]
            msg = '\n'.join(lines) + '\nUse the exact text string in select_dropdown_option'
            logger.info(f'📋  {len(options)} options in dropdown {params.index}')
            return ActionResult(content=msg)

        @self.registry.action(
            'Select an option from a dropdown by the option text.',
            param_model=SelectDropdownOptionAction,
            scope='page',
            section='Dropdowns',
        )
        async def select_dropdown_option(params: SelectDropdownOptionAction, page_agent: PageAgent):
            options = await self._read_options(page_agent, params.index)
            if options is None:
                return ActionResult.failure(f'Element {params.index} is not a dropdown')
            wanted = params.text.strip()
            match = next((o for o in options if o['text'] == wanted), None)
            if match is None:
                match = next((o for o in options if o['text'].lower() == wanted.lower()), None)
            if match is None:
                available = ', '.join(f'"{o["text"]}"' for o in options[:10])
                return ActionResult.failure(f'Option "{params.text}" not found in dropdown {params.index}. Available: {available}')
            element = await page_agent.resolve(params.index)
            await element.select_option(index=match['index'], timeout=5_000)
            msg = f'Selected "{match["text"]}" in dropdown {params.index}'
            logger.info(f'✅  {msg}')
            return ActionResult(content=msg)

        # Content Actions

        @self.registry.action(
            'LLM extracts structured data from the current page markdown. Use when: (1) you are on the right page, '
            '(2) you know what to extract, (3) you haven\'t called this before on the same page+query, (4) the information '
            'is not visible in browser_state, or (5) you need structured extraction from the entire page including parts '
            'not currently visible. The extracted content is automatically saved and will appear in <extracted_data> '
            'section in all future prompts. IMPORTANT: Only call if the information is not already visible in '
            'browser_state - otherwise just read from browser_state directly. This tool is expensive - do not query the '
            'same page with the same query multiple times.',
            param_model=ExtractContentAction,
            section='Content',
        )
        async def extract_content(
            params: ExtractContentAction,
            focus: BrowserFocus,
            host: BrowserHost,
            model: Optional[ModelConfig] = None,
        ):
            if self.provider is None or model is None:
                return ActionResult.failure('Content extraction requires a configured model')
            page = host.get_page(focus.tab_id)
            try:
                html = await asyncio.wait_for(page.content(), timeout=self.settings.action_timeout)
            except asyncio.TimeoutError:
                return ActionResult.failure(f'Page content extraction timed out after {self.settings.action_timeout:g}s')

            loop = asyncio.get_running_loop()
            markdown = await loop.run_in_executor(None, partial(markdownify.markdownify, strip=['img', 'script', 'style']), html)
            markdown = re.sub(r'\n\s*\n+', '\n\n', markdown).strip()
            markdown = truncate_at_paragraph(markdown, self.settings.max_extraction_chars)

            turn = await self.provider.call(
                model,
                EXTRACTION_SYSTEM_PROMPT,
                [ChatMessage(role='user', content=f'Query: {params.query}\n\nPage text:\n{markdown}')],
                tools=[],
            )
            if turn.stop_reason == 'error':
                return ActionResult.failure(f'Extraction failed: {turn.error}')

            content = f'Page Link: {page.url}\nQuery: {params.query}\nExtracted Content:\n{turn.text_content or ""}'
            logger.info(f'📄  Extracted "{params.query}" from {page.url}')
            return ActionResult(content=content)

        @self.registry.action(
            'Scroll to a specific text on the page. Use when you need to find and navigate to text.',
            param_model=FindTextAction,
            scope='page',
            section='Content',
        )
        async def find_text(params: FindTextAction, page_agent: PageAgent):
            locator = page_agent.page.get_by_text(params.text, exact=False)
            count = await locator.count()
            for i in range(count):
                candidate = locator.nth(i)
                if await candidate.is_visible():
                    await candidate.scroll_into_view_if_needed(timeout=2_000)
                    msg = f'Scrolled to text: {params.text}'
                    logger.info(f'🔍  {msg}')
                    return ActionResult(content=msg)
            return ActionResult.failure(f"Text '{params.text}' not found or not visible on page")

        # Completion

        @self.registry.action(
            'Signal that the task is complete. Use when you have finished the requested task or cannot proceed further.',
            param_model=DoneAction,
            scope='terminal',
            section='Completion',
        )
        async def done(params: DoneAction):
            return ActionResult(content=params.text, error=None if params.success else params.text)

    # Register ---------------------------------------------------------------

    def action(self, description: str, **kwargs):
        """Decorator for registering custom actions."""
        return self.registry.action(description, **kwargs)

    # Act --------------------------------------------------------------------

    def parse_params(self, call: ToolCall) -> tuple[RegisteredAction, BaseModel]:
        """Validate a tool call. Raises ValueError for unknown tools or bad input."""
        action = self.registry.get(call.name)
        if action is None:
            raise ValueError(f'Unknown action: {call.name}')
        try:
            params = action.param_model.model_validate(call.input)
        except ValidationError as e:
            problems = '; '.join(f'{".".join(str(p) for p in err["loc"]) or "input"}: {err["msg"]}' for err in e.errors())
            raise ValueError(f'Invalid input for {call.name}: {problems}') from e
        return action, params

    @time_execution_async('--execute')
    async def execute(self, focus: BrowserFocus, call: ToolCall, model: Optional[ModelConfig] = None) -> ActionResult:
        """Execute one tool call. Never raises; every failure becomes ``ActionResult(success=False)``."""
        try:
            action, params = self.parse_params(call)
        except ValueError as e:
            return ActionResult.failure(str(e))

        try:
            if action.scope == 'page':
                return await self._dispatch_to_page(action, params, focus)
            result = await self.registry.execute_action(action.name, params, focus=focus, host=self.host, model=model)
        except BrowserError as e:
            logger.info(f'Action {action.name} failed: {e}')
            return ActionResult.failure(str(e))
        except Exception as e:
            logger.error(f'Action {action.name} raised {type(e).__name__}: {e}', exc_info=True)
            return ActionResult.failure(f'{type(e).__name__}: {e}')
        return self._coerce_result(result)

    async def _dispatch_to_page(self, action: RegisteredAction, params: BaseModel, focus: BrowserFocus) -> ActionResult:
        """Run a page-level action with a hard timeout, retrying transient failures up to the ceiling."""
        last_error: Exception | None = None
        for attempt in range(1, self.settings.max_dispatch_attempts + 1):
            page_agent = self.host.page_agent(focus.tab_id)
            try:
                result = await asyncio.wait_for(
                    self.registry.execute_action(
                        action.name, params, page_agent=page_agent, focus=focus, host=self.host
                    ),
                    timeout=self.settings.action_timeout,
                )
                return self._coerce_result(result)
            except asyncio.TimeoutError:
                return ActionResult.failure(f'Action timed out after {self.settings.action_timeout:g}s')
            except ElementNotFoundError as e:
                return ActionResult.failure(str(e))
            except Exception as e:
                if not is_transient_error(e):
                    raise
                last_error = e
                logger.debug(
                    f'Transient failure in {action.name} (attempt {attempt}/{self.settings.max_dispatch_attempts}): {e}'
                )
                if attempt < self.settings.max_dispatch_attempts:
                    ready = await poll_until(page_agent.ping, self.settings.readiness_policy)
                    if not ready:
                        logger.debug(f'Page in tab {focus.tab_id} did not report ready')

        logger.warning(f'⚠️  {action.name} gave up after {self.settings.max_dispatch_attempts} attempts: {last_error}')
        return ActionResult.failure(f'Page agent unavailable: {last_error}')

    @staticmethod
    def _coerce_result(result) -> ActionResult:
        if isinstance(result, ActionResult):
            return result
        if isinstance(result, str):
            return ActionResult(content=result)
        if result is None:
            return ActionResult(content='Success')
        raise ValueError(f'Invalid action result type: {type(result)} of {result}')

    @staticmethod
    async def _read_options(page_agent: PageAgent, index: int) -> list[dict] | None:
        element = await page_agent.resolve(index)
        return await element.evaluate(
            """(el) => el.tagName.toLowerCase() === 'select'
                ? Array.from(el.options).map((o, i) => ({index: i, text: o.text.trim(), value: o.value}))
                : null"""
        )
