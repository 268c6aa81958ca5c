from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

from page_pilot.agent.views import (
    DoneEvent,
    ErrorEvent,
    OperatorEvent,
    PromptDebugEvent,
    UIMessage,
    UIMessageEvent,
)


@runtime_checkable
class OperatorChannel(Protocol):
    """Where the agent reports progress. The loop stops once ``connected`` turns False."""

    @property
    def connected(self) -> bool: ...

    async def ui_message(self, message: UIMessage) -> None: ...

    async def prompt_debug(self, event: PromptDebugEvent) -> None: ...

    async def error(self, error: str) -> None: ...

    async def done(self, success: bool | None = None) -> None: ...


class QueueChannel:
    """OperatorChannel that puts every event on an asyncio.Queue."""

    def __init__(self, queue: asyncio.Queue[OperatorEvent] | None = None):
        self.queue: asyncio.Queue[OperatorEvent] = queue or asyncio.Queue()
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        self._connected = False

    async def ui_message(self, message: UIMessage) -> None:
        await self.queue.put(UIMessageEvent(message=message))

    async def prompt_debug(self, event: PromptDebugEvent) -> None:
        await self.queue.put(event)

    async def error(self, error: str) -> None:
        await self.queue.put(ErrorEvent(error=error))

    async def done(self, success: bool | None = None) -> None:
        await self.queue.put(DoneEvent(success=success))

    def drain(self) -> list[OperatorEvent]:
        """Everything queued so far, without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events
