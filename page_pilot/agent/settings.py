from __future__ import annotations

from pydantic import BaseModel, Field

from page_pilot.agent.message_manager.views import MessageManagerSettings
from page_pilot.controller.service import ControllerSettings
from page_pilot.utils import RetryPolicy

# Actions after which the page is expected to load a new document
NAVIGATION_ACTIONS = frozenset({'navigate', 'search', 'go_back'})


class AgentSettings(BaseModel):
    max_iterations: int = Field(10, ge=1, description='Step budget when the stored settings do not set one.')
    navigation_settle_delay: float = Field(3.0, description='Seconds to wait after a successful navigation-class action.')
    action_settle_delay: float = Field(0.5, description='Seconds to wait after any other successful action.')
    step_refresh_attempts: int = Field(3, description='Grounding passes at step start while the page is empty.')
    step_refresh_delay: float = 0.5
    navigation_refresh_attempts: int = Field(3, description='Grounding passes after navigation while the page is empty.')
    navigation_refresh_delay: float = 1.0
    extraction_repeat_window: int = Field(5, description='Recent extraction queries checked for repeats.')
    extraction_repeat_threshold: int = Field(2, description='Earlier identical queries that trigger a nudge.')
    override_system_message: str | None = None
    extend_system_message: str | None = None
    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    message_manager: MessageManagerSettings = Field(default_factory=MessageManagerSettings)

    @property
    def step_refresh_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.step_refresh_attempts, delay=self.step_refresh_delay)

    @property
    def navigation_refresh_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.navigation_refresh_attempts, delay=self.navigation_refresh_delay)

    def settle_delay(self, action_name: str) -> float:
        if action_name in NAVIGATION_ACTIONS:
            return self.navigation_settle_delay
        return self.action_settle_delay
