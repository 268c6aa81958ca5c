from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Action Input Models
class SearchAction(BaseModel):
    query: str = Field(description='The search query')
    engine: Optional[Literal['google', 'duckduckgo', 'bing']] = Field(
        None, description='Search engine to use (default: google)'
    )


class NavigateAction(BaseModel):
    url: str = Field(description='The URL to navigate to')
    new_tab: bool = Field(False, description='Whether to open in a new tab (default: false)')


class NoParamsAction(BaseModel):
    """Accepts (and drops) whatever the model sends for parameterless actions."""

    model_config = ConfigDict(extra='ignore')


class WaitAction(BaseModel):
    seconds: float = Field(3, description='Number of seconds to wait (default: 3, max: 30)')

    @field_validator('seconds')
    @classmethod
    def clamp_seconds(cls, value: float) -> float:
        return max(0.0, min(float(value), 30.0))


class ClickElementAction(BaseModel):
    index: int = Field(description='The index number [id] of the element to click')


class InputTextAction(BaseModel):
    index: int = Field(description='The index number [id] of the input element')
    text: str = Field(description='The text to type')
    clear: bool = Field(True, description='Whether to clear existing text first (default: true)')


class ScrollAction(BaseModel):
    down: bool = Field(True, description='True to scroll down, false to scroll up (default: true)')
    pages: float = Field(1.0, description='Number of pages to scroll (0.5-10.0, default: 1.0)')
    index: Optional[int] = Field(None, description='Optional: index of scrollable element. If not provided, scrolls the page.')

    @field_validator('pages')
    @classmethod
    def clamp_pages(cls, value: float) -> float:
        return max(0.5, min(float(value), 10.0))


class SendKeysAction(BaseModel):
    keys: str = Field(description='Keys to send (e.g., "Enter", "Tab", "Control+a", "Shift+Tab")')


class GetDropdownOptionsAction(BaseModel):
    index: int = Field(description='The index number [id] of the dropdown element')


class SelectDropdownOptionAction(BaseModel):
    index: int = Field(description='The index number [id] of the dropdown element')
    text: str = Field(description='The text of the option to select')


class ExtractContentAction(BaseModel):
    query: str = Field(
        description='What structured information to extract from the page (e.g., "all product prices", "contact email", "list of articles with titles")'
    )


class FindTextAction(BaseModel):
    text: str = Field(description='The text to find and scroll to')


class SwitchTabAction(BaseModel):
    tab_id: int = Field(description='The tab ID shown in Tab[id] format in <open_tabs>')


class CloseTabAction(BaseModel):
    tab_id: int = Field(description='The tab ID shown in Tab[id] format in <open_tabs>')


class DoneAction(BaseModel):
    text: str = Field('Task completed', description='Summary of what was accomplished or why task cannot be completed')
    success: bool = Field(True, description='Whether the task was completed successfully (default: true)')

    @field_validator('success', mode='before')
    @classmethod
    def only_false_is_failure(cls, value):
        # Anything other than an explicit false counts as success.
        return value is not False and str(value).strip().lower() != 'false'


class ActionResult(BaseModel):
    """Outcome of exactly one executed action."""

    success: bool = True
    error: Optional[str] = None
    content: Optional[str] = None
    new_tab_id: Optional[int] = None

    @model_validator(mode='after')
    def error_means_failure(self):
        if self.error is not None:
            self.success = False
        return self

    @classmethod
    def failure(cls, error: str) -> 'ActionResult':
        return cls(success=False, error=error)

    @property
    def outcome_text(self) -> str:
        """Text placed into the tool result for the model."""
        if self.success:
            return self.content or 'Success'
        return self.error or 'Action failed'
