class PagePilotError(Exception):
    """Base class for errors raised inside page_pilot."""


class LLMException(PagePilotError):
    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f'Error {status_code}: {message}')


class BrowserError(PagePilotError):
    """A host-level browser operation (tabs, navigation) failed."""


class ConversationRestoreError(PagePilotError):
    """A saved conversation snapshot could not be restored."""


class ElementNotFoundError(BrowserError):
    """A grounding index has no live element in the latest extraction pass."""

    def __init__(self, index: int):
        self.index = index
        super().__init__(f'Element with index {index} not found')
