from pathlib import Path

import page_pilot
from page_pilot import exceptions
from page_pilot.exceptions import BrowserError, ElementNotFoundError, LLMException, PagePilotError

PACKAGE_ROOT = Path(page_pilot.__file__).parent


def test_every_error_type_is_used_by_the_package():
    sources = '\n'.join(
        path.read_text(encoding='utf-8') for path in PACKAGE_ROOT.rglob('*.py') if path.name != 'exceptions.py'
    )
    error_types = [
        name
        for name, value in vars(exceptions).items()
        if isinstance(value, type) and issubclass(value, PagePilotError) and value is not PagePilotError
    ]

    unused = [name for name in error_types if name not in sources]

    assert error_types
    assert unused == []


def test_missing_element_is_a_browser_error():
    error = ElementNotFoundError(7)

    assert isinstance(error, BrowserError)
    assert error.index == 7
    assert str(error) == 'Element with index 7 not found'


def test_llm_exception_message_carries_status():
    assert str(LLMException(429, 'slow down')) == 'Error 429: slow down'
    assert str(LLMException(None, 'no network')) == 'no network'
