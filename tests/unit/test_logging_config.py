import io
import logging

import pytest

from page_pilot.logging_config import RESULT_LEVEL, SafeStreamHandler, register_result_level, setup_logging


class AsciiConsole:
    """Console stream that rejects anything outside ASCII, like a cp1252 or C-locale terminal."""

    encoding = 'ascii'

    def __init__(self):
        self.lines = []

    def write(self, text):
        text.encode(self.encoding)
        self.lines.append(text)

    def flush(self):
        pass


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    pilot = logging.getLogger('page_pilot')
    saved = (root.handlers[:], root.level, pilot.handlers[:], pilot.level, pilot.propagate)
    yield
    root.handlers, root.level = saved[0], saved[1]
    pilot.handlers, pilot.level, pilot.propagate = saved[2], saved[3], saved[4]


def test_result_level_registration_is_idempotent():
    register_result_level()

    assert register_result_level() is False
    assert logging.getLevelName(RESULT_LEVEL) == 'RESULT'
    assert callable(getattr(logging.getLogger('page_pilot.test'), 'result'))


def test_emoji_is_replaced_on_narrow_console():
    console = AsciiConsole()
    handler = SafeStreamHandler(console)
    record = logging.LogRecord('page_pilot.test', logging.INFO, __file__, 1, '✅ Task finished: 42', None, None)

    handler.emit(record)

    assert console.lines == ['? Task finished: 42\n']


def test_result_mode_shows_only_outcomes(restore_logging):
    stream = io.StringIO()
    pilot = setup_logging(stream=stream, log_level='result', force_setup=True)

    pilot.info('📍 Step 1')
    logging.getLogger('page_pilot.agent.service').log(RESULT_LEVEL, '✅ Task finished: 42')

    assert stream.getvalue() == '✅ Task finished: 42\n'
