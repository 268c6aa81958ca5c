import locale
import logging
import sys
import time
from datetime import datetime, timezone

from dotenv import load_dotenv

load_dotenv()

from page_pilot.config import CONFIG

_PROCESS_START_MONOTONIC = time.monotonic()


def _now_utc_iso() -> str:
	return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _uptime_seconds() -> float:
	return time.monotonic() - _PROCESS_START_MONOTONIC


RESULT_LEVEL = 35
RESULT_LEVEL_NAME = 'RESULT'


def register_result_level() -> bool:
	"""Install the RESULT level and a ``Logger.result`` shortcut.

	Agent outcomes (final answers, step summaries) log at RESULT so that ``--log-level result``
	shows them without the INFO chatter. Returns False when the level was already installed.
	"""
	logger_class = logging.getLoggerClass()
	if getattr(logging, RESULT_LEVEL_NAME, None) == RESULT_LEVEL and hasattr(logger_class, 'result'):
		return False

	def result(self, message, *args, **kwargs):
		if self.isEnabledFor(RESULT_LEVEL):
			self._log(RESULT_LEVEL, message, args, **kwargs)

	logging.addLevelName(RESULT_LEVEL, RESULT_LEVEL_NAME)
	setattr(logging, RESULT_LEVEL_NAME, RESULT_LEVEL)
	setattr(logger_class, 'result', result)
	return True


def _encodable(text: str, stream) -> str:
	encoding = getattr(stream, 'encoding', None) or locale.getpreferredencoding(False) or 'utf-8'
	return text.encode(encoding, errors='replace').decode(encoding, errors='replace')


class SafeStreamHandler(logging.StreamHandler):
	"""Console handler that degrades emoji to ``?`` instead of dropping the record on narrow encodings."""

	def emit(self, record):  # type: ignore[override]
		try:
			line = self.format(record) + self.terminator
			try:
				self.stream.write(line)
			except UnicodeEncodeError:
				self.stream.write(_encodable(line, self.stream))
			self.flush()
		except Exception:
			self.handleError(record)

class PagePilotFormatter(logging.Formatter):
	def format(self, record):
		record.utc = _now_utc_iso()
		record.uptime = f'{_uptime_seconds():.3f}s'
		return super().format(record)


def setup_logging(stream=None, log_level=None, force_setup=False):
	"""Configure logging for page_pilot.

	Args:
		stream: Output stream for logs (default: sys.stdout).
		log_level: Override log level (default: CONFIG.PAGE_PILOT_LOGGING_LEVEL).
		force_setup: Reconfigure even if the root logger already has handlers.
	"""
	register_result_level()

	log_type = log_level or CONFIG.PAGE_PILOT_LOGGING_LEVEL

	if logging.getLogger().hasHandlers() and not force_setup:
		return logging.getLogger('page_pilot')

	root = logging.getLogger()
	root.handlers = []

	console = SafeStreamHandler(stream or sys.stdout)

	if log_type == 'result':
		console.setLevel(RESULT_LEVEL)
		console.setFormatter(PagePilotFormatter('%(message)s'))
	else:
		console.setFormatter(PagePilotFormatter('%(levelname)-8s [%(name)s] %(utc)s (+%(uptime)s) %(message)s'))

	root.addHandler(console)

	if log_type == 'result':
		root.setLevel(RESULT_LEVEL)
	elif log_type == 'debug':
		root.setLevel(logging.DEBUG)
	else:
		root.setLevel(logging.INFO)

	pilot_logger = logging.getLogger('page_pilot')
	pilot_logger.propagate = False
	pilot_logger.handlers = [console]
	pilot_logger.setLevel(root.level)

	third_party_loggers = [
		'httpx',
		'httpcore',
		'playwright',
		'urllib3',
		'asyncio',
		'openai',
		'anthropic',
		'anthropic._base_client',
		'botocore',
		'boto3',
		'charset_normalizer',
	]
	for logger_name in third_party_loggers:
		third_party = logging.getLogger(logger_name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	return pilot_logger
