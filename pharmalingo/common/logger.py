"""
Progress Engine Logging

All engine modules log under the ``pharmalingo`` logger. Its handlers are
built from the ``logging`` section of the engine configuration (level, JSON or
text output, optional file) each time the configuration is loaded; until then
it writes INFO text to stdout.

Records logged through ``for_user`` carry the learner id, which shows up as a
column in text output and as a field in JSON output.
"""

import os
import sys
import json
import time
import logging
import datetime
import functools
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar, Union

APP_LOGGER_NAME = "pharmalingo"

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-36s | %(user_id)-12s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NO_USER = "-"

F = TypeVar('F', bound=Callable[..., Any])

__all__ = [
    'JsonFormatter',
    'UserContextAdapter',
    'app_logger',
    'apply_logging_config',
    'configure_logger',
    'for_user',
    'log_execution_time'
]


class _UserIdDefault(logging.Filter):
    """Give records logged without learner context a placeholder user id"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "user_id"):
            record.user_id = NO_USER
        return True


class JsonFormatter(logging.Formatter):
    """Formatter that renders each record as one JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        user_id = getattr(record, "user_id", NO_USER)
        if user_id != NO_USER:
            entry["user_id"] = user_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logger(
    level: Union[str, int] = logging.INFO,
    use_json: bool = False,
    log_file: Optional[str] = None,
    stream=None
) -> logging.Logger:
    """
    Rebuild the handlers of the application logger.

    Args:
        level: Log level name or number
        use_json: Emit JSON lines instead of text
        log_file: Also append to this file when set
        stream: Console stream (defaults to stdout)

    Returns:
        The application logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(APP_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JsonFormatter() if use_json else logging.Formatter(TEXT_FORMAT, DATE_FORMAT)
    handlers = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        directory = os.path.dirname(log_file)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            logger.warning(f"Could not open log file {log_file}: {e}")

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_UserIdDefault())
        logger.addHandler(handler)
    return logger


def apply_logging_config(section) -> logging.Logger:
    """Configure the application logger from a ``LoggingConfig`` section"""
    return configure_logger(level=section.level, use_json=section.json_output, log_file=section.file_path)


class UserContextAdapter(logging.LoggerAdapter):
    """Adapter that stamps every record with the learner id"""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("user_id", self.extra.get("user_id") or NO_USER)
        kwargs["extra"] = extra
        return msg, kwargs


def for_user(logger: logging.Logger, user_id: Optional[str]) -> UserContextAdapter:
    """Wrap a logger so every record carries the learner id."""
    return UserContextAdapter(logger, {"user_id": user_id})


app_logger = logging.getLogger(APP_LOGGER_NAME)
if not app_logger.handlers:
    configure_logger()


def log_execution_time(logger: Optional[logging.Logger] = None) -> Callable[[F], F]:
    """
    Decorator that logs how long a coroutine took, at DEBUG on success and
    ERROR on failure.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            log = logger or app_logger
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                log.error(f"{func.__qualname__} failed after {time.perf_counter() - start_time:.3f}s: {e}")
                raise
            log.debug(f"{func.__qualname__} took {time.perf_counter() - start_time:.3f}s")
            return result
        return wrapper
    return decorator
