"""
Logging setup of the standup bot.

Module loggers write into a SimpleQueue through a QueueHandler. A single
QueueListener fans the records out to the registered handlers: stderr and
DiscordChannelLogger, which collects warnings for the configured Discord log
channels. The bot drains that collection in a tasks.loop, so no Discord call
ever happens inside the logging machinery.
"""
import asyncio
import json
import logging
import logging.handlers
import os
import queue
from functools import wraps
from queue import SimpleQueue
from typing import Callable, List, Optional, Tuple, Type, Union

# SimpleQueue is reentrant, a plain Queue can deadlock when a handler logs itself
_safe = SimpleQueue()

_handlers: List[logging.Handler] = []

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class DiscordChannelLogger(logging.Handler):
    """Queues formatted records together with the Discord channels they should go to."""

    def __init__(self, record_queue: queue.Queue, subject: str = "Standup Bot Error"):
        logging.Handler.__init__(self)
        self.subject = subject
        self._record_queue = record_queue
        self.discord_channels = []

    def set_channels(self, discord_channels: List) -> List:
        self.discord_channels = list(discord_channels)
        return self.discord_channels

    def emit(self, record: logging.LogRecord) -> None:
        if not self.discord_channels:
            return
        self._record_queue.put_nowait((self.subject, self.format(record), self.discord_channels))


discord_log_queue = queue.Queue()
discord_logger_handler = DiscordChannelLogger(record_queue=discord_log_queue)
discord_logger_handler.setLevel(logging.WARNING)

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

_handlers.append(discord_logger_handler)
_handlers.append(console_handler)


def set_log_channels(channels: List) -> bool:
    """Point DiscordChannelLogger at the given (already resolved) Discord channels."""
    discord_logger_handler.set_channels([c for c in channels if c is not None])
    return True


class Logwriter(logging.handlers.QueueHandler):
    """QueueHandler that survives being cancelled inside an event loop."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.enqueue(record)
        except asyncio.CancelledError:
            self.handleError(record)


def start_listener(handlers: List[logging.Handler] = None) -> logging.handlers.QueueListener:
    """Start the QueueListener. Call once per interpreter, after all handlers are registered."""
    listener = logging.handlers.QueueListener(_safe, *(handlers or _handlers), respect_handler_level=True)
    listener.start()
    return listener


def init_module_logger(name: str = "standupbot", level: int = None) -> logging.Logger:
    """Attach the queue writer to a logger. Child loggers (standupbot.*) propagate into it."""
    logger = logging.getLogger(name)
    if not any(isinstance(h, Logwriter) for h in logger.handlers):
        logger.addHandler(Logwriter(_safe))
    logger.setLevel(level if level is not None else os.getenv("STANDUP_LOG_LEVEL", "INFO"))
    return logger


IgnoreSpec = Optional[Union[Tuple[Type[Exception], ...], Callable[[Exception], bool]]]


def _ignored(error: Exception, ignore_exceptions: IgnoreSpec) -> bool:
    if ignore_exceptions is None:
        return False
    if isinstance(ignore_exceptions, tuple):
        return isinstance(error, ignore_exceptions)
    return bool(ignore_exceptions(error))


def _describe_call(name: str, args, kwargs) -> str:
    def dump(value):
        return json.dumps(value, indent=2, default=lambda o: "<not serializable>")

    return f"Error: exception in {name}\nkwargs: {dump(kwargs)}\nargs: {dump(args)}\n\n"


def exception(loggername: str, ignore_exceptions: IgnoreSpec = None) -> Callable:
    """
    Decorator that logs exceptions of sync and async functions and re-raises them.

    :param loggername: The name of the logger to use.
    :param ignore_exceptions: Exception types, or a predicate, for errors that
        are re-raised without being logged.
    """
    logger = logging.getLogger(loggername)

    def log_decorator(observed_function: Callable) -> Callable:
        if asyncio.iscoroutinefunction(observed_function):

            @wraps(observed_function)
            async def wrapper_async(*args, **kwargs):
                try:
                    return await observed_function(*args, **kwargs)
                except Exception as e:
                    if not _ignored(e, ignore_exceptions):
                        logger.exception(_describe_call(observed_function.__name__, args, kwargs))
                    raise

            return wrapper_async

        @wraps(observed_function)
        def wrapper_sync(*args, **kwargs):
            try:
                return observed_function(*args, **kwargs)
            except Exception as e:
                if not _ignored(e, ignore_exceptions):
                    logger.exception(_describe_call(observed_function.__name__, args, kwargs))
                raise

        return wrapper_sync

    return log_decorator
