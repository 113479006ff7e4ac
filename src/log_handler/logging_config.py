# src/log_handler/logging_config.py
import logging
import queue
import os
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Optional, Union

# Global variable to ensure we only configure logging once
_logging_configured = False
_log_listener = None

LOG_LEVEL_ENV = "AUTOSCALER_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def setup_logging(
    log_level: Union[int, str, None] = None,
    log_file: Optional[str] = None,
    module_levels: Optional[dict] = None
) -> QueueListener:
    """
    Central logging configuration for the autoscaler process.

    Args:
        log_level: Base logging level; falls back to $AUTOSCALER_LOG_LEVEL, then INFO
        log_file: Optional file path to write logs to
        module_levels: Dictionary mapping module names to specific log levels
                      e.g. {"src.adapters": logging.DEBUG}

    Returns:
        QueueListener instance that should be stopped on shutdown
    """
    global _logging_configured, _log_listener

    if _logging_configured and _log_listener is not None:
        return _log_listener

    if log_file and os.path.dirname(log_file):
        os.makedirs(os.path.dirname(log_file), exist_ok=True)

    # Adapter calls and DB queries must not block on slow log sinks
    log_queue = queue.Queue()
    formatter = logging.Formatter(LOG_FORMAT)

    handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5  # 10MB
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    queue_handler = QueueHandler(log_queue)
    listener = QueueListener(
        log_queue, *handlers, respect_handler_level=True
    )

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(queue_handler)
    root_logger.setLevel(_resolve_level(log_level))

    if module_levels:
        for module_name, level in module_levels.items():
            logging.getLogger(module_name).setLevel(_resolve_level(level))

    listener.start()

    _logging_configured = True
    _log_listener = listener

    return listener


class WorkerGroupLogger(logging.LoggerAdapter):
    """Prefixes records with the autoscaler tag and, for named groups, the group name."""

    def __init__(self, logger: logging.Logger, worker_group: Optional[str] = None):
        super().__init__(logger, {"worker_group": worker_group})
        self.worker_group = worker_group

    def process(self, msg, kwargs):
        if self.worker_group and self.worker_group != "default":
            return f"[Autoscaler] [{self.worker_group}] {msg}", kwargs
        return f"[Autoscaler] {msg}", kwargs


def get_logger(
    name: str, worker_group: Optional[str] = None
) -> Union[logging.Logger, WorkerGroupLogger]:
    """
    Get a logger for the given module.

    Args:
        name: The module name, typically __name__
        worker_group: When given, messages are tagged with the worker group

    Returns:
        A plain logger, or a WorkerGroupLogger when a worker group is given
    """
    logger = logging.getLogger(name)
    if worker_group is None:
        return logger
    return WorkerGroupLogger(logger, worker_group)


def shutdown_logging():
    """
    Stop the queue listener and flush pending records.
    Should be called during process shutdown.
    """
    global _log_listener, _logging_configured

    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
        _logging_configured = False
