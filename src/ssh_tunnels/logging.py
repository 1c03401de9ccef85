"""structlog loggers scoped to the ``ssh_tunnels`` namespace.

Importing the package only installs a ``NullHandler`` on the namespace
logger. The root logger and the global structlog configuration belong to
the host application and are never touched; ``setup_logging()`` attaches
handlers to the namespace logger alone.
"""

import logging
import sys

import structlog
from structlog.typing import Processor

LOGGER_NAMESPACE = "ssh_tunnels"

# Handlers installed by setup_logging(), replaced on the next call
_HANDLER_MARK = "_ssh_tunnels_handler"

_EVENT_PROCESSORS: list[Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
    structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
]


def _formatter(renderer: Processor) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _namespace_logger() -> logging.Logger:
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    if not namespace.handlers:
        namespace.addHandler(logging.NullHandler())
    return namespace


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
) -> logging.Logger:
    """Send tunnel diagnostics to stderr and optionally to a file.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, render console output as JSON
        log_file: Optional file path; file output is always JSON lines

    Returns:
        The configured ``ssh_tunnels`` logger
    """
    log_level = getattr(logging, level.upper())
    namespace = _namespace_logger()
    namespace.setLevel(log_level)

    for handler in list(namespace.handlers):
        if getattr(handler, _HANDLER_MARK, False) or isinstance(
            handler, logging.NullHandler
        ):
            namespace.removeHandler(handler)
            handler.close()

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    # stdout stays usable by callers
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(_formatter(renderer))
    setattr(console_handler, _HANDLER_MARK, True)
    namespace.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        setattr(file_handler, _HANDLER_MARK, True)
        namespace.addHandler(file_handler)

    # Our handlers render the events; the host's root handlers would repeat them
    namespace.propagate = False
    return namespace


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to a stdlib logger under ``ssh_tunnels``.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger with its own processor chain, independent of structlog.configure()
    """
    _namespace_logger()
    return structlog.wrap_logger(  # type: ignore[no-any-return]
        logging.getLogger(name),
        processors=_EVENT_PROCESSORS,
        wrapper_class=structlog.stdlib.BoundLogger,
    )
