"""
Logging configuration for the telemetry service.

structlog renders every record; the stdlib root logger owns the handlers so
third-party libraries (uvicorn, aiohttp) end up in the same rotating file.
Values bound with structlog.contextvars (the API binds request_id) are merged
into every record logged while handling that request.
"""
import os
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

import structlog
from pythonjsonlogger import jsonlogger


DEFAULT_LOG_DIR = "./logs"
DEFAULT_LOG_FILE = "telemetry.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 7

# uvicorn's access log duplicates the request middleware's own record
QUIET_LOGGERS = ("uvicorn.access",)


def _processors():
    return [
        structlog.contextvars.merge_contextvars,
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


def _file_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        # the event dict becomes record.msg, which JsonFormatter merges into the output
        return jsonlogger.JsonFormatter(fmt="%(asctime)s %(name)s %(levelname)s")
    return structlog.stdlib.ProcessorFormatter(processor=structlog.dev.ConsoleRenderer(colors=False))


def setup_file_logging(log_dir: Optional[str] = None, log_file: Optional[str] = None,
                       log_level: str = "INFO", log_format: Optional[str] = None,
                       console: bool = True) -> str:
    """
    Route structlog and stdlib logging to a rotating file, optionally mirrored to stderr

    Args:
        log_dir: Directory for log files (default: LOG_DIR or ./logs)
        log_file: Log file name (default: LOG_FILE or telemetry.log)
        log_level: Logging level, overridden by LOG_LEVEL
        log_format: "console" for key=value lines, "json" for one JSON object per line
            (default: LOG_FORMAT or console)
        console: Also log to stderr

    Returns:
        Path of the log file
    """
    log_dir = log_dir or os.getenv("LOG_DIR", DEFAULT_LOG_DIR)
    log_file = log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
    log_format = (log_format or os.getenv("LOG_FORMAT", "console")).lower()
    log_level = os.getenv("LOG_LEVEL", log_level).upper()
    numeric_level = logging.getLevelName(log_level)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    log_file_path = Path(log_dir) / log_file
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    structlog.configure(
        processors=_processors(),
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file_path),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8"
    )
    file_handler.setFormatter(_file_formatter(log_format))

    handlers = [file_handler]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(_file_formatter("console"))
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.get_logger(__name__).info("Logging configured",
                                        log_file_path=str(log_file_path),
                                        log_level=log_level,
                                        log_format=log_format,
                                        console=console)
    return str(log_file_path)
