from __future__ import annotations

import logging
import re
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from sourcevault.config.models import LoggingSettings

PACKAGE_LOGGER = "sourcevault"
REDACTED = "***"

# Matches the "name=value" fields used in log messages across the package.
_SECRET_FIELD = re.compile(r"\b(passphrase|password|secret|key)=(\S+)", re.IGNORECASE)


class SecretRedactingFilter(logging.Filter):
    """Masks secret material before a record reaches any handler.

    Byte arguments (derived keys, salts, file content) are never rendered, and the
    value of any ``passphrase=``/``password=``/``secret=``/``key=`` field in the
    formatted message is replaced.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_arg(v) for k, v in record.args.items()}
            else:
                record.args = tuple(self._mask_arg(a) for a in record.args)
        message = record.getMessage()
        redacted = _SECRET_FIELD.sub(lambda m: f"{m.group(1)}={REDACTED}", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True

    @staticmethod
    def _mask_arg(value: object) -> object:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"<{len(value)} bytes redacted>"
        return value


def init_logging(settings: LoggingSettings) -> logging.Logger:
    """
    Initialize logging for the ``sourcevault`` package logger.

    Installs a stream handler and, when ``settings.file.path`` is set, a daily
    rotating file handler. Both carry a ``SecretRedactingFilter``. The root logger
    is left untouched; package records do not propagate to it.
    """

    level = logging.getLevelNamesMapping().get(settings.level.upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {settings.level}")

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    package_logger.propagate = False
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        fmt="[%(asctime)s][%(levelname)s][%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    redactor = SecretRedactingFilter()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: OSError | None = None
    file_path = settings.file.path.strip()
    if file_path:
        log_file = Path(file_path).expanduser()
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = TimedRotatingFileHandler(
                filename=str(log_file),
                when="midnight",
                backupCount=settings.file.rotation.backup_count,
                encoding="utf-8",
            )
            file_handler.suffix = "%Y-%m-%d"
            handlers.append(file_handler)
        except OSError as e:
            file_error = e

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        package_logger.addHandler(handler)
    if file_error is not None:
        package_logger.error("Log file could not be opened, logging to stderr only. path=%s error=%s", file_path, file_error)
    return package_logger


__all__ = ["PACKAGE_LOGGER", "SecretRedactingFilter", "init_logging"]
