import datetime
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings


_LOGGING_CONFIGURED = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class LocalTimezoneFormatter(logging.Formatter):
    """
    Formatter stamping records in CLIGATE_LOG_TIMEZONE, or the system local
    timezone when that is unset or unknown.
    """

    def __init__(self, *args, timezone_name: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        tzinfo: datetime.tzinfo | None = None
        if timezone_name:
            try:
                tzinfo = ZoneInfo(timezone_name)
            except ZoneInfoNotFoundError:
                tzinfo = None
        self._tzinfo = tzinfo or datetime.datetime.now().astimezone().tzinfo

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")


def setup_logging() -> None:
    """
    Configure cligate logging once per process.

    "cligate" records go to CLIGATE_LOG_DIR/cligate.log, rotated at midnight
    and kept for CLIGATE_LOG_BACKUP_DAYS days. Everything, uvicorn included,
    is echoed to the console through a root handler.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    level_value = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    formatter = LocalTimezoneFormatter(LOG_FORMAT, timezone_name=settings.log_timezone)

    file_handler = TimedRotatingFileHandler(
        log_dir / "cligate.log",
        when="midnight",
        backupCount=settings.log_backup_days,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(logging.Filter("cligate"))
    app_logger = logging.getLogger("cligate")
    app_logger.setLevel(level_value)
    app_logger.addHandler(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root_logger.handlers
    )
    if not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _LOGGING_CONFIGURED = True


logger = logging.getLogger("cligate")
