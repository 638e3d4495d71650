from __future__ import annotations

import json
import logging
import logging.config
from pathlib import Path
from typing import Dict, Optional

# Third-party loggers that are chatty at INFO.
QUIET_LOGGERS: Dict[str, str] = {
    "apscheduler": "WARNING",
    "aiohttp.client": "WARNING",
}


class EnvironmentFilter(logging.Filter):
    """Stamp every record with the service name and deployment environment."""

    def __init__(self, environment: str = "development") -> None:
        super().__init__()
        self.environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = "caseload"
        record.environment = self.environment
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including fields passed via `extra=`."""

    _RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _log_file(settings) -> Optional[Path]:
    configured = getattr(settings, "log_file", "") or ""
    if configured:
        return Path(configured)
    if getattr(settings, "environment", "") == "test":
        return None
    return Path(settings.data_dir) / "logs" / "caseload.log"


_configured = False


def configure_logging(settings=None) -> None:
    """Install console (and, outside tests, rotating file) handlers once per process."""

    global _configured
    if _configured:
        return

    if settings is None:
        from caseload.core.settings import get_settings

        settings = get_settings()

    level = (getattr(settings, "log_level", "") or "INFO").upper()
    console_format = "json" if getattr(settings, "log_json", False) else "plain"

    handlers: Dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": console_format,
            "filters": ["environment"],
        },
    }
    log_file = _log_file(settings)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "json",
            "filters": ["environment"],
            "filename": str(log_file),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "environment": {
                    "()": "caseload.core.logging.EnvironmentFilter",
                    "environment": getattr(settings, "environment", "development"),
                },
            },
            "formatters": {
                "plain": {"format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
                "json": {"()": "caseload.core.logging.JsonFormatter"},
            },
            "handlers": handlers,
            "loggers": {name: {"level": quiet} for name, quiet in QUIET_LOGGERS.items()},
            "root": {"level": level, "handlers": list(handlers)},
        }
    )
    logging.captureWarnings(True)
    _configured = True


__all__ = ["EnvironmentFilter", "JsonFormatter", "QUIET_LOGGERS", "configure_logging"]
