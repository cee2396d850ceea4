"""
Structured Logging Configuration Module

Every component logs to a child of the ``lending_ledger`` logger
(``lending_ledger.loans``, ``lending_ledger.payments`` and so on), so one
handler on the parent covers the whole ledger and each component's level
can be tuned on its own.

JSON entries lift the ledger identifiers (loan, payment and account ids)
out of the structured extras to the top level, where log search can
index them.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Dict, Optional

LEDGER_LOGGER = "lending_ledger"

COMPONENTS = ("loans", "payments", "accounts", "store", "service", "events")

# Extras promoted to top-level JSON fields
LEDGER_IDS = ("loan_id", "payment_id", "account_id")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def component_logger(component: str) -> logging.Logger:
    """Child logger for a ledger component"""
    if component not in COMPONENTS:
        raise ValueError(f"Unknown ledger component '{component}'")
    return logging.getLogger(f"{LEDGER_LOGGER}.{component}")


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def __init__(self, service: str = "lending-ledger"):
        super().__init__()
        self.service = service

    def format(self, record):
        extra = dict(getattr(record, 'extra', None) or {})
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
        }
        for key in LEDGER_IDS:
            if key in extra:
                log_entry[key] = extra.pop(key)
        log_entry["extra"] = extra or None

        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = LEDGER_LOGGER,
                  log_format: str = "json", log_file: Optional[str] = None,
                  component_levels: Optional[Dict[str, str]] = None) -> logging.Logger:
    """
    Attach one handler to the ledger's parent logger.

    Args:
        level: Level for the parent logger
        logger_name: Parent logger name; tests use their own
        log_format: "json", or anything else for plain text
        log_file: Append to this file instead of stderr
        component_levels: Per-component overrides, e.g. {"store": "DEBUG"}

    Returns:
        The parent logger
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(_level(level))
    logger.propagate = False

    for component, component_level in (component_levels or {}).items():
        if component not in COMPONENTS:
            raise ValueError(f"Unknown ledger component '{component}'")
        logging.getLogger(f"{logger_name}.{component}").setLevel(_level(component_level))

    return logger


def configure_logging(config) -> logging.Logger:
    """Set up ledger logging from a LedgerConfig"""
    return setup_logging(
        config.log_level,
        log_format=config.log_format,
        log_file=config.log_file,
        component_levels=config.component_log_levels
    )


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level '{name}'")
    return level


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with structured fields.

    ``extra`` keys named in LEDGER_IDS become top-level JSON fields.
    """
    levelno = _level(level)
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    fields = {"user_id": user_id, "action": action, "resource": resource,
              "correlation_id": correlation_id, "extra": extra}
    for key, value in fields.items():
        if value:
            setattr(record, key, value)

    logger.handle(record)
