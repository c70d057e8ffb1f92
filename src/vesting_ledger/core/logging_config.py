"""
Structured JSON logging for the vesting ledger.

Ledger modules log through ``logging.getLogger(__name__)``, so every record
lands under the ``vesting_ledger`` logger. Handlers are attached there once,
from a ``LedgerConfig``:

    config = LedgerConfig.from_env()
    configure_ledger_logging(config, verbose=False)

Records carry the ledger's ``extra`` fields (``event``, truncated addresses,
amounts) as top-level JSON keys.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter

from vesting_ledger.core.config import LedgerConfig

LEDGER_LOGGER = "vesting_ledger"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5


class LedgerJsonFormatter(JsonFormatter):
    """One JSON object per record, tagged with service and environment."""

    def __init__(self, environment: str = "production"):
        super().__init__(
            "%(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level"},
            static_fields={"service": LEDGER_LOGGER, "environment": environment},
            timestamp=True,
        )

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        # Records logged without an event tag are filed under their module
        log_record.setdefault("event", record.name.rsplit(".", 1)[-1])
        log_record["source"] = f"{record.module}:{record.funcName}:{record.lineno}"


def setup_logging(
    level: str = "INFO",
    environment: str = "production",
    log_file: Optional[str] = None,
    console: bool = False,
) -> logging.Logger:
    """
    Replace the handlers on the ledger logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        environment: Value of the ``environment`` field on every record
        log_file: Rotating JSON log file, created with its directory if missing
        console: Also write records to stderr

    Returns:
        The configured ``vesting_ledger`` logger
    """
    logger = logging.getLogger(LEDGER_LOGGER)
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = LedgerJsonFormatter(environment)

    # stderr keeps stdout free for CLI output
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning("Could not open log file %s: %s", log_file, e)

    # Keeps the interpreter's last-resort stderr handler quiet when nothing is enabled
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


def configure_ledger_logging(config: LedgerConfig, verbose: bool = False) -> logging.Logger:
    """Apply ``config``'s log settings; ``verbose`` forces DEBUG to stderr."""
    return setup_logging(
        level="DEBUG" if verbose else config.log_level,
        environment=config.environment,
        log_file=config.log_file,
        console=verbose,
    )
