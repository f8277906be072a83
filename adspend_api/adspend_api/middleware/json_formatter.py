"""Single-line JSON log records.

Enabled with ``ADSPEND_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with one ``StreamHandler`` using
:class:`JSONFormatter`.  Each line looks like::

    {"timestamp": "...", "level": "CRITICAL", "logger": "adspend_core.billing.orchestrator",
     "message": "Ledger invariant violated on credit account acct-...", "account_id": "acct-..."}

``request`` is present on access-log records and ``exc_info`` only when an
exception was attached.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Extra attributes copied onto the JSON object when a record carries them.
_PASSTHROUGH_FIELDS: tuple[str, ...] = ("request", "account_id", "correlation_id")


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _PASSTHROUGH_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Replace the root handlers with a single JSON ``StreamHandler``."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
