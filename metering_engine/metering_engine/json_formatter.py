"""One-JSON-object-per-line logging for the metering engine.

Tracking failures carry their tenant and usage key under ``usage``; the
tenant is also lifted to the top level so log pipelines can filter on it
without descending into the nested object.

Activate by setting ``METERING_STRUCTURED_LOGGING=true`` and calling
:func:`configure_logging` once at process start.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "ERROR",
        "logger": "metering_engine.services.tracker",
        "message": "Usage tracking failed",
        "tenant_id": "acme",         // present when usage context is attached
        "usage": { ... },            // present when emitted by UsageTracker
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from metering_engine.config import MeteringSettings

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Structured metering context passed via ``extra={"usage": ...}``.
        usage_data = getattr(record, "usage", None)
        if isinstance(usage_data, dict):
            if "tenant_id" in usage_data:
                payload["tenant_id"] = usage_data["tenant_id"]
            payload["usage"] = usage_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: MeteringSettings) -> None:
    """Install root handlers according to *settings*.

    With ``structured_logging`` enabled the existing root handlers are
    replaced by a single ``StreamHandler`` using :class:`JSONFormatter`.
    Otherwise a plain text handler is installed only when the root logger
    has none.
    """
    root_logger = logging.getLogger()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.structured_logging:
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(level)
        logger.info("Structured JSON logging enabled")
        return

    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root_logger.setLevel(level)
