from __future__ import annotations

import logging
import sys


class ContextFormatter(logging.Formatter):
    """Formatter that tolerates records without a ``stage`` extra."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "stage"):
            record.stage = "-"
        return super().format(record)


def configure_logging(level: str | int = "INFO") -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ContextFormatter("%(asctime)s %(levelname)s %(name)s [stage=%(stage)s] - %(message)s")
    )
    root = logging.getLogger("pipewright")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level if isinstance(level, int) else str(level).upper())
    root.propagate = False
