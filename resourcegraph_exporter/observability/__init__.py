"""Observability utilities: logging setup.

This module configures standard logging. Plain text is the default; with
``json_logs`` every record (including the ``extra={...}`` fields used
throughout the code base) is rendered as one JSON object per line through
``structlog``'s stdlib formatter, which is what container log collectors
expect.
"""

from __future__ import annotations

import logging
import sys

import structlog

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.identity",
    "httpx",
)


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure application logging.

    Parameters
    ----------
    level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".
    json_logs: bool
        Render records as JSON lines instead of plain text.

    Behavior
    --------
    - Replaces handlers on the root logger with a single stderr handler.
    - Configures structlog with a filtering bound logger at the same level.
    - Keeps Azure SDK and httpx request logging at WARNING unless DEBUG.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    if json_logs:
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=[
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.stdlib.ExtraAdder(),
                    structlog.processors.TimeStamper(fmt="iso", utc=True),
                    structlog.processors.format_exc_info,
                ],
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
        )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)

    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(
            logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
        )

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
    )
