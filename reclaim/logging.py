"""Logging for the reclaim controller.

Logs go through loguru and stay disabled until ``setup_logging`` runs,
so importing the package is silent. The controller logs to a single
stream, human readable or as JSON lines for a log collector. Context
bound with ``logger.bind`` (owner, message id, instance id) is appended
to every line.

Example:
    from reclaim.logging import LogConfig, setup_logging

    handler_id = setup_logging(LogConfig.from_env())
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, Literal, TextIO, get_args

from loguru import logger

from reclaim.core.exceptions import ConfigurationError

logger.disable("reclaim")

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

LEVEL_ENV: Final = "RECLAIM_LOG_LEVEL"
JSON_ENV: Final = "RECLAIM_LOG_JSON"

LOG_FORMAT: Final = (
    "<green>{time:YYYY-MM-DDTHH:mm:ss.SSSZZ}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{name}</cyan> {message} <dim>{extra}</dim>"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Level and output format of the controller log."""

    level: LogLevel = "INFO"
    json: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> LogConfig:
        """Read ``RECLAIM_LOG_LEVEL`` and ``RECLAIM_LOG_JSON``."""
        env = os.environ if environ is None else environ
        level = env.get(LEVEL_ENV, "INFO").strip().upper()
        if level not in get_args(LogLevel.__value__):
            raise ConfigurationError(f"Invalid value for {LEVEL_ENV}: {level!r}")
        as_json = env.get(JSON_ENV, "").strip().lower() in ("1", "true", "yes", "on")
        return cls(level=level, json=as_json)  # type: ignore[arg-type]


def setup_logging(config: LogConfig, sink: TextIO | None = None) -> int:
    """Enable package logging on ``sink`` (stderr by default).

    Returns the handler id to pass to ``teardown_logging``.
    """
    logger.enable("reclaim")
    return logger.add(
        sink or sys.stderr,
        level=config.level,
        format=LOG_FORMAT,
        colorize=False if config.json else None,
        serialize=config.json,
        filter="reclaim",
        diagnose=False,  # no local variable values in tracebacks
    )


def teardown_logging(handler_id: int) -> None:
    logger.remove(handler_id)
    logger.disable("reclaim")
