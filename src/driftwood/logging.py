import logging
import sys
from typing import Any, MutableMapping

import structlog

# Event keys whose values are credentials and must never reach a log line
REDACTED_KEYS = frozenset({"token", "access_token", "password", "client_key"})


def redact_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_logging(
    level: int | str = logging.WARNING, *, json_output: bool | None = None
) -> None:
    """Route structlog through stdlib logging on stderr.

    Stdout is reserved for command output (plans, JSON reports), so every log
    line goes to stderr. JSON lines are used unless stderr is a terminal.
    """
    if json_output is None:
        json_output = not sys.stderr.isatty()
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_credentials,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)


def bind_run(run_id: str, command: str) -> None:
    """Attach run identifiers to every log line emitted in this context."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(run_id=run_id, command=command)
