"""Logging configuration — Rich console handler with secret redaction."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

from pipewright.core.secret_scope import RedactionFilter, SecretScope

_HANDLER_NAME = "pipewright-console"


def configure_logging(level: str = "INFO", *, scope: SecretScope | None = None) -> logging.Handler:
    """Install (or replace) the console handler on the ``pipewright`` logger.

    When *scope* is given, every record is passed through its redaction
    filter before it is rendered.
    """
    root = logging.getLogger("pipewright")
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(message)s"))
    if scope is not None:
        handler.addFilter(RedactionFilter(scope))

    root.addHandler(handler)
    root.setLevel(level.upper())
    return handler
