"""Optional scripting extensions to configure logging."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# third-party loggers too chatty at DEBUG
_QUIET_LOGGERS = ("urllib3", "filelock", "PIL")


class LocalTZRichHandler(RichHandler):
    """RichHandler rendering timestamps in the local timezone."""

    def render(self, *, record, traceback, message_renderable):
        level = self.get_level_text(record)
        time_format = None if self.formatter is None else self.formatter.datefmt
        renderables = [message_renderable] if not traceback else [message_renderable, traceback]
        return self._log_render(
            self.console,
            renderables,
            log_time=datetime.fromtimestamp(record.created).astimezone(),
            time_format=time_format,
            level=level,
            path=Path(record.pathname).name,
            line_no=record.lineno,
            link_path=record.pathname if self.enable_link_path else None,
        )


def configure(verbose: bool) -> None:
    """
    Route logging through LocalTZRichHandler on stderr; verbose enables DEBUG.

    Command output on stdout stays free of log lines.
    """
    handler = LocalTZRichHandler(
        console=Console(stderr=True),
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="[%Y-%m-%d %H:%M:%S %z]",
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="<%(name)s> %(message)s",
        handlers=[handler],
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


log = logging.getLogger("bibsync/scripting")
"""Logger that the scripting package should use."""
