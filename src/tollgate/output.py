"""Diagnostic console output for tollgate.

tollgate is a library, so it never writes to stdout: every diagnostic line
goes to stderr (or a caller-supplied stream). The stream is rendered in one
of three formats:

* **rich** -- coloured level prefix via a Rich :class:`~rich.console.Console`
  when stderr is an interactive terminal.
* **plain** -- ``LEVEL message key=value ...`` text, used when piped.
* **json** -- one JSON object per line, for log shippers.

Colour control respects ``NO_COLOR`` and ``TERM=dumb``. The
:class:`OutputManager` is owned by whoever creates it (normally an
:class:`~tollgate.observability.ObservabilityProvider`); there is no
process-wide instance.
"""

from __future__ import annotations

import json
import os
import sys
import time
from enum import Enum
from typing import Any, Optional, TextIO

from rich.console import Console
from rich.markup import escape

_LEVEL_STYLES = {
    "debug": "dim",
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
}


class OutputFormat(str, Enum):
    """Enumeration of supported diagnostic formats.

    ``AUTO`` resolves to ``RICH`` when the stream is an interactive TTY and
    colour is not disabled, or to ``PLAIN`` otherwise.
    """

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Renders log lines to a diagnostic stream.

    Args:
        format: Desired output format. ``AUTO`` resolves based on TTY
            detection of *stream*.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress ``info`` lines (warnings and errors still print).
        verbose: Enable ``debug`` lines.
        stream: Destination stream; defaults to ``sys.stderr`` at write time.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
        stream: Optional[TextIO] = None,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose
        self._stream = stream

        if format == OutputFormat.AUTO:
            self._format = (
                OutputFormat.RICH
                if _is_tty(self._target()) and not self._no_color
                else OutputFormat.PLAIN
            )
        else:
            self._format = format

        self._console: Optional[Console] = None

    @property
    def format(self) -> OutputFormat:
        """The resolved output format."""
        return self._format

    @property
    def is_quiet(self) -> bool:
        """Whether quiet mode is enabled."""
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        """Whether verbose mode is enabled."""
        return self._verbose

    # ------------------------------------------------------------------ #
    # Log lines
    # ------------------------------------------------------------------ #

    def emit(self, level: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        """Write one log line at *level*, honouring quiet/verbose.

        Args:
            level: ``debug``, ``info``, ``warning`` or ``error``.
            message: The message text.
            context: Structured key/value pairs appended to the line.
        """
        if level == "debug" and not self._verbose:
            return
        if level == "info" and self._quiet:
            return

        context = context or {}
        if self._format == OutputFormat.JSON:
            record = {"ts": round(time.time(), 3), "level": level, "message": message}
            record.update(context)
            self._write(json.dumps(record, ensure_ascii=False, default=str))
        elif self._format == OutputFormat.RICH:
            style = _LEVEL_STYLES.get(level, "")
            line = f"[{style}]{level.upper():<7}[/{style}] {escape(message)}"
            if context:
                line += f" [dim]{escape(_format_context(context))}[/dim]"
            self._rich_console().print(line)
        else:
            line = f"{level.upper():<7} {message}"
            if context:
                line += f" {_format_context(context)}"
            self._write(line)

    def debug(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        """Print a debug line. Only shown when ``verbose`` is set."""
        self.emit("debug", message, context)

    def info(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        """Print an informational line. Suppressed by ``quiet``."""
        self.emit("info", message, context)

    def warning(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        """Print a warning. NOT suppressed by ``quiet``."""
        self.emit("warning", message, context)

    def error(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        """Print an error. Never suppressed."""
        self.emit("error", message, context)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _target(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def _rich_console(self) -> Console:
        if self._console is None:
            self._console = Console(
                file=self._target(),
                no_color=self._no_color,
                highlight=False,
                soft_wrap=True,
            )
        return self._console

    def _write(self, line: str) -> None:
        print(line, file=self._target(), flush=True)


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def _format_context(context: dict[str, Any]) -> str:
    """Render context as space-separated ``key=value`` pairs."""
    return " ".join(f"{key}={value}" for key, value in context.items())


def _is_tty(stream: TextIO) -> bool:
    """Check if *stream* is a TTY."""
    return hasattr(stream, "isatty") and stream.isatty()


def _should_disable_color() -> bool:
    """Check if colour should be disabled.

    Returns True when NO_COLOR env var is set (any value) or TERM=dumb.
    """
    if os.environ.get("NO_COLOR") is not None:
        return True
    if os.environ.get("TERM") == "dumb":
        return True
    return False
