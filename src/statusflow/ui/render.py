"""Plain-text output rendering for the statusflow CLI.

File: src/statusflow/ui/render.py

Purpose
- Provide a thin rendering layer for CLI output.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Output is deterministic plain text; tables align on the widest cell.
- State ids render with their catalog name when one is known.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

_ANSI_BOLD = "\x1b[1m"
_ANSI_YELLOW = "\x1b[33m"
_ANSI_RESET = "\x1b[0m"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def state_label(state_id: int | None, names: Mapping[int, str] | None = None) -> str:
    """``"3 (Shipped)"`` when the catalog knows the id, else ``"3"``."""

    if state_id is None:
        return "-"
    name = (names or {}).get(state_id)
    return f"{state_id} ({name})" if name else str(state_id)


class CLIRenderer:
    """Thin CLI output renderer writing to ``stream`` (stdout by default)."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._out = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._out)

    def _write(self, line: str = "") -> None:
        self._out.write(line + "\n")

    def heading(self, text: str) -> None:
        self._write(f"{_ANSI_BOLD}{text}{_ANSI_RESET}" if self._color else text)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {'-' if value is None else value}")

    def text(self, line: str) -> None:
        self._write(line)

    def blank(self) -> None:
        self._write()

    def section(self, title: str) -> None:
        self._write()
        self.heading(title)

    def warning(self, text: str) -> None:
        message = f"Warning: {text}"
        self._write(f"  {_ANSI_YELLOW}{message}{_ANSI_RESET}" if self._color else f"  {message}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
        empty_message: str | None = None,
    ) -> None:
        """Print an aligned ASCII table; with no rows, print ``empty_message`` if given."""

        if title:
            self.section(title)
        if not rows:
            if empty_message:
                self._write(f"  {empty_message}")
            return

        cells = [["-" if cell is None else str(cell) for cell in row] for row in rows]
        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in cells:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(row[i]))

        def _pad(values: Sequence[str]) -> str:
            parts = [
                (values[i] if i < len(values) else "").ljust(widths[i]) for i in range(col_count)
            ]
            return "  ".join(parts).rstrip()

        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * w for w in widths)}")
        for row in cells:
            self._write(f"  {_pad(row)}")


def create_renderer(
    *,
    no_color: bool = False,
    verbose: bool = False,
    stream: TextIO | None = None,
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "state_label"]
