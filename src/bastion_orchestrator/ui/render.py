"""Output rendering for the bastion CLI.

File: src/bastion_orchestrator/ui/render.py
Last updated: 2026-10-19

Purpose
- Keep every human-readable CLI line in one place so command handlers only decide
  *what* to show.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Plain-text rendering works everywhere; color is limited to the allow/deny markers.
- Denials and failures go to stdout alongside the rest of the report; only CLI usage
  errors go to stderr.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_GREEN = "\x1b[32m"
_RED = "\x1b[31m"
_RESET = "\x1b[0m"


def _color_allowed(no_color_flag: bool) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output.
    """

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def detail(self, key: str, value: object) -> None:
        """Print a key/value line only in verbose mode."""

        if self.verbose:
            print(f"  {key}: {value}")

    def block(self, title: str, body: str) -> None:
        """Print a titled, indented multi-line block; empty bodies are skipped."""

        if not body:
            return
        self.section(f"{title}:")
        for line in body.rstrip("\n").splitlines():
            print(f"  {line}")

    def mapping(self, title: str, values: Mapping[str, object]) -> None:
        self.section(f"{title}:")
        width = max((len(key) for key in values), default=0)
        for key in sorted(values):
            print(f"  {key.ljust(width)}  {values[key]}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def ok(self, label: str) -> None:
        """Print an allowed/successful verdict line."""

        marker = f"{_GREEN}OK{_RESET}" if self._color else "OK"
        print(f"  {marker}  {label}")

    def fail(self, label: str) -> None:
        """Print a denied/failed verdict line."""

        marker = f"{_RED}FAIL{_RESET}" if self._color else "FAIL"
        print(f"  {marker}  {label}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
