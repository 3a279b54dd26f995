"""
Rich Output Utilities
=====================

Terminal output for the dbretire CLI and console alert channel, built on
the Rich library. Core modules log instead of printing; only the CLI and
the console channel write here.
"""

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class RetireColors:
    """Palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    accent: str = "#F59E0B"    # warm accent
    cool: str = "#22D3EE"      # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red


def retire_theme(colors: RetireColors = RetireColors()) -> Theme:
    """
    Rich Theme for the dbretire CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="dr.ok")
    """
    return Theme(
        {
            "dr.border": f"{colors.cool}",
            "dr.accent": f"bold {colors.accent}",
            "dr.muted": f"{colors.dim}",
            "dr.text": f"{colors.ink}",

            # Status
            "dr.ok": f"bold {colors.ok}",
            "dr.warn": f"bold {colors.warn}",
            "dr.err": f"bold {colors.err}",
            "dr.info": f"{colors.cool}",

            # Data display
            "dr.key": f"{colors.steel}",
            "dr.value": f"{colors.ink}",
            "dr.number": f"bold {colors.accent}",
            "dr.timestamp": f"{colors.dim}",
            "dr.table.header": f"bold {colors.cool}",

            # Migration phases
            "dr.phase.planned": f"{colors.cool}",
            "dr.phase.executing": f"bold {colors.accent}",
            "dr.phase.completed": f"bold {colors.ok}",
            "dr.phase.rolled_back": f"{colors.steel}",
            "dr.phase.failed": f"bold {colors.err}",

            # Alert severities
            "dr.severity.info": f"{colors.cool}",
            "dr.severity.warning": f"bold {colors.warn}",
            "dr.severity.error": f"bold {colors.err}",
            "dr.severity.critical": f"bold reverse {colors.err}",

            # Element status
            "dr.status.safe": f"bold {colors.ok}",
            "dr.status.warning": f"bold {colors.warn}",
            "dr.status.active": f"bold {colors.err}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle the Unicode icons we use."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True

_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "bell": "\U0001F514",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "bell": "[*]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instances
# =============================================================================

console = Console(theme=retire_theme())
err_console = Console(theme=retire_theme(), stderr=True)


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[dr.ok]{icon('check')} [/]" + _escape(message), highlight=False)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[dr.err]{icon('cross')} [/]" + _escape(message), highlight=False)


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[dr.warn]{icon('warning')} [/]" + _escape(message), highlight=False)


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dr.info]{icon('info')} [/]" + _escape(message), highlight=False)


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(f"[dr.muted]{_escape(message)}[/]")


def _escape(text: str) -> str:
    return escape(str(text))


# =============================================================================
# Headers & Data Display
# =============================================================================

def print_header(title: str, style: str = "dr.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "dr.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dr.key")
    table.add_column("Value", style="dr.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def print_list(items: Sequence[str], *, style: str = "dr.text") -> None:
    """Print a bulleted list."""
    for item in items:
        console.print(f"  [dr.accent]{icon('bullet')}[/] [{style}]{_escape(item)}[/]")


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "dr.border",
    header_style: str = "dr.table.header",
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="dr.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    """Print a Rich Table to the console."""
    console.print(table)


def print_panel(
    content: Union[str, Text],
    *,
    title: Optional[str] = None,
    subtitle: Optional[str] = None,
    border_style: str = "dr.border",
    padding: tuple = (1, 2),
) -> None:
    """Print content in a styled panel."""
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        subtitle=f"[dr.muted]{subtitle}[/]" if subtitle else None,
        border_style=border_style,
        padding=padding,
    ))


def styled(value: str, prefix: str) -> str:
    """Wrap a value in its themed style, e.g. styled("failed", "dr.phase")."""
    return f"[{prefix}.{value}]{_escape(value)}[/]"


# =============================================================================
# Progress & Logging
# =============================================================================

@contextmanager
def spinner(message: str, *, style: str = "dr.accent") -> Iterator[Status]:
    """
    Context manager for showing a spinner during long operations.

    Usage:
        with spinner("Planning migration..."):
            await system.plan_deprecation(...)
    """
    with err_console.status(f"[{style}]{message}[/]", spinner="dots") as status:
        yield status


def setup_rich_logging(level: int = logging.WARNING) -> None:
    """
    Configure Python logging to use Rich for log output on stderr.

    Usage:
        setup_rich_logging(logging.DEBUG)
        logging.getLogger(__name__).info("Flushed 10 events")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=err_console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
        force=True,
    )
