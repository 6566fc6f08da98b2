"""
User-facing messages for the launcher.

Everything goes to stderr so the wrapped command owns stdout.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def set_console(console: Optional[Console]):
    """Swap the console (tests capture output this way)."""
    global _console
    _console = console


def emit_info(message: str):
    get_console().print(message)


def emit_success(message: str):
    get_console().print(f"[green]{message}[/green]")


def emit_warning(message: str):
    get_console().print(f"[yellow]Warning:[/yellow] {message}", highlight=False)


def emit_error(message: str):
    get_console().print(f"[bold red]Error:[/bold red] {message}", highlight=False)


def emit_panel(body: str, title: str, style: str = "red"):
    get_console().print(Panel(body, title=title, border_style=style, expand=False))


def setup_logging(debug: bool = False):
    """Configure root logging; verbose only when debugging is requested."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=get_console(), show_path=False)],
        force=True,
    )
