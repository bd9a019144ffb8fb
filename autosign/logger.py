from rich.console import Console
from functools import lru_cache
from rich.markup import escape

_verbose = False


@lru_cache(maxsize=1)
def get_console() -> Console:
    """Get or create the shared Console instance"""
    return Console(highlight=False)


def set_verbose(enabled: bool) -> None:
    """Enable or disable debug output on the shared console"""
    global _verbose
    _verbose = enabled


def debug(message: str) -> None:
    """Print a dimmed debug line, only when verbose output is enabled"""
    if _verbose:
        get_console().print(f"[dim]{escape(message)}[/]")
