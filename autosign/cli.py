import argparse
import sys

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme
from rich_argparse import RichHelpFormatter

from autosign.arguments import add_ensure_arguments
from autosign.src.constants.cli_constants import (
    __version__,
    get_banner_text,
    APP_DESCRIPTION,
)


class AutosignHelpFormatter(RichHelpFormatter):
    """Help formatter for the autosign CLI with rich styling."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=30, width=100)
        self.console = Console(
            theme=Theme(
                {
                    "command": "bold cyan",
                    "argument": "green",
                    "option": "yellow",
                    "version": "blue",
                    "title": "bold magenta",
                }
            )
        )

    def start_section(self, heading):
        heading_text = Text(heading, style="title")
        super().start_section(str(heading_text))


def display_banner():
    """Display the autosign banner."""
    console = Console()
    version_info = Text(f"v{__version__}", style="version")
    tagline = Text(APP_DESCRIPTION, style="italic")

    panel = Panel.fit(
        Text.assemble(get_banner_text(), "\n", tagline, "\n", version_info),
        border_style="green",
        padding=(1, 2),
    )
    console.print(panel)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autosign",
        description=f"autosign: {APP_DESCRIPTION}",
        formatter_class=AutosignHelpFormatter,
        add_help=True,
    )
    parser.add_argument(
        "--version", action="version", version=f"autosign {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command")
    ensure_parser = subparsers.add_parser(
        "ensure",
        help="Ensure certificates and provisioning profiles for an app",
        formatter_class=AutosignHelpFormatter,
        description=(
            "Match local certificates to the Developer Portal, register test devices, "
            "sync App IDs and install valid provisioning profiles for every target."
        ),
    )
    add_ensure_arguments(ensure_parser)
    return parser


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv or "-h" in argv or "--help" in argv:
        display_banner()

    load_dotenv()
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "ensure":
        from autosign.commands.ensure import run_ensure_command

        return run_ensure_command(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
