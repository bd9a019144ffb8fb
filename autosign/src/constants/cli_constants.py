from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Keep Apple code signing certificates and profiles in sync"

BANNER = r"""
             _            _
  __ _ _   _| |_ ___  ___(_) __ _ _ __
 / _` | | | | __/ _ \/ __| |/ _` | '_ \
| (_| | |_| | || (_) \__ \ | (_| | | | |
 \__,_|\__,_|\__\___/|___/_|\__, |_| |_|
                            |___/
"""


def get_banner_text() -> Text:
    return Text(BANNER.strip("\n"), style="bold cyan")
