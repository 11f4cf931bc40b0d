import logging
from typing import Optional

from rich.console import Console
from rich.panel import Panel

log = logging.getLogger("mira_voice")


class ConsoleDisplay:
    """Terminal stand-in for the glasses' text wall"""

    def __init__(self, console: Optional[Console] = None, title: str = "Mira"):
        self.console = console or Console()
        self.title = title
        self.closed = False

    def show_text_wall(self, text: str, duration_ms: int = 5000) -> None:
        if self.closed:
            log.debug(f"Display closed, dropping: {text!r}")
            return
        self.console.print(
            Panel(
                text,
                title=self.title,
                title_align="left",
                subtitle=f"{duration_ms / 1000:g}s",
                subtitle_align="right",
                border_style="magenta",
                expand=False,
            )
        )

    def close(self) -> None:
        self.closed = True
