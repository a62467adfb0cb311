"""Primary response stream: where narration, tool lines and checkpoint prompts go."""

from typing import Protocol

from rich.console import Console


class ResponseStream(Protocol):
    closed: bool

    def write(self, markdown: str) -> None:
        ...


class ConsoleStream:
    """Writes markdown text to stdout as it arrives.

    Narration comes in small deltas, so text is printed raw without rich markup
    or highlighting.
    """

    def __init__(self, console: Console = None):
        self.console = console or Console()
        self.closed = False

    def write(self, markdown: str) -> None:
        if self.closed:
            raise BrokenPipeError("response stream is closed")
        self.console.print(markdown, end="", markup=False, highlight=False)

    def close(self) -> None:
        self.closed = True
