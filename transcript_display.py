"""
Live transcript rendering for small head-up displays.

The glasses show a few short lines of text, so the running transcript is
word-wrapped to a fixed width and only the newest lines are kept on screen.
"""

from collections import deque
from typing import Deque, List, Optional


def wrap_lines(text: str, max_line_length: int, is_chinese: bool = False) -> List[str]:
    """Greedy word wrap. Words longer than a line are split across lines."""
    if max_line_length <= 0:
        raise ValueError("max_line_length must be positive")
    if not isinstance(text, str):
        return []

    if is_chinese:
        # No spaces between words, break on characters instead
        compact = "".join(text.split())
        return [
            compact[i : i + max_line_length]
            for i in range(0, len(compact), max_line_length)
        ]

    lines: List[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_line_length:
            if current:
                lines.append(current)
                current = ""
            lines.append(word[:max_line_length])
            word = word[max_line_length:]
        if not word:
            continue
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= max_line_length:
            current = f"{current} {word}"
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def wrap_text(text: str, max_line_length: int, is_chinese: bool = False) -> str:
    return "\n".join(wrap_lines(text, max_line_length, is_chinese))


class TranscriptDisplayFormatter:
    """Keeps a bounded, wrapped view of what the user is saying.

    Final transcripts are committed as their own block of lines and the
    latest ``max_final_transcripts`` of them are remembered. The current
    partial transcript is rendered after them and replaced on every update.
    Only the newest ``max_lines`` lines are ever returned.
    """

    def __init__(
        self,
        max_chars_per_line: int,
        max_lines: int,
        max_final_transcripts: int = 3,
        is_chinese: bool = False,
    ):
        if max_chars_per_line <= 0 or max_lines <= 0:
            raise ValueError("max_chars_per_line and max_lines must be positive")
        if max_final_transcripts < 0:
            raise ValueError("max_final_transcripts cannot be negative")
        self.max_chars_per_line = max_chars_per_line
        self.max_lines = max_lines
        self.max_final_transcripts = max_final_transcripts
        self.is_chinese = is_chinese

        self._final_transcripts: Deque[str] = deque(maxlen=max_final_transcripts)
        self._partial_text = ""
        self._last_user_transcript = ""
        self._lines: List[str] = []

    @property
    def wrapped_lines(self) -> List[str]:
        return list(self._lines)

    def process_string(self, text: Optional[str], is_final: bool) -> str:
        """Fold a transcript update into the view and return the rendered lines.

        An empty partial clears the in-progress text without adding a line.
        """
        text = text.strip() if isinstance(text, str) else ""

        if is_final:
            self._partial_text = ""
            if text:
                self._final_transcripts.append(text)
        else:
            self._partial_text = text

        self._last_user_transcript = text
        self._lines = self._render()
        return "\n".join(self._lines)

    def _render(self) -> List[str]:
        lines: List[str] = []
        for committed in self._final_transcripts:
            lines.extend(wrap_lines(committed, self.max_chars_per_line, self.is_chinese))
        if self._partial_text:
            lines.extend(wrap_lines(self._partial_text, self.max_chars_per_line, self.is_chinese))
        # Oldest lines scroll off the top
        return lines[-self.max_lines :]

    def get_last_user_transcript(self) -> str:
        return self._last_user_transcript

    def clear(self) -> None:
        self._final_transcripts.clear()
        self._partial_text = ""
        self._last_user_transcript = ""
        self._lines = []
