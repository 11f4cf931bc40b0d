import asyncio
from typing import Any, List, Optional, Tuple

import pytest

from config import SegmentationPolicy


class RecordingDisplay:
    def __init__(self):
        self.messages: List[Tuple[str, int]] = []
        self.closed = False

    def show_text_wall(self, text: str, duration_ms: int = 5000) -> None:
        self.messages.append((text, duration_ms))

    def close(self) -> None:
        self.closed = True

    @property
    def texts(self) -> List[str]:
        return [text for text, _ in self.messages]

    def flat_texts(self) -> List[str]:
        """Displayed texts with line wrapping undone"""
        return [" ".join(text.split()) for text in self.texts]


class FakeTranscriptStore:
    def __init__(self, payload: Any = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.payload = payload if payload is not None else {"segments": []}
        self.error = error
        self.delay = delay
        self.calls: List[Tuple[str, int]] = []

    async def fetch(self, session_id: str, duration_seconds: int) -> Any:
        self.calls.append((session_id, duration_seconds))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload


class FakeAgent:
    def __init__(self, response: Any = "It is noon.", error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.queries: List[str] = []
        self.contexts: List[Any] = []

    async def handle(self, query: str, context=None) -> Any:
        self.queries.append(query)
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def fast_policy():
    return SegmentationPolicy(
        wake_only_wait=0.2,
        final_wait=0.02,
        partial_wait=0.05,
        cooldown=0.05,
    )
