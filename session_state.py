import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from transcript_display import TranscriptDisplayFormatter


@dataclass(frozen=True)
class TranscriptionFragment:
    """One partial or final speech-to-text update"""

    text: str
    is_final: bool = False
    timestamp: float = field(default_factory=time.monotonic)


class SegmenterState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    STOPPED = "stopped"


@dataclass
class SessionSegmentationState:
    """Mutable per-session record shared by the fragment and timer paths.

    Only the session's state machine and finalizer touch it, and both run on
    the session's event loop.
    """

    session_id: str
    display_buffer: TranscriptDisplayFormatter
    is_listening: bool = False
    is_processing: bool = False
    is_stopped: bool = False
    listening_started_at: Optional[float] = None
    pending_timer: Optional[asyncio.TimerHandle] = None
    cooldown_timer: Optional[asyncio.TimerHandle] = None
    finalize_task: Optional[asyncio.Task] = None
    placeholder_shown: bool = False

    @property
    def state(self) -> SegmenterState:
        if self.is_stopped:
            return SegmenterState.STOPPED
        if self.is_processing:
            return SegmenterState.PROCESSING
        if self.is_listening:
            return SegmenterState.LISTENING
        return SegmenterState.IDLE

    def cancel_pending_timer(self) -> None:
        if self.pending_timer is not None:
            self.pending_timer.cancel()
            self.pending_timer = None
