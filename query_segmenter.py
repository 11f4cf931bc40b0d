import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from config import DisplayConfig, SegmentationPolicy
from query_finalizer import QueryFinalizer
from session_state import SegmenterState, SessionSegmentationState, TranscriptionFragment
from side_effect_timers import SideEffectTimerRegistry
from transcript_display import TranscriptDisplayFormatter
from wake_phrase import WakePhraseMatcher

log = logging.getLogger("mira_voice")


class QuerySegmentationStateMachine:
    """Splits one session's stream of transcription fragments into queries.

    IDLE until a wake phrase is heard, then LISTENING while fragments keep
    arriving. Every relevant fragment rearms a single debounce timer; when it
    expires the finalizer takes over (PROCESSING) and the session goes back
    to IDLE after the cool-down. ``stop`` makes the session STOPPED for good.

    All methods must be called on the event loop that owns the session.
    """

    def __init__(
        self,
        session_id: str,
        display,
        transcript_store,
        agent,
        matcher: Optional[WakePhraseMatcher] = None,
        policy: Optional[SegmentationPolicy] = None,
        display_config: Optional[DisplayConfig] = None,
        context_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.matcher = matcher or WakePhraseMatcher()
        self.policy = policy or SegmentationPolicy()
        self.display_config = display_config or DisplayConfig()

        formatter = TranscriptDisplayFormatter(
            self.display_config.line_width,
            self.display_config.max_lines,
            self.display_config.max_final_transcripts,
            self.display_config.is_chinese,
        )
        self.state = SessionSegmentationState(session_id=session_id, display_buffer=formatter)
        self.timers = SideEffectTimerRegistry(session_id)
        self.finalizer = QueryFinalizer(
            self.state,
            display,
            transcript_store,
            agent,
            self.matcher,
            self.timers,
            policy=self.policy,
            display_config=self.display_config,
            context_provider=context_provider,
        )

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def current_state(self) -> SegmenterState:
        return self.state.state

    def debounce_duration(self, normalized_text: str, is_final: bool) -> float:
        if is_final:
            if self.matcher.ends_with_any(normalized_text):
                # Nothing said after the wake phrase yet
                return self.policy.wake_only_wait
            return self.policy.final_wait
        return self.policy.partial_wait

    def handle_fragment(self, fragment: TranscriptionFragment) -> Optional[float]:
        """Process one fragment.

        Returns the debounce duration that was scheduled, or None when the
        fragment was ignored.
        """
        state = self.state
        if state.is_stopped:
            return None
        if state.is_processing:
            log.debug(f"[Session {self.session_id}]: Query already in progress. Ignoring transcription.")
            return None

        text = fragment.text if isinstance(fragment.text, str) else ""
        normalized = self.matcher.normalize(text)
        if not state.is_listening and not self.matcher.contains_any(normalized):
            return None

        loop = asyncio.get_running_loop()
        if not state.is_listening:
            log.info(f'[Session {self.session_id}]: Wake phrase detected in "{text}"')
        state.is_listening = True
        if state.listening_started_at is None:
            state.listening_started_at = loop.time()

        self._update_display(text, fragment.is_final)

        duration = self.debounce_duration(normalized, fragment.is_final)
        self._rearm(text, duration)
        return duration

    def _update_display(self, text: str, is_final: bool) -> None:
        state = self.state
        formatter = state.display_buffer
        placeholder = self.display_config.placeholder
        display_text = self.matcher.strip(text)

        if not display_text.strip():
            had_text = bool(formatter.get_last_user_transcript().strip())
            if had_text:
                # Drop the stale partial
                formatter.process_string("", False)
            if had_text or not state.placeholder_shown:
                self.finalizer.show(placeholder, self.display_config.live_duration_ms)
                state.placeholder_shown = True
            return

        rendered = formatter.process_string(display_text, is_final).strip()
        self.finalizer.show(f"{placeholder}\n\n{rendered}", self.display_config.live_duration_ms)

    def _rearm(self, raw_text: str, duration: float) -> None:
        self.state.cancel_pending_timer()
        loop = asyncio.get_running_loop()
        self.state.pending_timer = loop.call_later(
            duration, self._on_debounce_expired, raw_text, duration
        )

    def _on_debounce_expired(self, raw_text: str, duration: float) -> None:
        self.state.pending_timer = None
        self.finalizer.start(raw_text, duration)

    def stop(self) -> None:
        """Tear the session down. Safe to call more than once."""
        state = self.state
        if state.is_stopped:
            return
        state.is_stopped = True
        state.cancel_pending_timer()
        if state.cooldown_timer is not None:
            state.cooldown_timer.cancel()
            state.cooldown_timer = None
        self.timers.cancel_all()
        state.display_buffer.clear()
        state.is_listening = False
        state.listening_started_at = None
        if state.finalize_task is not None and not state.finalize_task.done():
            log.info(f"[Session {self.session_id}]: Stopped with a query in flight, its result will be dropped")
        log.info(f"[Session {self.session_id}]: Segmentation stopped")
