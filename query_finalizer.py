import asyncio
import json
import logging
import math
import uuid
from typing import Any, Callable, Dict, Optional

from config import DisplayConfig, SegmentationPolicy
from session_state import SessionSegmentationState
from side_effect_timers import SideEffectTimerRegistry
from transcript_display import wrap_text
from transcript_store import TranscriptFetchError, TranscriptFormatError, combine_segments
from wake_phrase import WakePhraseMatcher

log = logging.getLogger("mira_voice")

FETCH_ERROR_MESSAGE = "Sorry, there was an error retrieving your transcript. Please try again."
FORMAT_ERROR_MESSAGE = "Sorry, the transcript format was invalid. Please try again."
EMPTY_QUERY_MESSAGE = "No query provided."
NO_ANSWER_MESSAGE = "Sorry, I couldn't find an answer to that."
PROCESSING_ERROR_MESSAGE = "Sorry, there was an error processing your request."

TIMER_SET_EVENT = "timer_set"


class QueryFinalizer:
    """Turns a closed listening window into one agent request.

    ``start`` is called from the debounce timer. It marks the session as
    processing before anything is awaited, then runs the fetch / agent round
    trip as a task. Whatever happens, the session is reset afterwards and
    accepts fragments again once the cool-down has passed.
    """

    def __init__(
        self,
        state: SessionSegmentationState,
        display,
        transcript_store,
        agent,
        matcher: WakePhraseMatcher,
        timers: SideEffectTimerRegistry,
        policy: Optional[SegmentationPolicy] = None,
        display_config: Optional[DisplayConfig] = None,
        context_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.state = state
        self.display = display
        self.transcript_store = transcript_store
        self.agent = agent
        self.matcher = matcher
        self.timers = timers
        self.policy = policy or SegmentationPolicy()
        self.display_config = display_config or DisplayConfig()
        self.context_provider = context_provider

    @property
    def session_id(self) -> str:
        return self.state.session_id

    def listening_duration(self, now: float, timer_duration: Optional[float]) -> int:
        """Whole seconds since the wake phrase was heard, at least one"""
        if self.state.listening_started_at is not None:
            return max(1, math.ceil(now - self.state.listening_started_at))
        if timer_duration:
            return max(1, math.ceil(timer_duration))
        return max(1, math.ceil(self.policy.partial_wait))

    def start(self, raw_text: str, timer_duration: Optional[float]) -> Optional[asyncio.Task]:
        loop = asyncio.get_running_loop()
        duration_seconds = self.listening_duration(loop.time(), timer_duration)

        if self.state.is_processing or self.state.is_stopped:
            log.debug(f"[Session {self.session_id}]: Finalize skipped, query already in progress")
            return None

        self.state.is_processing = True
        log.info(
            f"[Session {self.session_id}]: Finalizing query after {duration_seconds}s "
            f'(last fragment: "{raw_text}")'
        )
        task = loop.create_task(self._finalize(duration_seconds))
        self.state.finalize_task = task
        return task

    async def finalize(self, raw_text: str, timer_duration: Optional[float]) -> None:
        task = self.start(raw_text, timer_duration)
        if task is not None:
            await task

    async def _finalize(self, duration_seconds: int) -> None:
        try:
            await self._run_query(duration_seconds)
        finally:
            self._reset()

    async def _run_query(self, duration_seconds: int) -> None:
        try:
            payload = await self.transcript_store.fetch(self.session_id, duration_seconds)
        except TranscriptFetchError as e:
            log.error(
                f"[Session {self.session_id}]: Error fetching transcript: {e} "
                f"(endpoint={e.endpoint or 'n/a'}, status={e.status}, body={e.body!r})"
            )
            self._show_status(FETCH_ERROR_MESSAGE)
            return
        except Exception as e:
            log.error(f"[Session {self.session_id}]: Error fetching transcript: {e}", exc_info=True)
            self._show_status(FETCH_ERROR_MESSAGE)
            return

        try:
            combined = combine_segments(payload)
        except TranscriptFormatError as e:
            log.error(f"[Session {self.session_id}]: Invalid response structure: {e} ({payload!r})")
            self._show_status(FORMAT_ERROR_MESSAGE)
            return

        query = self.matcher.strip(combined)
        if not query.strip():
            log.info(f"[Session {self.session_id}]: No query after the wake phrase")
            self._show_status(EMPTY_QUERY_MESSAGE)
            return

        preview_chars = self.display_config.query_preview_chars
        preview = query
        if len(preview) > preview_chars:
            preview = preview[:preview_chars].strip() + " ..."
        self.show(
            self._wrap("Processing query: " + preview),
            self.display_config.result_duration_ms,
        )

        try:
            context = self.context_provider() if self.context_provider else {}
            log.info(f'[Session {self.session_id}]: Sending query to agent: "{query}"')
            response = await self.agent.handle(query, context)
            self._handle_response(response)
        except Exception as e:
            log.error(f"[Session {self.session_id}]: Error processing query: {e}", exc_info=True)
            self._show_status(PROCESSING_ERROR_MESSAGE)

    def _handle_response(self, response: Any) -> None:
        if response is None or (isinstance(response, str) and not response.strip()):
            log.info(f"[Session {self.session_id}]: Agent returned no answer")
            self._show_status(NO_ANSWER_MESSAGE)
            return

        event = self._parse_event(response)
        if event is not None and self._handle_event(event):
            return

        if isinstance(response, str):
            text = response
        elif isinstance(response, (dict, list)):
            text = json.dumps(response, default=str)
        else:
            text = str(response)
        self.show(
            self._wrap(text),
            self.display_config.result_duration_ms,
        )

    @staticmethod
    def _parse_event(response: Any) -> Optional[Dict[str, Any]]:
        if isinstance(response, dict):
            return response if "event" in response else None
        if isinstance(response, str):
            try:
                parsed = json.loads(response)
            except json.JSONDecodeError:
                return None
            if isinstance(parsed, dict) and "event" in parsed:
                return parsed
        return None

    def _handle_event(self, event: Dict[str, Any]) -> bool:
        kind = event.get("event")
        if kind != TIMER_SET_EVENT:
            log.info(f"[Session {self.session_id}]: Unhandled agent event {kind!r}")
            return False

        duration = event.get("duration")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
            log.warning(f"[Session {self.session_id}]: Timer event without a usable duration: {event!r}")
            return False

        if self.state.is_stopped:
            log.info(f"[Session {self.session_id}]: Session ended, timer event dropped")
            return True

        label = event.get("label")
        label_text = f' for "{label}"' if label else ""
        timer_id = str(event.get("timerId") or uuid.uuid4().hex[:8])

        self._show_status(f"Timer set{label_text} for {duration:g} seconds.")

        def on_fire():
            self.show(
                self._wrap(f"Timer{label_text} is up!"),
                self.display_config.result_duration_ms,
            )

        self.timers.register(timer_id, float(duration), on_fire, payload=event)
        return True

    def _wrap(self, text: str) -> str:
        return wrap_text(text, self.display_config.line_width, self.display_config.is_chinese)

    def _show_status(self, message: str) -> None:
        self.show(
            self._wrap(message),
            self.display_config.status_duration_ms,
        )

    def show(self, text: str, duration_ms: int) -> None:
        if self.state.is_stopped:
            log.debug(f"[Session {self.session_id}]: Session ended, dropping display update")
            return
        try:
            self.display.show_text_wall(text, duration_ms=duration_ms)
        except Exception as e:
            log.warning(f"[Session {self.session_id}]: Display update failed: {e}")

    def _reset(self) -> None:
        state = self.state
        state.listening_started_at = None
        state.cancel_pending_timer()
        state.display_buffer.clear()
        state.is_listening = False
        state.placeholder_shown = False
        state.finalize_task = None

        if state.is_stopped or self.policy.cooldown <= 0:
            state.is_processing = False
            return

        loop = asyncio.get_running_loop()
        state.cooldown_timer = loop.call_later(self.policy.cooldown, self._release)

    def _release(self) -> None:
        self.state.cooldown_timer = None
        self.state.is_processing = False
        log.debug(f"[Session {self.session_id}]: Ready for the next query")
