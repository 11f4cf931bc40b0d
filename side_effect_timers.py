import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("mira_voice")


@dataclass
class SideEffectTimer:
    timer_id: str
    fire_at: float
    handle: asyncio.TimerHandle
    payload: Any = None


class SideEffectTimerRegistry:
    """Delayed callbacks requested by agent tools, such as reminder timers.

    These live alongside a session's query handling but are never cancelled
    by a new query. Only ``cancel_all`` (session teardown) removes pending
    entries early.

    Timer ids come from the agent and are trusted to be unique. Registering an
    id that is still pending does not replace the earlier timer: both fire,
    and both are cancelled by ``cancel_all``.
    """

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._timers: Dict[str, SideEffectTimer] = {}
        self._superseded: List[SideEffectTimer] = []

    def __contains__(self, timer_id: str) -> bool:
        return timer_id in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def get(self, timer_id: str) -> Optional[SideEffectTimer]:
        return self._timers.get(timer_id)

    def register(
        self,
        timer_id: str,
        delay: float,
        on_fire: Callable[[], None],
        payload: Any = None,
    ) -> SideEffectTimer:
        """Schedule ``on_fire`` after ``delay`` seconds under ``timer_id``"""
        loop = asyncio.get_running_loop()

        previous = self._timers.get(timer_id)
        if previous is not None:
            log.warning(
                f"[Session {self.session_id}]: Timer id {timer_id!r} reused while still pending"
            )
            self._superseded.append(previous)

        entry: Optional[SideEffectTimer] = None

        def fire():
            self._remove(timer_id, entry)
            try:
                on_fire()
            except Exception:
                log.exception(f"[Session {self.session_id}]: Timer {timer_id!r} callback failed")

        handle = loop.call_later(max(0.0, delay), fire)
        entry = SideEffectTimer(
            timer_id=timer_id,
            fire_at=loop.time() + max(0.0, delay),
            handle=handle,
            payload=payload,
        )
        self._timers[timer_id] = entry
        log.info(f"[Session {self.session_id}]: Timer {timer_id!r} set for {delay}s")
        return entry

    def _remove(self, timer_id: str, entry: Optional[SideEffectTimer]) -> None:
        if self._timers.get(timer_id) is entry:
            del self._timers[timer_id]
        elif entry in self._superseded:
            self._superseded.remove(entry)

    def cancel_all(self) -> None:
        pending = list(self._timers.values()) + self._superseded
        for entry in pending:
            entry.handle.cancel()
        if pending:
            log.info(f"[Session {self.session_id}]: Cancelled {len(pending)} pending timer(s)")
        self._timers.clear()
        self._superseded.clear()
