import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from config import AssistantConfig
from location_context import LocationContext, LocationResolver, parse_coordinates
from query_segmenter import QuerySegmentationStateMachine
from session_state import TranscriptionFragment
from wake_phrase import WakePhraseMatcher

log = logging.getLogger("mira_voice")


@dataclass
class VoiceSession:
    session_id: str
    user_id: Optional[str]
    segmenter: QuerySegmentationStateMachine
    agent: Any
    display: Any
    notifications: Deque[Any] = field(default_factory=deque)
    location: LocationContext = field(default_factory=LocationContext)

    def recent_notifications(self) -> List[Any]:
        return list(self.notifications)


class VoiceQueryServer:
    """Owns every active voice session, keyed by session id.

    Each session gets its own segmentation state machine, agent and display.
    The wake phrase matcher and configuration are shared read-only. Entry
    points must be called on ``loop``; ``submit_fragment_threadsafe`` is the
    way in for recogniser threads.
    """

    def __init__(
        self,
        transcript_store,
        agent_factory: Callable[[str, Optional[str]], Any],
        config: Optional[AssistantConfig] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        location_resolver: Optional[LocationResolver] = None,
    ):
        self.config = config or AssistantConfig()
        self.transcript_store = transcript_store
        self.agent_factory = agent_factory
        self.matcher = WakePhraseMatcher(self.config.wake_phrases)
        self.loop = loop
        self.location_resolver = location_resolver or LocationResolver(
            self.config.locationiq_token, timeout=self.config.location_timeout
        )
        self._sessions: Dict[str, VoiceSession] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def session(self, session_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(session_id)

    def on_start(self, session_id: str, display, user_id: Optional[str] = None) -> VoiceSession:
        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        existing = self._sessions.get(session_id)
        if existing is not None:
            log.warning(f"[Session {session_id}]: Session restarted, replacing previous state")
            self.on_stop(session_id)

        log.info(f"Setting up Mira service for session {session_id}, user {user_id}")
        agent = self.agent_factory(session_id, user_id)
        notifications: Deque[Any] = deque(maxlen=max(0, self.config.notification_limit))

        def context() -> Dict[str, Any]:
            return {"notifications": session.recent_notifications(), "location": session.location}

        segmenter = QuerySegmentationStateMachine(
            session_id,
            display,
            self.transcript_store,
            agent,
            matcher=self.matcher,
            policy=self.config.policy,
            display_config=self.config.display,
            context_provider=context,
        )
        session = VoiceSession(
            session_id=session_id,
            user_id=user_id,
            segmenter=segmenter,
            agent=agent,
            display=display,
            notifications=notifications,
        )
        self._sessions[session_id] = session
        return session

    def on_fragment(self, session_id: str, fragment: TranscriptionFragment) -> Optional[float]:
        session = self._sessions.get(session_id)
        if session is None:
            log.debug(f"[Session {session_id}]: Fragment for unknown session ignored")
            return None
        record = getattr(self.transcript_store, "record", None)
        if record is not None and fragment.is_final:
            record(session_id, fragment.text, fragment.timestamp)
        return session.segmenter.handle_fragment(fragment)

    def submit_fragment_threadsafe(self, session_id: str, fragment: TranscriptionFragment) -> None:
        """Hand a fragment produced on another thread to the event loop"""
        if self.loop is None:
            raise RuntimeError("Server has no event loop yet, start a session first")
        self.loop.call_soon_threadsafe(self.on_fragment, session_id, fragment)

    def on_notifications(self, session_id: str, notifications: Any) -> None:
        session = self._sessions.get(session_id)
        if session is None or not notifications:
            return
        if isinstance(notifications, list):
            session.notifications.extend(notifications)
        else:
            session.notifications.append(notifications)

    async def on_location(self, session_id: str, location: Any) -> Optional[LocationContext]:
        """Resolve a location update and keep it as agent context for the session.

        Lookups that fail leave the affected fields "Unknown", and an unknown
        field never replaces one that was already resolved.
        """
        session = self._sessions.get(session_id)
        if session is None:
            log.debug(f"[Session {session_id}]: Location for unknown session ignored")
            return None

        coordinates = parse_coordinates(location)
        if coordinates is None:
            log.info(f"[Session {session_id}]: Invalid location data received, using fallback")
            resolved = LocationContext()
        else:
            try:
                resolved = await self.location_resolver.resolve(*coordinates)
            except Exception as e:
                log.error(f"[Session {session_id}]: Error processing location: {e}", exc_info=True)
                resolved = LocationContext()

        if self._sessions.get(session_id) is not session:
            log.debug(f"[Session {session_id}]: Session ended during location lookup")
            return None

        session.location = session.location.merged_with(resolved)
        tz = session.location.timezone
        log.info(
            f"[Session {session_id}]: User location: {session.location.city}, "
            f"{session.location.state}, {session.location.country}, {tz.name}"
        )
        return session.location

    def on_stop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        log.info(f"Stopping Mira service for session {session_id}, user {session.user_id}")
        session.segmenter.stop()
        forget = getattr(self.transcript_store, "forget", None)
        if forget is not None:
            forget(session_id)
        close = getattr(session.display, "close", None)
        if close is not None:
            close()

    def stop_all(self) -> None:
        for session_id in list(self._sessions):
            self.on_stop(session_id)
