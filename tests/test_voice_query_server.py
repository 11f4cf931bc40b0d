import asyncio
import threading

from conftest import FakeAgent, FakeTranscriptStore, RecordingDisplay
from config import AssistantConfig
from location_context import LocationContext, TimezoneInfo
from session_state import SegmenterState, TranscriptionFragment
from transcript_store import LocalTranscriptStore
from voice_query_server import VoiceQueryServer


def make_server(fast_policy, store=None, agents=None, location_resolver=None):
    config = AssistantConfig(policy=fast_policy, notification_limit=2)
    agents = agents if agents is not None else {}

    def agent_factory(session_id, user_id):
        agent = FakeAgent(f"answer for {user_id}")
        agents[session_id] = agent
        return agent

    store = store or FakeTranscriptStore({"segments": [{"text": "hey mira hi"}]})
    server = VoiceQueryServer(store, agent_factory, config=config, location_resolver=location_resolver)
    return server, agents


def test_sessions_are_independent(fast_policy):
    async def scenario():
        server, agents = make_server(fast_policy)
        d1, d2 = RecordingDisplay(), RecordingDisplay()
        server.on_start("s1", d1, user_id="alice")
        server.on_start("s2", d2, user_id="bob")
        server.on_fragment("s1", TranscriptionFragment("hey mira hi", is_final=True))
        server.on_fragment("s2", TranscriptionFragment("nothing relevant", is_final=True))
        await asyncio.sleep(0.1)
        server.stop_all()
        return server, agents, d1, d2

    server, agents, d1, d2 = asyncio.run(scenario())
    assert agents["s1"].queries == ["hi"]
    assert agents["s2"].queries == []
    assert d1.flat_texts()[-1] == "answer for alice"
    assert d2.messages == []
    assert len(server) == 0
    assert d1.closed and d2.closed


def test_unknown_session_fragment_is_ignored(fast_policy):
    async def scenario():
        server, _ = make_server(fast_policy)
        return server.on_fragment("missing", TranscriptionFragment("hey mira hi", is_final=True))

    assert asyncio.run(scenario()) is None


def test_stop_is_idempotent_and_releases_timers(fast_policy):
    async def scenario():
        server, _ = make_server(fast_policy)
        session = server.on_start("s1", RecordingDisplay())
        server.on_fragment("s1", TranscriptionFragment("hey mira", is_final=True))
        timer = session.segmenter.state.pending_timer
        session.segmenter.timers.register("t1", 5, lambda: None)
        server.on_stop("s1")
        server.on_stop("s1")
        return server, session, timer

    server, session, timer = asyncio.run(scenario())
    assert "s1" not in server
    assert timer.cancelled()
    assert len(session.segmenter.timers) == 0
    assert session.segmenter.current_state == SegmenterState.STOPPED


def test_restart_replaces_previous_session(fast_policy):
    async def scenario():
        server, _ = make_server(fast_policy)
        old = server.on_start("s1", RecordingDisplay())
        new = server.on_start("s1", RecordingDisplay())
        server.stop_all()
        return old, new

    old, new = asyncio.run(scenario())
    assert old is not new
    assert old.segmenter.current_state == SegmenterState.STOPPED


def test_notifications_are_bounded_and_passed_to_agent(fast_policy):
    async def scenario():
        server, agents = make_server(fast_policy)
        server.on_start("s1", RecordingDisplay(), user_id="alice")
        server.on_notifications("s1", [{"app": "Mail", "title": "one"}, {"app": "Chat", "title": "two"}])
        server.on_notifications("s1", {"app": "Calendar", "title": "three"})
        server.on_notifications("missing", {"app": "x"})
        server.on_fragment("s1", TranscriptionFragment("hey mira hi", is_final=True))
        await asyncio.sleep(0.1)
        server.stop_all()
        return agents

    agents = asyncio.run(scenario())
    assert agents["s1"].contexts == [
        {"notifications": [{"app": "Chat", "title": "two"}, {"app": "Calendar", "title": "three"}]}
    ]


def test_local_store_records_final_fragments(fast_policy):
    async def scenario():
        store = LocalTranscriptStore()
        server, agents = make_server(fast_policy, store=store)
        server.on_start("s1", RecordingDisplay())
        server.on_fragment("s1", TranscriptionFragment("hey mira what", is_final=False))
        server.on_fragment("s1", TranscriptionFragment("hey mira what is the weather", is_final=True))
        await asyncio.sleep(0.1)
        server.stop_all()
        return agents

    agents = asyncio.run(scenario())
    assert agents["s1"].queries == ["what is the weather"]


def test_threadsafe_submission(fast_policy):
    async def scenario():
        server, agents = make_server(fast_policy)
        server.on_start("s1", RecordingDisplay())
        worker = threading.Thread(
            target=server.submit_fragment_threadsafe,
            args=("s1", TranscriptionFragment("hey mira hi", is_final=True)),
        )
        worker.start()
        worker.join()
        await asyncio.sleep(0.1)
        server.stop_all()
        return agents

    agents = asyncio.run(scenario())
    assert agents["s1"].queries == ["hi"]


class FakeLocationResolver:
    def __init__(self, results):
        self.results = list(results)
        self.coordinates = []

    async def resolve(self, lat, lng):
        self.coordinates.append((lat, lng))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


HOBOKEN = LocationContext(
    city="Hoboken",
    state="New Jersey",
    country="United States",
    timezone=TimezoneInfo("America/New_York", "EDT", "Eastern Daylight Time", -14400, True),
)


def test_location_reaches_agent_context(fast_policy):
    resolver = FakeLocationResolver([HOBOKEN])

    async def scenario():
        server, agents = make_server(fast_policy, location_resolver=resolver)
        server.on_start("s1", RecordingDisplay())
        location = await server.on_location("s1", {"lat": 40.74, "lng": -74.03})
        server.on_fragment("s1", TranscriptionFragment("hey mira hi", is_final=True))
        await asyncio.sleep(0.1)
        server.stop_all()
        return location, agents

    location, agents = asyncio.run(scenario())
    assert resolver.coordinates == [(40.74, -74.03)]
    assert location == HOBOKEN
    assert agents["s1"].contexts[0]["location"] == HOBOKEN


def test_failed_location_lookups_keep_known_values(fast_policy):
    resolver = FakeLocationResolver([HOBOKEN, RuntimeError("LocationIQ down")])

    async def scenario():
        server, _ = make_server(fast_policy, location_resolver=resolver)
        session = server.on_start("s1", RecordingDisplay())
        await server.on_location("s1", {"lat": 40.74, "lng": -74.03})
        after_error = await server.on_location("s1", {"lat": 40.75, "lng": -74.02})
        after_invalid = await server.on_location("s1", {"lat": None, "lng": None})
        return session, after_error, after_invalid

    session, after_error, after_invalid = asyncio.run(scenario())
    assert after_error == HOBOKEN
    assert after_invalid == HOBOKEN
    assert session.location == HOBOKEN
    assert len(resolver.coordinates) == 2


def test_invalid_location_uses_fallback(fast_policy):
    resolver = FakeLocationResolver([])

    async def scenario():
        server, agents = make_server(fast_policy, location_resolver=resolver)
        server.on_start("s1", RecordingDisplay())
        location = await server.on_location("s1", {"lat": "north", "lng": 3})
        missing = await server.on_location("other", {"lat": 1.0, "lng": 2.0})
        return location, missing

    location, missing = asyncio.run(scenario())
    assert location == LocationContext()
    assert not location.is_known
    assert missing is None
    assert resolver.coordinates == []
