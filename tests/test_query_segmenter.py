import asyncio

from conftest import FakeAgent, FakeTranscriptStore, RecordingDisplay
from config import SegmentationPolicy
from query_segmenter import QuerySegmentationStateMachine
from session_state import SegmenterState, TranscriptionFragment


def build(policy, payload=None, agent=None):
    display = RecordingDisplay()
    store = FakeTranscriptStore(payload)
    agent = agent or FakeAgent()
    machine = QuerySegmentationStateMachine("s1", display, store, agent, policy=policy)
    return machine, display, store, agent


def fragment(text, is_final=False):
    return TranscriptionFragment(text=text, is_final=is_final)


def test_debounce_duration_policy():
    async def scenario():
        machine, *_ = build(SegmentationPolicy())
        return (
            machine.debounce_duration("hey mira", True),
            machine.debounce_duration("hey mira what time is it", True),
            machine.debounce_duration("hey mira what time", False),
        )

    assert asyncio.run(scenario()) == (10.0, 1.5, 3.0)


def test_fragments_without_wake_phrase_are_ignored(fast_policy):
    async def scenario():
        machine, display, store, agent = build(fast_policy)
        results = [
            machine.handle_fragment(fragment("what time is it")),
            machine.handle_fragment(fragment("what time is it", True)),
            machine.handle_fragment(fragment("tell me a joke", True)),
        ]
        await asyncio.sleep(0.1)
        return machine, display, store, agent, results

    machine, display, store, agent, results = asyncio.run(scenario())
    assert results == [None, None, None]
    assert machine.current_state == SegmenterState.IDLE
    assert machine.state.pending_timer is None
    assert display.messages == []
    assert store.calls == []
    assert agent.queries == []


def test_wake_only_then_question_finalizes_once(fast_policy):
    payload = {"segments": [{"text": "hey mira"}, {"text": "what time is it"}]}

    async def scenario():
        machine, display, store, agent = build(fast_policy, payload)
        first = machine.handle_fragment(fragment("hey mira", True))
        first_timer = machine.state.pending_timer
        assert machine.current_state == SegmenterState.LISTENING
        second = machine.handle_fragment(fragment("hey mira what time is it", True))
        # Long enough for the first timer to have fired had it not been cancelled
        await asyncio.sleep(0.3)
        return machine, display, store, agent, first, second, first_timer

    machine, display, store, agent, first, second, first_timer = asyncio.run(scenario())
    assert first == fast_policy.wake_only_wait
    assert second == fast_policy.final_wait
    assert first_timer.cancelled()
    assert store.calls == [("s1", 1)]
    assert agent.queries == ["what time is it"]
    flat = display.flat_texts()
    assert flat[0] == "Listening..."
    assert display.texts[1] == "Listening...\n\nwhat time is it"
    assert "Processing query: what time is it" in flat
    assert flat[-1] == "It is noon."
    assert machine.current_state == SegmenterState.IDLE


def test_rapid_partials_keep_a_single_timer(fast_policy):
    payload = {"segments": [{"text": "hey mira turn on the lights"}]}

    async def scenario():
        machine, display, store, agent = build(fast_policy, payload)
        handles = []
        for text in ["hey mira", "hey mira turn", "hey mira turn on", "hey mira turn on the lights"]:
            duration = machine.handle_fragment(fragment(text))
            assert duration == fast_policy.partial_wait
            handles.append(machine.state.pending_timer)
        pending = [handle for handle in handles if not handle.cancelled()]
        await asyncio.sleep(0.2)
        return store, agent, handles, pending

    store, agent, handles, pending = asyncio.run(scenario())
    assert pending == [handles[-1]]
    assert len(store.calls) == 1
    assert agent.queries == ["turn on the lights"]


def test_listening_start_is_set_once(fast_policy):
    async def scenario():
        machine, *_ = build(fast_policy)
        machine.handle_fragment(fragment("hey mira"))
        started = machine.state.listening_started_at
        await asyncio.sleep(0.01)
        machine.handle_fragment(fragment("hey mira what"))
        again = machine.state.listening_started_at
        machine.stop()
        return started, again

    started, again = asyncio.run(scenario())
    assert started is not None
    assert started == again


def test_fragments_continue_query_without_wake_phrase(fast_policy):
    async def scenario():
        machine, display, *_ = build(fast_policy)
        machine.handle_fragment(fragment("hey mira", True))
        duration = machine.handle_fragment(fragment("how tall is everest", True))
        machine.stop()
        return duration, display

    duration, display = asyncio.run(scenario())
    assert duration == fast_policy.final_wait
    assert display.texts[-1] == "Listening...\n\nhow tall is everest"


def test_placeholder_is_not_redrawn_needlessly(fast_policy):
    async def scenario():
        machine, display, *_ = build(fast_policy)
        machine.handle_fragment(fragment("hey mira"))
        machine.handle_fragment(fragment("hey mira"))
        machine.handle_fragment(fragment("hey mira turn"))
        machine.handle_fragment(fragment("hey mira"))
        machine.stop()
        return display

    display = asyncio.run(scenario())
    assert display.texts == [
        "Listening...",
        "Listening...\n\nturn",
        "Listening...",
    ]


def test_fragments_ignored_while_processing(fast_policy):
    payload = {"segments": [{"text": "hey mira what is two plus two"}]}

    async def scenario():
        machine, display, store, agent = build(fast_policy, payload)
        store.delay = 0.05
        machine.handle_fragment(fragment("hey mira what is two plus two", True))
        await asyncio.sleep(0.03)
        assert machine.current_state == SegmenterState.PROCESSING
        shown = len(display.messages)
        ignored = machine.handle_fragment(fragment("hey mira another question", True))
        timer_after = machine.state.pending_timer
        shown_after = len(display.messages)
        await asyncio.sleep(0.2)
        return store, agent, ignored, timer_after, shown, shown_after

    store, agent, ignored, timer_after, shown, shown_after = asyncio.run(scenario())
    assert ignored is None
    assert timer_after is None
    assert shown == shown_after
    assert len(store.calls) == 1
    assert agent.queries == ["what is two plus two"]


def test_cooldown_blocks_then_releases():
    policy = SegmentationPolicy(wake_only_wait=0.2, final_wait=0.02, partial_wait=0.05, cooldown=0.15)
    payload = {"segments": [{"text": "hey mira hello"}]}

    async def scenario():
        machine, display, store, agent = build(policy, payload)
        machine.handle_fragment(fragment("hey mira hello", True))
        await asyncio.sleep(0.08)
        during = machine.handle_fragment(fragment("hey mira again", True))
        state_during = machine.current_state
        await asyncio.sleep(0.2)
        state_after = machine.current_state
        after = machine.handle_fragment(fragment("hey mira again", True))
        machine.stop()
        return during, state_during, state_after, after

    during, state_during, state_after, after = asyncio.run(scenario())
    assert during is None
    assert state_during == SegmenterState.PROCESSING
    assert state_after == SegmenterState.IDLE
    assert after == policy.final_wait


def test_stop_cancels_timer_and_is_idempotent(fast_policy):
    async def scenario():
        machine, display, store, agent = build(fast_policy)
        machine.handle_fragment(fragment("hey mira what time", False))
        timer = machine.state.pending_timer
        machine.stop()
        machine.stop()
        ignored = machine.handle_fragment(fragment("hey mira what time", True))
        await asyncio.sleep(0.1)
        return machine, store, timer, ignored

    machine, store, timer, ignored = asyncio.run(scenario())
    assert timer.cancelled()
    assert ignored is None
    assert store.calls == []
    assert machine.current_state == SegmenterState.STOPPED
    assert machine.state.listening_started_at is None
