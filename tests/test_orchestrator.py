"""Tests covering the round state machine and the async session runner."""

import pytest

from mousemaze.config import ArenaConfig
from mousemaze.layout import generate_participant_layout
from mousemaze.orchestrator import (
    ExperimentSession,
    InputMode,
    InvalidTransitionError,
    RoundOrchestrator,
    RoundPhase,
)
from mousemaze.persistence import InMemoryPersistence
from mousemaze.schemas import Condition, ConditionScheme, EndReason, EventType


def make_config(n_rewards=4, **timing) -> ArenaConfig:
    timing = {"countdown_seconds": 0, "post_round_delay_ms": 0, "time_limit_ms": 60000, **timing}
    return ArenaConfig(
        n_rewards=n_rewards,
        timing=timing,
        layout={
            "n_clusters": 2,
            "cluster_radius": 40,
            "cluster_min_separation": 150,
            "cluster_edge_margin": 60,
        },
    )


def make_round(config=None, mode=InputMode.CURSOR, condition=Condition.DIFFUSE, round_index=0):
    return RoundOrchestrator(
        config or make_config(),
        "session-1",
        "p1",
        condition,
        round_index,
        mode=mode,
    )


def start_cursor_round(orchestrator, now=0):
    orchestrator.request_start(now)
    orchestrator.pointer_enter()
    return orchestrator


def terminal_events(orchestrator):
    return [e for e in orchestrator.events if e.event_type.is_terminal]


# ============================================================================
# Lifecycle
# ============================================================================


def test_countdown_then_active():
    orchestrator = make_round(make_config(countdown_seconds=3))
    assert orchestrator.phase is RoundPhase.IDLE

    assert orchestrator.request_start(0)
    assert orchestrator.phase is RoundPhase.COUNTDOWN
    assert orchestrator.countdown_remaining(0) == 3
    assert not orchestrator.request_start(100)  # duplicate start is ignored

    assert orchestrator.tick(1500) is RoundPhase.COUNTDOWN
    assert orchestrator.countdown_remaining(1500) == 2
    assert orchestrator.tick(3000) is RoundPhase.ACTIVE

    (start,) = orchestrator.events
    assert start.event_type is EventType.ROUND_START
    assert start.timestamp_ms == 0
    assert start.metadata["condition"] == "DIFFUSE"
    assert start.metadata["mode"] == "cursor"


def test_zero_countdown_starts_immediately():
    orchestrator = make_round()
    orchestrator.request_start(0)
    assert orchestrator.phase is RoundPhase.ACTIVE


def test_structured_round_start_carries_cluster_params():
    orchestrator = make_round(condition=Condition.CONCENTRATED)
    orchestrator.request_start(0)
    params = orchestrator.events[0].metadata["cluster_params"]
    assert params["k"] == 2
    assert len(params["centers"]) == 2


def test_layout_comes_from_participant_seed():
    config = make_config()
    orchestrator = make_round(config, condition=Condition.CONCENTRATED, round_index=2)
    expected = generate_participant_layout("p1", 2, Condition.CONCENTRATED, config.layout)
    assert [(r.x, r.y) for r in orchestrator.rewards] == [(r.x, r.y) for r in expected.rewards]


# ============================================================================
# Collection and finalization
# ============================================================================


def test_collecting_every_reward_ends_the_round_once():
    orchestrator = start_cursor_round(make_round())
    scores = []
    for step, reward in enumerate(list(orchestrator.rewards)):
        orchestrator.pointer_move(reward.x, reward.y, 100 * (step + 1))
        scores.append(orchestrator.score)

    assert orchestrator.phase is RoundPhase.ENDED
    assert scores == sorted(scores)
    assert scores[-1] == 4

    (terminal,) = terminal_events(orchestrator)
    assert terminal.event_type is EventType.ROUND_END
    assert terminal.metadata["reason"] == "all_rewards"
    assert terminal.metadata["total_rewards_collected"] == 4

    assert len(orchestrator.outbox.rounds) == 1
    record = orchestrator.round
    assert record.end_reason is EndReason.ALL_REWARDS
    assert record.rewards_collected == 4
    assert all(r.collected for r in record.resource_positions)

    hits = [e for e in orchestrator.events if e.event_type is EventType.REWARD_HIT]
    assert len(hits) == 4
    timestamps = [e.timestamp_ms for e in orchestrator.events]
    assert timestamps == sorted(timestamps)
    assert all(t >= 0 for t in timestamps)


def test_second_finalization_is_a_silent_no_op():
    orchestrator = start_cursor_round(make_round())
    first = orchestrator.end_round(EndReason.TIMEOUT, 500)
    assert first is not None
    assert orchestrator.end_round(EndReason.ALL_REWARDS, 600) is None
    assert orchestrator.end_round("timeout") is None
    assert orchestrator.round is first
    assert len(orchestrator.outbox.rounds) == 1
    assert len(terminal_events(orchestrator)) == 1


def test_timeout_reports_authoritative_score():
    orchestrator = start_cursor_round(make_round(make_config(time_limit_ms=1000)))
    reward = orchestrator.rewards[0]
    orchestrator.pointer_move(reward.x, reward.y, 200)
    orchestrator.tick(999)
    assert orchestrator.phase is RoundPhase.ACTIVE
    orchestrator.tick(1000)

    assert orchestrator.end_reason is EndReason.TIMEOUT
    (terminal,) = terminal_events(orchestrator)
    assert terminal.event_type is EventType.TIMEOUT
    assert terminal.metadata == {
        "reason": "timeout",
        "total_rewards_collected": 1,
        "duration_ms": 1000,
    }
    assert orchestrator.round.rewards_collected == 1
    assert orchestrator.round.duration_ms == 1000


def test_timeout_first_then_last_reward():
    orchestrator = start_cursor_round(make_round(make_config(time_limit_ms=1000)))
    *others, last = orchestrator.rewards
    for reward in others:
        orchestrator.pointer_move(reward.x, reward.y, 100)

    orchestrator.tick(1000)
    orchestrator.pointer_move(last.x, last.y, 1000)

    assert [e.event_type for e in terminal_events(orchestrator)] == [EventType.TIMEOUT]
    assert orchestrator.round.rewards_collected == 3
    assert len(orchestrator.outbox.rounds) == 1


def test_last_reward_first_then_timeout():
    orchestrator = start_cursor_round(make_round(make_config(time_limit_ms=1000)))
    for reward in orchestrator.rewards:
        orchestrator.pointer_move(reward.x, reward.y, 999)
    orchestrator.tick(1000)

    assert [e.event_type for e in terminal_events(orchestrator)] == [EventType.ROUND_END]
    assert orchestrator.round.end_reason is EndReason.ALL_REWARDS
    assert len(orchestrator.outbox.rounds) == 1


def wide_reach_config() -> ArenaConfig:
    config = make_config(n_rewards=3, time_limit_ms=1000)
    return config.model_copy(update={"hit_radius": 5000})


def test_late_agent_frame_times_out_before_moving():
    orchestrator = make_round(wide_reach_config(), mode=InputMode.AGENT)
    orchestrator.request_start(0)
    start = orchestrator.simulator.agent
    orchestrator.tick(1500)

    assert orchestrator.end_reason is EndReason.TIMEOUT
    assert orchestrator.round.rewards_collected == 0
    assert orchestrator.simulator.agent == start
    kinds = [e.event_type for e in orchestrator.events]
    assert kinds == [EventType.ROUND_START, EventType.TIMEOUT]


def test_late_pointer_move_times_out_before_collecting():
    orchestrator = start_cursor_round(make_round(wide_reach_config()))
    orchestrator.pointer_move(500, 500, 1500)

    assert orchestrator.end_reason is EndReason.TIMEOUT
    assert orchestrator.round.rewards_collected == 0
    assert orchestrator.round.duration_ms == 1500
    assert not any(e.event_type is EventType.REWARD_HIT for e in orchestrator.events)


def test_no_collection_after_end():
    orchestrator = start_cursor_round(make_round())
    orchestrator.end_round(EndReason.TIMEOUT, 100)
    reward = orchestrator.rewards[0]
    orchestrator.pointer_move(reward.x, reward.y, 200)
    assert orchestrator.score == 0
    assert not reward.collected


def test_final_score_is_validated_before_anything_changes():
    orchestrator = start_cursor_round(make_round())
    with pytest.raises(ValueError):
        orchestrator.end_round(EndReason.TIMEOUT, 100, final_score=99)
    assert orchestrator.phase is RoundPhase.ACTIVE

    record = orchestrator.end_round(EndReason.TIMEOUT, 100, final_score=2)
    assert record.rewards_collected == 2


def test_invalid_transitions_raise():
    orchestrator = make_round()
    with pytest.raises(InvalidTransitionError):
        orchestrator.end_round(EndReason.TIMEOUT)
    with pytest.raises(InvalidTransitionError):
        orchestrator.result()

    orchestrator.request_start(0)
    orchestrator.end_round(EndReason.TIMEOUT, 10)
    with pytest.raises(InvalidTransitionError) as excinfo:
        orchestrator.request_start(20)
    assert excinfo.value.phase is RoundPhase.ENDED


def test_input_for_the_other_mode_is_rejected():
    cursor_round = make_round(mode=InputMode.CURSOR)
    with pytest.raises(ValueError):
        cursor_round.set_steering(True, False)

    agent_round = make_round(mode=InputMode.AGENT)
    with pytest.raises(ValueError):
        agent_round.pointer_move(10, 10, 0)


def test_post_round_delay_gates_next_round():
    orchestrator = start_cursor_round(make_round(make_config(post_round_delay_ms=2000)))
    assert not orchestrator.ready_for_next(0)
    orchestrator.end_round(EndReason.TIMEOUT, 500)
    assert orchestrator.countdown_remaining(1000) == 2
    assert not orchestrator.ready_for_next(1000)
    assert orchestrator.ready_for_next(2500)


def test_agent_round_flushes_partial_batch_at_end():
    orchestrator = make_round(make_config(n_rewards=20, time_limit_ms=1000), mode=InputMode.AGENT)
    orchestrator.request_start(0)
    now = 0
    while orchestrator.phase is not RoundPhase.ENDED:
        now += 16
        orchestrator.tick(now)

    assert orchestrator.end_reason is EndReason.TIMEOUT
    assert len(orchestrator.movements) >= 8
    queued = [s for batch in orchestrator.outbox.movement_batches for s in batch]
    assert queued == orchestrator.movements
    assert all(s.round_index == 0 and s.condition is Condition.DIFFUSE for s in queued)

    stats = orchestrator.result().stats
    assert stats.round_index == 0
    assert stats.total_distance > 0


def test_cursor_samples_only_while_pointer_inside():
    orchestrator = make_round()
    orchestrator.request_start(0)
    orchestrator.pointer_move(100, 100, 10)
    orchestrator.tick(40)
    assert orchestrator.movements == []

    orchestrator.pointer_enter()
    orchestrator.tick(80)
    orchestrator.end_round(EndReason.TIMEOUT, 90)
    assert len(orchestrator.movements) == 1

    kinds = [e.event_type for e in orchestrator.events]
    assert kinds == [EventType.ROUND_START, EventType.MOUSE_ENTER, EventType.TIMEOUT]


@pytest.mark.asyncio
async def test_round_flush_to_persistence():
    persistence = InMemoryPersistence()
    orchestrator = start_cursor_round(make_round())
    orchestrator.end_round(EndReason.TIMEOUT, 100)

    # round_start, mouse_enter, timeout and the round record
    written = await orchestrator.flush_to(persistence)
    assert written == 4
    assert len(await persistence.get_rounds("session-1")) == 1
    assert await orchestrator.flush_to(persistence) == 0


# ============================================================================
# Session runner
# ============================================================================


class FakeClock:
    """Monotonic millisecond clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds * 1000


def make_session(persistence, clock, **kwargs):
    kwargs.setdefault("condition", Condition.DIFFUSE)
    return ExperimentSession(
        make_config(time_limit_ms=500),
        "p1",
        persistence=persistence,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_session_runs_and_persists_every_round():
    persistence = InMemoryPersistence()
    clock = FakeClock()
    session = make_session(persistence, clock, session_id="s1")

    results = await session.run(n_rounds=2)

    assert [r.round.round_index for r in results] == [0, 1]
    stored = await persistence.get_rounds("s1")
    assert [r.round_index for r in stored] == [0, 1]

    record = await persistence.get_session("s1")
    assert record.status == "complete"
    assert record.rounds_completed == 2
    assert record.end_timestamp is not None

    events = await persistence.get_events("s1", round_index=1)
    assert events[0].event_type is EventType.ROUND_START
    assert events[-1].event_type.is_terminal
    assert len(await persistence.get_movements("s1")) == sum(len(r.movements) for r in results)


@pytest.mark.asyncio
async def test_explicit_zero_rounds_plays_none():
    persistence = InMemoryPersistence()
    session = make_session(persistence, FakeClock(), session_id="s-empty")

    assert await session.run(n_rounds=0) == []
    assert await persistence.get_rounds("s-empty") == []
    record = await persistence.get_session("s-empty")
    assert record.status == "complete"
    assert record.rounds_completed == 0


@pytest.mark.asyncio
async def test_condition_is_reused_across_sessions():
    persistence = InMemoryPersistence()
    first = make_session(persistence, FakeClock(), condition=Condition.DIFFUSE)
    await first.run(n_rounds=1)

    second = make_session(persistence, FakeClock(), condition=Condition.CONCENTRATED)
    await second.run(n_rounds=1)

    assert second.condition is Condition.DIFFUSE
    profile = await persistence.get_participant("p1")
    assert profile.assigned_condition is Condition.DIFFUSE


@pytest.mark.asyncio
async def test_new_participant_draws_from_scheme():
    session = make_session(
        InMemoryPersistence(),
        FakeClock(),
        condition=None,
        scheme=ConditionScheme.CLUSTER_NOISE,
    )
    condition = await session.resolve_condition()
    assert condition in (Condition.CLUSTER, Condition.NOISE)


class FailingPersistence(InMemoryPersistence):
    def __init__(self):
        super().__init__()
        self.closed = False

    async def append_round(self, round_record):
        raise RuntimeError("disk full")

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_failure_marks_session_incomplete_and_closes_backend():
    persistence = FailingPersistence()
    session = make_session(persistence, FakeClock(), session_id="s-fail")

    with pytest.raises(RuntimeError, match="disk full"):
        await session.run(n_rounds=2)

    record = await persistence.get_session("s-fail")
    assert record.status == "incomplete"
    assert record.end_timestamp is not None
    assert persistence.closed


@pytest.mark.asyncio
async def test_maze_training_times_out_and_rounds_still_run():
    persistence = InMemoryPersistence()
    session = make_session(
        persistence,
        FakeClock(),
        session_id="s-maze",
        maze_controller=lambda trainer, now: None,
        maze_timeout_ms=2000,
    )

    results = await session.run(n_rounds=1)

    assert len(results) == 1
    record = await persistence.get_session("s-maze")
    assert record.maze_completed is False
    maze_events = await persistence.get_events("s-maze", round_index=-1)
    kinds = [e.event_type for e in maze_events]
    assert kinds[0] is EventType.MAZE_START
    assert EventType.MAZE_COLLISION in kinds
    assert EventType.MAZE_COMPLETE not in kinds
