"""Tests for the persistence backends and the outbox."""

from datetime import datetime, timezone

import pytest

from mousemaze.persistence import InMemoryPersistence, JsonPersistence, Outbox
from mousemaze.schemas import (
    Condition,
    EndReason,
    EventType,
    GameEvent,
    MovementSample,
    ParticipantProfile,
    Reward,
    Round,
    SessionRecord,
)

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_sample(round_index: int, t: int, session_id: str = "s1") -> MovementSample:
    return MovementSample(
        session_id=session_id,
        participant_id="p1",
        condition=Condition.DIFFUSE,
        round_index=round_index,
        timestamp_ms=t,
        timestamp_abs=T0,
        x=10 + t,
        y=20,
        velocity=30.0,
        distance_from_last=3.0,
    )


def make_event(round_index: int, event_type: EventType = EventType.REWARD_HIT) -> GameEvent:
    return GameEvent(
        session_id="s1",
        round_index=round_index,
        event_type=event_type,
        timestamp_ms=100,
        timestamp_abs=T0,
        metadata={"reward_index": 3, "reward_position": {"x": 1.0, "y": 2.0}},
    )


def make_round(round_index: int) -> Round:
    return Round(
        session_id="s1",
        round_index=round_index,
        condition=Condition.DIFFUSE,
        start_timestamp=T0,
        end_timestamp=T0,
        duration_ms=60000,
        rewards_collected=1,
        resource_positions=[Reward(id=0, x=5, y=6, collected=True, timestamp_collected=T0)],
        end_reason=EndReason.TIMEOUT,
    )


def make_session() -> SessionRecord:
    return SessionRecord(
        session_id="s1",
        participant_id="p1",
        condition=Condition.DIFFUSE,
        start_timestamp=T0,
        config={"n_rewards": 700},
    )


@pytest.fixture(params=["memory", "json"])
def backend(request, tmp_path):
    if request.param == "memory":
        return InMemoryPersistence()
    return JsonPersistence(tmp_path / "sessions")


@pytest.mark.asyncio
async def test_participant_round_trip(backend):
    await backend.initialize()
    assert await backend.get_participant("p1") is None

    profile = ParticipantProfile(
        participant_key="p1", assigned_condition=Condition.NOISE, created_at=T0
    )
    await backend.save_participant(profile)
    assert await backend.get_participant("p1") == profile


@pytest.mark.asyncio
async def test_session_status_updates(backend):
    await backend.initialize()
    await backend.save_session(make_session())
    await backend.update_session_status("s1", "in_progress", rounds_completed=2, maze_completed=True)
    await backend.update_session_status("s1", "complete", end_timestamp=T0)

    record = await backend.get_session("s1")
    assert record.status == "complete"
    assert record.rounds_completed == 2
    assert record.maze_completed is True
    assert record.end_timestamp == T0

    # Unknown sessions are ignored
    await backend.update_session_status("missing", "complete")
    assert await backend.get_session("missing") is None


@pytest.mark.asyncio
async def test_stream_records_keep_order_and_filter_by_round(backend):
    await backend.initialize()
    await backend.append_movement_batch([make_sample(0, 1), make_sample(0, 2)])
    await backend.append_movement_batch([make_sample(1, 1)])
    await backend.append_event(make_event(0))
    await backend.append_event(make_event(-1, EventType.MAZE_START))
    await backend.append_round(make_round(0))

    movements = await backend.get_movements("s1")
    assert [(m.round_index, m.timestamp_ms) for m in movements] == [(0, 1), (0, 2), (1, 1)]
    assert len(await backend.get_movements("s1", round_index=1)) == 1

    events = await backend.get_events("s1", round_index=-1)
    assert [e.event_type for e in events] == [EventType.MAZE_START]
    assert (await backend.get_events("s1"))[0].metadata["reward_position"] == {"x": 1.0, "y": 2.0}

    (stored,) = await backend.get_rounds("s1")
    assert stored == make_round(0)
    await backend.close()


@pytest.mark.asyncio
async def test_delete_session(backend):
    await backend.initialize()
    await backend.save_session(make_session())
    await backend.append_event(make_event(0))
    await backend.delete_session("s1")

    assert await backend.get_session("s1") is None
    assert await backend.get_events("s1") == []
    await backend.delete_session("s1")


@pytest.mark.asyncio
async def test_json_backend_writes_one_line_per_record(tmp_path):
    backend = JsonPersistence(tmp_path)
    await backend.initialize()
    await backend.append_movement_batch([make_sample(0, t) for t in range(5)])

    lines = (tmp_path / "sessions" / "s1" / "movements.jsonl").read_text().splitlines()
    assert len(lines) == 5


@pytest.mark.asyncio
async def test_outbox_drains_before_writing():
    persistence = InMemoryPersistence()
    outbox = Outbox()
    outbox.add_movement_batch([make_sample(0, 1), make_sample(0, 2)])
    outbox.add_movement_batch([])
    outbox.add_event(make_event(0))
    outbox.add_round(make_round(0))
    assert len(outbox) == 4
    assert len(outbox.movement_batches) == 1

    assert await outbox.flush_to(persistence) == 4
    assert len(outbox) == 0
    assert len(await persistence.get_movements("s1")) == 2
    assert await outbox.flush_to(persistence) == 0


def test_outbox_drain_moves_records():
    outbox = Outbox()
    outbox.add_event(make_event(0))
    drained = outbox.drain()
    assert len(drained.events) == 1
    assert outbox.events == []
