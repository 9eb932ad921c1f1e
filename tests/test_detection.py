"""Tests for idempotent reward collection."""

from mousemaze.detection import RewardDetector
from mousemaze.schemas import AgentState, EventType, Position, Reward


def make_rewards():
    return [
        Reward(id=0, x=100, y=100),
        Reward(id=1, x=200, y=200),
        Reward(id=2, x=300, y=300),
    ]


def make_detector(rewards=None, **kwargs):
    detector = RewardDetector(
        rewards if rewards is not None else make_rewards(),
        session_id="s",
        round_index=0,
        **kwargs,
    )
    detector.arm(1000)
    return detector


def test_same_position_twice_counts_once():
    events = []
    detector = make_detector(on_event=events.append)
    first = detector.check_position((100, 100), 1500)
    second = detector.check_position((100, 100), 1516)

    assert [r.id for r in first] == [0]
    assert second == []
    assert detector.collected_count == 1
    assert detector.collected_ids == frozenset({0})
    assert len(events) == 1


def test_hit_radius_is_inclusive():
    detector = make_detector(hit_radius=5)
    assert detector.check_position(Position(x=103, y=104), 1100)
    assert not detector.check_position(Position(x=206, y=200), 1100)


def test_collection_marks_reward():
    rewards = make_rewards()
    detector = make_detector(rewards)
    detector.check_position((200, 200), 1100)
    assert rewards[1].collected
    assert rewards[1].timestamp_collected is not None
    assert not rewards[0].collected


def test_positions_ignored_until_armed():
    detector = RewardDetector(make_rewards(), session_id="s", round_index=0)
    assert detector.check_position((100, 100), 0) == []
    detector.arm(0)
    assert len(detector.check_position((100, 100), 0)) == 1
    detector.disarm()
    assert detector.check_position((200, 200), 0) == []


def test_all_collected_fires_exactly_once():
    calls = []
    detector = make_detector(on_all_collected=lambda: calls.append(1))
    for point in [(100, 100), (200, 200), (300, 300), (300, 300), (100, 100)]:
        detector.check_position(point, 2000)
    assert calls == [1]
    assert detector.all_collected
    assert detector.collected_count == 3


def test_scan_stops_when_target_reached():
    stacked = [Reward(id=i, x=50, y=50) for i in range(3)]
    detector = make_detector(stacked, target_count=2)
    collected = detector.check_position((50, 50), 1200)
    assert len(collected) == 2
    assert detector.collected_count == 2
    assert detector.check_position((50, 50), 1300) == []


def test_reentrant_callback_cannot_double_count():
    detector = None
    counts = []

    def on_collected(reward, count):
        counts.append(count)
        detector.check_position((reward.x, reward.y), 1300)

    detector = make_detector(on_reward_collected=on_collected)
    detector.check_position((100, 100), 1300)
    assert counts == [1]
    assert detector.collected_count == 1


def test_reward_hit_event_metadata():
    events = []
    sounds = []
    detector = make_detector(on_event=events.append, on_collect=lambda: sounds.append("ding"))
    agent = AgentState(x=101, y=99, heading=45, velocity=3)
    detector.check_position((agent.x, agent.y), 1750, agent=agent)

    (event,) = events
    assert event.event_type is EventType.REWARD_HIT
    assert event.timestamp_ms == 750
    assert event.metadata == {
        "reward_index": 0,
        "reward_position": {"x": 100, "y": 100},
        "total_rewards_collected": 1,
        "agent_position": {"x": 101, "y": 99},
        "agent_heading": 45,
    }
    assert sounds == ["ding"]


def test_cursor_hits_omit_agent_pose():
    events = []
    detector = make_detector(on_event=events.append)
    detector.check_position((300, 300), 1100)
    assert "agent_position" not in events[0].metadata


def test_reset_clears_collected_set():
    detector = make_detector()
    detector.check_position((100, 100), 1100)
    detector.reset([Reward(id=0, x=10, y=10)])
    assert detector.collected_count == 0
    assert detector.target_count == 1
    assert not detector.armed
