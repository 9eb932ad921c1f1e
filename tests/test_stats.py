"""Tests for per-round behavioral statistics."""

import math
from datetime import datetime, timezone

import pytest

from mousemaze.config import StatsConfig
from mousemaze.schemas import EventType, GameEvent, MovementSample, Position
from mousemaze.stats import calculate_distance, calculate_round_stats, calculate_velocity

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def sample(t, x=500.0, y=500.0, velocity=0.0, heading=0.0, dist=0.0):
    return MovementSample(
        session_id="s",
        round_index=0,
        timestamp_ms=t,
        timestamp_abs=T0,
        x=x,
        y=y,
        heading=heading,
        velocity=velocity,
        distance_from_last=dist,
    )


def hit(t):
    return GameEvent(
        session_id="s",
        round_index=0,
        event_type=EventType.REWARD_HIT,
        timestamp_ms=t,
        timestamp_abs=T0,
    )


def test_helpers():
    a = Position(x=0, y=0)
    b = Position(x=3, y=4)
    assert calculate_distance(a, b) == 5
    assert calculate_velocity(b, a, 100) == 50
    assert calculate_velocity(b, a, 0) == 0


def test_empty_round_gives_finite_defaults():
    stats = calculate_round_stats([], [], 60000, 0, session_id="s", round_index=3)
    values = stats.model_dump()
    for key, value in values.items():
        if isinstance(value, float):
            assert math.isfinite(value), key
    assert stats.first_reward_latency == 0
    assert stats.quadrant_distribution.model_dump() == {"nw": 25, "ne": 25, "sw": 25, "se": 25}
    assert (stats.session_id, stats.round_index, stats.time_to_finish) == ("s", 3, 60000)


def test_pause_at_exact_threshold_counts():
    movements = [
        sample(0, velocity=100),
        sample(100),
        sample(350),
        sample(600),
        sample(700, velocity=100),
    ]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.pauses_count == 1
    assert stats.total_idle_time == 500
    assert stats.mean_pause_duration == 500


def test_pause_just_below_threshold_is_ignored():
    movements = [
        sample(0, velocity=100),
        sample(100),
        sample(350),
        sample(599),
        sample(700, velocity=100),
    ]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.pauses_count == 0
    assert stats.total_idle_time == 0
    assert stats.mean_pause_duration == 0


def test_pause_open_at_round_end_counts():
    movements = [sample(0, velocity=100), sample(100), sample(700)]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.pauses_count == 1
    assert stats.total_idle_time == 600


def test_reward_latency_and_interval():
    events = [hit(t) for t in (9000, 1000, 5000, 20000, 9000)]
    stats = calculate_round_stats([sample(0)], events, 60000, 5)
    assert stats.first_reward_latency == 1000
    assert stats.mean_inter_reward_interval == 4750


def test_single_reward_has_no_interval():
    stats = calculate_round_stats([sample(0)], [hit(2500)], 60000, 1)
    assert stats.first_reward_latency == 2500
    assert stats.mean_inter_reward_interval == 0


def test_coverage_and_revisits():
    movements = [sample(0, 50, 50), sample(100, 50, 50), sample(200, 150, 50)]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.coverage_percent == pytest.approx(2.0)
    assert stats.revisit_rate == pytest.approx(1.5)


def test_positions_on_far_edge_stay_in_grid():
    stats = calculate_round_stats([sample(0, 1000, 1000)], [], 1000, 0)
    assert stats.coverage_percent == pytest.approx(1.0)


def test_spatial_bias():
    movements = [sample(0, 50, 50), sample(100, 600, 600)]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.edge_time_percent == 50
    assert stats.center_bias == 1.0
    quadrants = stats.quadrant_distribution
    assert (quadrants.nw, quadrants.ne, quadrants.sw, quadrants.se) == (50, 0, 0, 50)


def test_all_edge_samples_leave_center_bias_zero():
    stats = calculate_round_stats([sample(0, 10, 10), sample(1, 990, 990)], [], 1000, 0)
    assert stats.edge_time_percent == 100
    assert stats.center_bias == 0


def test_distance_velocity_and_path_efficiency():
    movements = [
        sample(0, 100, 100, velocity=0, dist=0),
        sample(100, 300, 100, velocity=2000, dist=200),
        sample(200, 200, 100, velocity=1000, dist=100),
        sample(300, 300, 100, velocity=1000, dist=100),
    ]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.total_distance == 400
    assert stats.mean_velocity == 1000
    assert stats.max_velocity == 2000
    assert stats.path_efficiency == pytest.approx(0.5)


def test_completion_rate_uses_configured_reward_count():
    stats = calculate_round_stats([], [], 1000, 5, StatsConfig(n_rewards=20))
    assert stats.completion_rate == 25
    assert stats.rewards_collected == 5


def test_completion_rate_without_rewards_is_zero():
    stats = calculate_round_stats([], [], 1000, 0, StatsConfig(n_rewards=0))
    assert stats.completion_rate == 0


def test_rotation_counts_turns_above_threshold():
    movements = [
        sample(0, heading=0),
        sample(100, heading=10),
        sample(200, heading=10.5),
        sample(300, heading=350),
    ]
    stats = calculate_round_stats(movements, [], 1000, 0)
    assert stats.total_rotations == 2
    assert stats.mean_turn_angle == pytest.approx(15.25)


def test_unsorted_samples_are_ordered_by_time():
    ordered = [sample(0, 100, 100, dist=0), sample(100, 300, 100, dist=200)]
    shuffled = list(reversed(ordered))
    assert calculate_round_stats(shuffled, [], 1000, 0) == calculate_round_stats(ordered, [], 1000, 0)
    assert calculate_round_stats(shuffled, [], 1000, 0).path_efficiency == 1.0
