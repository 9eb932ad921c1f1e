"""
Behavioral statistics for one round.

``calculate_round_stats`` is a pure function of the round's movement samples
and events. Every ratio guards its denominator, so the result is finite for
any input, and an empty sample list yields the default ``RoundStats`` with the
quadrant split at 25% each.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import StatsConfig
from .geometry import distance, heading_delta, velocity_px_per_s
from .schemas import (
    EventType,
    GameEvent,
    MovementSample,
    Position,
    QuadrantDistribution,
    RoundStats,
)


def calculate_velocity(current: Position, previous: Position, time_delta_ms: float) -> float:
    """Speed between two positions in px/s; 0 when no time elapsed."""
    return velocity_px_per_s((current.x, current.y), (previous.x, previous.y), time_delta_ms)


def calculate_distance(p1: Position, p2: Position) -> float:
    return distance((p1.x, p1.y), (p2.x, p2.y))


# ============================================================================
# Individual metrics
# ============================================================================


def path_efficiency(movements: Sequence[MovementSample], total_distance: float) -> float:
    """Straight-line distance first -> last over distance travelled."""
    if len(movements) < 2 or total_distance == 0:
        return 0.0
    first, last = movements[0], movements[-1]
    return distance((first.x, first.y), (last.x, last.y)) / total_distance


def coverage(movements: Sequence[MovementSample], config: StatsConfig) -> Tuple[float, float]:
    """Return (coverage_percent, revisit_rate) over a grid_size x grid_size grid."""
    cell_size = config.canvas_size / config.grid_size
    last_cell = config.grid_size - 1
    visits: Dict[Tuple[int, int], int] = {}
    for m in movements:
        cell = (
            min(max(int(m.x // cell_size), 0), last_cell),
            min(max(int(m.y // cell_size), 0), last_cell),
        )
        visits[cell] = visits.get(cell, 0) + 1

    visited = len(visits)
    coverage_percent = visited / (config.grid_size * config.grid_size) * 100
    revisit_rate = sum(visits.values()) / visited if visited else 0.0
    return coverage_percent, revisit_rate


def pause_metrics(movements: Sequence[MovementSample], config: StatsConfig) -> Tuple[int, float, float]:
    """Return (pauses_count, total_idle_time, mean_pause_duration).

    A pause is a run of consecutive idle samples lasting at least
    ``idle_duration_threshold`` from its first to its last idle sample. A run
    still open at the end of the round is judged the same way.
    """
    pauses = 0
    idle_total = 0.0
    run: Optional[Tuple[int, int]] = None

    def close(span: Tuple[int, int]) -> None:
        nonlocal pauses, idle_total
        duration = span[1] - span[0]
        if duration >= config.idle_duration_threshold:
            pauses += 1
            idle_total += duration

    for m in movements:
        if m.velocity < config.idle_velocity_threshold:
            run = (m.timestamp_ms, m.timestamp_ms) if run is None else (run[0], m.timestamp_ms)
        elif run is not None:
            close(run)
            run = None
    if run is not None:
        close(run)

    mean = idle_total / pauses if pauses else 0.0
    return pauses, idle_total, mean


def reward_timings(events: Iterable[GameEvent]) -> Tuple[float, float]:
    """Return (first_reward_latency, mean_inter_reward_interval) from reward_hit events."""
    hits = sorted(e.timestamp_ms for e in events if e.event_type == EventType.REWARD_HIT)
    if not hits:
        return 0.0, 0.0
    if len(hits) == 1:
        return float(hits[0]), 0.0
    gaps = [later - earlier for earlier, later in zip(hits, hits[1:])]
    return float(hits[0]), sum(gaps) / len(gaps)


def rotation_metrics(movements: Sequence[MovementSample], config: StatsConfig) -> Tuple[int, float]:
    """Return (total_rotations, mean_turn_angle) from heading changes between samples."""
    turns: List[float] = []
    for previous, current in zip(movements, movements[1:]):
        change = abs(heading_delta(current.heading, previous.heading))
        if change > config.turn_threshold_deg:
            turns.append(change)
    if not turns:
        return 0, 0.0
    return len(turns), sum(turns) / len(turns)


def spatial_bias(
    movements: Sequence[MovementSample], config: StatsConfig
) -> Tuple[float, float, QuadrantDistribution]:
    """Return (edge_time_percent, center_bias, quadrant_distribution)."""
    if not movements:
        return 0.0, 0.0, QuadrantDistribution()

    size = config.canvas_size
    edge = config.edge_region_width
    center_min = (size - config.center_region_size) / 2
    center_max = (size + config.center_region_size) / 2
    midpoint = size / 2

    edge_samples = 0
    center_samples = 0
    quadrants = {"nw": 0, "ne": 0, "sw": 0, "se": 0}
    for m in movements:
        if m.x < edge or m.x > size - edge or m.y < edge or m.y > size - edge:
            edge_samples += 1
        if center_min <= m.x <= center_max and center_min <= m.y <= center_max:
            center_samples += 1

        vertical = "n" if m.y < midpoint else "s"
        horizontal = "w" if m.x < midpoint else "e"
        quadrants[vertical + horizontal] += 1

    total = len(movements)
    non_edge = total - edge_samples
    center_bias = center_samples / non_edge if non_edge else 0.0
    distribution = QuadrantDistribution(**{k: v / total * 100 for k, v in quadrants.items()})
    return edge_samples / total * 100, center_bias, distribution


# ============================================================================
# Round summary
# ============================================================================


def calculate_round_stats(
    movements: Iterable[MovementSample],
    events: Iterable[GameEvent],
    duration_ms: float,
    rewards_collected: int,
    config: Optional[StatsConfig] = None,
    *,
    session_id: Optional[str] = None,
    round_index: Optional[int] = None,
) -> RoundStats:
    """Summarize one round.

    Args:
        movements: Samples of the round, in any order
        events: Events of the round; only reward_hit events are used
        duration_ms: Round duration
        rewards_collected: Authoritative collected count
        config: Thresholds and canvas geometry (defaults to StatsConfig())
        session_id: Copied onto the result
        round_index: Copied onto the result

    Returns:
        RoundStats with every field finite
    """
    config = config or StatsConfig()
    completion_rate = rewards_collected / config.n_rewards * 100 if config.n_rewards else 0.0
    base = RoundStats(
        session_id=session_id,
        round_index=round_index,
        time_to_finish=duration_ms,
        rewards_collected=rewards_collected,
        completion_rate=completion_rate,
    )

    # sorted() is stable, so equal timestamps keep their arrival order
    ordered = sorted(movements, key=lambda m: m.timestamp_ms)
    if not ordered:
        return base

    total_distance = sum(m.distance_from_last for m in ordered)
    velocities = [m.velocity for m in ordered]
    coverage_percent, revisit_rate = coverage(ordered, config)
    pauses, idle_total, mean_pause = pause_metrics(ordered, config)
    first_latency, mean_interval = reward_timings(events)
    rotations, mean_turn = rotation_metrics(ordered, config)
    edge_percent, center_bias, quadrants = spatial_bias(ordered, config)

    return base.model_copy(
        update={
            "total_distance": total_distance,
            "mean_velocity": sum(velocities) / len(velocities),
            "max_velocity": max(velocities),
            "path_efficiency": path_efficiency(ordered, total_distance),
            "coverage_percent": coverage_percent,
            "revisit_rate": revisit_rate,
            "pauses_count": pauses,
            "total_idle_time": idle_total,
            "mean_pause_duration": mean_pause,
            "first_reward_latency": first_latency,
            "mean_inter_reward_interval": mean_interval,
            "total_rotations": rotations,
            "mean_turn_angle": mean_turn,
            "edge_time_percent": edge_percent,
            "center_bias": center_bias,
            "quadrant_distribution": quadrants,
        }
    )
