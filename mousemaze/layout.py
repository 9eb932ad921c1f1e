"""
Deterministic reward layout generation.

A round layout is a pure function of ``(condition, seed)`` where the seed is the
string ``"{participant_key}|{round_index}"``. All randomness flows through one
``SeededRandom`` instance, so regenerating a layout reproduces it exactly.

Two condition families are supported:

- Structured (CONCENTRATED / CLUSTER): ``k`` cluster centers placed by
  rejection sampling under a minimum pairwise separation and an edge margin,
  with rewards split evenly across clusters and sampled inside each cluster's
  shape (circle or diamond).
- Diffuse (DIFFUSE / NOISE): rewards drawn uniformly over the canvas minus an
  edge margin.

Both families share one placement policy that degrades in three tiers:

1. strict: up to ``max_attempts_per_reward`` draws, rejecting candidates closer
   than the current spacing to any placed reward;
2. relaxed: shrink the spacing (``spacing_decay``, floored at
   ``spacing_floor``) and try one more draw against the shrunk spacing;
3. unconditional: once the global attempt budget is spent, remaining rewards
   are placed without any spacing check.

The generator therefore always returns exactly ``n_rewards`` rewards.
Constraint exhaustion is never an error.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .config import LayoutConfig
from .geometry import Point, clamp, distance, js_round
from .logging_utils import log_error
from .rng import SeededRandom
from .schemas import ClusterCenter, ClusterParams, ClusterShape, Condition, Reward


class LayoutInvariantError(Exception):
    """Raised in strict mode when a layout misses its reward count.

    The placement policy guarantees the count by construction, so this
    indicates a defect in the generator rather than an unlucky seed.
    """

    def __init__(self, *, seed: str, produced: int, expected: int) -> None:
        self.seed = seed
        self.produced = produced
        self.expected = expected
        super().__init__(
            f"Layout for seed '{seed}' produced {produced} rewards, expected {expected}.\n\n"
            "The final fallback placement should make this unreachable; "
            "check recent changes to the layout generator."
        )


class RoundLayout(BaseModel):
    """Rewards for one round plus the structure used to place them."""

    rewards: List[Reward] = Field(default_factory=list)
    cluster_params: Optional[ClusterParams] = None
    final_spacing: float = Field(
        0.0, description="Spacing in force when placement finished (after relaxation)"
    )


def layout_seed(participant_key: str, round_index: int) -> str:
    """Build the layout seed string for a participant's round."""
    return f"{participant_key}|{round_index}"


# ============================================================================
# Cluster shapes
# ============================================================================


class ClusterSampler(ABC):
    """Strategy that draws points inside one cluster's shape."""

    def __init__(self, config: LayoutConfig):
        self.config = config

    @abstractmethod
    def make_center(self, x: float, y: float) -> ClusterCenter:
        """Describe a cluster centered at (x, y)."""

    @abstractmethod
    def sample(self, rng: SeededRandom, center: ClusterCenter) -> Point:
        """Draw a whole-pixel point inside the cluster."""


class CircleSampler(ClusterSampler):
    """Uniform points in a disc via rejection sampling from its bounding square."""

    def make_center(self, x: float, y: float) -> ClusterCenter:
        return ClusterCenter(x=x, y=y, radius=self.config.cluster_radius)

    def sample(self, rng: SeededRandom, center: ClusterCenter) -> Point:
        radius = center.radius or self.config.cluster_radius
        for _ in range(self.config.circle_max_attempts):
            dx = rng.next_float(-radius, radius)
            dy = rng.next_float(-radius, radius)
            if dx * dx + dy * dy <= radius * radius:
                return (js_round(center.x + dx), js_round(center.y + dy))
        return (js_round(center.x), js_round(center.y))


class DiamondSampler(ClusterSampler):
    """Uniform points in a rhombus via a unit-square to diamond transform.

    With u, v uniform in [0, 1), ``x = cx + h(u - v)`` and ``y = cy + h(u + v - 1)``
    maps the unit square onto the diamond whose vertices sit ``h`` (half the
    size) from the center along each axis.
    """

    def make_center(self, x: float, y: float) -> ClusterCenter:
        return ClusterCenter(x=x, y=y, size=self.config.diamond_size)

    def sample(self, rng: SeededRandom, center: ClusterCenter) -> Point:
        u = rng.next_float(0, 1)
        v = rng.next_float(0, 1)
        half = (center.size or self.config.diamond_size) / 2
        return (js_round(center.x + half * (u - v)), js_round(center.y + half * (u + v - 1)))


_SAMPLERS = {
    ClusterShape.CIRCLE: CircleSampler,
    ClusterShape.DIAMOND: DiamondSampler,
}


def cluster_sampler(config: LayoutConfig) -> ClusterSampler:
    return _SAMPLERS[config.cluster_shape](config)


# ============================================================================
# Spacing placement
# ============================================================================


class SpacingPlacer:
    """Places points under a minimum spacing that relaxes when crowded."""

    def __init__(self, config: LayoutConfig):
        self.config = config
        self.points: List[Point] = []
        self.current_spacing = config.reward_min_spacing
        self.total_attempts = 0
        self.max_total_attempts = config.n_rewards * config.max_attempts_per_reward * 3

    @property
    def exhausted(self) -> bool:
        return self.total_attempts >= self.max_total_attempts

    def respects_spacing(self, candidate: Point, spacing: float) -> bool:
        limit = spacing * spacing
        cx, cy = candidate
        for x, y in self.points:
            dx = cx - x
            dy = cy - y
            if dx * dx + dy * dy < limit:
                return False
        return True

    def try_place(self, draw: Callable[[], Point]) -> bool:
        """Place one point using the strict then relaxed tiers.

        Returns False when neither tier accepted a candidate; the caller keeps
        trying until the global budget runs out.
        """
        for _ in range(self.config.max_attempts_per_reward):
            candidate = draw()
            self.total_attempts += 1
            if self.respects_spacing(candidate, self.current_spacing):
                self.points.append(candidate)
                return True

        self.current_spacing = max(
            self.config.spacing_floor, self.current_spacing * self.config.spacing_decay
        )
        candidate = draw()
        self.total_attempts += 1
        if self.respects_spacing(candidate, self.current_spacing):
            self.points.append(candidate)
            return True
        return False

    def force_place(self, candidate: Point) -> None:
        self.points.append(candidate)


# ============================================================================
# Condition generators
# ============================================================================


def _placement_bounds(config: LayoutConfig, margin: float) -> Tuple[float, float]:
    return margin, min(config.canvas_size - margin, config.canvas_size - 1)


def generate_cluster_centers(
    rng: SeededRandom, config: LayoutConfig, sampler: ClusterSampler, k: int
) -> List[ClusterCenter]:
    """Place ``k`` centers under separation and margin constraints.

    Each center gets ``center_max_attempts`` tries; if none satisfies the
    separation the center is placed anyway at a fresh random spot.
    """
    extent = config.cluster_extent
    low = math.ceil(config.cluster_edge_margin + extent)
    high = math.floor(config.canvas_size - config.cluster_edge_margin - extent)
    if high < low:
        low = high = config.canvas_size // 2

    centers: List[ClusterCenter] = []
    for _ in range(k):
        placed = False
        for _ in range(config.center_max_attempts):
            candidate = (rng.next_int(low, high), rng.next_int(low, high))
            if all(
                distance(candidate, (c.x, c.y)) >= config.cluster_min_separation for c in centers
            ):
                centers.append(sampler.make_center(*candidate))
                placed = True
                break
        if not placed:
            centers.append(sampler.make_center(rng.next_int(low, high), rng.next_int(low, high)))
    return centers


def _generate_structured(rng: SeededRandom, config: LayoutConfig) -> Tuple[List[Point], ClusterParams, float]:
    if config.n_clusters_range is not None:
        k = rng.next_int(*config.n_clusters_range)
    else:
        k = config.n_clusters

    sampler = cluster_sampler(config)
    centers = generate_cluster_centers(rng, config, sampler, k)
    low, high = _placement_bounds(config, config.reward_edge_margin)

    def draw_in(center: ClusterCenter) -> Callable[[], Point]:
        def draw() -> Point:
            x, y = sampler.sample(rng, center)
            return (clamp(x, low, high), clamp(y, low, high))

        return draw

    placer = SpacingPlacer(config)
    per_cluster, extra = divmod(config.n_rewards, k)
    for index, center in enumerate(centers):
        target = per_cluster + (1 if index < extra else 0)
        draw = draw_in(center)
        placed = 0
        while placed < target and not placer.exhausted:
            if placer.try_place(draw):
                placed += 1

    while len(placer.points) < config.n_rewards:
        center = centers[len(placer.points) % k]
        placer.force_place(draw_in(center)())

    return placer.points, ClusterParams(k=k, centers=centers), placer.current_spacing


def _generate_diffuse(rng: SeededRandom, config: LayoutConfig) -> Tuple[List[Point], float]:
    low, high = _placement_bounds(config, config.diffuse_edge_margin)
    low_i, high_i = math.ceil(low), math.floor(high)

    def draw() -> Point:
        return (rng.next_int(low_i, high_i), rng.next_int(low_i, high_i))

    placer = SpacingPlacer(config)
    while len(placer.points) < config.n_rewards and not placer.exhausted:
        placer.try_place(draw)

    while len(placer.points) < config.n_rewards:
        placer.force_place(draw())

    return placer.points, placer.current_spacing


def generate_round_layout(
    condition: Condition | str,
    seed: str,
    config: Optional[LayoutConfig] = None,
    *,
    strict: bool = False,
) -> RoundLayout:
    """Generate the reward layout for one round.

    Args:
        condition: Experimental condition (structured or diffuse variant)
        seed: Seed string, normally ``layout_seed(participant_key, round_index)``
        config: Layout parameters (defaults to LayoutConfig())
        strict: Raise LayoutInvariantError instead of logging if the reward
            count post-condition fails

    Returns:
        RoundLayout with exactly ``config.n_rewards`` rewards
    """
    config = config or LayoutConfig()
    condition = Condition(condition)
    rng = SeededRandom(seed)

    cluster_params: Optional[ClusterParams] = None
    if condition.is_structured:
        points, cluster_params, final_spacing = _generate_structured(rng, config)
    else:
        points, final_spacing = _generate_diffuse(rng, config)

    rewards = [Reward(id=index, x=x, y=y) for index, (x, y) in enumerate(points)]

    if len(rewards) != config.n_rewards:
        log_error(
            f"[CRITICAL] {condition.value} generator produced {len(rewards)} rewards, "
            f"expected {config.n_rewards}"
        )
        if strict:
            raise LayoutInvariantError(seed=seed, produced=len(rewards), expected=config.n_rewards)

    return RoundLayout(rewards=rewards, cluster_params=cluster_params, final_spacing=final_spacing)


def generate_participant_layout(
    participant_key: str,
    round_index: int,
    condition: Condition | str,
    config: Optional[LayoutConfig] = None,
) -> RoundLayout:
    """Convenience wrapper seeding the layout from participant and round."""
    return generate_round_layout(condition, layout_seed(participant_key, round_index), config)
