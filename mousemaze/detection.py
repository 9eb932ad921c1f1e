"""Reward collection detection.

The detector owns the set of collected reward ids. A reward is added to that
set before any callback runs, so a repeated position update or a re-entrant
callback can never count the same reward twice. The collected count is always
the size of the set.
"""

from __future__ import annotations

from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from .geometry import js_round
from .physics import WallClock, utc_now
from .schemas import AgentState, EventType, GameEvent, Position, Reward

PointLike = Union[Position, Tuple[float, float]]


class RewardDetector:
    """Marks rewards collected when a position comes within the hit radius.

    Args:
        rewards: The round's rewards; ``collected`` flags are written here
        session_id: Session the emitted events belong to
        round_index: Round the emitted events belong to
        hit_radius: Collection distance in px (inclusive)
        target_count: Count that ends the round; defaults to ``len(rewards)``
        on_event: Receives each ``reward_hit`` GameEvent
        on_reward_collected: Called with (reward, collected_count)
        on_all_collected: Called exactly once when the target count is reached
        on_collect: Side-effect hook (sound, visual reveal), no arguments
    """

    def __init__(
        self,
        rewards: List[Reward],
        *,
        session_id: str,
        round_index: int,
        hit_radius: float = 5.0,
        target_count: Optional[int] = None,
        on_event: Optional[Callable[[GameEvent], None]] = None,
        on_reward_collected: Optional[Callable[[Reward, int], None]] = None,
        on_all_collected: Optional[Callable[[], None]] = None,
        on_collect: Optional[Callable[[], None]] = None,
        wall_clock: Optional[WallClock] = None,
    ):
        self.session_id = session_id
        self.round_index = round_index
        self.hit_radius = hit_radius
        self.on_event = on_event
        self.on_reward_collected = on_reward_collected
        self.on_all_collected = on_all_collected
        self.on_collect = on_collect
        self.wall_clock = wall_clock or utc_now

        self._rewards: Dict[int, Reward] = {}
        self._collected: Set[int] = set()
        self._target_count = 0
        self._explicit_target = target_count
        self._all_fired = False
        self._armed = False
        self._round_start_ms = 0.0
        self._last_timestamp_ms = 0
        self.reset(rewards)

    @property
    def collected_ids(self) -> FrozenSet[int]:
        return frozenset(self._collected)

    @property
    def collected_count(self) -> int:
        return len(self._collected)

    @property
    def target_count(self) -> int:
        return self._target_count

    @property
    def all_collected(self) -> bool:
        return self._all_fired

    @property
    def armed(self) -> bool:
        return self._armed

    def arm(self, round_start_ms: float) -> None:
        """Start accepting positions; event timestamps are relative to this time."""
        self._armed = True
        self._round_start_ms = round_start_ms
        self._last_timestamp_ms = 0

    def disarm(self) -> None:
        self._armed = False

    def reset(self, rewards: Optional[List[Reward]] = None) -> None:
        """Clear the collected set, optionally swapping in a new reward list."""
        if rewards is not None:
            self._rewards = {reward.id: reward for reward in rewards}
        self._collected = set()
        self._all_fired = False
        self._armed = False
        self._target_count = (
            len(self._rewards) if self._explicit_target is None else self._explicit_target
        )

    def check_position(
        self,
        point: PointLike,
        now_ms: float,
        agent: Optional[AgentState] = None,
    ) -> List[Reward]:
        """Collect every uncollected reward within the hit radius of ``point``.

        Returns the rewards collected by this call. Scanning stops as soon as
        the target count is reached.
        """
        if not self._armed or self._all_fired:
            return []

        if isinstance(point, Position):
            px, py = point.x, point.y
        else:
            px, py = point
        limit = self.hit_radius * self.hit_radius

        newly_collected: List[Reward] = []
        for reward_id, reward in self._rewards.items():
            if reward_id in self._collected:
                continue
            dx = reward.x - px
            dy = reward.y - py
            if dx * dx + dy * dy > limit:
                continue

            # Mark first; callbacks below may re-enter check_position
            self._collected.add(reward_id)
            reward.collected = True
            reward.timestamp_collected = self.wall_clock()
            newly_collected.append(reward)

            count = len(self._collected)
            self._emit_hit(reward, count, now_ms, agent)
            if self.on_reward_collected is not None:
                self.on_reward_collected(reward, count)
            if self.on_collect is not None:
                self.on_collect()

            if count >= self._target_count and not self._all_fired:
                self._all_fired = True
                if self.on_all_collected is not None:
                    self.on_all_collected()
                break
            if not self._armed:
                break

        return newly_collected

    def _emit_hit(
        self, reward: Reward, count: int, now_ms: float, agent: Optional[AgentState]
    ) -> None:
        if self.on_event is None:
            return
        metadata = {
            "reward_index": reward.id,
            "reward_position": {"x": reward.x, "y": reward.y},
            "total_rewards_collected": count,
        }
        if agent is not None:
            metadata["agent_position"] = {"x": agent.x, "y": agent.y}
            metadata["agent_heading"] = agent.heading

        timestamp = max(0, js_round(now_ms - self._round_start_ms), self._last_timestamp_ms)
        self._last_timestamp_ms = timestamp
        self.on_event(
            GameEvent(
                session_id=self.session_id,
                round_index=self.round_index,
                event_type=EventType.REWARD_HIT,
                timestamp_ms=timestamp,
                timestamp_abs=self.wall_clock(),
                metadata=metadata,
            )
        )
