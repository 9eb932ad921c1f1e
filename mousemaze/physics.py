"""
Agent and cursor simulation with fixed-rate movement sampling.

Two modes share the sampling and batching machinery:

- ``AgentSimulator`` drives position internally. Each ``step(now_ms)`` applies
  the held steering input, moves forward along the heading, applies the
  boundary policy (toroidal wrap or clamp) and, when a collision check is
  installed, resolves wall contact.
- ``CursorTracker`` follows an externally driven pointer and only derives
  velocity, distance and acceleration between samples.

Samples are emitted at a fixed rate that is independent of how often the
caller ticks, buffered by ``SampleBatcher`` and handed to the sink in fixed
size batches. Deactivating either simulator flushes the partial batch and stops
all further output.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import PhysicsConfig
from .geometry import (
    clamp,
    js_round,
    normalize_heading,
    velocity_px_per_s,
    wrapped_delta,
)
from .schemas import AgentState, Condition, EventType, MovementSample, Position

SampleSink = Callable[[List[MovementSample]], None]
InputEventHook = Callable[[EventType, Dict[str, Any]], None]
WallClock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _wrap(value: float, size: float) -> float:
    value = value % size
    # -1e-20 % 1000 == 1000.0 in floating point
    return 0.0 if value >= size else value


class Steer(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class ContactState(Enum):
    """Edge-triggered wall contact; a collision fires only on CLEAR -> TOUCHING."""

    CLEAR = "clear"
    TOUCHING = "touching"


class SampleBatcher:
    """Buffers samples and forwards them to a sink in fixed-size batches."""

    def __init__(self, sink: SampleSink, batch_size: int = 100):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sink = sink
        self.batch_size = batch_size
        self._buffer: List[MovementSample] = []

    def __len__(self) -> int:
        return len(self._buffer)

    def add(self, sample: MovementSample) -> None:
        self._buffer.append(sample)
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> int:
        """Send whatever is buffered, even a partial batch. Returns the count sent."""
        if not self._buffer:
            return 0
        batch = self._buffer
        self._buffer = []
        self.sink(batch)
        return len(batch)


class _SampledMotion:
    """Round clock, sample identity and batching shared by both modes."""

    def __init__(
        self,
        config: PhysicsConfig,
        session_id: str,
        round_index: int,
        on_sample_batch: SampleSink,
        *,
        participant_id: Optional[str] = None,
        condition: Optional[Condition] = None,
        on_input_event: Optional[InputEventHook] = None,
        wall_clock: Optional[WallClock] = None,
    ):
        self.config = config
        self.session_id = session_id
        self.round_index = round_index
        self.participant_id = participant_id
        self.condition = condition
        self.on_input_event = on_input_event
        self.wall_clock = wall_clock or utc_now
        self.batcher = SampleBatcher(on_sample_batch, config.batch_size)

        self._active = False
        self._round_start_ms = 0.0
        self._last_timestamp_ms = 0
        self._food_since_sample = False

    @property
    def is_active(self) -> bool:
        return self._active

    def mark_food_collected(self) -> None:
        """Flag the next sample as the one during which a reward was picked up."""
        self._food_since_sample = True

    def _begin(self, now_ms: float) -> None:
        self._active = True
        self._round_start_ms = now_ms
        self._last_timestamp_ms = 0
        self._food_since_sample = False

    def _relative_ms(self, now_ms: float) -> int:
        # Never negative, never decreasing within a round
        timestamp = max(0, js_round(now_ms - self._round_start_ms), self._last_timestamp_ms)
        self._last_timestamp_ms = timestamp
        return timestamp

    def _pixel(self, value: float) -> int:
        return int(clamp(js_round(value), 0, self.config.canvas_size - 1))

    def _report(self, event_type: EventType, **metadata: Any) -> None:
        if self._active and self.on_input_event is not None:
            self.on_input_event(event_type, metadata)

    def _make_sample(self, now_ms: float, **fields: Any) -> MovementSample:
        return MovementSample(
            session_id=self.session_id,
            participant_id=self.participant_id,
            condition=self.condition,
            round_index=self.round_index,
            timestamp_ms=self._relative_ms(now_ms),
            timestamp_abs=self.wall_clock(),
            **fields,
        )

    def flush(self) -> int:
        return self.batcher.flush()

    def deactivate(self) -> None:
        """Stop producing output and flush the partial batch. Safe to repeat."""
        if not self._active:
            return
        self._active = False
        self.batcher.flush()


# ============================================================================
# Autonomous agent
# ============================================================================


class AgentSimulator(_SampledMotion):
    """Keyboard-steered agent moving at constant speed.

    Heading follows screen convention with y growing downward: 0 points right,
    90 points up, and turning left increases the heading.

    Callbacks:
        on_position_update(agent): once per step with the latest pose
        on_boundary_hit(agent, edge): clamp mode only, once per edge crossed;
            edge is "left", "right", "top" or "bottom"
        collision_check(previous, candidate): True when the move from the
            previous position to the candidate pose touches a wall
        on_collision(impact): once per contact, after the agent was reset
        on_input_event(event_type, metadata): key presses and releases
    """

    def __init__(
        self,
        config: PhysicsConfig,
        session_id: str,
        round_index: int,
        on_sample_batch: SampleSink,
        *,
        participant_id: Optional[str] = None,
        condition: Optional[Condition] = None,
        on_position_update: Optional[Callable[[AgentState], None]] = None,
        on_boundary_hit: Optional[Callable[[AgentState, str], None]] = None,
        collision_check: Optional[Callable[[Position, AgentState], bool]] = None,
        on_collision: Optional[Callable[[AgentState], None]] = None,
        on_input_event: Optional[InputEventHook] = None,
        start_position: Optional[Position] = None,
        start_heading: Optional[float] = None,
        wall_clock: Optional[WallClock] = None,
    ):
        super().__init__(
            config,
            session_id,
            round_index,
            on_sample_batch,
            participant_id=participant_id,
            condition=condition,
            on_input_event=on_input_event,
            wall_clock=wall_clock,
        )
        self.on_position_update = on_position_update
        self.on_boundary_hit = on_boundary_hit
        self.collision_check = collision_check
        self.on_collision = on_collision

        self.start_position = start_position or config.start_position
        self.start_heading = config.start_heading if start_heading is None else start_heading

        self._state = self._start_state()
        self._held = {Steer.LEFT: False, Steer.RIGHT: False}
        self._contact = ContactState.CLEAR
        self._last_frame_ms: Optional[float] = None
        self._last_sample_ms = 0.0
        self._last_sampled: Optional[AgentState] = None
        self._food_since_sample = False

    def _start_state(self) -> AgentState:
        return AgentState(
            x=self.start_position.x,
            y=self.start_position.y,
            heading=normalize_heading(self.start_heading),
            velocity=self.config.agent_speed,
        )

    @property
    def agent(self) -> AgentState:
        """Current pose. Frozen, so one read is a consistent snapshot."""
        return self._state

    @property
    def contact(self) -> ContactState:
        return self._contact

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def press(self, direction: Steer | str) -> None:
        direction = Steer(direction)
        if not self._held[direction]:
            self._held[direction] = True
            self._report(EventType.KEY_PRESS, key=direction.value)

    def release(self, direction: Steer | str) -> None:
        direction = Steer(direction)
        if self._held[direction]:
            self._held[direction] = False
            self._report(EventType.KEY_RELEASE, key=direction.value)

    def set_steering(self, left: bool, right: bool) -> None:
        for direction, held in ((Steer.LEFT, left), (Steer.RIGHT, right)):
            if held:
                self.press(direction)
            else:
                self.release(direction)

    def _turn_direction(self) -> int:
        left, right = self._held[Steer.LEFT], self._held[Steer.RIGHT]
        if left == right:
            return 0
        return 1 if left else -1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def activate(self, now_ms: float) -> None:
        self._begin(now_ms)
        self._last_frame_ms = None
        self._last_sample_ms = now_ms
        self._last_sampled = None
        self._food_since_sample = False

    def reset(self, position: Optional[Position] = None, heading: Optional[float] = None) -> None:
        """Return the agent to its start pose (or the given one).

        Pending samples are flushed rather than discarded and steering input
        is released.
        """
        if position is not None:
            self.start_position = position
        if heading is not None:
            self.start_heading = heading
        self.batcher.flush()
        self._state = self._start_state()
        self._held = {Steer.LEFT: False, Steer.RIGHT: False}
        self._contact = ContactState.CLEAR
        self._last_frame_ms = None
        self._last_sampled = None
        self._food_since_sample = False

    def is_at_position(self, target: Position, radius: float) -> bool:
        state = self._state
        return math.hypot(state.x - target.x, state.y - target.y) <= radius

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def step(self, now_ms: float) -> AgentState:
        """Advance one animation frame. No-op while inactive."""
        if not self._active:
            return self._state

        if self._last_frame_ms is None:
            delta = self.config.frame_interval_ms
        else:
            delta = max(0.0, now_ms - self._last_frame_ms)
        self._last_frame_ms = now_ms
        scale = delta / self.config.frame_interval_ms

        previous = self._state
        heading = previous.heading
        turn = self._turn_direction()
        if turn:
            heading = normalize_heading(heading + turn * self.config.rotation_speed * scale)

        radians = math.radians(heading)
        distance = self.config.agent_speed * scale
        dx = math.cos(radians) * distance
        dy = -math.sin(radians) * distance
        candidate = self._apply_boundary(previous.x + dx, previous.y + dy, heading)

        if self.collision_check is not None:
            origin = Position(x=previous.x, y=previous.y)
            if self.config.wrap_boundaries:
                # Sweep the actual short move, not a segment across the canvas
                origin = Position(x=candidate.x - dx, y=candidate.y - dy)
            candidate = self._resolve_contact(origin, candidate)
        self._state = candidate

        if self.on_position_update is not None:
            self.on_position_update(candidate)
        # A callback may have ended the round
        if not self._active:
            return self._state

        if now_ms - self._last_sample_ms >= self.config.agent_sample_interval_ms:
            self._emit_sample(now_ms)
            self._last_sample_ms = now_ms
        return self._state

    def _apply_boundary(self, x: float, y: float, heading: float) -> AgentState:
        size = self.config.canvas_size
        if self.config.wrap_boundaries:
            return AgentState(
                x=_wrap(x, size), y=_wrap(y, size), heading=heading, velocity=self.config.agent_speed
            )

        # Positions stay in [0, size); a corner reports both edges
        inside = math.nextafter(float(size), 0.0)
        edges = []
        if x < 0:
            x = 0.0
            edges.append("left")
        elif x >= size:
            x = inside
            edges.append("right")
        if y < 0:
            y = 0.0
            edges.append("top")
        elif y >= size:
            y = inside
            edges.append("bottom")

        state = AgentState(x=x, y=y, heading=heading, velocity=self.config.agent_speed)
        if self.on_boundary_hit is not None:
            for edge in edges:
                self.on_boundary_hit(state, edge)
        return state

    def _resolve_contact(self, origin: Position, candidate: AgentState) -> AgentState:
        touching = self.collision_check(origin, candidate)
        if not touching:
            self._contact = ContactState.CLEAR
            return candidate
        if self._contact is ContactState.TOUCHING:
            return candidate

        start = self._start_state()
        self._state = start
        self._last_sampled = None
        # Contact persists only if the start pose itself overlaps a wall
        if self.collision_check(Position(x=start.x, y=start.y), start):
            self._contact = ContactState.TOUCHING
        else:
            self._contact = ContactState.CLEAR
        if self.on_collision is not None:
            self.on_collision(candidate)
        return start

    def _emit_sample(self, now_ms: float) -> None:
        current = self._state
        last = self._last_sampled
        travelled = 0.0
        if last is not None:
            dx = current.x - last.x
            dy = current.y - last.y
            if self.config.wrap_boundaries:
                dx = wrapped_delta(dx, self.config.canvas_size)
                dy = wrapped_delta(dy, self.config.canvas_size)
            travelled = math.hypot(dx, dy)

        sample = self._make_sample(
            now_ms,
            x=self._pixel(current.x),
            y=self._pixel(current.y),
            heading=round(current.heading, 1),
            velocity=round(current.velocity * 1000 / self.config.frame_interval_ms, 2),
            distance_from_last=round(travelled, 2),
            acceleration=0.0,
            food_here=self._food_since_sample,
        )
        self._last_sampled = current
        self._food_since_sample = False
        self.batcher.add(sample)


# ============================================================================
# Cursor tracking
# ============================================================================


class CursorTracker(_SampledMotion):
    """Samples an externally driven pointer while it is inside the canvas."""

    def __init__(
        self,
        config: PhysicsConfig,
        session_id: str,
        round_index: int,
        on_sample_batch: SampleSink,
        *,
        participant_id: Optional[str] = None,
        condition: Optional[Condition] = None,
        on_input_event: Optional[InputEventHook] = None,
        wall_clock: Optional[WallClock] = None,
    ):
        super().__init__(
            config,
            session_id,
            round_index,
            on_sample_batch,
            participant_id=participant_id,
            condition=condition,
            on_input_event=on_input_event,
            wall_clock=wall_clock,
        )
        self.position: Optional[Position] = None
        self.inside = False
        self._last_sample_ms = 0.0
        self._last_position: Optional[Position] = None
        self._last_velocity = 0.0

    def move_to(self, x: float, y: float) -> Position:
        self.position = Position(x=x, y=y)
        return self.position

    def enter(self) -> None:
        if not self.inside:
            self.inside = True
            self._report(EventType.MOUSE_ENTER)

    def leave(self) -> None:
        if self.inside:
            self.inside = False
            self._report(EventType.MOUSE_LEAVE)

    def activate(self, now_ms: float) -> None:
        self._begin(now_ms)
        self._last_sample_ms = now_ms
        self._last_position = None
        self._last_velocity = 0.0

    def reset(self) -> None:
        self.batcher.flush()
        self.position = None
        self._last_position = None
        self._last_velocity = 0.0

    def tick(self, now_ms: float) -> Optional[MovementSample]:
        """Emit a sample when the interval has elapsed and the pointer is inside."""
        if not self._active or not self.inside or self.position is None:
            return None
        elapsed = now_ms - self._last_sample_ms
        if elapsed < self.config.cursor_sample_interval_ms:
            return None

        current = self.position
        velocity = 0.0
        travelled = 0.0
        acceleration = 0.0
        if self._last_position is not None:
            here = (current.x, current.y)
            there = (self._last_position.x, self._last_position.y)
            travelled = math.hypot(here[0] - there[0], here[1] - there[1])
            velocity = velocity_px_per_s(here, there, elapsed)
            acceleration = velocity - self._last_velocity

        sample = self._make_sample(
            now_ms,
            x=self._pixel(current.x),
            y=self._pixel(current.y),
            heading=0.0,
            velocity=round(velocity, 2),
            distance_from_last=round(travelled, 2),
            acceleration=round(acceleration, 2),
            food_here=self._food_since_sample,
        )
        self._food_since_sample = False
        self._last_position = current
        self._last_velocity = velocity
        self._last_sample_ms = now_ms
        self.batcher.add(sample)
        return sample
