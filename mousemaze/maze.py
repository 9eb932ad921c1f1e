"""
Maze training course.

Before the foraging rounds the participant steers the agent from a start pose
to a target square through a static set of walls. Touching a wall resets the
agent to the start. Wall contact is checked two ways on every step: the agent
circle against each wall rectangle, and the segment swept since the previous
step against each rectangle, so a fast agent cannot tunnel through a thin wall.

Maze events carry round index -1.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import ArenaConfig, MazeConfig
from .geometry import circle_intersects_rect, js_round, segment_intersects_rect
from .persistence import Outbox
from .physics import AgentSimulator, Steer, WallClock, utc_now
from .schemas import AgentState, EventType, GameEvent, MovementSample, Position

MAZE_ROUND_INDEX = -1


class Wall(BaseModel):
    """Axis-aligned wall rectangle (top-left origin)."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class MazeCourse(BaseModel):
    """Static geometry of one maze: walls, target square and start pose."""

    model_config = ConfigDict(frozen=True)

    walls: List[Wall]
    target: Wall
    start: Position
    start_heading: float = 90.0
    agent_radius: float = Field(..., gt=0, description="Collision radius of the agent")
    target_reach: float = Field(..., ge=0, description="Center distance that counts as arrival")

    @classmethod
    def slalom(cls, config: Optional[MazeConfig] = None) -> "MazeCourse":
        """Outer boundary plus two staggered barriers forcing an S-shaped path."""
        config = config or MazeConfig()
        s = config.canvas_size
        t = config.wall_thickness
        walls = [
            Wall(x=0, y=0, width=s, height=t),
            Wall(x=0, y=s - t, width=s, height=t),
            Wall(x=0, y=0, width=t, height=s),
            Wall(x=s - t, y=0, width=t, height=s),
            # Lower barrier from the left wall, gap on the right
            Wall(x=t, y=s * 60 / 100, width=s * 65 / 100, height=t),
            # Upper barrier from the right wall, gap on the left
            Wall(x=s * 33 / 100, y=s * 35 / 100, width=s * 65 / 100, height=t),
        ]
        origin = config.target_origin
        return cls(
            walls=walls,
            target=Wall(x=origin.x, y=origin.y, width=config.target_size, height=config.target_size),
            start=config.start_position,
            start_heading=config.start_heading,
            agent_radius=config.agent_radius,
            target_reach=config.target_size / 2 + config.agent_size * 0.4,
        )

    def touches_wall(self, x: float, y: float) -> bool:
        return any(
            circle_intersects_rect(x, y, self.agent_radius, w.x, w.y, w.width, w.height)
            for w in self.walls
        )

    def crosses_wall(self, start: Position, end: Position) -> bool:
        return any(
            segment_intersects_rect(start.x, start.y, end.x, end.y, w.x, w.y, w.width, w.height)
            for w in self.walls
        )

    def collides(self, previous: Position, current: AgentState) -> bool:
        """Circle overlap at the new pose or a swept crossing since the last one."""
        if self.touches_wall(current.x, current.y):
            return True
        return self.crosses_wall(previous, Position(x=current.x, y=current.y))

    def target_reached(self, agent: AgentState) -> bool:
        cx = self.target.x + self.target.width / 2
        cy = self.target.y + self.target.height / 2
        dx = agent.x - cx
        dy = agent.y - cy
        return dx * dx + dy * dy < self.target_reach * self.target_reach


class MazeTrainer:
    """Runs the maze phase and records its events.

    Events land in ``outbox``; movement samples from the maze are discarded.
    """

    def __init__(
        self,
        config: ArenaConfig,
        session_id: str,
        *,
        course: Optional[MazeCourse] = None,
        participant_id: Optional[str] = None,
        on_complete: Optional[Callable[[], None]] = None,
        wall_clock: Optional[WallClock] = None,
    ):
        self.config = config
        self.session_id = session_id
        self.course = course or MazeCourse.slalom(config.maze)
        self.on_complete = on_complete
        self.wall_clock = wall_clock or utc_now
        self.outbox = Outbox()

        self.collisions = 0
        self.completed = False
        self._started_at: Optional[float] = None
        self._now_ms = 0.0
        self._last_timestamp_ms = 0

        physics = config.physics.model_copy(update={"wrap_boundaries": False})
        self.simulator = AgentSimulator(
            physics,
            session_id,
            MAZE_ROUND_INDEX,
            self._discard_samples,
            participant_id=participant_id,
            collision_check=self.course.collides,
            on_collision=self._handle_collision,
            on_position_update=self._handle_position,
            start_position=self.course.start,
            start_heading=self.course.start_heading,
            wall_clock=self.wall_clock,
        )

    @property
    def started(self) -> bool:
        return self._started_at is not None

    @property
    def agent(self) -> AgentState:
        return self.simulator.agent

    def start(self, now_ms: float) -> None:
        if self.started:
            return
        self._started_at = now_ms
        self._now_ms = now_ms
        self._record(EventType.MAZE_START, start_position=self.course.start.model_dump())
        self.simulator.activate(now_ms)

    def press(self, direction: Steer | str) -> None:
        self.simulator.press(direction)

    def release(self, direction: Steer | str) -> None:
        self.simulator.release(direction)

    def set_steering(self, left: bool, right: bool) -> None:
        self.simulator.set_steering(left, right)

    def tick(self, now_ms: float) -> AgentState:
        self._now_ms = now_ms
        return self.simulator.step(now_ms)

    def stop(self) -> None:
        self.simulator.deactivate()

    def _discard_samples(self, batch: List[MovementSample]) -> None:
        pass

    def _handle_collision(self, impact: AgentState) -> None:
        self.collisions += 1
        self._record(
            EventType.MAZE_COLLISION,
            agent_position={"x": impact.x, "y": impact.y},
            agent_heading=impact.heading,
            collision_count=self.collisions,
        )

    def _handle_position(self, agent: AgentState) -> None:
        if self.completed or not self.course.target_reached(agent):
            return
        self.completed = True
        self._record(
            EventType.MAZE_COMPLETE,
            agent_position={"x": agent.x, "y": agent.y},
            agent_heading=agent.heading,
            collision_count=self.collisions,
        )
        self.simulator.deactivate()
        if self.on_complete is not None:
            self.on_complete()

    def _record(self, event_type: EventType, **metadata) -> GameEvent:
        started = self._started_at or 0.0
        timestamp = max(0, js_round(self._now_ms - started), self._last_timestamp_ms)
        self._last_timestamp_ms = timestamp
        event = GameEvent(
            session_id=self.session_id,
            round_index=MAZE_ROUND_INDEX,
            event_type=event_type,
            timestamp_ms=timestamp,
            timestamp_abs=self.wall_clock(),
            metadata=metadata,
        )
        self.outbox.add_event(event)
        return event
