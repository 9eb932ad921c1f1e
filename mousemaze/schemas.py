"""
Pydantic schemas for the mousemaze foraging core.

All records produced or consumed by the layout generator, the simulators, the
collection detector, the round orchestrator and the statistics calculator are
defined here.

Design Philosophy:
- Records that are appended to the data stream (samples, events, rounds) are
  frozen: once produced they are never mutated, only replaced or appended.
- Rewards are the one mutable record; only the collection detector writes to
  them and only to flip ``collected`` from False to True.
- Metadata fields carry event-specific extensions without widening the schema.
- Pydantic validation keeps data consistent across persistence backends.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Experimental conditions
# ============================================================================


class Condition(str, Enum):
    """Spatial-structure variant assigned once per participant.

    Two naming schemes exist in deployed studies. CONCENTRATED/CLUSTER are the
    structured (clustered) variants, DIFFUSE/NOISE the unstructured ones.
    """

    CONCENTRATED = "CONCENTRATED"
    DIFFUSE = "DIFFUSE"
    CLUSTER = "CLUSTER"
    NOISE = "NOISE"

    @property
    def is_structured(self) -> bool:
        return self in (Condition.CONCENTRATED, Condition.CLUSTER)


class ConditionScheme(str, Enum):
    """Mutually exclusive condition pairs; one is active per deployment."""

    CONCENTRATED_DIFFUSE = "concentrated_diffuse"
    CLUSTER_NOISE = "cluster_noise"

    @property
    def pair(self) -> tuple["Condition", "Condition"]:
        """Return (structured, diffuse) conditions for this scheme."""
        if self is ConditionScheme.CLUSTER_NOISE:
            return (Condition.CLUSTER, Condition.NOISE)
        return (Condition.CONCENTRATED, Condition.DIFFUSE)


class ClusterShape(str, Enum):
    """Shape used to sample rewards inside a cluster."""

    CIRCLE = "circle"
    DIAMOND = "diamond"


# ============================================================================
# Spatial records
# ============================================================================


class Position(BaseModel):
    """Canvas coordinates in pixels (origin top-left, y grows downward)."""

    x: float
    y: float


class Reward(BaseModel):
    """Hidden reward placed by the layout generator.

    Identity is the integer id (0..N-1, unique within a round). ``collected``
    flips from False to True at most once and only the collection detector
    performs that write.
    """

    id: int = Field(..., ge=0, description="Index assigned at generation time")
    x: float
    y: float
    collected: bool = Field(False, description="True once picked up")
    timestamp_collected: Optional[datetime] = Field(
        None, description="Absolute time the reward was collected"
    )


class ClusterCenter(BaseModel):
    """Generative center of one reward cluster.

    Circle clusters carry ``radius``; diamond clusters carry ``size`` (distance
    between opposite vertices).
    """

    x: float
    y: float
    radius: Optional[float] = None
    size: Optional[float] = None


class ClusterParams(BaseModel):
    """Cluster structure used to place a round's rewards.

    Persisted alongside the round for reproducibility; never recomputed from
    the reward positions.
    """

    k: int = Field(..., ge=1, description="Number of clusters")
    centers: List[ClusterCenter] = Field(default_factory=list)


class AgentState(BaseModel):
    """Pose of the simulated agent.

    Exactly one live instance per active round, owned by the simulator. Frozen
    so that readers (detector, renderer, sampler) always hold a consistent
    snapshot; the simulator advances by replacing the instance.
    """

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    heading: float = Field(..., ge=0, lt=360, description="Degrees; 0 = right, 90 = up")
    velocity: float = Field(..., description="Forward speed in px per frame")


# ============================================================================
# Recorded data stream
# ============================================================================


class EventType(str, Enum):
    """Discrete events recorded during maze training and foraging rounds."""

    ROUND_START = "round_start"
    REWARD_HIT = "reward_hit"
    ROUND_END = "round_end"
    TIMEOUT = "timeout"
    MAZE_START = "maze_start"
    MAZE_COLLISION = "maze_collision"
    MAZE_COMPLETE = "maze_complete"
    KEY_PRESS = "key_press"
    KEY_RELEASE = "key_release"
    MOUSE_ENTER = "mouse_enter"
    MOUSE_LEAVE = "mouse_leave"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.ROUND_END, EventType.TIMEOUT, EventType.MAZE_COMPLETE)


class EndReason(str, Enum):
    """Why a foraging round ended."""

    ALL_REWARDS = "all_rewards"
    TIMEOUT = "timeout"


class MovementSample(BaseModel):
    """Fixed-rate snapshot of position and motion during a round."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    participant_id: Optional[str] = None
    condition: Optional[Condition] = None
    round_index: int
    timestamp_ms: int = Field(..., ge=0, description="Milliseconds since round start")
    timestamp_abs: datetime = Field(..., description="Absolute wall-clock time")
    x: float
    y: float
    heading: float = Field(0.0, description="Degrees; always 0 in cursor mode")
    velocity: float = Field(0.0, description="Pixels per second")
    distance_from_last: float = Field(0.0, ge=0)
    acceleration: float = Field(0.0, description="Velocity delta since previous sample")
    food_here: bool = Field(False, description="A reward was collected since the previous sample")


class GameEvent(BaseModel):
    """Discrete, append-only event record."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    round_index: int
    event_type: EventType
    timestamp_ms: int = Field(..., ge=0)
    timestamp_abs: datetime
    # Event-specific payload. reward_hit carries reward_index, reward_position,
    # total_rewards_collected and (agent mode) agent_position/agent_heading;
    # terminal events carry reason and total_rewards_collected.
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Round(BaseModel):
    """Finalized foraging round. Built exactly once, immutable afterward."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    round_index: int
    condition: Condition
    start_timestamp: datetime
    end_timestamp: datetime
    duration_ms: int = Field(..., ge=0)
    rewards_collected: int = Field(..., ge=0)
    resource_positions: List[Reward] = Field(default_factory=list)
    cluster_params: Optional[ClusterParams] = None
    end_reason: EndReason


# ============================================================================
# Derived statistics
# ============================================================================


class QuadrantDistribution(BaseModel):
    """Percentage of samples per canvas quadrant (split at the midlines)."""

    nw: float = 25.0
    ne: float = 25.0
    sw: float = 25.0
    se: float = 25.0


class RoundStats(BaseModel):
    """Behavioral metrics derived from one round's samples and events.

    A pure view: recomputed on demand and never persisted as a source of truth.
    Every field is finite for every input, including empty rounds.
    """

    session_id: Optional[str] = None
    round_index: Optional[int] = None

    # Basic metrics
    time_to_finish: float = Field(0.0, description="Round duration in ms")
    rewards_collected: int = 0
    completion_rate: float = Field(0.0, description="Percent of rewards collected")
    total_distance: float = Field(0.0, description="Pixels travelled")
    mean_velocity: float = 0.0
    max_velocity: float = 0.0

    # Exploration efficiency
    path_efficiency: float = Field(0.0, description="Straight-line / travelled distance")
    coverage_percent: float = Field(0.0, description="Percent of grid cells visited")
    revisit_rate: float = Field(0.0, description="Samples per visited cell")

    # Behavioral patterns
    pauses_count: int = 0
    total_idle_time: float = 0.0
    mean_pause_duration: float = 0.0
    first_reward_latency: float = 0.0
    mean_inter_reward_interval: float = 0.0

    # Rotation patterns
    total_rotations: int = 0
    mean_turn_angle: float = 0.0

    # Spatial bias
    edge_time_percent: float = 0.0
    center_bias: float = 0.0
    quadrant_distribution: QuadrantDistribution = Field(default_factory=QuadrantDistribution)


# ============================================================================
# Participant and session bookkeeping
# ============================================================================


class ParticipantProfile(BaseModel):
    """Participant identity and the condition assigned on first visit.

    The condition is drawn once with true entropy and then reused for every
    later session of the same participant key.
    """

    participant_key: str = Field(..., description="Opaque stable key")
    assigned_condition: Condition
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """Metadata for one participant session (maze training plus rounds)."""

    session_id: str
    participant_id: str
    condition: Condition
    start_timestamp: datetime
    end_timestamp: Optional[datetime] = None
    rounds_completed: int = 0
    maze_completed: bool = False
    status: str = Field("in_progress", description="in_progress, complete or incomplete")
    config: Dict[str, Any] = Field(default_factory=dict)
