"""
mousemaze - behavioral research core for a 2D foraging arena.

Reproducible reward layouts from a string seed, agent and cursor simulation
with fixed-rate sampling, idempotent collection and collision detection, and
behavioral statistics derived from the recorded trajectories.

No UI, no network, no database required. Clocks, storage and input are all
injected by the caller.
"""

__version__ = "0.1.0"

# Round lifecycle
from .orchestrator import (
    ExperimentSession,
    InputMode,
    InvalidTransitionError,
    RoundOrchestrator,
    RoundPhase,
    RoundResult,
)

# Core components
from .rng import SeededRandom, stable_hash, participant_key, assign_condition
from .layout import (
    LayoutInvariantError,
    RoundLayout,
    SpacingPlacer,
    generate_round_layout,
    generate_participant_layout,
    layout_seed,
)
from .physics import AgentSimulator, CursorTracker, SampleBatcher, Steer, ContactState
from .maze import MazeCourse, MazeTrainer, Wall
from .detection import RewardDetector
from .timers import GameTimer, Countdown, format_time
from .stats import calculate_round_stats, calculate_velocity, calculate_distance
from .persistence import (
    PersistenceStrategy,
    InMemoryPersistence,
    JsonPersistence,
    Outbox,
)

# Configuration
from .config import (
    ArenaConfig,
    Config,
    LayoutConfig,
    MazeConfig,
    PhysicsConfig,
    RoundTiming,
    StatsConfig,
    load_arena_config,
)

# Core schemas
from .schemas import (
    AgentState,
    ClusterCenter,
    ClusterParams,
    ClusterShape,
    Condition,
    ConditionScheme,
    EndReason,
    EventType,
    GameEvent,
    MovementSample,
    ParticipantProfile,
    Position,
    QuadrantDistribution,
    Reward,
    Round,
    RoundStats,
    SessionRecord,
)

__all__ = [
    # Round lifecycle
    "ExperimentSession",
    "InputMode",
    "InvalidTransitionError",
    "RoundOrchestrator",
    "RoundPhase",
    "RoundResult",
    # Layout
    "SeededRandom",
    "stable_hash",
    "participant_key",
    "assign_condition",
    "LayoutInvariantError",
    "RoundLayout",
    "SpacingPlacer",
    "generate_round_layout",
    "generate_participant_layout",
    "layout_seed",
    # Simulation
    "AgentSimulator",
    "CursorTracker",
    "SampleBatcher",
    "Steer",
    "ContactState",
    "MazeCourse",
    "MazeTrainer",
    "Wall",
    "RewardDetector",
    "GameTimer",
    "Countdown",
    "format_time",
    # Statistics
    "calculate_round_stats",
    "calculate_velocity",
    "calculate_distance",
    # Persistence
    "PersistenceStrategy",
    "InMemoryPersistence",
    "JsonPersistence",
    "Outbox",
    # Configuration
    "ArenaConfig",
    "Config",
    "LayoutConfig",
    "MazeConfig",
    "PhysicsConfig",
    "RoundTiming",
    "StatsConfig",
    "load_arena_config",
    # Schemas
    "AgentState",
    "ClusterCenter",
    "ClusterParams",
    "ClusterShape",
    "Condition",
    "ConditionScheme",
    "EndReason",
    "EventType",
    "GameEvent",
    "MovementSample",
    "ParticipantProfile",
    "Position",
    "QuadrantDistribution",
    "Reward",
    "Round",
    "RoundStats",
    "SessionRecord",
]
