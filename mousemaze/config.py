"""
mousemaze Configuration

Process-level settings load from environment variables (with ``.env`` support)
and every numeric constant consumed by the core lives in an injectable pydantic
model, so scenario-specific test configurations never touch module globals.
"""

import json
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from .schemas import ClusterShape, ConditionScheme, Position

# Load .env file if it exists
load_dotenv()

DEFAULT_CANVAS_SIZE = 1000
DEFAULT_N_REWARDS = 700


# ============================================================================
# Injected numeric configuration
# ============================================================================


class LayoutConfig(BaseModel):
    """Parameters for reward layout generation."""

    canvas_size: int = Field(DEFAULT_CANVAS_SIZE, gt=0, description="Square canvas side in px")
    n_rewards: int = Field(DEFAULT_N_REWARDS, ge=0, description="Rewards per round")

    # Spacing policy shared by every condition
    reward_min_spacing: float = Field(10.0, ge=0, description="Initial minimum reward spacing")
    reward_edge_margin: float = Field(30.0, ge=0, description="Clamp margin for clustered rewards")
    spacing_decay: float = Field(0.9, gt=0, lt=1, description="Multiplicative spacing relaxation")
    spacing_floor: float = Field(3.0, ge=0, description="Lowest relaxed spacing")
    max_attempts_per_reward: int = Field(50, ge=1, description="Strict draws before relaxing")

    # Diffuse condition
    diffuse_edge_margin: int = Field(50, ge=0)

    # Structured condition
    n_clusters: int = Field(4, ge=1)
    n_clusters_range: Optional[Tuple[int, int]] = Field(
        None, description="When set, k is drawn from this inclusive range per round"
    )
    cluster_shape: ClusterShape = ClusterShape.CIRCLE
    cluster_radius: float = Field(100.0, gt=0, description="Circle cluster radius")
    diamond_size: float = Field(200.0, gt=0, description="Diamond vertex-to-vertex size")
    cluster_min_separation: float = Field(300.0, ge=0)
    cluster_edge_margin: float = Field(150.0, ge=0)
    center_max_attempts: int = Field(1000, ge=1)
    circle_max_attempts: int = Field(100, ge=1)

    @model_validator(mode="after")
    def _check_geometry(self) -> "LayoutConfig":
        if self.n_clusters_range is not None:
            low, high = self.n_clusters_range
            if low < 1 or high < low:
                raise ValueError(f"n_clusters_range must satisfy 1 <= low <= high, got {self.n_clusters_range}")
        if self.spacing_floor > self.reward_min_spacing:
            raise ValueError("spacing_floor cannot exceed reward_min_spacing")
        half = self.canvas_size / 2
        if self.reward_edge_margin >= half or self.diffuse_edge_margin >= half:
            raise ValueError("edge margins must leave a non-empty placement area")
        return self

    @property
    def cluster_extent(self) -> float:
        """Half-width of one cluster along either axis."""
        if self.cluster_shape is ClusterShape.DIAMOND:
            return self.diamond_size / 2
        return self.cluster_radius


class PhysicsConfig(BaseModel):
    """Agent kinematics and sampling parameters."""

    canvas_size: int = Field(DEFAULT_CANVAS_SIZE, gt=0)
    agent_speed: float = Field(3.0, ge=0, description="Forward px per reference frame")
    rotation_speed: float = Field(5.0, ge=0, description="Degrees per reference frame")
    frame_interval_ms: float = Field(16.0, gt=0, description="Reference frame length (60 fps)")
    start_x: Optional[float] = Field(None, description="Defaults to canvas center")
    start_y: Optional[float] = Field(None, description="Defaults to canvas center")
    start_heading: float = Field(90.0, ge=0, lt=360)
    agent_sample_rate_hz: float = Field(10.0, gt=0)
    cursor_sample_rate_hz: float = Field(30.0, gt=0)
    batch_size: int = Field(100, ge=1)
    wrap_boundaries: bool = True

    @property
    def start_position(self) -> Position:
        center = self.canvas_size / 2
        return Position(
            x=center if self.start_x is None else self.start_x,
            y=center if self.start_y is None else self.start_y,
        )

    @property
    def agent_sample_interval_ms(self) -> int:
        return math.floor(1000 / self.agent_sample_rate_hz)

    @property
    def cursor_sample_interval_ms(self) -> int:
        return math.floor(1000 / self.cursor_sample_rate_hz)


class StatsConfig(BaseModel):
    """Thresholds for derived behavioral metrics."""

    canvas_size: int = Field(DEFAULT_CANVAS_SIZE, gt=0)
    n_rewards: int = Field(DEFAULT_N_REWARDS, ge=0)
    grid_size: int = Field(10, ge=1, description="Coverage grid is grid_size x grid_size")
    idle_velocity_threshold: float = Field(5.0, ge=0, description="px/s; below counts as idle")
    idle_duration_threshold: float = Field(500.0, ge=0, description="Minimum pause length in ms")
    edge_region_width: float = Field(100.0, ge=0)
    center_region_size: float = Field(400.0, ge=0, description="Side of the central square")
    turn_threshold_deg: float = Field(1.0, ge=0, description="Heading change counted as a turn")


class RoundTiming(BaseModel):
    """Round lifecycle durations."""

    time_limit_ms: int = Field(60000, gt=0)
    countdown_seconds: int = Field(5, ge=0)
    post_round_delay_ms: int = Field(10000, ge=0)
    n_rounds: int = Field(5, ge=1)


class MazeConfig(BaseModel):
    """Geometry of the maze-training course."""

    canvas_size: int = Field(DEFAULT_CANVAS_SIZE, gt=0)
    wall_thickness: float = Field(20.0, gt=0)
    target_size: float = Field(50.0, gt=0)
    start_x: float = 100.0
    start_y: Optional[float] = Field(None, description="Defaults to canvas_size - 100")
    target_x: Optional[float] = Field(None, description="Defaults to canvas_size - 100 - target_size")
    target_y: float = 100.0
    start_heading: float = Field(90.0, ge=0, lt=360)
    agent_size: float = Field(15.0, gt=0)

    @property
    def start_position(self) -> Position:
        y = self.canvas_size - 100 if self.start_y is None else self.start_y
        return Position(x=self.start_x, y=y)

    @property
    def target_origin(self) -> Position:
        x = self.canvas_size - 100 - self.target_size if self.target_x is None else self.target_x
        return Position(x=x, y=self.target_y)

    @property
    def agent_radius(self) -> float:
        return self.agent_size * 0.6


class ArenaConfig(BaseModel):
    """Complete set of constants injected into the core.

    ``canvas_size`` and ``n_rewards`` are shared: sub-config blocks given as
    dicts inherit them, and explicit sub-config instances must agree.
    """

    canvas_size: int = Field(DEFAULT_CANVAS_SIZE, gt=0)
    n_rewards: int = Field(DEFAULT_N_REWARDS, ge=0)
    hit_radius: float = Field(5.0, ge=0, description="Collection distance in px")
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    physics: PhysicsConfig = Field(default_factory=PhysicsConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    timing: RoundTiming = Field(default_factory=RoundTiming)
    maze: MazeConfig = Field(default_factory=MazeConfig)

    @model_validator(mode="before")
    @classmethod
    def _share_arena_constants(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        canvas = data.get("canvas_size", DEFAULT_CANVAS_SIZE)
        n_rewards = data.get("n_rewards", DEFAULT_N_REWARDS)
        shared = {
            "layout": {"canvas_size": canvas, "n_rewards": n_rewards},
            "physics": {"canvas_size": canvas},
            "stats": {"canvas_size": canvas, "n_rewards": n_rewards},
            "maze": {"canvas_size": canvas},
        }
        for key, values in shared.items():
            block = data.get(key)
            if block is None:
                data[key] = dict(values)
            elif isinstance(block, dict):
                data[key] = {**values, **block}
        return data

    @model_validator(mode="after")
    def _check_shared_constants(self) -> "ArenaConfig":
        for name in ("layout", "physics", "stats", "maze"):
            block = getattr(self, name)
            if block.canvas_size != self.canvas_size:
                raise ValueError(
                    f"{name}.canvas_size={block.canvas_size} disagrees with canvas_size={self.canvas_size}"
                )
        for name in ("layout", "stats"):
            if getattr(self, name).n_rewards != self.n_rewards:
                raise ValueError(f"{name}.n_rewards disagrees with n_rewards={self.n_rewards}")
        return self


def load_arena_config(path: Path | str) -> ArenaConfig:
    """Load an ArenaConfig from a JSON file; absent keys keep their defaults.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the content fails validation
    """
    payload = json.loads(Path(path).read_text("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Arena config {path} must contain a JSON object")
    return ArenaConfig.model_validate(payload)


# ============================================================================
# Environment-backed process settings
# ============================================================================


class Config:
    """Application configuration loaded from environment variables."""

    # Storage
    DATA_DIR: Path = Path(os.getenv("MOUSEMAZE_DATA_DIR", "mousemaze_sessions"))

    # Experimental design
    CONDITION_SCHEME: str = os.getenv("CONDITION_SCHEME", ConditionScheme.CONCENTRATED_DIFFUSE.value)
    CLUSTER_SHAPE: str = os.getenv("CLUSTER_SHAPE", ClusterShape.CIRCLE.value)
    N_ROUNDS: int = int(os.getenv("N_ROUNDS", "5"))
    N_REWARDS: int = int(os.getenv("N_REWARDS", str(DEFAULT_N_REWARDS)))
    CANVAS_SIZE: int = int(os.getenv("CANVAS_SIZE", str(DEFAULT_CANVAS_SIZE)))
    TIME_LIMIT_MS: int = int(os.getenv("TIME_LIMIT_MS", "60000"))

    # Optional JSON file with a full ArenaConfig
    ARENA_CONFIG_PATH: str | None = os.getenv("ARENA_CONFIG_PATH")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if values are unusable."""
        schemes = {scheme.value for scheme in ConditionScheme}
        if cls.CONDITION_SCHEME not in schemes:
            raise ValueError(
                f"CONDITION_SCHEME must be one of {sorted(schemes)}, got '{cls.CONDITION_SCHEME}'"
            )
        shapes = {shape.value for shape in ClusterShape}
        if cls.CLUSTER_SHAPE not in shapes:
            raise ValueError(f"CLUSTER_SHAPE must be one of {sorted(shapes)}, got '{cls.CLUSTER_SHAPE}'")
        if cls.N_REWARDS < 0:
            raise ValueError("N_REWARDS cannot be negative")
        if cls.ARENA_CONFIG_PATH and not Path(cls.ARENA_CONFIG_PATH).exists():
            raise ValueError(f"ARENA_CONFIG_PATH points to a missing file: {cls.ARENA_CONFIG_PATH}")

    @classmethod
    def scheme(cls) -> ConditionScheme:
        return ConditionScheme(cls.CONDITION_SCHEME)

    @classmethod
    def arena(cls, **overrides: Any) -> ArenaConfig:
        """Build the ArenaConfig for this process.

        Starts from ARENA_CONFIG_PATH when set, otherwise from the individual
        environment values; keyword overrides win over both.
        """
        cls.validate()
        if cls.ARENA_CONFIG_PATH:
            base: Dict[str, Any] = json.loads(Path(cls.ARENA_CONFIG_PATH).read_text("utf-8"))
        else:
            base = {
                "canvas_size": cls.CANVAS_SIZE,
                "n_rewards": cls.N_REWARDS,
                "layout": {"cluster_shape": cls.CLUSTER_SHAPE},
                "timing": {"time_limit_ms": cls.TIME_LIMIT_MS, "n_rounds": cls.N_ROUNDS},
            }
        base.update(overrides)
        return ArenaConfig.model_validate(base)

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "mousemaze Configuration:",
            f"  Data dir: {cls.DATA_DIR}",
            f"  Condition scheme: {cls.CONDITION_SCHEME}",
            f"  Cluster shape: {cls.CLUSTER_SHAPE}",
            f"  Canvas: {cls.CANVAS_SIZE}px, Rewards: {cls.N_REWARDS}",
            f"  Rounds: {cls.N_ROUNDS}, Time limit: {cls.TIME_LIMIT_MS}ms",
        ]
        return "\n".join(lines)
