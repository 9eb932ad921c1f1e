"""
Round orchestration and the session runner.

``RoundOrchestrator`` owns one foraging round and moves it through
``IDLE -> COUNTDOWN -> ACTIVE -> ENDED``. It wires the layout, the simulator
(agent or cursor mode), the collection detector and the round timer together
and is driven entirely by the caller's clock, so it never sleeps and never
touches storage. Everything it produces is queued in an ``Outbox``.

``ExperimentSession`` is the async loop around it: resolve the participant's
condition, optionally run maze training, play ``n_rounds`` rounds frame by
frame with an injected clock and sleep, and forward all records to the
persistence backend.

Round finalization is idempotent. A timeout and the final reward landing in
the same frame produce exactly one ``Round`` and one terminal event.
"""

import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from .config import ArenaConfig
from .detection import RewardDetector
from .geometry import js_round
from .layout import RoundLayout, generate_participant_layout
from .logging_utils import is_verbose, log_deterministic, log_info, log_input, log_success
from .maze import MazeTrainer
from .persistence import InMemoryPersistence, Outbox, PersistenceStrategy
from .physics import AgentSimulator, CursorTracker, Steer, WallClock, utc_now
from .rng import assign_condition
from .schemas import (
    AgentState,
    Condition,
    ConditionScheme,
    EndReason,
    EventType,
    GameEvent,
    MovementSample,
    ParticipantProfile,
    Reward,
    Round,
    RoundStats,
    SessionRecord,
)
from .stats import calculate_round_stats
from .timers import Countdown, GameTimer


# =============================
# Module-level Exceptions
# =============================

class InvalidTransitionError(Exception):
    """Raised when a round is driven through a transition its phase forbids.

    Repeated finalization is not an error (it is a silent no-op); this covers
    contract violations such as ending a round that never started.
    """

    def __init__(self, *, phase: "RoundPhase", action: str) -> None:
        self.phase = phase
        self.action = action
        super().__init__(
            f"Cannot {action} while the round is {phase.value}.\n\n"
            "Rounds advance idle -> countdown -> active -> ended; create a new "
            "RoundOrchestrator for the next round index."
        )


class RoundPhase(str, Enum):
    IDLE = "idle"
    COUNTDOWN = "countdown"
    ACTIVE = "active"
    ENDED = "ended"


class InputMode(str, Enum):
    """How position is driven: keyboard-steered agent or direct pointer."""

    AGENT = "agent"
    CURSOR = "cursor"


class RoundResult(BaseModel):
    """Everything one finished round produced."""

    round: Round
    stats: RoundStats
    movements: List[MovementSample] = Field(default_factory=list)
    events: List[GameEvent] = Field(default_factory=list)


# ============================================================================
# Single round
# ============================================================================


class RoundOrchestrator:
    """State machine for one foraging round.

    The caller feeds time through ``tick(now_ms)`` and input through
    ``set_steering`` (agent mode) or ``pointer_*`` (cursor mode).
    """

    def __init__(
        self,
        config: ArenaConfig,
        session_id: str,
        participant_key: str,
        condition: Union[Condition, str],
        round_index: int,
        *,
        mode: Union[InputMode, str] = InputMode.AGENT,
        participant_id: Optional[str] = None,
        on_collect: Optional[Callable[[], None]] = None,
        on_position_update: Optional[Callable[[AgentState], None]] = None,
        on_round_end: Optional[Callable[[Round], None]] = None,
        record_input_events: bool = True,
        wall_clock: Optional[WallClock] = None,
    ):
        self.config = config
        self.session_id = session_id
        self.participant_key = participant_key
        self.condition = Condition(condition)
        self.round_index = round_index
        self.mode = InputMode(mode)
        self.participant_id = participant_id or participant_key
        self.on_position_update = on_position_update
        self.on_round_end = on_round_end
        self.wall_clock = wall_clock or utc_now

        self.phase = RoundPhase.IDLE
        self.outbox = Outbox()
        self.movements: List[MovementSample] = []
        self.events: List[GameEvent] = []
        self.round: Optional[Round] = None

        self._now_ms = 0.0
        self._round_start_ms = 0.0
        self._round_start_abs: Optional[datetime] = None
        self._last_event_ms = 0

        self.layout: RoundLayout = generate_participant_layout(
            participant_key, round_index, self.condition, config.layout
        )
        self.rewards = self.layout.rewards

        self.detector = RewardDetector(
            self.rewards,
            session_id=session_id,
            round_index=round_index,
            hit_radius=config.hit_radius,
            target_count=config.n_rewards,
            on_event=self._record_event,
            on_reward_collected=self._on_reward_collected,
            on_all_collected=self._on_all_collected,
            on_collect=on_collect,
            wall_clock=self.wall_clock,
        )
        self.timer = GameTimer(config.timing.time_limit_ms, on_time_up=self._on_time_up)
        self.start_countdown = Countdown.seconds(config.timing.countdown_seconds)
        self.post_round_countdown = Countdown(config.timing.post_round_delay_ms)

        input_hook = self._on_input_event if record_input_events else None
        self.simulator: Union[AgentSimulator, CursorTracker]
        if self.mode is InputMode.AGENT:
            self.simulator = AgentSimulator(
                config.physics,
                session_id,
                round_index,
                self._on_samples,
                participant_id=self.participant_id,
                condition=self.condition,
                on_position_update=self._on_agent_moved,
                on_input_event=input_hook,
                wall_clock=self.wall_clock,
            )
        else:
            self.simulator = CursorTracker(
                config.physics,
                session_id,
                round_index,
                self._on_samples,
                participant_id=self.participant_id,
                condition=self.condition,
                on_input_event=input_hook,
                wall_clock=self.wall_clock,
            )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def score(self) -> int:
        """Authoritative collected count (size of the detector's id set)."""
        return self.detector.collected_count

    @property
    def end_reason(self) -> Optional[EndReason]:
        return self.round.end_reason if self.round else None

    def countdown_remaining(self, now_ms: float) -> int:
        if self.phase is RoundPhase.COUNTDOWN:
            return self.start_countdown.remaining_seconds(now_ms)
        if self.phase is RoundPhase.ENDED:
            return self.post_round_countdown.remaining_seconds(now_ms)
        return 0

    def time_remaining(self, now_ms: float) -> int:
        return self.timer.remaining(now_ms)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def request_start(self, now_ms: float) -> bool:
        """Begin the start countdown. Repeated requests are ignored.

        Returns True when this call started the round's countdown.
        """
        if self.phase is RoundPhase.ENDED:
            raise InvalidTransitionError(phase=self.phase, action="start")
        if self.phase is not RoundPhase.IDLE:
            return False

        self._now_ms = now_ms
        self.phase = RoundPhase.COUNTDOWN
        self.start_countdown.start(now_ms)
        if is_verbose():
            log_info(
                f"Round {self.round_index}: starting in "
                f"{self.start_countdown.remaining_seconds(now_ms)}s"
            )
        if self.start_countdown.tick(now_ms):
            self._activate(now_ms)
        return True

    def tick(self, now_ms: float) -> RoundPhase:
        """Advance the round to ``now_ms``."""
        self._now_ms = now_ms
        if self.phase is RoundPhase.COUNTDOWN:
            if self.start_countdown.tick(now_ms):
                self._activate(now_ms)
        elif self.phase is RoundPhase.ACTIVE:
            # A late frame past the limit ends the round before anything moves
            if self.timer.check(now_ms):
                return self.phase
            if self.mode is InputMode.AGENT:
                self.simulator.step(now_ms)
            else:
                self.simulator.tick(now_ms)
        elif self.phase is RoundPhase.ENDED:
            self.post_round_countdown.tick(now_ms)
        return self.phase

    def end_round(
        self,
        reason: Union[EndReason, str],
        now_ms: Optional[float] = None,
        final_score: Optional[int] = None,
    ) -> Optional[Round]:
        """Finalize the round once; later calls return None and change nothing.

        ``all_rewards`` forces the score to the reward count; ``timeout`` uses
        the authoritative collected count unless ``final_score`` is given.
        """
        if self.phase is RoundPhase.ENDED:
            return None
        if self.phase is not RoundPhase.ACTIVE:
            raise InvalidTransitionError(phase=self.phase, action="end the round")
        reason = EndReason(reason)
        if final_score is not None and not 0 <= final_score <= self.config.n_rewards:
            raise ValueError(
                f"final_score must be within 0..{self.config.n_rewards}, got {final_score}"
            )

        # Guard before any side effect so re-entrant callers see ENDED
        self.phase = RoundPhase.ENDED
        if now_ms is not None:
            self._now_ms = now_ms
        now = self._now_ms

        duration_ms = self.timer.stop(now)
        self.detector.disarm()
        self.simulator.deactivate()

        if final_score is not None:
            score = final_score
        elif reason is EndReason.ALL_REWARDS:
            score = self.config.n_rewards
        else:
            score = self.detector.collected_count

        terminal = EventType.ROUND_END if reason is EndReason.ALL_REWARDS else EventType.TIMEOUT
        self._record_event(
            self._event(
                terminal,
                now,
                reason=reason.value,
                total_rewards_collected=score,
                duration_ms=duration_ms,
            )
        )

        end_abs = self.wall_clock()
        self.round = Round(
            session_id=self.session_id,
            round_index=self.round_index,
            condition=self.condition,
            start_timestamp=self._round_start_abs or end_abs,
            end_timestamp=end_abs,
            duration_ms=duration_ms,
            rewards_collected=score,
            resource_positions=[reward.model_copy() for reward in self.rewards],
            cluster_params=self.layout.cluster_params,
            end_reason=reason,
        )
        self.outbox.add_round(self.round)
        self.post_round_countdown.start(now)

        if is_verbose():
            log_deterministic(
                f"Round {self.round_index} finalized: {reason.value}, "
                f"{score}/{self.config.n_rewards} in {duration_ms}ms"
            )
        if self.on_round_end is not None:
            self.on_round_end(self.round)
        return self.round

    def ready_for_next(self, now_ms: float) -> bool:
        """True once the round has ended and the post-round delay has passed."""
        if self.phase is not RoundPhase.ENDED:
            return False
        self.post_round_countdown.tick(now_ms)
        return self.post_round_countdown.finished

    def _activate(self, now_ms: float) -> None:
        self.phase = RoundPhase.ACTIVE
        self._round_start_ms = now_ms
        self._round_start_abs = self.wall_clock()
        self._last_event_ms = 0

        self.timer.start(now_ms)
        self.detector.arm(now_ms)
        self.simulator.activate(now_ms)

        metadata = {
            "condition": self.condition.value,
            "n_rewards": len(self.rewards),
            "mode": self.mode.value,
        }
        if self.layout.cluster_params is not None:
            metadata["cluster_params"] = self.layout.cluster_params.model_dump()
        self._record_event(self._event(EventType.ROUND_START, now_ms, **metadata))

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def set_steering(self, left: bool, right: bool) -> None:
        self._require_mode(InputMode.AGENT, "set_steering")
        self.simulator.set_steering(left, right)

    def press(self, direction: Union[Steer, str]) -> None:
        self._require_mode(InputMode.AGENT, "press")
        self.simulator.press(direction)

    def release(self, direction: Union[Steer, str]) -> None:
        self._require_mode(InputMode.AGENT, "release")
        self.simulator.release(direction)

    def pointer_enter(self) -> None:
        self._require_mode(InputMode.CURSOR, "pointer_enter")
        self.simulator.enter()

    def pointer_leave(self) -> None:
        self._require_mode(InputMode.CURSOR, "pointer_leave")
        self.simulator.leave()

    def pointer_move(self, x: float, y: float, now_ms: float) -> None:
        """Move the pointer; collection is checked immediately while active."""
        self._require_mode(InputMode.CURSOR, "pointer_move")
        self._now_ms = now_ms
        position = self.simulator.move_to(x, y)
        if self.phase is RoundPhase.ACTIVE:
            self.timer.check(now_ms)
        if self.phase is RoundPhase.ACTIVE and self.simulator.inside:
            self.detector.check_position(position, now_ms)

    def _require_mode(self, mode: InputMode, action: str) -> None:
        if self.mode is not mode:
            raise ValueError(f"{action} requires {mode.value} mode; this round uses {self.mode.value}")

    # ------------------------------------------------------------------
    # Collaborator callbacks
    # ------------------------------------------------------------------

    def _on_agent_moved(self, agent: AgentState) -> None:
        if self.phase is RoundPhase.ACTIVE:
            self.detector.check_position((agent.x, agent.y), self._now_ms, agent=agent)
        if self.on_position_update is not None:
            self.on_position_update(agent)

    def _on_reward_collected(self, reward: Reward, count: int) -> None:
        self.simulator.mark_food_collected()
        if is_verbose():
            log_input(f"Reward {reward.id} collected ({count}/{self.config.n_rewards})")

    def _on_all_collected(self) -> None:
        self.end_round(EndReason.ALL_REWARDS)

    def _on_time_up(self) -> None:
        self.end_round(EndReason.TIMEOUT)

    def _on_samples(self, batch: List[MovementSample]) -> None:
        self.movements.extend(batch)
        self.outbox.add_movement_batch(batch)

    def _on_input_event(self, event_type: EventType, metadata: dict) -> None:
        self._record_event(self._event(event_type, self._now_ms, **metadata))

    def _event(self, event_type: EventType, now_ms: float, **metadata) -> GameEvent:
        timestamp = max(0, js_round(now_ms - self._round_start_ms), self._last_event_ms)
        return GameEvent(
            session_id=self.session_id,
            round_index=self.round_index,
            event_type=event_type,
            timestamp_ms=timestamp,
            timestamp_abs=self.wall_clock(),
            metadata=metadata,
        )

    def _record_event(self, event: GameEvent) -> None:
        self._last_event_ms = max(self._last_event_ms, event.timestamp_ms)
        self.events.append(event)
        self.outbox.add_event(event)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def stats(self, now_ms: Optional[float] = None) -> RoundStats:
        """Derive statistics from everything recorded so far."""
        if self.round is not None:
            duration = self.round.duration_ms
            collected = self.round.rewards_collected
        else:
            duration = self.timer.elapsed(self._now_ms if now_ms is None else now_ms)
            collected = self.score
        return calculate_round_stats(
            self.movements,
            self.events,
            duration,
            collected,
            self.config.stats,
            session_id=self.session_id,
            round_index=self.round_index,
        )

    def result(self) -> RoundResult:
        if self.round is None:
            raise InvalidTransitionError(phase=self.phase, action="build a result")
        return RoundResult(
            round=self.round,
            stats=self.stats(),
            movements=list(self.movements),
            events=list(self.events),
        )

    def drain_outbox(self) -> Outbox:
        return self.outbox.drain()

    async def flush_to(self, persistence: PersistenceStrategy) -> int:
        return await self.outbox.flush_to(persistence)


# ============================================================================
# Session runner
# ============================================================================

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
RoundController = Callable[[RoundOrchestrator, float], None]
MazeController = Callable[[MazeTrainer, float], None]


def monotonic_ms() -> float:
    return time.perf_counter() * 1000


class ExperimentSession:
    """Runs one participant session end to end.

    Fully decoupled - the clock, sleep, input controller and persistence
    backend are all injected. The controller is called once per frame while a
    round is active and steers (agent mode) or moves the pointer (cursor mode).
    """

    def __init__(
        self,
        config: ArenaConfig,
        participant_key: str,
        *,
        persistence: Optional[PersistenceStrategy] = None,
        scheme: Union[ConditionScheme, str] = ConditionScheme.CONCENTRATED_DIFFUSE,
        condition: Optional[Union[Condition, str]] = None,
        mode: Union[InputMode, str] = InputMode.AGENT,
        controller: Optional[RoundController] = None,
        maze_controller: Optional[MazeController] = None,
        maze_timeout_ms: float = 300_000,
        session_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        wall_clock: Optional[WallClock] = None,
        frame_interval_ms: Optional[float] = None,
        on_collect: Optional[Callable[[], None]] = None,
    ):
        """Initialize the session runner.

        Args:
            config: Arena constants for every round
            participant_key: Opaque key seeding the layouts
            persistence: Backend (defaults to InMemoryPersistence)
            scheme: Condition pair to draw from for new participants
            condition: Condition to assign if the participant is new, instead
                of a random draw; a stored assignment always wins
            mode: Agent or cursor input
            controller: Per-frame input callback for rounds
            maze_controller: Per-frame input callback for maze training; the
                maze phase is skipped when None
            maze_timeout_ms: Give up on maze training after this long
            clock: Monotonic milliseconds (defaults to perf_counter)
            sleep: Awaitable sleep in seconds (defaults to asyncio.sleep)
            wall_clock: Absolute timestamps for records
            frame_interval_ms: Frame length (defaults to physics.frame_interval_ms)
        """
        self.config = config
        self.participant_key = participant_key
        self.participant_id = participant_id or participant_key
        self.persistence = persistence or InMemoryPersistence()
        self.scheme = ConditionScheme(scheme)
        self.forced_condition = Condition(condition) if condition is not None else None
        self.mode = InputMode(mode)
        self.controller = controller
        self.maze_controller = maze_controller
        self.maze_timeout_ms = maze_timeout_ms
        self.session_id = session_id or uuid4().hex
        self.clock = clock or monotonic_ms
        self.sleep = sleep or asyncio.sleep
        self.wall_clock = wall_clock or utc_now
        self.frame_interval_ms = frame_interval_ms or config.physics.frame_interval_ms
        self.on_collect = on_collect

        self.condition: Optional[Condition] = None
        self.record: Optional[SessionRecord] = None

    async def resolve_condition(self) -> Condition:
        """Reuse the participant's stored condition or draw and store one."""
        profile = await self.persistence.get_participant(self.participant_key)
        if profile is not None:
            return profile.assigned_condition

        condition = self.forced_condition or assign_condition(self.scheme)
        await self.persistence.save_participant(
            ParticipantProfile(
                participant_key=self.participant_key,
                assigned_condition=condition,
                created_at=self.wall_clock(),
            )
        )
        return condition

    async def run(self, n_rounds: Optional[int] = None) -> List[RoundResult]:
        """Run maze training (if configured) and all rounds.

        Returns:
            One RoundResult per round, in order

        Raises:
            Exception: Any persistence failure; the session is marked incomplete
        """
        if n_rounds is None:
            n_rounds = self.config.timing.n_rounds
        await self.persistence.initialize()

        try:
            try:
                return await self._run_rounds(n_rounds)
            except Exception:
                await self.persistence.update_session_status(
                    self.session_id, "incomplete", end_timestamp=self.wall_clock()
                )
                raise
        finally:
            # Always release the backend, even if a round fails
            await self.persistence.close()

    async def _run_rounds(self, n_rounds: int) -> List[RoundResult]:
        self.condition = await self.resolve_condition()

        self.record = SessionRecord(
            session_id=self.session_id,
            participant_id=self.participant_id,
            condition=self.condition,
            start_timestamp=self.wall_clock(),
            config=self.config.model_dump(mode="json"),
        )
        await self.persistence.save_session(self.record)

        log_info(f"Starting session {self.session_id}")
        log_info(f"Condition: {self.condition.value}, Rounds: {n_rounds}, Mode: {self.mode.value}")

        if self.maze_controller is not None:
            completed = await self.run_maze()
            await self.persistence.update_session_status(
                self.session_id, "in_progress", maze_completed=completed
            )

        results: List[RoundResult] = []
        for round_index in range(n_rounds):
            results.append(await self.run_round(round_index))
            await self.persistence.update_session_status(
                self.session_id, "in_progress", rounds_completed=len(results)
            )

        await self.persistence.update_session_status(
            self.session_id,
            "complete",
            end_timestamp=self.wall_clock(),
            rounds_completed=len(results),
        )
        log_success(f"Session {self.session_id} complete ({len(results)} rounds)")
        return results

    async def run_maze(self) -> bool:
        """Play maze training until the target is reached or the timeout passes."""
        trainer = MazeTrainer(
            self.config,
            self.session_id,
            participant_id=self.participant_id,
            wall_clock=self.wall_clock,
        )
        started = self.clock()
        trainer.start(started)
        log_info("Maze training started")

        try:
            while not trainer.completed:
                await self.sleep(self.frame_interval_ms / 1000)
                now = self.clock()
                if now - started >= self.maze_timeout_ms:
                    break
                if self.maze_controller is not None:
                    self.maze_controller(trainer, now)
                trainer.tick(now)
                await trainer.outbox.flush_to(self.persistence)
        finally:
            trainer.stop()
            await trainer.outbox.flush_to(self.persistence)

        if trainer.completed:
            log_success(f"Maze complete after {trainer.collisions} collisions")
        else:
            log_info(f"Maze training timed out after {trainer.collisions} collisions")
        return trainer.completed

    async def run_round(self, round_index: int) -> RoundResult:
        """Play one round from countdown through the post-round delay."""
        if self.condition is None:
            self.condition = await self.resolve_condition()

        orchestrator = RoundOrchestrator(
            self.config,
            self.session_id,
            self.participant_key,
            self.condition,
            round_index,
            mode=self.mode,
            participant_id=self.participant_id,
            on_collect=self.on_collect,
            wall_clock=self.wall_clock,
        )
        log_deterministic(
            f"Round {round_index + 1}: {len(orchestrator.rewards)} rewards "
            f"({self.condition.value}, final spacing {orchestrator.layout.final_spacing:.1f}px)"
        )

        orchestrator.request_start(self.clock())
        while orchestrator.phase is not RoundPhase.ENDED:
            await self.sleep(self.frame_interval_ms / 1000)
            now = self.clock()
            if self.controller is not None and orchestrator.phase is RoundPhase.ACTIVE:
                self.controller(orchestrator, now)
            orchestrator.tick(now)
            await orchestrator.flush_to(self.persistence)

        while not orchestrator.ready_for_next(self.clock()):
            await self.sleep(self.frame_interval_ms / 1000)
        await orchestrator.flush_to(self.persistence)

        result = orchestrator.result()
        log_success(
            f"Round {round_index + 1} ended ({result.round.end_reason.value}): "
            f"{result.round.rewards_collected}/{self.config.n_rewards} rewards "
            f"in {result.round.duration_ms}ms"
        )
        return result
