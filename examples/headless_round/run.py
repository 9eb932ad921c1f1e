"""
Headless foraging session with a scripted participant.

WHAT THIS SHOWS:
- Building an ArenaConfig from environment settings (.env supported)
- Resolving (and persisting) a participant's condition
- Driving rounds with a per-frame controller instead of a keyboard
- Writing every sample, event and round to JSON lines
- Reading per-round statistics back from the results

The scripted agent steers toward the nearest uncollected reward. In cursor mode
the pointer hops from reward to reward instead.

RUN:
    python -m examples.headless_round.run --rounds 2 --rewards 40
    python -m examples.headless_round.run --mode cursor --realtime
"""

import argparse
import asyncio
import math
import sys
from typing import Optional

from mousemaze import (
    ExperimentSession,
    InputMode,
    JsonPersistence,
    RoundOrchestrator,
)
from mousemaze.config import Config
from mousemaze.geometry import heading_delta
from mousemaze.schemas import Reward


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Run a scripted mousemaze session")
    parser.add_argument("--participant", default="demo-participant", help="Participant key")
    parser.add_argument("--rounds", type=int, default=None, help="Rounds to play (default: N_ROUNDS)")
    parser.add_argument("--rewards", type=int, default=None, help="Rewards per round (default: N_REWARDS)")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in InputMode],
        default=InputMode.AGENT.value,
        help="Agent steering or direct cursor input",
    )
    parser.add_argument(
        "--realtime",
        action="store_true",
        help="Sleep for real between frames (default: simulated clock)",
    )
    return parser.parse_args()


class SimulatedClock:
    """Millisecond clock that only advances when the session sleeps."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds * 1000


def nearest_reward(orchestrator: RoundOrchestrator, x: float, y: float) -> Optional[Reward]:
    remaining = [r for r in orchestrator.rewards if not r.collected]
    if not remaining:
        return None
    return min(remaining, key=lambda r: math.hypot(r.x - x, r.y - y))


def steer_toward_nearest(orchestrator: RoundOrchestrator, now_ms: float) -> None:
    agent = orchestrator.simulator.agent
    target = nearest_reward(orchestrator, agent.x, agent.y)
    if target is None:
        orchestrator.set_steering(False, False)
        return

    # Screen y grows downward; headings grow counter-clockwise
    desired = math.degrees(math.atan2(agent.y - target.y, target.x - agent.x))
    turn = heading_delta(desired, agent.heading)
    tolerance = orchestrator.config.physics.rotation_speed
    orchestrator.set_steering(left=turn > tolerance, right=turn < -tolerance)


def hop_to_nearest(orchestrator: RoundOrchestrator, now_ms: float) -> None:
    tracker = orchestrator.simulator
    if not tracker.inside:
        orchestrator.pointer_enter()
    here = tracker.position
    x, y = (here.x, here.y) if here else (500.0, 500.0)
    target = nearest_reward(orchestrator, x, y)
    if target is not None:
        orchestrator.pointer_move(target.x, target.y, now_ms)


async def run_session(args: argparse.Namespace) -> None:
    overrides = {}
    if args.rewards is not None:
        overrides["n_rewards"] = args.rewards
    config = Config.arena(**overrides)
    print(Config.display())

    mode = InputMode(args.mode)
    controller = steer_toward_nearest if mode is InputMode.AGENT else hop_to_nearest
    clock = None if args.realtime else SimulatedClock()

    session = ExperimentSession(
        config,
        args.participant,
        persistence=JsonPersistence(Config.DATA_DIR),
        scheme=Config.scheme(),
        mode=mode,
        controller=controller,
        clock=clock,
        sleep=clock.sleep if clock else None,
    )
    results = await session.run(n_rounds=args.rounds)

    print("\n" + "=" * 60)
    print(f"SESSION {session.session_id} ({session.condition.value})")
    print("=" * 60)
    for result in results:
        stats = result.stats
        print(
            f"Round {result.round.round_index + 1}: "
            f"{result.round.rewards_collected} rewards, "
            f"{stats.total_distance:.0f}px travelled, "
            f"coverage {stats.coverage_percent:.0f}%, "
            f"first reward after {stats.first_reward_latency:.0f}ms"
        )
    print(f"\nData written to {Config.DATA_DIR}/sessions/{session.session_id}/")


async def main():
    """Main entry point."""
    args = parse_args()
    try:
        await run_session(args)
    except KeyboardInterrupt:
        print("\n\nSession interrupted by user.")
    except Exception as e:
        print(f"\n\nError during session: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
