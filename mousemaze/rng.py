"""Seeded randomness for layouts and true randomness for condition assignment.

Layout generation must be reproducible bit-for-bit from a string seed, so it
uses a small linear congruential generator with exact integer arithmetic.
Condition assignment is the one place where real entropy is wanted; it draws
from ``secrets`` once per participant.
"""

from __future__ import annotations

import secrets

from .schemas import Condition, ConditionScheme

_MASK_31 = 0x7FFFFFFF
_LCG_MULTIPLIER = 1103515245
_LCG_INCREMENT = 12345


def _to_int32(value: int) -> int:
    """Wrap an integer to the signed 32-bit range."""
    return ((value + 0x80000000) & 0xFFFFFFFF) - 0x80000000


def _fold(text: str) -> int:
    """Fold characters through ``h = h * 31 + code`` with 32-bit wraparound."""
    h = 0
    for char in text:
        h = _to_int32((h << 5) - h + ord(char))
    return h


class SeededRandom:
    """Deterministic generator producing floats and ints from a string seed.

    One instance serves one logical sequence (one round layout); it is not
    shared between threads.
    """

    def __init__(self, seed: str):
        self.state = (abs(_fold(seed)) & _MASK_31) or 1

    def next(self) -> float:
        """Advance the generator and return a float in [0, 1)."""
        self.state = (self.state * _LCG_MULTIPLIER + _LCG_INCREMENT) & _MASK_31
        return self.state / 0x80000000

    def next_int(self, low: int, high: int) -> int:
        """Return an integer in [low, high] inclusive."""
        return int(self.next() * (high - low + 1)) + low

    def next_float(self, low: float, high: float) -> float:
        """Return a float in [low, high)."""
        return self.next() * (high - low) + low


def stable_hash(text: str) -> str:
    """Return an 8-digit hex digest of ``text`` that is stable across runs."""
    return format(abs(_fold(text)), "x").zfill(8)


def participant_key(name: str, age: int, gender: str) -> str:
    """Derive the opaque participant key from demographic inputs."""
    return stable_hash(f"{name.strip().lower()}|{age}|{gender}")


def assign_condition(scheme: ConditionScheme = ConditionScheme.CONCENTRATED_DIFFUSE) -> Condition:
    """Draw a condition 50/50 from the active scheme using a CSPRNG."""
    structured, diffuse = scheme.pair
    return structured if secrets.randbits(32) / 0x100000000 < 0.5 else diffuse
