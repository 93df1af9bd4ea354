"""
Execution slippage model and its deterministic random source.

Slippage is expressed in basis points and always applied against the
trader.  The only randomness is in its magnitude and comes from an
explicitly injected generator, so identical inputs and seed reproduce
identical fills.
"""

from __future__ import annotations

import math
from typing import Protocol

from ..config.schema import SlippageConfig
from .models import BUY, EVENT_RISK_HIGH, EVENT_RISK_MEDIUM, StressedQuote

_UINT32 = 0xFFFFFFFF


class RandomSource(Protocol):
    """Interface of the generator consumed by the slippage model."""

    def next(self) -> float:
        """Return a float in [0, 1)."""

    def next_signed(self) -> float:
        """Return a float in [-1, 1)."""


class XorShiftRng:
    """xorshift32 generator.  A zero seed is coerced to one."""

    def __init__(self, seed: int = 1) -> None:
        state = int(math.floor(float(seed))) & _UINT32
        self._state = state or 1

    def next(self) -> float:
        x = self._state
        x ^= (x << 13) & _UINT32
        x ^= x >> 17
        x ^= (x << 5) & _UINT32
        self._state = x & _UINT32
        return self._state / 4294967296.0

    def next_signed(self) -> float:
        return self.next() * 2.0 - 1.0


def execution_slippage_bps(
    quote: StressedQuote,
    cfg: SlippageConfig,
    rng: RandomSource,
    is_entry: bool,
) -> float:
    """Return the non‑negative slippage, in bps, for one fill."""
    bps = cfg.entry_base_bps if is_entry else cfg.exit_base_bps
    if quote.event_risk == EVENT_RISK_MEDIUM:
        bps += cfg.medium_event_bps
    if quote.event_risk == EVENT_RISK_HIGH:
        bps += cfg.high_event_bps
    if quote.shock:
        bps += cfg.shock_bps
    # Always draw, so the sequence of fills does not depend on the amplitude.
    bps += (cfg.random_bps or 0.0) * rng.next_signed()
    return max(0.0, bps)


def apply_execution_price(side: str, reference_price: float, slippage_bps: float) -> float:
    """Apply slippage to `reference_price` against a trader on `side`.

    Raises
    ------
    ValueError
        If the reference price is not a positive finite number.
    """
    ref = float(reference_price)
    if not (math.isfinite(ref) and ref > 0):
        raise ValueError(f"Invalid reference price: {reference_price!r}")
    bps = max(0.0, float(slippage_bps or 0.0))
    sign = 1 if side == BUY else -1
    return ref * (1 + sign * bps / 10_000)
