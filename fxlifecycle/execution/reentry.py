"""
Reentry lock resolution.

A qualifying close locks the pair against new entries for a while.
`resolve_reentry_lock_minutes` maps closing reasons to a duration and
`merge_reentry_lock_until` folds it into the current lock so that the
unlock time never moves earlier.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, Optional

from ..config.schema import ReentryConfig
from ..utils.timeutils import MS_PER_MINUTE

logger = logging.getLogger(__name__)


def _minutes(value) -> int:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(n) or n <= 0:
        return 0
    return int(n)


def resolve_reentry_lock_minutes(
    reason_codes: Iterable[str],
    reentry: ReentryConfig,
    execute_minutes: int = 0,
    stop_invalidation_stress_active: bool = False,
) -> Optional[int]:
    """Return the lock duration implied by `reason_codes`, or ``None``.

    When several categories apply the longest wins.  A positive lock
    shorter than one execute cycle is raised to `execute_minutes`.
    """
    candidates = []
    for raw in reason_codes:
        code = str(raw or '').strip().upper()
        if code.startswith('EVENT_'):
            candidates.append(_minutes(reentry.lock_minutes_event_risk))
        elif 'TIME_STOP' in code:
            candidates.append(_minutes(reentry.lock_minutes_time_stop))
        elif code.startswith('REGIME_FLIP'):
            candidates.append(_minutes(reentry.lock_minutes_regime_flip))
        elif code.startswith('STOP_INVALIDATED'):
            base = _minutes(reentry.lock_minutes_stop_invalidated)
            if stop_invalidation_stress_active and base > 0:
                stressed = _minutes(reentry.lock_minutes_stop_invalidated_stress)
                candidates.append(stressed if stressed > 0 else base * 2)
            else:
                candidates.append(base)
        elif code.startswith('ROLLOVER_PREEMPTIVE'):
            candidates.append(_minutes(reentry.lock_minutes))

    lock = max(candidates, default=0)
    if lock <= 0:
        return None
    return max(lock, _minutes(execute_minutes))


def merge_reentry_lock_until(current: Optional[int], candidate: Optional[int]) -> Optional[int]:
    """Merge two unlock timestamps; the result is never earlier than either."""
    if candidate is None or not candidate > 0:
        return current
    if current is None or not current > 0:
        return int(candidate)
    return max(int(current), int(candidate))


class ReentryLockBook:
    """Per‑pair unlock timestamps."""

    def __init__(self, locks: Optional[Dict[str, int]] = None) -> None:
        self.locks: Dict[str, int] = dict(locks or {})

    def locked_until(self, pair: str) -> Optional[int]:
        return self.locks.get(pair)

    def is_locked(self, pair: str, now_ms: int) -> bool:
        until = self.locks.get(pair)
        if until is None:
            return False
        if now_ms >= until:
            # expired
            del self.locks[pair]
            return False
        return True

    def apply(
        self,
        pair: str,
        now_ms: int,
        reason_codes: Iterable[str],
        reentry: ReentryConfig,
        execute_minutes: int = 0,
        stop_invalidation_stress_active: bool = False,
    ) -> Optional[int]:
        """Merge the lock implied by `reason_codes`.

        Returns the lock duration in minutes when the unlock time moved,
        otherwise ``None``.
        """
        minutes = resolve_reentry_lock_minutes(
            reason_codes, reentry, execute_minutes, stop_invalidation_stress_active,
        )
        if minutes is None:
            return None
        current = self.locks.get(pair)
        merged = merge_reentry_lock_until(current, now_ms + minutes * MS_PER_MINUTE)
        if merged == current:
            return None
        self.locks[pair] = merged
        logger.debug("Reentry lock for %s moved to %s (%s min)", pair, merged, minutes)
        return minutes

    def clear(self, pair: str) -> None:
        self.locks.pop(pair, None)
