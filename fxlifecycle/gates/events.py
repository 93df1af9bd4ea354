"""
Economic event gate.

Events are supplied already normalised by an external calendar feed.
An event affects a pair when its currency is one of the pair's two
currencies and its impact tier is configured as blocking.  Inside the
window around the event new entries are blocked; depending on the
impact tier open positions may also be force closed or have their
stops tightened.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..config.schema import EventConfig
from ..risk.budget import pair_currencies
from ..utils.timeutils import MS_PER_MINUTE, to_epoch_ms

logger = logging.getLogger(__name__)

RISK_STATES = ('normal', 'elevated', 'extreme')


@dataclass
class EconomicEvent:
    timestamp_utc: str
    currency: str
    impact: str
    event_name: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EconomicEvent':
        return cls(
            timestamp_utc=str(data.get('timestamp_utc', '')),
            currency=str(data.get('currency', '')).strip().upper(),
            impact=normalize_impact(data.get('impact')),
            event_name=str(data.get('event_name', '')),
        )


@dataclass
class EventMatch:
    event: EconomicEvent
    active_window: bool
    ms_to_event: float


@dataclass
class EventGateDecision:
    pair: str
    block_new_entries: bool
    force_close: bool = False
    tighten_stops: bool = False
    stale_data: bool = False
    reason_codes: List[str] = field(default_factory=list)
    matched_events: List[EconomicEvent] = field(default_factory=list)
    risk_state_applied: str = 'elevated'


def normalize_impact(value: Any) -> str:
    text = str(value or '').strip().upper()
    for tier in ('HIGH', 'MEDIUM', 'LOW'):
        if tier in text:
            return tier
    return 'UNKNOWN'


def resolve_risk_state(value: Optional[str]) -> str:
    state = str(value or '').strip().lower()
    # Unknown states are treated as elevated.
    return state if state in RISK_STATES else 'elevated'


def _event_ms(event: EconomicEvent) -> Optional[int]:
    try:
        return to_epoch_ms(event.timestamp_utc)
    except ValueError:
        return None


def is_within_event_window(event: EconomicEvent, now_ms: int, cfg: EventConfig) -> bool:
    event_ms = _event_ms(event)
    if event_ms is None:
        return False
    start = event_ms - cfg.pre_event_minutes * MS_PER_MINUTE
    end = event_ms + cfg.post_event_minutes * MS_PER_MINUTE
    return start <= now_ms <= end


def list_pair_event_matches(
    pair: str,
    events: Iterable[EconomicEvent],
    now_ms: int,
    cfg: EventConfig,
) -> List[EventMatch]:
    """Events relevant to `pair`, nearest first."""
    currencies = set(pair_currencies(pair))
    if not currencies:
        return []
    blocked = {impact.upper() for impact in cfg.block_new_impacts}
    matches = []
    for event in events:
        if event.currency.upper() not in currencies:
            continue
        if normalize_impact(event.impact) not in blocked:
            continue
        event_ms = _event_ms(event)
        matches.append(EventMatch(
            event=event,
            active_window=is_within_event_window(event, now_ms, cfg),
            ms_to_event=(event_ms - now_ms) if event_ms is not None else math.inf,
        ))
    matches.sort(key=lambda m: abs(m.ms_to_event))
    return matches


def evaluate_event_gate(
    pair: str,
    events: Iterable[EconomicEvent],
    now_ms: int,
    stale_data: bool,
    risk_state: Optional[str],
    cfg: EventConfig,
) -> EventGateDecision:
    """Derive entry blocking, force close and stop tightening for `pair`.

    Stale calendar data allows entries only when the risk state is
    ``normal``; otherwise entries are blocked.  Risk reduction is
    always allowed.
    """
    pair = str(pair or '').strip().upper()
    applied = resolve_risk_state(risk_state)
    if stale_data:
        if applied == 'normal':
            return EventGateDecision(
                pair=pair, block_new_entries=False, stale_data=True,
                reason_codes=['EVENT_DATA_STALE_ALLOW_NORMAL_RISK'], risk_state_applied=applied,
            )
        logger.info("Event data stale for %s; blocking entries (risk state %s)", pair, applied)
        return EventGateDecision(
            pair=pair, block_new_entries=True, stale_data=True,
            reason_codes=['EVENT_DATA_STALE_BLOCK_NON_NORMAL_RISK'], risk_state_applied=applied,
        )

    active = [m.event for m in list_pair_event_matches(pair, events, now_ms, cfg) if m.active_window]
    if not active:
        return EventGateDecision(
            pair=pair, block_new_entries=False,
            reason_codes=['EVENT_WINDOW_CLEAR'], risk_state_applied=applied,
        )

    impacts = {normalize_impact(e.impact) for e in active}
    force_close = bool(impacts & {i.upper() for i in cfg.force_close_impacts})
    tighten = bool(impacts & {i.upper() for i in cfg.tighten_only_impacts})
    reasons = ['EVENT_WINDOW_ACTIVE_BLOCK']
    if force_close:
        reasons.append('EVENT_FORCE_CLOSE_WINDOW')
    if tighten:
        reasons.append('EVENT_TIGHTEN_ONLY_WINDOW')
    return EventGateDecision(
        pair=pair,
        block_new_entries=True,
        force_close=force_close,
        tighten_stops=tighten,
        reason_codes=reasons,
        matched_events=active,
        risk_state_applied=applied,
    )
