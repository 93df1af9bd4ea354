"""
Signal source interface and the scripted source used by replays.

The engine never decides *whether* a trade idea exists; it only
admits, sizes and manages ideas produced by a signal source.  Swapping
strategies therefore never touches the state machine.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..execution.models import EntrySignal, StressedQuote


class SignalSource:
    """Base class for entry signal producers.

    `observe` is called once per tick with the stressed quote; the
    engine then calls `next_signal` repeatedly while the pair is flat
    until it returns ``None``.
    """

    def observe(self, pair: str, quote: StressedQuote) -> None:
        """Update internal state from a new quote."""

    def next_signal(self, pair: str, ts: int) -> Optional[EntrySignal]:
        raise NotImplementedError


class ScriptedSignalSource(SignalSource):
    """Replays a fixed list of entries.

    Entries are stably sorted by timestamp, so entries sharing a
    timestamp keep their input order.  An entry is due on the first
    tick at or after its timestamp and is consumed whether or not it
    is admitted.
    """

    def __init__(self, entries: Iterable[EntrySignal]) -> None:
        self._entries: List[EntrySignal] = sorted(entries, key=lambda e: e.ts)
        self._index = 0

    def next_signal(self, pair: str, ts: int) -> Optional[EntrySignal]:
        if self._index >= len(self._entries):
            return None
        entry = self._entries[self._index]
        if entry.ts > ts:
            return None
        self._index += 1
        return entry

    @property
    def remaining(self) -> int:
        return len(self._entries) - self._index


class SignalRouter(SignalSource):
    """Dispatch to one signal source per pair."""

    def __init__(self, sources: Dict[str, SignalSource]) -> None:
        self.sources = {pair.strip().upper(): source for pair, source in sources.items()}

    def observe(self, pair: str, quote: StressedQuote) -> None:
        source = self.sources.get(pair)
        if source is not None:
            source.observe(pair, quote)

    def next_signal(self, pair: str, ts: int) -> Optional[EntrySignal]:
        source = self.sources.get(pair)
        return source.next_signal(pair, ts) if source is not None else None
