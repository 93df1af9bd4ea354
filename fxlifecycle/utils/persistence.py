"""
State persistence utilities.

Paper and live trading sessions need to remember their state across
restarts: which positions are currently open, the reentry lock of each
pair and the intraday levels of the signal source.  This module
provides simple JSON‑based load/save functions for that purpose and a
small store keyed by pair on top of them.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON state file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    dict or None
        The state dictionary if the file exists, otherwise `None`.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Dict[str, Any]) -> None:
    """Write a JSON state file to disk.

    The file is written to a temporary sibling first and then renamed,
    so a crash never leaves a truncated state file behind.

    Parameters
    ----------
    path : str
        Path to the output file.
    state : dict
        Arbitrary state dictionary.  Must be serialisable to JSON.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
    tmp_path.replace(file_path)


class PositionContextStore:
    """Per‑pair contexts persisted in one JSON file.

    Each context is an opaque dictionary (the state machine context and
    the signal source state).  Reads return copies; writes go straight
    to disk under a lock so concurrent pair workers never interleave.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        state = load_state(self.path) or {}
        return state.get('contexts', {})

    def load_all(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return self._read()

    def load(self, pair: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read().get(pair)

    def save(self, pair: str, context: Dict[str, Any]) -> None:
        with self._lock:
            contexts = self._read()
            contexts[pair] = context
            save_state(self.path, {'contexts': contexts})

