"""
API Key Pool
============
Round-robin rotation over a set of service credentials with permanent
per-run exclusion of failed keys.

The rotation state is an immutable value (KeyPoolState). The pure
functions next_key() and mark_failed() return a new state instead of
mutating the old one; APIKeyPool is the run-owned holder the extraction
client talks to.

Usage:
    pool = APIKeyPool(["key-a", "key-b"])
    key = pool.next()          # None once every key has failed
    pool.mark_failed(key)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyPoolState:
    """Snapshot of a key pool: ordered keys, rotation cursor, failed set."""
    keys: tuple[str, ...]
    cursor: int = 0
    failed: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def create(cls, keys: Iterable[str]) -> "KeyPoolState":
        """Build a state from user-supplied keys (blank keys dropped, duplicates collapsed)."""
        unique: list[str] = []
        for key in keys:
            key = (key or "").strip()
            if key and key not in unique:
                unique.append(key)
        if not unique:
            raise ValueError("At least one API key is required")
        return cls(keys=tuple(unique))

    @property
    def size(self) -> int:
        return len(self.keys)

    @property
    def exhausted(self) -> bool:
        return len(self.failed) >= len(self.keys)

    @property
    def active_keys(self) -> tuple[str, ...]:
        return tuple(k for k in self.keys if k not in self.failed)


def next_key(state: KeyPoolState) -> tuple[Optional[str], KeyPoolState]:
    """
    Select the next active key starting at the cursor.

    Returns (key, new_state). The new cursor points just past the returned
    key, so repeated calls walk the pool in order. Returns (None, state)
    when every key has failed.
    """
    if state.exhausted:
        return None, state

    size = state.size
    for offset in range(size):
        index = (state.cursor + offset) % size
        key = state.keys[index]
        if key not in state.failed:
            return key, replace(state, cursor=(index + 1) % size)

    return None, state


def mark_failed(state: KeyPoolState, key: str) -> KeyPoolState:
    """Exclude a key for the rest of the run. Idempotent; unknown keys are ignored."""
    if key not in state.keys or key in state.failed:
        return state
    return replace(state, failed=state.failed | {key})


def mask_key(key: str) -> str:
    """Loggable form of a credential."""
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


class APIKeyPool:
    """
    Run-owned key pool.

    Holds the current KeyPoolState and swaps it on every operation. Not
    thread-safe; one pool serves one sequential extraction run.
    """

    def __init__(self, keys: Iterable[str]):
        self._state = KeyPoolState.create(keys)

    @property
    def state(self) -> KeyPoolState:
        return self._state

    @property
    def size(self) -> int:
        return self._state.size

    @property
    def active_count(self) -> int:
        return len(self._state.active_keys)

    @property
    def exhausted(self) -> bool:
        return self._state.exhausted

    def next(self) -> Optional[str]:
        key, self._state = next_key(self._state)
        return key

    def mark_failed(self, key: str):
        before = self._state
        self._state = mark_failed(self._state, key)
        if self._state is not before:
            logger.warning(
                f"API key {mask_key(key)} marked failed "
                f"({self.active_count}/{self.size} keys remaining)"
            )
