"""
In-memory session table.

Sessions live in an arena of slots addressed by integer handles, so the sweep
can walk and reclaim them without chasing references. Each key maps to one of
a fixed set of striped locks. A caller must hold ``locked(key)`` for any
read-modify-write of that key's session. The short table lock only guards
the index and the free list.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from gatekeeper.services.challenge_service import Challenge


class SessionState(str, Enum):
    AWAITING_CHALLENGE = "awaiting_challenge"
    CHALLENGE_ISSUED = "challenge_issued"
    VERIFYING = "verifying"
    PERMITTED = "permitted"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.PERMITTED, SessionState.DENIED, SessionState.EXPIRED})


@dataclass
class Session:
    session_key: str
    state: SessionState
    created_at: float
    last_activity: float
    challenge: Challenge | None = None
    # connection closed while a verification was in flight
    dropped: bool = False

    def transition(self, state: SessionState, now: float) -> None:
        self.state = state
        self.last_activity = now
        if state is not SessionState.CHALLENGE_ISSUED and state is not SessionState.VERIFYING:
            self.challenge = None


class SessionTable:
    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be positive")
        self._slots: list[Session | None] = []
        self._free: list[int] = []
        self._index: dict[str, int] = {}
        self._table_lock = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._index)

    @contextmanager
    def locked(self, session_key: str) -> Iterator[None]:
        lock = self._stripes[hash(session_key) % len(self._stripes)]
        with lock:
            yield

    def keys(self) -> list[str]:
        """Snapshot of current keys."""
        with self._table_lock:
            return list(self._index)

    def handle(self, session_key: str) -> int | None:
        with self._table_lock:
            return self._index.get(session_key)

    def get(self, session_key: str) -> Session | None:
        with self._table_lock:
            handle = self._index.get(session_key)
            return None if handle is None else self._slots[handle]

    def put(self, session: Session) -> int:
        """Insert or replace the session for its key. Returns its handle."""
        with self._table_lock:
            handle = self._index.get(session.session_key)
            if handle is None:
                if self._free:
                    handle = self._free.pop()
                else:
                    handle = len(self._slots)
                    self._slots.append(None)
                self._index[session.session_key] = handle
            self._slots[handle] = session
            return handle

    def remove(self, session_key: str) -> Session | None:
        with self._table_lock:
            handle = self._index.pop(session_key, None)
            if handle is None:
                return None
            session = self._slots[handle]
            self._slots[handle] = None
            self._free.append(handle)
            return session
