"""
Terminal sessions — who may attach a shell to which instance, and for how long.

A session is created by an authenticated call, then claimed by exactly
one WebSocket. Each session carries a ``cancel`` event; setting it (by
the client closing, the PTY exiting, or the idle sweep) tears down both
copy loops of the bridge.

When a state store is given, session metadata (never the channel) is
mirrored under the ``sessions`` namespace so operators can see who holds
a shell. Records left by a previous process are dropped on startup: the
SSH channels they referred to did not survive the restart.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

from vps.state import NS_SESSIONS, StateStore
from xanthus.errors import AuthenticationError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class SessionStatus:
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RUNNING = "running"
    CLOSED = "closed"


@dataclass
class TerminalSession:
    id: str
    owner: str
    instance_id: str
    host: str
    username: str
    created_at: float
    last_activity: float
    status: str = SessionStatus.CONNECTING
    closed_reason: str = ""
    cancel: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "instance_id": self.instance_id,
            "host": self.host,
            "username": self.username,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "status": self.status,
            "closed_reason": self.closed_reason,
        }


class SessionManager:
    """Session table with an idle sweep, optionally mirrored to the state store."""

    IDLE_TIMEOUT_SEC = 1800
    SWEEP_INTERVAL_SEC = 300

    def __init__(
        self,
        idle_timeout: float = None,
        sweep_interval: float = None,
        clock: Callable[[], float] = time.time,
        store: Optional[StateStore] = None,
    ):
        self.idle_timeout = idle_timeout or self.IDLE_TIMEOUT_SEC
        self.sweep_interval = sweep_interval or self.SWEEP_INTERVAL_SEC
        self._clock = clock
        self.store = store

        self._sessions: Dict[str, TerminalSession] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._closed_total = 0

        if store is not None:
            self._drop_stale_records()

    def _drop_stale_records(self):
        stale = list(self.store.list(NS_SESSIONS))
        for session_id in stale:
            self.store.delete(NS_SESSIONS, session_id)
        if stale:
            logger.info(f"Dropped {len(stale)} terminal session records from a previous run")

    def _persist(self, session: TerminalSession):
        if self.store is not None:
            self.store.put(NS_SESSIONS, session.id, session.to_dict())

    def create(self, instance_id: str, owner: str, host: str, username: str = "root") -> TerminalSession:
        if not owner:
            raise AuthenticationError("A terminal session needs an authenticated user")
        now = self._clock()
        session = TerminalSession(
            id=secrets.token_hex(32),
            owner=owner,
            instance_id=instance_id,
            host=host,
            username=username,
            created_at=now,
            last_activity=now,
        )
        with self._lock:
            self._sessions[session.id] = session
        self._persist(session)
        logger.info(f"Terminal session {session.id[:8]} created for {owner} on {username}@{host}")
        return session

    def get(self, session_id: str) -> Optional[TerminalSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_for_user(self, session_id: str, user: str) -> TerminalSession:
        """The session, if it exists and belongs to ``user``."""
        session = self.get(session_id)
        if session is None:
            raise NotFoundError("Terminal session not found")
        if session.owner != user:
            raise AuthenticationError("Terminal session belongs to another user")
        return session

    def claim(self, session_id: str) -> TerminalSession:
        """Mark a session as attached. A session can be attached once."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Terminal session not found")
            if session.status != SessionStatus.CONNECTING:
                raise ConflictError(f"Terminal session is already {session.status}")
            session.status = SessionStatus.CONNECTED
            session.last_activity = self._clock()
        self._persist(session)
        return session

    def mark_running(self, session_id: str):
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != SessionStatus.CONNECTED:
                return
            session.status = SessionStatus.RUNNING
        self._persist(session)

    def touch(self, session_id: str):
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity = self._clock()

    def close(self, session_id: str, reason: str = "closed") -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.status = SessionStatus.CLOSED
            session.closed_reason = reason
            self._closed_total += 1
        session.cancel.set()
        if self.store is not None:
            self.store.delete(NS_SESSIONS, session_id)
        logger.info(f"Terminal session {session_id[:8]} closed ({reason})")
        return True

    def close_for_instance(self, instance_id: str, reason: str = "instance removed") -> int:
        with self._lock:
            ids = [s.id for s in self._sessions.values() if s.instance_id == instance_id]
        return sum(1 for sid in ids if self.close(sid, reason))

    def list_for_user(self, user: str) -> List[TerminalSession]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.owner == user]
        return sorted(sessions, key=lambda s: s.created_at)

    def sweep_idle(self, now: float = None) -> List[str]:
        """Force-close sessions idle past the timeout. Returns their ids."""
        now = self._clock() if now is None else now
        with self._lock:
            idle = [s.id for s in self._sessions.values() if s.idle_for(now) > self.idle_timeout]
        closed = [sid for sid in idle if self.close(sid, "idle timeout")]
        if closed:
            logger.info(f"Swept {len(closed)} idle terminal sessions")
        return closed

    def close_all(self):
        with self._lock:
            ids = list(self._sessions)
        for sid in ids:
            self.close(sid, "shutdown")

    # ── Background Sweeper ───────────────────────────────────────

    def start_sweeper(self, interval: float = None):
        if self._sweeper and self._sweeper.is_alive():
            return
        interval = interval or self.sweep_interval
        self._stop.clear()

        def loop():
            while not self._stop.wait(interval):
                self.sweep_idle()

        self._sweeper = threading.Thread(target=loop, name="terminal-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self):
        self._stop.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_status: Dict[str, int] = {}
            for s in self._sessions.values():
                by_status[s.status] = by_status.get(s.status, 0) + 1
        return {
            "active": sum(by_status.values()),
            "by_status": by_status,
            "closed_total": self._closed_total,
            "idle_timeout_sec": self.idle_timeout,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
