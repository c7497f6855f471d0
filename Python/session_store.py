"""
In-process persistence for story sessions, dice rolls and memories.

Every store is thread-safe. SessionStore additionally hands out one re-entrant
writer lock per session id; whoever mutates a session holds that lock for the
whole read-modify-write.
"""
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from story_state import DiceRollRecord, MemoryEntry, SessionRecord

logger = logging.getLogger(__name__)


class SessionStore:
    """Session read/update/version-bump keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, SessionRecord] = {}
        self._writers: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def writer(self, session_id: str) -> threading.RLock:
        """Lock that serializes all writers of one session."""
        with self._lock:
            lock = self._writers.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._writers[session_id] = lock
            return lock

    def create(self, session_id: Optional[str] = None,
               world_state: Optional[Dict[str, Any]] = None,
               skills_state: Optional[Dict[str, Any]] = None,
               arc_name: Optional[str] = None) -> SessionRecord:
        session_id = session_id or uuid.uuid4().hex[:12]
        record = SessionRecord(
            session_id=session_id,
            world_state=dict(world_state or {}),
            skills_state=dict(skills_state or {}),
            arc_name=arc_name,
        )
        record.checksum = record.content_checksum()

        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session already exists: {session_id}")
            self._sessions[session_id] = record
        logger.info(f"Session created: {session_id}")
        return record.copy()

    def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return a detached copy of the session, or None."""
        with self._lock:
            record = self._sessions.get(session_id)
            return record.copy() if record else None

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def save(self, record: SessionRecord) -> None:
        stored = record.copy()
        stored.updated_at = time.time()
        with self._lock:
            if record.session_id not in self._sessions:
                raise KeyError(record.session_id)
            self._sessions[record.session_id] = stored

    def bump_version(self, session_id: str) -> int:
        """Increment the version counter and refresh the content checksum."""
        with self.writer(session_id), self._lock:
            record = self._sessions[session_id]
            record.version += 1
            record.checksum = record.content_checksum()
            record.updated_at = time.time()
            return record.version

    def record_round(self, session_id: str) -> int:
        """Advance the turn counter; not a content change."""
        with self.writer(session_id), self._lock:
            record = self._sessions[session_id]
            record.total_rounds += 1
            return record.total_rounds

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._writers.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)


class DiceRollStore:
    """Append-only dice-roll audit rows."""

    def __init__(self):
        self._rolls: List[DiceRollRecord] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def save(self, roll: DiceRollRecord) -> DiceRollRecord:
        with self._lock:
            roll.roll_id = self._next_id
            self._next_id += 1
            self._rolls.append(roll)
            return roll

    def for_session(self, session_id: str) -> List[DiceRollRecord]:
        with self._lock:
            return [r for r in self._rolls if r.session_id == session_id]


class MemoryStore:
    """Per-session memory entries, unique by content."""

    def __init__(self):
        self._entries: Dict[str, List[MemoryEntry]] = {}
        self._lock = threading.Lock()

    def add(self, entry: MemoryEntry) -> bool:
        """Store the entry unless the session already remembers the same content."""
        key = entry.content.strip().lower()
        with self._lock:
            entries = self._entries.setdefault(entry.session_id, [])
            if any(e.content.strip().lower() == key for e in entries):
                return False
            entries.append(entry)
            return True

    def for_session(self, session_id: str) -> List[MemoryEntry]:
        with self._lock:
            return list(self._entries.get(session_id, []))

    def delete(self, session_id: str) -> int:
        """Forget every memory of a session; returns how many were dropped."""
        with self._lock:
            return len(self._entries.pop(session_id, []))
