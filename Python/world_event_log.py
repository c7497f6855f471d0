"""
World Event Log: append-only per-session audit trail of applied state changes.

Sequence numbers are assigned at append time as (current per-session maximum) + 1
under a per-session lock, so they stay gapless and strictly increasing even when
several threads append for the same session. Each event carries a checksum over
its own serialized payload; verify_integrity() re-checks them.
"""
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from story_state import EventKind, WorldEvent, compute_checksum

logger = logging.getLogger(__name__)


class WorldEventLog:
    """
    Append-only audit log keyed by (session id, sequence).

    When output_dir is given, every appended event is also written to
    ``events_<session_id>.jsonl`` in that directory (append-only), and the
    events already stored there are loaded first, so a restarted log keeps
    numbering each session where the file left off.
    """

    def __init__(self, output_dir: Optional[Path] = None):
        self.output_dir = Path(output_dir) if output_dir else None
        if self.output_dir:
            self.output_dir.mkdir(parents=True, exist_ok=True)

        self._events: Dict[str, List[WorldEvent]] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

        if self.output_dir:
            self._load_existing()

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._lock:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._session_locks[session_id] = lock
            return lock

    def _session_file(self, session_id: str) -> Path:
        return self.output_dir / f"events_{session_id}.jsonl"

    def append(self, session_id: str, kind: EventKind, payload: Dict[str, Any],
               snapshot: Optional[Dict[str, Any]] = None) -> WorldEvent:
        """
        Append one event.

        Args:
            session_id: Owning session
            kind: Event kind
            payload: JSON-serializable description of the change
            snapshot: arc_name / arc_start_round / total_rounds at write time

        Returns:
            The stored, immutable WorldEvent
        """
        snapshot = snapshot or {}
        serialized = json.dumps(payload, sort_keys=True, default=str)

        with self._session_lock(session_id):
            with self._lock:
                events = self._events.setdefault(session_id, [])
                sequence = (events[-1].sequence if events else 0) + 1

            event = WorldEvent(
                session_id=session_id,
                sequence=sequence,
                kind=kind,
                payload=serialized,
                checksum=compute_checksum(json.loads(serialized)),
                arc_name=snapshot.get("arc_name"),
                arc_start_round=snapshot.get("arc_start_round"),
                total_rounds=snapshot.get("total_rounds"),
                timestamp=time.time(),
            )

            if self.output_dir:
                # Persist first so memory never holds an event the file lacks
                with open(self._session_file(session_id), 'a') as f:
                    f.write(json.dumps(event.to_dict()) + '\n')

            with self._lock:
                events.append(event)

        logger.debug(f"Recorded event {kind.value} #{sequence} for session {session_id}")
        return event

    def events(self, session_id: str, kind: Optional[EventKind] = None) -> List[WorldEvent]:
        """All events of a session in sequence order, optionally filtered by kind."""
        with self._lock:
            events = list(self._events.get(session_id, []))
        if kind:
            return [e for e in events if e.kind == kind]
        return events

    def latest(self, session_id: str, limit: int = 10) -> List[WorldEvent]:
        """Most recent events first."""
        if limit <= 0:
            return []
        return list(reversed(self.events(session_id)[-limit:]))

    def count(self, session_id: str) -> int:
        with self._lock:
            return len(self._events.get(session_id, []))

    def max_sequence(self, session_id: str) -> int:
        with self._lock:
            events = self._events.get(session_id)
            return events[-1].sequence if events else 0

    def verify_integrity(self, session_id: Optional[str] = None) -> bool:
        """
        Verify checksums and sequence continuity.

        Returns:
            True if every checked event is intact and sequences are gapless
        """
        with self._lock:
            if session_id is not None:
                streams = {session_id: list(self._events.get(session_id, []))}
            else:
                streams = {sid: list(evts) for sid, evts in self._events.items()}

        for sid, events in streams.items():
            for expected, event in enumerate(events, start=1):
                if event.sequence != expected:
                    logger.error(f"Sequence gap in session {sid}: expected {expected}, got {event.sequence}")
                    return False
                if not event.verify():
                    logger.error(f"Checksum mismatch for event {sid}#{event.sequence}")
                    return False
        return True

    def release(self, session_id: str):
        """Forget the append lock of a session; its events stay in the log."""
        with self._lock:
            self._session_locks.pop(session_id, None)

    def _load_existing(self):
        """
        Seed the in-memory log from the JSONL files already in output_dir,
        verifying every checksum, so appends continue the on-disk sequence.

        Raises:
            ValueError: If an event fails its checksum or breaks the sequence
        """
        for path in sorted(self.output_dir.glob("events_*.jsonl")):
            with open(path, 'r') as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    event = WorldEvent.from_dict(json.loads(line))
                    if not event.verify():
                        raise ValueError(f"Checksum mismatch in {path.name} line {line_no}")
                    events = self._events.setdefault(event.session_id, [])
                    expected = (events[-1].sequence if events else 0) + 1
                    if event.sequence != expected:
                        raise ValueError(
                            f"Sequence break in {path.name} line {line_no}: "
                            f"expected {expected}, got {event.sequence}"
                        )
                    events.append(event)

        loaded = sum(len(e) for e in self._events.values())
        if loaded:
            logger.info(f"Loaded event log from {self.output_dir}: {loaded} events")

    @classmethod
    def load_from_directory(cls, output_dir: Path) -> 'WorldEventLog':
        """Open the log stored in output_dir; same as WorldEventLog(output_dir)."""
        return cls(output_dir)
