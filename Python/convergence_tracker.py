"""
Convergence Tracker: per-session "story progress" bookkeeping.
Progress is always clamped to [0, 1].
"""
import logging
import math
import threading
import time
from typing import Dict, List, Optional

from story_state import ConvergenceStatus

logger = logging.getLogger(__name__)

# Phase thresholds; checked late first, then mid, then early
LATE_THRESHOLD = 0.7
MID_THRESHOLD = 0.5
EARLY_THRESHOLD = 0.3

PHASES = ("late", "mid", "early")


def _clamp(value: float) -> float:
    value = float(value)
    if math.isnan(value):
        raise ValueError("progress must be a number")
    return max(0.0, min(1.0, value))


def phase_for(progress: float) -> Optional[str]:
    """Coarse phase label, or None between the early and mid thresholds."""
    if progress > LATE_THRESHOLD:
        return "late"
    elif progress > MID_THRESHOLD:
        return "mid"
    elif progress < EARLY_THRESHOLD:
        return "early"
    return None


class ConvergenceTracker:
    """Get-or-create convergence status keyed by session id."""

    def __init__(self):
        self._statuses: Dict[str, ConvergenceStatus] = {}
        self._lock = threading.RLock()

    def get(self, session_id: str) -> Optional[ConvergenceStatus]:
        with self._lock:
            return self._statuses.get(session_id)

    def get_or_create(self, session_id: str) -> ConvergenceStatus:
        with self._lock:
            status = self._statuses.get(session_id)
            if status is None:
                status = ConvergenceStatus(session_id=session_id)
                self._statuses[session_id] = status
                logger.debug(f"Created convergence status for session {session_id}")
            return status

    def set_progress(self, session_id: str, progress: float) -> float:
        with self._lock:
            status = self.get_or_create(session_id)
            status.progress = _clamp(progress)
            status.last_updated = time.time()
            return status.progress

    def add_progress(self, session_id: str, increment: float) -> float:
        with self._lock:
            status = self.get_or_create(session_id)
            status.progress = _clamp(status.progress + increment)
            status.last_updated = time.time()
            return status.progress

    def update_nearest_scenario(self, session_id: str, scenario_id: str,
                                title: str, distance: float):
        with self._lock:
            status = self.get_or_create(session_id)
            status.nearest_scenario_id = scenario_id
            status.nearest_scenario_title = title
            status.distance_to_nearest = float(distance)
            status.last_updated = time.time()

    def update_scenario_progress(self, session_id: str, scenario_progress: Dict[str, float]):
        with self._lock:
            status = self.get_or_create(session_id)
            status.scenario_progress = {k: _clamp(v) for k, v in scenario_progress.items()}
            status.last_updated = time.time()

    def update_active_hints(self, session_id: str, hints: List[str]):
        with self._lock:
            status = self.get_or_create(session_id)
            status.active_hints = [str(h) for h in hints]
            status.last_updated = time.time()

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._statuses.pop(session_id, None) is not None

    def sessions_in_phase(self, phase: str) -> List[str]:
        """Session ids whose current progress falls in the given phase."""
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        with self._lock:
            return [sid for sid, s in self._statuses.items() if phase_for(s.progress) == phase]

    def summary(self, session_id: str) -> str:
        """One-line human-readable summary for prompts and status pages."""
        status = self.get(session_id)
        if status is None:
            return "Convergence: 0% (just started)"

        parts = [f"Convergence: {status.progress * 100:.0f}%"]
        if status.nearest_scenario_title:
            parts.append(f"Nearest scenario: {status.nearest_scenario_title}")
        if status.distance_to_nearest is not None:
            parts.append(f"Distance: {status.distance_to_nearest:.2f}")
        phase = phase_for(status.progress)
        if phase:
            parts.append(f"Phase: {phase}")
        return " | ".join(parts)
