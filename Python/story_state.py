"""
Story State: data model shared by the turn pipeline.
Session records, audit events, convergence status, dice rolls and memories.
"""
import copy
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def compute_checksum(payload: Any) -> str:
    """Consistency checksum over canonical JSON (not a cryptographic guarantee)."""
    content = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


class EventKind(Enum):
    """Kinds of applied state changes recorded in the world event log"""
    DICE_ROLL = "dice_roll"
    QUEST_UPDATE = "quest_update"
    STATE_CHANGE = "state_change"
    ARC_UPDATE = "arc_update"
    CHARACTER_UPDATE = "character_update"
    CONVERGENCE_UPDATE = "convergence_update"
    MEMORY_UPDATE = "memory_update"


@dataclass
class SessionRecord:
    """Persisted state of one story session."""
    session_id: str
    world_state: Dict[str, Any] = field(default_factory=dict)
    skills_state: Dict[str, Any] = field(default_factory=dict)
    active_quests: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    completed_quests: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    arc_name: Optional[str] = None
    arc_start_round: int = 1
    total_rounds: int = 0
    version: int = 0
    checksum: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def content(self) -> Dict[str, Any]:
        """The part of the record covered by the checksum."""
        return {
            "world_state": self.world_state,
            "skills_state": self.skills_state,
            "active_quests": self.active_quests,
            "completed_quests": self.completed_quests,
            "arc_name": self.arc_name,
            "arc_start_round": self.arc_start_round,
        }

    def content_checksum(self) -> str:
        return compute_checksum(self.content())

    def arc_snapshot(self) -> Dict[str, Any]:
        return {
            "arc_name": self.arc_name,
            "arc_start_round": self.arc_start_round,
            "total_rounds": self.total_rounds,
        }

    def copy(self) -> 'SessionRecord':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "world_state": self.world_state,
            "skills_state": self.skills_state,
            "active_quests": self.active_quests,
            "completed_quests": self.completed_quests,
            "arc_name": self.arc_name,
            "arc_start_round": self.arc_start_round,
            "total_rounds": self.total_rounds,
            "version": self.version,
            "checksum": self.checksum,
            "updated_at": datetime.fromtimestamp(self.updated_at).isoformat(),
        }


@dataclass(frozen=True)
class WorldEvent:
    """Immutable audit-log entry describing one applied state change."""
    session_id: str
    sequence: int
    kind: EventKind
    payload: str
    checksum: str
    arc_name: Optional[str] = None
    arc_start_round: Optional[int] = None
    total_rounds: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    def payload_data(self) -> Dict[str, Any]:
        return json.loads(self.payload)

    def verify(self) -> bool:
        return compute_checksum(json.loads(self.payload)) == self.checksum

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "kind": self.kind.value,
            "payload": self.payload,
            "checksum": self.checksum,
            "arc_name": self.arc_name,
            "arc_start_round": self.arc_start_round,
            "total_rounds": self.total_rounds,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorldEvent':
        return cls(
            session_id=data["session_id"],
            sequence=int(data["sequence"]),
            kind=EventKind(data["kind"]),
            payload=data["payload"],
            checksum=data["checksum"],
            arc_name=data.get("arc_name"),
            arc_start_round=data.get("arc_start_round"),
            total_rounds=data.get("total_rounds"),
            timestamp=data.get("timestamp", time.time()),
        )


@dataclass
class ConvergenceStatus:
    """Per-session progress toward a predefined ending scenario."""
    session_id: str
    progress: float = 0.0
    nearest_scenario_id: Optional[str] = None
    nearest_scenario_title: Optional[str] = None
    distance_to_nearest: Optional[float] = None
    scenario_progress: Dict[str, float] = field(default_factory=dict)
    active_hints: List[str] = field(default_factory=list)
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "progress": self.progress,
            "nearest_scenario_id": self.nearest_scenario_id,
            "nearest_scenario_title": self.nearest_scenario_title,
            "distance_to_nearest": self.distance_to_nearest,
            "scenario_progress": dict(self.scenario_progress),
            "active_hints": list(self.active_hints),
            "last_updated": self.last_updated,
        }


@dataclass
class DiceRollRecord:
    """One audited dice roll reported by the model."""
    session_id: str
    dice_type: int
    result: int
    modifier: int = 0
    context: str = "Dice roll"
    difficulty_class: Optional[int] = None
    reported_success: Optional[bool] = None
    roll_id: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def final_result(self) -> int:
        return self.result + self.modifier

    @property
    def is_successful(self) -> bool:
        if self.difficulty_class is not None:
            return self.final_result >= self.difficulty_class
        return bool(self.reported_success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roll_id": self.roll_id,
            "session_id": self.session_id,
            "dice_type": self.dice_type,
            "modifier": self.modifier,
            "result": self.result,
            "final_result": self.final_result,
            "context": self.context,
            "difficulty_class": self.difficulty_class,
            "is_successful": self.is_successful,
        }


@dataclass
class MemoryEntry:
    """A fact the model asked the session to remember."""
    session_id: str
    memory_type: str
    content: str
    importance: float = 0.5
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "type": self.memory_type,
            "content": self.content,
            "importance": self.importance,
        }
