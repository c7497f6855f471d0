"""
Game Logic Reconciler
Applies a validated AssessmentRecord to persisted session state.

Each payload section is applied independently: a malformed or failing section
is logged and recorded in the report while the remaining sections still run.
Every section that changes something appends exactly one WorldEvent. Sections
that touch the session record persist it immediately; there is no
cross-section transaction and nothing is rolled back. When the pass changed
anything, the session version is bumped once at the end. That includes a
section whose save succeeded but whose event append then failed.

The whole pass runs while holding the session's writer lock, so one session
never has two reconciliations interleaving their reads and writes.
"""
import logging
import math
import random
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from assessment_extractor import AssessmentRecord
from convergence_tracker import ConvergenceTracker
from session_store import DiceRollStore, MemoryStore, SessionStore
from story_state import DiceRollRecord, EventKind, MemoryEntry, SessionRecord
from world_event_log import WorldEventLog

logger = logging.getLogger(__name__)

ATTRIBUTES = ("strength", "agility", "intelligence", "constitution")
DEFAULT_ATTRIBUTE_VALUE = 8
ATTRIBUTE_POINTS_PER_LEVEL = 2
EXPERIENCE_PER_LEVEL = 100

# Resource pools and their default maximums, refilled on level-up
RESOURCE_POOLS = {"health": 100, "mana": 50}

QUEST_ACTIONS = ("created", "progress", "completed", "expired")

_ITEM_PATTERN = re.compile(r"^\s*(.*?)\s*[x×]\s*(\d+)\s*$")


class SectionError(ValueError):
    """A payload section is structurally unusable."""


@dataclass
class ReconcileReport:
    """What one reconciliation pass did."""
    session_id: str
    applied: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    event_sequences: List[int] = field(default_factory=list)
    version: Optional[int] = None
    gained_items: List[str] = field(default_factory=list)
    level_ups: int = 0
    # Set once any section has persisted the session record, even if it later failed
    dirty: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.applied) or self.dirty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": list(self.applied),
            "unchanged": list(self.unchanged),
            "failed": dict(self.failed),
            "events": list(self.event_sequences),
            "version": self.version,
            "gainedItems": list(self.gained_items),
            "levelUps": self.level_ups,
        }


# =============================================================================
# VALUE HELPERS
# =============================================================================

def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise SectionError(f"{name} must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise SectionError(f"{name} must be an integer, got {value!r}")


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise SectionError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except ValueError:
        raise SectionError(f"{name} must be a number, got {value!r}")


def parse_item(item: Any) -> Tuple[str, int]:
    """
    Parse an inventory entry into (name, count).

    Accepts the canonical "namex3" form, "name x 3", "name×3", a bare name
    (count 1) or a {"name": ..., "count": ...} mapping.
    """
    if isinstance(item, dict):
        name = str(item.get("name", "")).strip()
        count = _as_int(item.get("count", 1), "item count")
    else:
        text = str(item).strip()
        match = _ITEM_PATTERN.match(text)
        if match and match.group(1):
            name, count = match.group(1), int(match.group(2))
        else:
            name, count = text, 1
    if not name:
        raise SectionError(f"Item without a name: {item!r}")
    return name, count


def format_item(name: str, count: int) -> str:
    return f"{name}x{count}"


def merge_inventory(inventory: List[Any], rewards: List[Any]) -> Tuple[List[str], List[str]]:
    """
    Merge reward items into an inventory.

    Returns:
        (new canonical inventory, gained items as net increases per name)
    """
    totals: Dict[str, int] = {}
    for entry in inventory:
        try:
            name, count = parse_item(entry)
        except SectionError:
            logger.warning(f"Dropping unreadable inventory entry {entry!r}")
            continue
        totals[name] = totals.get(name, 0) + count

    before = dict(totals)
    for entry in rewards:
        name, count = parse_item(entry)
        if count <= 0:
            continue
        totals[name] = totals.get(name, 0) + count

    gained = [format_item(name, count - before.get(name, 0))
              for name, count in totals.items() if count > before.get(name, 0)]
    return [format_item(name, count) for name, count in totals.items()], gained


def apply_experience(skills: Dict[str, Any], amount: int, rng: random.Random) -> List[Dict[str, Any]]:
    """
    Add experience and run the level-up loop.

    While experience >= level * 100 the threshold is consumed, the level goes
    up, two attribute points are spread over ATTRIBUTES and the resource pools
    are refilled. One reward can produce several level-ups.

    Returns:
        One dict per level gained
    """
    level = max(1, _as_int(skills.get("level", 1), "level"))
    experience = max(0, _as_int(skills.get("experience", 0), "experience") + amount)
    stats = skills.setdefault("stats", {})

    level_ups = []
    while experience >= level * EXPERIENCE_PER_LEVEL:
        experience -= level * EXPERIENCE_PER_LEVEL
        level += 1

        granted: Dict[str, int] = {}
        for _ in range(ATTRIBUTE_POINTS_PER_LEVEL):
            attr = rng.choice(ATTRIBUTES)
            stats[attr] = _as_int(stats.get(attr, DEFAULT_ATTRIBUTE_VALUE), attr) + 1
            granted[attr] = granted.get(attr, 0) + 1

        resources = skills.setdefault("resources", {})
        for pool, default_max in RESOURCE_POOLS.items():
            current = resources.setdefault(pool, {"current": default_max, "max": default_max})
            current["current"] = current.get("max", default_max)

        level_ups.append({"level": level, "attributes": granted})
        logger.info(f"Level up to {level}: {granted}")

    skills["level"] = level
    skills["experience"] = experience
    return level_ups


# =============================================================================
# RECONCILER
# =============================================================================

class GameLogicReconciler:
    """Apply assessment payload sections to one session."""

    # (section label, AssessmentRecord attribute, handler) in application order
    SECTIONS = (
        ("diceRolls", "dice_rolls", "_apply_dice_rolls"),
        ("stateUpdates", "state_updates", "_apply_state_updates"),
        ("questUpdates", "quest_updates", "_apply_quest_updates"),
        ("worldStateUpdates", "world_state_updates", "_apply_world_state"),
        ("skillsStateUpdates", "skills_state_updates", "_apply_skills_state"),
        ("arcUpdates", "arc_updates", "_apply_arc_updates"),
        ("convergenceStatusUpdates", "convergence_status_updates", "_apply_convergence"),
        ("memoryUpdates", "memory_updates", "_apply_memory_updates"),
    )

    def __init__(self, sessions: SessionStore, event_log: WorldEventLog,
                 tracker: ConvergenceTracker, dice_rolls: Optional[DiceRollStore] = None,
                 memories: Optional[MemoryStore] = None,
                 rng: Optional[random.Random] = None):
        self.sessions = sessions
        self.event_log = event_log
        self.tracker = tracker
        self.dice_rolls = dice_rolls or DiceRollStore()
        self.memories = memories or MemoryStore()
        self.rng = rng or random.Random()

    def reconcile(self, session_id: str, assessment: AssessmentRecord) -> ReconcileReport:
        report = ReconcileReport(session_id=session_id)

        with self.sessions.writer(session_id):
            if not self.sessions.exists(session_id):
                logger.warning(f"Reconcile skipped, unknown session {session_id}")
                report.failed["session"] = "unknown session"
                return report

            for label, attr, handler_name in self.SECTIONS:
                data = getattr(assessment, attr, None)
                if data is None:
                    continue
                handler = getattr(self, handler_name)
                try:
                    changed = handler(session_id, data, report)
                except Exception as e:
                    logger.error(f"Section {label} failed for session {session_id}: {e}",
                                 exc_info=not isinstance(e, SectionError))
                    report.failed[label] = str(e)
                    continue
                (report.applied if changed else report.unchanged).append(label)

            if report.changed:
                try:
                    report.version = self.sessions.bump_version(session_id)
                except Exception as e:
                    logger.error(f"Version bump failed for session {session_id}: {e}", exc_info=True)
                    report.failed["version"] = str(e)

        logger.info(f"Reconciled session {session_id}: applied={report.applied} "
                    f"failed={list(report.failed)} version={report.version}")
        return report

    def _record_event(self, session_id: str, kind: EventKind, payload: Dict[str, Any],
                      report: ReconcileReport, record: Optional[SessionRecord] = None):
        record = record or self.sessions.get(session_id)
        event = self.event_log.append(session_id, kind, payload, record.arc_snapshot())
        report.event_sequences.append(event.sequence)

    def _save(self, record: SessionRecord, report: ReconcileReport):
        self.sessions.save(record)
        report.dirty = True

    # -------------------------------------------------------------------------
    # Dice rolls
    # -------------------------------------------------------------------------

    def _apply_dice_rolls(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        if not isinstance(data, list):
            raise SectionError("diceRolls must be a list")

        saved = []
        for entry in data:
            if not isinstance(entry, dict) or entry.get("diceType") is None or entry.get("result") is None:
                logger.warning(f"Skipping malformed dice roll: {entry!r}")
                continue
            try:
                dice_type = entry["diceType"]
                if isinstance(dice_type, str):
                    dice_type = dice_type.strip().lower().lstrip("d")
                dc = entry.get("difficultyClass")
                roll = DiceRollRecord(
                    session_id=session_id,
                    dice_type=_as_int(dice_type, "diceType"),
                    result=_as_int(entry["result"], "result"),
                    modifier=_as_int(entry.get("modifier", 0) or 0, "modifier"),
                    context=str(entry.get("context") or "Dice roll"),
                    difficulty_class=_as_int(dc, "difficultyClass") if dc is not None else None,
                    reported_success=entry.get("isSuccessful") if isinstance(entry.get("isSuccessful"), bool) else None,
                )
            except SectionError as e:
                logger.warning(f"Skipping malformed dice roll {entry!r}: {e}")
                continue
            saved.append(self.dice_rolls.save(roll).to_dict())

        if not saved:
            return False
        self._record_event(session_id, EventKind.DICE_ROLL, {"rolls": saved}, report)
        return True

    # -------------------------------------------------------------------------
    # Quests and rewards
    # -------------------------------------------------------------------------

    def _apply_quest_updates(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        if not isinstance(data, dict):
            raise SectionError("questUpdates must be an object")

        record = self.sessions.get(session_id)
        summary: Dict[str, Any] = {action: [] for action in QUEST_ACTIONS}
        rewards_applied: List[Dict[str, Any]] = []

        for action in QUEST_ACTIONS:
            entries = data.get(action) or []
            if not isinstance(entries, list):
                logger.warning(f"questUpdates.{action} is not a list, skipping")
                continue
            for entry in entries:
                quest_id = entry.get("questId") if isinstance(entry, dict) else None
                if quest_id is None or str(quest_id).strip() == "":
                    logger.warning(f"Skipping quest {action} entry without questId: {entry!r}")
                    continue
                quest_id = str(quest_id)

                if action in ("created", "progress"):
                    if quest_id in record.completed_quests:
                        logger.warning(f"Ignoring {action} for already completed quest {quest_id}")
                        continue
                    merged = {**record.active_quests.get(quest_id, {}), **entry, "questId": quest_id}
                    if record.active_quests.get(quest_id) != merged:
                        record.active_quests[quest_id] = merged
                        summary[action].append(quest_id)

                elif action == "completed":
                    if quest_id in record.completed_quests:
                        logger.debug(f"Quest {quest_id} already completed, ignoring")
                        continue
                    active = record.active_quests.pop(quest_id, {})
                    merged = {**active, **entry, "questId": quest_id}
                    record.completed_quests[quest_id] = merged
                    summary[action].append(quest_id)

                    rewards = entry.get("rewards", active.get("rewards"))
                    if rewards:
                        try:
                            gained = self._apply_rewards(record.skills_state, rewards, report)
                        except SectionError as e:
                            logger.warning(f"Rewards for quest {quest_id} not applied: {e}")
                        else:
                            rewards_applied.append({"questId": quest_id, **gained})

                elif action == "expired":
                    if record.active_quests.pop(quest_id, None) is not None:
                        summary[action].append(quest_id)

        if not any(summary.values()):
            return False

        self._save(record, report)
        payload = {k: v for k, v in summary.items() if v}
        if rewards_applied:
            payload["rewards"] = rewards_applied
        self._record_event(session_id, EventKind.QUEST_UPDATE, payload, report, record)
        return True

    def _apply_rewards(self, skills: Dict[str, Any], rewards: Any, report: ReconcileReport) -> Dict[str, Any]:
        """Apply one quest's rewards to the character blob in place."""
        if not isinstance(rewards, dict):
            raise SectionError("rewards must be an object")

        # Validate everything before mutating so a bad reward leaves skills untouched
        gold = _as_int(rewards.get("gold", 0) or 0, "gold")
        exp = _as_int(rewards["exp"], "exp") if rewards.get("exp") is not None else None
        items = rewards.get("items") or []
        if not isinstance(items, list):
            raise SectionError("rewards.items must be a list")
        for item in items:
            parse_item(item)
        stats = rewards.get("stats") or {}
        if not isinstance(stats, dict):
            raise SectionError("rewards.stats must be an object")
        stats = {str(k): _as_int(v, f"stats.{k}") for k, v in stats.items()}
        abilities = rewards.get("abilities") or []
        if not isinstance(abilities, list):
            raise SectionError("rewards.abilities must be a list")

        # The stored values the rewards add to must be readable too
        current_gold = _as_int(skills.get("gold", 0), "stored gold") if gold else 0
        current_stats = skills.get("stats", {})
        if (stats or exp is not None) and not isinstance(current_stats, dict):
            raise SectionError("stored stats must be an object")
        for name in list(stats) + (list(ATTRIBUTES) if exp is not None else []):
            if name in current_stats:
                _as_int(current_stats[name], f"stored stats.{name}")
        if exp is not None:
            _as_int(skills.get("level", 1), "stored level")
            _as_int(skills.get("experience", 0), "stored experience")
            resources = skills.get("resources", {})
            if not isinstance(resources, dict) or not all(
                    isinstance(resources.get(pool, {}), dict) for pool in RESOURCE_POOLS):
                raise SectionError("stored resources must be an object of pools")
        if abilities and not isinstance(skills.get("abilities", []), list):
            raise SectionError("stored abilities must be a list")
        if items and not isinstance(skills.get("inventory", []), list):
            raise SectionError("stored inventory must be a list")

        applied: Dict[str, Any] = {}
        if gold:
            skills["gold"] = current_gold + gold
            applied["gold"] = gold

        if items:
            inventory, gained = merge_inventory(skills.get("inventory", []), items)
            skills["inventory"] = inventory
            applied["items"] = gained
            report.gained_items.extend(gained)

        if stats:
            current = skills.setdefault("stats", {})
            for name, delta in stats.items():
                default = DEFAULT_ATTRIBUTE_VALUE if name in ATTRIBUTES else 0
                current[name] = _as_int(current.get(name, default), name) + delta
            applied["stats"] = stats

        if abilities:
            owned = skills.setdefault("abilities", [])
            new = [str(a) for a in abilities if str(a) not in owned]
            owned.extend(new)
            applied["abilities"] = new

        if exp is not None:
            level_ups = apply_experience(skills, exp, self.rng)
            applied["exp"] = exp
            if level_ups:
                applied["levelUps"] = level_ups
                report.level_ups += len(level_ups)

        return applied

    def _apply_skills_state(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        """
        Overwrite character fields the model stated explicitly.

        Runs after questUpdates, so explicit values win over quest rewards of
        the same pass. Only level, gold, inventory, abilities and stats are
        taken; experience is owned by the reward and level-up logic.
        """
        if not isinstance(data, dict):
            raise SectionError("skillsStateUpdates must be an object")

        updates: Dict[str, Any] = {}
        if data.get("level") is not None:
            level = _as_int(data["level"], "level")
            if level < 1:
                raise SectionError(f"level must be at least 1, got {level}")
            updates["level"] = level
        if data.get("gold") is not None:
            gold = _as_int(data["gold"], "gold")
            if gold < 0:
                raise SectionError(f"gold must not be negative, got {gold}")
            updates["gold"] = gold
        if data.get("inventory") is not None:
            if not isinstance(data["inventory"], list):
                raise SectionError("inventory must be a list")
            updates["inventory"], _ = merge_inventory([], data["inventory"])
        if data.get("abilities") is not None:
            if not isinstance(data["abilities"], list):
                raise SectionError("abilities must be a list")
            updates["abilities"] = list(dict.fromkeys(str(a) for a in data["abilities"]))
        stats = data.get("stats")
        if stats is not None:
            if not isinstance(stats, dict):
                raise SectionError("stats must be an object")
            stats = {str(k): _as_int(v, f"stats.{k}") for k, v in stats.items()}
        if data.get("experience") is not None:
            logger.debug(f"Ignoring explicit experience for session {session_id}")

        record = self.sessions.get(session_id)
        skills = record.skills_state
        if stats:
            current = skills.get("stats")
            updates["stats"] = {**(current if isinstance(current, dict) else {}), **stats}

        changed = {k: v for k, v in updates.items() if skills.get(k) != v}
        if not changed:
            return False

        skills.update(changed)
        self._save(record, report)
        self._record_event(session_id, EventKind.CHARACTER_UPDATE,
                           {"changed": sorted(changed), "values": changed}, report, record)
        return True

    # -------------------------------------------------------------------------
    # World state and arc
    # -------------------------------------------------------------------------

    def _apply_state_updates(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        """Fold a [{"type": ..., "value": ...}] list into world state, keyed by lowercased type."""
        if not isinstance(data, list):
            raise SectionError("stateUpdates must be a list")

        wanted: Dict[str, Any] = {}
        for entry in data:
            kind = entry.get("type") if isinstance(entry, dict) else None
            value = entry.get("value") if isinstance(entry, dict) else None
            if not isinstance(kind, str) or not kind.strip() or value is None:
                logger.warning(f"Skipping state update without type and value: {entry!r}")
                continue
            wanted[kind.strip().lower()] = value

        record = self.sessions.get(session_id)
        changed = {k: v for k, v in wanted.items()
                   if k not in record.world_state or record.world_state[k] != v}
        if not changed:
            return False

        record.world_state.update(changed)
        self._save(record, report)
        self._record_event(session_id, EventKind.STATE_CHANGE,
                           {"source": "stateUpdates", "changed": sorted(changed), "values": changed},
                           report, record)
        return True

    def _apply_world_state(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        if not isinstance(data, dict):
            raise SectionError("worldStateUpdates must be an object")

        record = self.sessions.get(session_id)
        changed = {k: v for k, v in data.items()
                   if k not in record.world_state or record.world_state[k] != v}
        if not changed:
            return False

        record.world_state.update(changed)
        self._save(record, report)
        self._record_event(session_id, EventKind.STATE_CHANGE,
                           {"changed": sorted(changed), "values": changed}, report, record)
        return True

    def _apply_arc_updates(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        if not isinstance(data, dict):
            raise SectionError("arcUpdates must be an object")

        record = self.sessions.get(session_id)
        name = data.get("currentArcName")
        start = data.get("currentArcStartRound")
        total = data.get("totalRounds")

        start = _as_int(start, "currentArcStartRound") if start is not None else record.arc_start_round
        total = _as_int(total, "totalRounds") if total is not None else record.total_rounds
        if not 0 < start <= total:
            logger.warning(f"Discarding arc update for session {session_id}: "
                           f"start round {start} outside (0, {total}]")
            return False

        before = (record.arc_name, record.arc_start_round, record.total_rounds)
        if name is not None:
            record.arc_name = str(name)
        record.arc_start_round = start
        record.total_rounds = total
        if (record.arc_name, record.arc_start_round, record.total_rounds) == before:
            return False

        self._save(record, report)
        self._record_event(session_id, EventKind.ARC_UPDATE, {
            "previous": {"arcName": before[0], "arcStartRound": before[1], "totalRounds": before[2]},
            "arcName": record.arc_name,
            "arcStartRound": record.arc_start_round,
            "totalRounds": record.total_rounds,
        }, report, record)
        return True

    # -------------------------------------------------------------------------
    # Convergence and memory
    # -------------------------------------------------------------------------

    def _apply_convergence(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        if not isinstance(data, dict):
            raise SectionError("convergenceStatusUpdates must be an object")

        # Parse everything up front so a bad field leaves the tracker untouched
        progress = _as_float(data["progress"], "progress") if data.get("progress") is not None else None
        increment = (_as_float(data["progressIncrement"], "progressIncrement")
                     if data.get("progressIncrement") is not None else None)
        for value, name in ((progress, "progress"), (increment, "progressIncrement")):
            if value is not None and math.isnan(value):
                raise SectionError(f"{name} must be a number")

        nearest = (data.get("nearestScenarioId"), data.get("nearestScenarioTitle"),
                   data.get("distanceToNearest"))
        distance = None
        if all(v is not None for v in nearest):
            distance = _as_float(nearest[2], "distanceToNearest")
        elif any(v is not None for v in nearest):
            logger.warning("Ignoring partial nearest-scenario update; id, title and distance are required together")

        scenario_progress = data.get("scenarioProgress")
        if scenario_progress is not None:
            if not isinstance(scenario_progress, dict):
                raise SectionError("scenarioProgress must be an object")
            scenario_progress = {str(k): _as_float(v, f"scenarioProgress.{k}")
                                 for k, v in scenario_progress.items()}
            if any(math.isnan(v) for v in scenario_progress.values()):
                raise SectionError("scenarioProgress values must be numbers")

        hints = data.get("activeHints")
        if hints is not None and not isinstance(hints, list):
            raise SectionError("activeHints must be a list")

        before = self.tracker.get_or_create(session_id).to_dict()
        before.pop("last_updated")
        applied: Dict[str, Any] = {}

        if progress is not None:
            applied["progress"] = self.tracker.set_progress(session_id, progress)
        if increment is not None:
            self.tracker.add_progress(session_id, increment)
            applied["progressIncrement"] = increment
        if distance is not None:
            self.tracker.update_nearest_scenario(session_id, str(nearest[0]), str(nearest[1]), distance)
            applied["nearestScenarioId"] = str(nearest[0])
        if scenario_progress is not None:
            self.tracker.update_scenario_progress(session_id, scenario_progress)
            applied["scenarioProgress"] = sorted(scenario_progress)
        if hints is not None:
            self.tracker.update_active_hints(session_id, hints)
            applied["activeHints"] = len(hints)

        after = self.tracker.get(session_id).to_dict()
        after.pop("last_updated")
        if after == before:
            return False

        applied["resultingProgress"] = after["progress"]
        self._record_event(session_id, EventKind.CONVERGENCE_UPDATE, applied, report)
        return True

    def _apply_memory_updates(self, session_id: str, data: Any, report: ReconcileReport) -> bool:
        if not isinstance(data, list):
            raise SectionError("memoryUpdates must be a list")

        added = []
        for entry in data:
            content = entry.get("content") if isinstance(entry, dict) else None
            if not isinstance(content, str) or not content.strip():
                logger.warning(f"Skipping memory update without content: {entry!r}")
                continue
            try:
                importance = min(1.0, max(0.0, _as_float(entry.get("importance", 0.5), "importance")))
            except SectionError:
                importance = 0.5
            memory = MemoryEntry(
                session_id=session_id,
                memory_type=str(entry.get("type") or "general").upper(),
                content=content.strip(),
                importance=importance,
            )
            if self.memories.add(memory):
                added.append(memory.to_dict())

        if not added:
            return False
        self._record_event(session_id, EventKind.MEMORY_UPDATE, {"memories": added}, report)
        return True
