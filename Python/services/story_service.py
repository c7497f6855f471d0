import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from assessment_extractor import DELIMITER, AssessmentRecord, extract, strip_assessment
from convergence_tracker import ConvergenceTracker
from game_reconciler import GameLogicReconciler, ReconcileReport
from prometheus_metrics import (
    inc_assessments, inc_retries, inc_turns_completed, inc_turns_failed,
    inc_turns_started, record_reconciliation, turn_finished,
)
from retry_controller import FailureKind, RetryController, RetryPolicy
from session_store import SessionStore
from story_state import SessionRecord
from structured_logging import get_logger, set_session_context
from token_relay import BoundaryPolicy, ClientEvent, TokenRelay
from world_event_log import WorldEventLog

logger = get_logger("questline.turns")

DEFAULT_SYSTEM_PROMPT = (
    "You are the narrator of an interactive story. Continue the story in response to the "
    "player's action. After the narrative, append one assessment record enclosed in "
    "{delim}...{delim} containing ruleCompliance, contextConsistency, convergenceProgress and "
    "overallScore (0-1), strategy (ACCEPT, ADJUST or CORRECT), assessmentNotes and any of "
    "diceRolls, stateUpdates, questUpdates, worldStateUpdates, skillsStateUpdates, arcUpdates, "
    "convergenceStatusUpdates, memoryUpdates."
)


class StoryModel(Protocol):
    """Anything that streams narrative fragments for a chat history."""

    def astream_chat(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        ...


@dataclass
class TurnSettings:
    """Tuning for one turn, read from config."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    turn_deadline: Optional[float] = 120.0
    buffer_blocks: bool = True
    delimiter: str = DELIMITER
    history_limit: int = 20
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @classmethod
    def from_config(cls, config: Any) -> 'TurnSettings':
        """Build settings from a ConfigWatcher (or anything with a dot-path get)."""
        defaults = cls()
        return cls(
            max_retries=config.get("retry.max_retries", defaults.max_retries),
            base_delay=config.get("retry.base_delay", defaults.base_delay),
            max_delay=config.get("retry.max_delay", defaults.max_delay),
            turn_deadline=config.get("turn_deadline", defaults.turn_deadline),
            buffer_blocks=config.get("relay.buffer_blocks", defaults.buffer_blocks),
            delimiter=config.get("assessment.delimiter", defaults.delimiter),
            history_limit=config.get("history_limit", defaults.history_limit),
            system_prompt=config.get("system_prompt", defaults.system_prompt),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, base_delay=self.base_delay,
                           max_delay=self.max_delay)

    def boundary_policy(self) -> BoundaryPolicy:
        if self.buffer_blocks:
            return BoundaryPolicy.assessment_blocks(self.delimiter)
        return BoundaryPolicy.passthrough()


@dataclass
class TurnHandle:
    """
    One in-flight turn.

    The turn task pushes ClientEvents here; readers consume them with
    stream(). A reader going away does not affect the task.
    """
    session_id: str
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    events: List[ClientEvent] = field(default_factory=list)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    narrative: Optional[str] = None
    assessment: Optional[AssessmentRecord] = None
    report: Optional[ReconcileReport] = None

    def put(self, event: ClientEvent):
        self.events.append(event)
        self.queue.put_nowait(event)

    async def stream(self) -> AsyncIterator[ClientEvent]:
        while True:
            event = await self.queue.get()
            yield event
            if event.terminal:
                return

    def kinds(self) -> List[str]:
        return [e.kind.value for e in self.events]


class StoryTurnService:
    """
    Runs chat turns: model stream -> retry -> extract -> reconcile -> complete.

    Each turn runs on its own asyncio task. Turns of one session are
    serialized by a per-session asyncio.Lock; different sessions run in
    parallel.
    """

    def __init__(self, sessions: SessionStore, event_log: WorldEventLog,
                 tracker: ConvergenceTracker, reconciler: GameLogicReconciler,
                 model: StoryModel, settings: Optional[TurnSettings] = None,
                 sleep=asyncio.sleep):
        self.sessions = sessions
        self.event_log = event_log
        self.tracker = tracker
        self.reconciler = reconciler
        self.model = model
        self.settings = settings or TurnSettings()
        self.sleep = sleep

        self._turn_locks: Dict[str, asyncio.Lock] = {}
        self._history: Dict[str, List[Dict[str, str]]] = {}
        self._tasks: set = set()

    def create_session(self, session_id: Optional[str] = None, **kwargs) -> SessionRecord:
        return self.sessions.create(session_id, **kwargs)

    async def delete_session(self, session_id: str) -> bool:
        """
        Drop a session and every per-session entry the service keeps for it.

        Waits for a running turn of the session to finish first. Its audit
        events stay in the event log.

        Returns:
            False if the session did not exist
        """
        lock = self._turn_locks.get(session_id)
        if lock is not None:
            async with lock:
                deleted = self._forget(session_id)
        else:
            deleted = self._forget(session_id)
        if deleted:
            logger.info("Session deleted", session_id=session_id)
        return deleted

    def _forget(self, session_id: str) -> bool:
        deleted = self.sessions.delete(session_id)
        self.tracker.delete(session_id)
        self.event_log.release(session_id)
        self.reconciler.memories.delete(session_id)
        self._history.pop(session_id, None)
        # Turns already queued on the popped lock still hold it and fail on the missing session
        self._turn_locks.pop(session_id, None)
        return deleted

    def _turn_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._turn_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._turn_locks[session_id] = lock
        return lock

    @property
    def active_turns(self) -> int:
        return len(self._tasks)

    def start_turn(self, session_id: str, user_input: str) -> TurnHandle:
        """
        Schedule a turn on its own task and return its handle immediately.

        Raises:
            KeyError: Unknown session
        """
        if not self.sessions.exists(session_id):
            raise KeyError(session_id)

        handle = TurnHandle(session_id=session_id)
        # The lock entry exists only while the session does
        lock = self._turn_lock(session_id)
        handle.task = asyncio.create_task(self._run_turn(handle, user_input, lock))
        self._tasks.add(handle.task)
        handle.task.add_done_callback(self._tasks.discard)
        return handle

    async def run_turn(self, session_id: str, user_input: str) -> TurnHandle:
        """Run a turn to completion."""
        handle = self.start_turn(session_id, user_input)
        await handle.task
        return handle

    async def _run_turn(self, handle: TurnHandle, user_input: str, lock: asyncio.Lock):
        session_id = handle.session_id
        settings = self.settings

        async with lock:
            set_session_context(session_id)
            inc_turns_started()
            start = time.time()
            controller = RetryController(handle.put, policy=settings.retry_policy(),
                                         sleep=self.sleep, turn_deadline=settings.turn_deadline)
            try:
                await self._execute(handle, controller, user_input)
            except Exception as e:
                logger.error(f"Turn {handle.turn_id} crashed: {e}", exc_info=True)
                controller.fail(FailureKind.UNKNOWN)
            finally:
                if controller.failure is not None:
                    inc_turns_failed()
                else:
                    inc_turns_completed()
                turn_finished(time.time() - start)
                logger.info("Turn finished", turn_id=handle.turn_id,
                            attempts=controller.attempts, retries=controller.retries,
                            outcome=handle.events[-1].kind.value if handle.events else None,
                            duration_ms=round((time.time() - start) * 1000, 2))

    async def _execute(self, handle: TurnHandle, controller: RetryController, user_input: str):
        session_id = handle.session_id
        settings = self.settings

        if not self.sessions.exists(session_id):
            raise KeyError(f"Session deleted before its turn ran: {session_id}")
        round_number = self.sessions.record_round(session_id)
        messages = self._build_messages(session_id, user_input)
        relay = TokenRelay(handle.put, settings.boundary_policy())

        text = await controller.run(lambda: self.model.astream_chat(messages), relay)
        if controller.retries:
            inc_retries(controller.retries)
        if text is None:
            return

        # Narrative has been delivered; nothing below may turn this into an error
        assessment = extract(text, settings.delimiter)
        report = None
        if assessment is not None:
            inc_assessments()
            try:
                report = await asyncio.to_thread(self.reconciler.reconcile, session_id, assessment)
                record_reconciliation(len(report.applied), len(report.failed))
            except Exception as e:
                logger.error(f"Reconciliation failed for session {session_id}: {e}", exc_info=True)

        narrative = strip_assessment(text, settings.delimiter)
        self._remember(session_id, user_input, narrative)

        handle.narrative = narrative
        handle.assessment = assessment
        handle.report = report
        controller.complete({
            "round": round_number,
            "narrative": narrative,
            "assessment": assessment.summary() if assessment else None,
            "reconciliation": report.to_dict() if report else None,
        })

    def _build_messages(self, session_id: str, user_input: str) -> List[Dict[str, str]]:
        record = self.sessions.get(session_id)
        context = [
            self.settings.system_prompt.replace("{delim}", self.settings.delimiter),
            self.tracker.summary(session_id),
        ]
        if record is not None:
            context.append(f"Round {record.total_rounds}; arc: {record.arc_name or 'none'}; "
                           f"active quests: {', '.join(sorted(record.active_quests)) or 'none'}")
        messages = [{"role": "system", "content": "\n".join(context)}]
        messages.extend(self._history.get(session_id, []))
        messages.append({"role": "user", "content": user_input})
        return messages

    def _remember(self, session_id: str, user_input: str, narrative: str):
        history = self._history.setdefault(session_id, [])
        history.append({"role": "user", "content": user_input})
        history.append({"role": "assistant", "content": narrative})
        limit = max(0, self.settings.history_limit)
        if len(history) > limit:
            del history[:len(history) - limit]

    async def shutdown(self):
        """Wait for in-flight turns to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
