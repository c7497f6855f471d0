"""
Shared fixtures for the turn-pipeline tests.
"""
import json
import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from assessment_extractor import AssessmentRecord
from convergence_tracker import ConvergenceTracker
from game_reconciler import GameLogicReconciler
from services.story_service import StoryTurnService, TurnSettings
from session_store import DiceRollStore, MemoryStore, SessionStore
from world_event_log import WorldEventLog


BASE_SCORES = {
    "ruleCompliance": 0.9,
    "contextConsistency": 0.8,
    "convergenceProgress": 0.4,
    "overallScore": 0.85,
    "strategy": "ACCEPT",
    "assessmentNotes": "Player acted in character.",
}


class ScriptedModel:
    """
    Model stand-in that plays back one script per call.

    A script is a list of fragments; an exception instance in the list is
    raised at that point. The last script is reused once the others are used up.
    """

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []

    async def astream_chat(self, messages):
        self.calls.append(messages)
        script = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item


@pytest.fixture
def scores():
    return dict(BASE_SCORES)


@pytest.fixture
def make_assessment():
    """Build a validated AssessmentRecord with the given payload sections."""
    def _make(**sections):
        return AssessmentRecord.model_validate({**BASE_SCORES, **sections})
    return _make


@pytest.fixture
def assessment_block():
    """Render an embedded §{...}§ block with the given payload sections."""
    def _block(**sections):
        return "§" + json.dumps({**BASE_SCORES, **sections}) + "§"
    return _block


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def event_log():
    return WorldEventLog()


@pytest.fixture
def tracker():
    return ConvergenceTracker()


@pytest.fixture
def reconciler(sessions, event_log, tracker):
    return GameLogicReconciler(sessions, event_log, tracker,
                               dice_rolls=DiceRollStore(), memories=MemoryStore(),
                               rng=random.Random(7))


@pytest.fixture
def sleeps():
    """Recorded backoff delays; used in place of asyncio.sleep."""
    return []


@pytest.fixture
def make_service(sessions, event_log, tracker, reconciler, sleeps):
    def _make(model, **settings):
        async def fake_sleep(delay):
            sleeps.append(delay)

        return StoryTurnService(sessions, event_log, tracker, reconciler, model,
                                settings=TurnSettings(**settings), sleep=fake_sleep)
    return _make


@pytest.fixture
def scripted():
    """The ScriptedModel class, for building per-test model scripts."""
    return ScriptedModel
