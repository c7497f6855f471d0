"""
Tests for the append-only world event log.
"""
import json
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from story_state import EventKind
from world_event_log import WorldEventLog


class TestSequencing:

    def test_sequences_start_at_one_per_session(self, event_log):
        a1 = event_log.append("a", EventKind.STATE_CHANGE, {"k": 1})
        b1 = event_log.append("b", EventKind.STATE_CHANGE, {"k": 1})
        a2 = event_log.append("a", EventKind.QUEST_UPDATE, {"k": 2})
        assert (a1.sequence, a2.sequence, b1.sequence) == (1, 2, 1)
        assert event_log.max_sequence("a") == 2
        assert event_log.max_sequence("nobody") == 0

    def test_concurrent_appends_stay_gapless(self, event_log):
        """Many threads appending to one session never collide or skip"""
        def worker(n):
            for i in range(50):
                event_log.append("s", EventKind.DICE_ROLL, {"worker": n, "i": i})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        sequences = [e.sequence for e in event_log.events("s")]
        assert sequences == list(range(1, 401))
        assert event_log.verify_integrity("s")

    def test_snapshot_recorded(self, event_log):
        event = event_log.append("s", EventKind.ARC_UPDATE, {"x": 1},
                                 {"arc_name": "Act I", "arc_start_round": 1, "total_rounds": 4})
        assert (event.arc_name, event.arc_start_round, event.total_rounds) == ("Act I", 1, 4)


class TestQueries:

    def test_filter_latest_count(self, event_log):
        for i in range(5):
            kind = EventKind.DICE_ROLL if i % 2 else EventKind.STATE_CHANGE
            event_log.append("s", kind, {"i": i})

        assert event_log.count("s") == 5
        assert len(event_log.events("s", EventKind.DICE_ROLL)) == 2
        assert [e.sequence for e in event_log.latest("s", 2)] == [5, 4]
        assert event_log.latest("s", 0) == []
        assert event_log.events("other") == []


class TestIntegrity:

    def test_events_are_immutable(self, event_log):
        event = event_log.append("s", EventKind.STATE_CHANGE, {"a": 1})
        with pytest.raises(Exception):
            event.payload = "{}"

    def test_checksum_over_payload(self, event_log):
        event = event_log.append("s", EventKind.STATE_CHANGE, {"b": 2, "a": 1})
        assert event.verify()
        assert event.payload_data() == {"a": 1, "b": 2}

    def test_tampered_event_detected(self, event_log):
        event_log.append("s", EventKind.STATE_CHANGE, {"a": 1})
        original = event_log._events["s"][0]
        object.__setattr__(original, "payload", json.dumps({"a": 2}))
        assert not event_log.verify_integrity("s")


class TestPersistence:

    def test_jsonl_round_trip(self, tmp_path):
        log = WorldEventLog(tmp_path)
        log.append("s", EventKind.QUEST_UPDATE, {"created": ["q1"]})
        log.append("s", EventKind.STATE_CHANGE, {"changed": ["door"]})

        lines = (tmp_path / "events_s.jsonl").read_text().strip().splitlines()
        assert len(lines) == 2

        restored = WorldEventLog.load_from_directory(tmp_path)
        assert restored.count("s") == 2
        assert restored.append("s", EventKind.DICE_ROLL, {}).sequence == 3

    def test_load_rejects_corruption(self, tmp_path):
        log = WorldEventLog(tmp_path)
        log.append("s", EventKind.QUEST_UPDATE, {"created": ["q1"]})

        path = tmp_path / "events_s.jsonl"
        row = json.loads(path.read_text())
        row["payload"] = json.dumps({"created": ["q2"]})
        path.write_text(json.dumps(row) + "\n")

        with pytest.raises(ValueError):
            WorldEventLog.load_from_directory(tmp_path)

    def test_reopened_log_continues_sequence(self, tmp_path):
        """A new log over the same directory numbers on from the file, not from 1"""
        WorldEventLog(tmp_path).append("s1", EventKind.QUEST_UPDATE, {"created": ["q1"]})

        reopened = WorldEventLog(tmp_path)
        assert reopened.count("s1") == 1
        assert reopened.append("s1", EventKind.STATE_CHANGE, {"changed": ["door"]}).sequence == 2

        restored = WorldEventLog.load_from_directory(tmp_path)
        assert [e.sequence for e in restored.events("s1")] == [1, 2]
        assert restored.verify_integrity("s1")

    def test_reopening_corrupt_directory_fails(self, tmp_path):
        path = tmp_path / "events_s.jsonl"
        WorldEventLog(tmp_path).append("s", EventKind.QUEST_UPDATE, {})
        row = json.loads(path.read_text())
        row["sequence"] = 5
        path.write_text(json.dumps(row) + "\n")

        with pytest.raises(ValueError):
            WorldEventLog(tmp_path)


class TestRelease:

    def test_release_drops_lock_keeps_events(self, event_log):
        event_log.append("s1", EventKind.DICE_ROLL, {})
        event_log.release("s1")
        assert "s1" not in event_log._session_locks
        assert event_log.count("s1") == 1
        assert event_log.append("s1", EventKind.DICE_ROLL, {}).sequence == 2
