"""
Tests for locating, sanitizing and validating embedded assessment records.
"""
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from assessment_extractor import (
    MAX_ASSESSMENT_SIZE, SANITIZE_STEPS, AssessmentStrategy, contains_assessment,
    extract, locate, remove_duplicate_fields, sanitize, strip_assessment,
)


class TestLocate:
    """Delimiter scanning"""

    def test_extracts_interior(self):
        """A delimited object yields its interior"""
        assert locate('§{"a":1}§') == '{"a":1}'

    def test_interior_is_trimmed(self):
        assert locate('Story text.\n§  {"a":1}\n§ more') == '{"a":1}'

    def test_unmatched_delimiter_is_absent(self):
        """A single delimiter means no assessment"""
        assert locate('The gate opens. §{"a":1}') is None
        assert extract('The gate opens. §{"a":1}') is None

    def test_no_delimiter_is_absent(self):
        assert locate("Just narrative.") is None
        assert locate("") is None

    def test_empty_interior_is_absent(self):
        assert locate("before §   § after") is None

    def test_oversized_block_is_absent(self):
        body = '{"notes":"' + "x" * MAX_ASSESSMENT_SIZE + '"}'
        assert locate(f"§{body}§") is None

    def test_custom_delimiter(self):
        assert locate('text |{"a":1}| tail', delimiter="|") == '{"a":1}'


class TestSanitize:
    """Sanitize steps are data and run in order"""

    def test_steps_are_named(self):
        assert [s.name for s in SANITIZE_STEPS] == [
            "strip_block_comments", "strip_line_comments",
            "remove_duplicate_fields", "trim_to_braces",
        ]

    def test_strips_comments(self):
        raw = '{"a": 1, /* block\n comment */ "b": 2 // trailing\n}'
        assert json.loads(sanitize(raw)) == {"a": 1, "b": 2}

    def test_keeps_urls(self):
        raw = '{"link": "https://example.com/x"}'
        assert json.loads(sanitize(raw)) == {"link": "https://example.com/x"}

    def test_comment_markers_inside_strings_kept(self):
        raw = '{"note": "see a // b", "path": "/* not a comment */", "q": "say \\"//\\""} // aside\n'
        assert json.loads(sanitize(raw)) == {
            "note": "see a // b", "path": "/* not a comment */", "q": 'say "//"'}

    def test_trims_to_outer_braces(self):
        raw = 'json here: {"a": {"b": 1}} trailing words'
        assert sanitize(raw) == '{"a": {"b": 1}}'

    def test_duplicate_world_state_key_removed(self):
        """Repeated worldStateUpdates keeps only the first occurrence"""
        raw = ('{"overallScore": 0.5, "worldStateUpdates": {"weather": "rain"}, '
               '"strategy": "ACCEPT", "worldStateUpdates": {"weather": "sun", "x": {"y": 1}}}')
        cleaned = remove_duplicate_fields(raw)
        assert cleaned.count("worldStateUpdates") == 1
        data = json.loads(cleaned)
        assert data["worldStateUpdates"] == {"weather": "rain"}
        assert data["strategy"] == "ACCEPT"

    def test_duplicate_of_leading_key(self):
        raw = '{"questUpdates": {"created": []}, "questUpdates": {"expired": []}}'
        data = json.loads(remove_duplicate_fields(raw))
        assert data == {"questUpdates": {"created": []}}

    def test_nested_same_name_is_not_touched(self):
        raw = '{"worldStateUpdates": {"questUpdates": 1}, "questUpdates": {"created": []}}'
        assert json.loads(remove_duplicate_fields(raw)) == json.loads(raw)

    def test_key_text_inside_string_is_not_touched(self):
        raw = '{"assessmentNotes": "\\"questUpdates\\": twice", "questUpdates": {}}'
        assert remove_duplicate_fields(raw) == raw


class TestExtract:
    """Full pipeline including validation"""

    def test_valid_record(self, assessment_block):
        text = "The dragon sleeps.\n" + assessment_block(worldStateUpdates={"dragon": "asleep"})
        record = extract(text)
        assert record is not None
        assert record.strategy is AssessmentStrategy.ACCEPT
        assert record.overall_score == 0.85
        assert record.world_state_updates == {"dragon": "asleep"}

    def test_duplicate_field_deduplicated_before_decode(self, scores):
        body = json.dumps(scores)[:-1] + ', "worldStateUpdates": {"a": 1}, "worldStateUpdates": {"a": 2}}'
        record = extract(f"§{body}§")
        assert record.world_state_updates == {"a": 1}

    def test_comments_inside_record(self, scores):
        body = json.dumps(scores)[:-1] + ', // model aside\n "arcUpdates": {"currentArcName": "Act II"} /* done */}'
        record = extract(f"Narrative §{body}§")
        assert record.arc_updates == {"currentArcName": "Act II"}

    def test_double_slash_in_notes_keeps_record(self, scores):
        scores["assessmentNotes"] = "see a // b"
        body = json.dumps(scores)[:-1] + ', "worldStateUpdates": {"a": 1}}'
        record = extract(f"§{body}§")
        assert record is not None
        assert record.assessment_notes == "see a // b"
        assert record.world_state_updates == {"a": 1}

    def test_character_sections_carried(self, assessment_block):
        record = extract(assessment_block(
            skillsStateUpdates={"gold": 75},
            stateUpdates=[{"type": "LOCATION", "value": "Harbor"}]))
        assert record.skills_state_updates == {"gold": 75}
        assert record.state_updates == [{"type": "LOCATION", "value": "Harbor"}]

    @pytest.mark.parametrize("field", [
        "ruleCompliance", "contextConsistency", "convergenceProgress", "overallScore", "strategy",
    ])
    def test_missing_required_field_rejects(self, scores, field):
        del scores[field]
        assert extract("§" + json.dumps(scores) + "§") is None

    @pytest.mark.parametrize("value", [-0.1, 1.5, "NaN"])
    def test_score_out_of_range_rejects(self, scores, value):
        scores["overallScore"] = value
        body = json.dumps(scores).replace('"NaN"', "NaN")
        assert extract(f"§{body}§") is None

    def test_unknown_strategy_rejects(self, scores):
        scores["strategy"] = "IGNORE"
        assert extract("§" + json.dumps(scores) + "§") is None

    def test_invalid_json_rejects(self):
        assert extract('§{"ruleCompliance": 0.5,,}§') is None

    def test_non_object_rejects(self):
        assert extract("§[1, 2, 3]§") is None

    def test_malformed_optional_section_still_accepted(self, assessment_block):
        """Section shape is checked during reconciliation, not extraction"""
        record = extract(assessment_block(questUpdates="not an object"))
        assert record is not None
        assert record.quest_updates == "not an object"

    def test_boundary_scores_accepted(self, scores):
        scores.update(ruleCompliance=0, overallScore=1)
        assert extract("§" + json.dumps(scores) + "§") is not None


class TestStripAndContains:

    def test_strip_removes_block_and_delimiters(self):
        text = 'You enter the cave.\n§{"a":1}§\n'
        assert strip_assessment(text) == "You enter the cave."

    def test_strip_keeps_text_after_block(self):
        assert strip_assessment('Before §{"a":1}§ after') == "Before  after"

    def test_strip_unmatched_is_unchanged(self):
        text = "Price: 5§ only one"
        assert strip_assessment(text) == text

    def test_contains(self):
        assert contains_assessment('x §{}§')
        assert not contains_assessment("x § y")
