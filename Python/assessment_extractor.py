"""
Assessment Extractor
Finds the delimited assessment record inside model output and turns it into a
validated AssessmentRecord.

Pipeline: scan -> delimit -> sanitize -> decode -> validate.
Absence and rejection both mean "no update this turn"; neither raises.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

DELIMITER = "§"
MAX_ASSESSMENT_SIZE = 10000

# Top-level sections models tend to emit twice
DUPLICATE_PRONE_FIELDS = ("worldStateUpdates", "skillsStateUpdates", "questUpdates")


class AssessmentStrategy(str, Enum):
    ACCEPT = "ACCEPT"
    ADJUST = "ADJUST"
    CORRECT = "CORRECT"


class AssessmentRecord(BaseModel):
    """
    Structured record embedded in a model turn.

    The five scoring fields are required and strictly validated. Payload
    sections are kept loosely typed: the reconciler validates each section on
    its own so that one malformed section does not discard the others.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rule_compliance: float = Field(alias="ruleCompliance", ge=0.0, le=1.0, allow_inf_nan=False)
    context_consistency: float = Field(alias="contextConsistency", ge=0.0, le=1.0, allow_inf_nan=False)
    convergence_progress: float = Field(alias="convergenceProgress", ge=0.0, le=1.0, allow_inf_nan=False)
    overall_score: float = Field(alias="overallScore", ge=0.0, le=1.0, allow_inf_nan=False)
    strategy: AssessmentStrategy

    assessment_notes: Optional[Any] = Field(default=None, alias="assessmentNotes")
    suggested_actions: Optional[Any] = Field(default=None, alias="suggestedActions")
    convergence_hints: Optional[Any] = Field(default=None, alias="convergenceHints")

    dice_rolls: Optional[Any] = Field(default=None, alias="diceRolls")
    quest_updates: Optional[Any] = Field(default=None, alias="questUpdates")
    skills_state_updates: Optional[Any] = Field(default=None, alias="skillsStateUpdates")
    state_updates: Optional[Any] = Field(default=None, alias="stateUpdates")
    world_state_updates: Optional[Any] = Field(default=None, alias="worldStateUpdates")
    arc_updates: Optional[Any] = Field(default=None, alias="arcUpdates")
    convergence_status_updates: Optional[Any] = Field(default=None, alias="convergenceStatusUpdates")
    memory_updates: Optional[Any] = Field(default=None, alias="memoryUpdates")

    def summary(self) -> Dict[str, Any]:
        """Scores and strategy only, for client events and logs."""
        return {
            "ruleCompliance": self.rule_compliance,
            "contextConsistency": self.context_consistency,
            "convergenceProgress": self.convergence_progress,
            "overallScore": self.overall_score,
            "strategy": self.strategy.value,
            "assessmentNotes": self.assessment_notes if isinstance(self.assessment_notes, str) else None,
        }


# =============================================================================
# SANITIZE STEPS
# =============================================================================

@dataclass(frozen=True)
class SanitizeStep:
    """One named text transform applied to the raw record before decoding."""
    name: str
    apply: Callable[[str], str]


def _string_end(text: str, i: int) -> int:
    """Index just past the JSON string starting at text[i] == '"'."""
    j = i + 1
    n = len(text)
    while j < n:
        if text[j] == "\\":
            j += 2
            continue
        if text[j] == '"':
            return j + 1
        j += 1
    return n


def _value_end(text: str, i: int) -> int:
    """Index just past the JSON value starting at or after text[i]."""
    n = len(text)
    while i < n and text[i].isspace():
        i += 1
    if i >= n:
        return n
    if text[i] == '"':
        return _string_end(text, i)
    if text[i] in "{[":
        depth = 0
        j = i
        while j < n:
            c = text[j]
            if c == '"':
                j = _string_end(text, j)
                continue
            if c in "{[":
                depth += 1
            elif c in "}]":
                depth -= 1
                if depth == 0:
                    return j + 1
            j += 1
        return n
    j = i
    while j < n and text[j] not in ",}]":
        j += 1
    return j


def _top_level_keys(text: str) -> List[Tuple[str, int, int]]:
    """(key, key_start, value_end) for every key of the outermost object."""
    keys = []
    depth = 0
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == '"':
            end = _string_end(text, i)
            if depth == 1:
                j = end
                while j < n and text[j].isspace():
                    j += 1
                if j < n and text[j] == ":":
                    value_end = _value_end(text, j + 1)
                    keys.append((text[i + 1:end - 1], i, value_end))
                    i = value_end
                    continue
            i = end
            continue
        if c in "{[":
            depth += 1
        elif c in "}]":
            depth -= 1
        i += 1
    return keys


def _strip_outside_strings(text: str, opener: str, closer: str, keep_closer: bool) -> str:
    """Remove opener...closer spans that are not inside a JSON string literal."""
    out = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == '"':
            end = _string_end(text, i)
            out.append(text[i:end])
            i = end
            continue
        if text.startswith(opener, i):
            end = text.find(closer, i + len(opener))
            if end == -1:
                if keep_closer:
                    break
                # Unterminated block comment is left for the decoder to reject
                out.append(text[i:])
                break
            i = end if keep_closer else end + len(closer)
            continue
        out.append(c)
        i += 1
    return "".join(out)


def strip_block_comments(text: str) -> str:
    return _strip_outside_strings(text, "/*", "*/", keep_closer=False)


def strip_line_comments(text: str) -> str:
    return _strip_outside_strings(text, "//", "\n", keep_closer=True)


def remove_duplicate_fields(text: str, fields: Tuple[str, ...] = DUPLICATE_PRONE_FIELDS) -> str:
    """Drop repeated top-level key/value spans for the given fields, keeping the first."""
    seen = set()
    spans = []
    for key, start, end in _top_level_keys(text):
        if key not in fields:
            continue
        if key in seen:
            spans.append((start, end))
        seen.add(key)

    for start, end in reversed(spans):
        before = start
        while before > 0 and text[before - 1].isspace():
            before -= 1
        if before > 0 and text[before - 1] == ",":
            start = before - 1
        else:
            after = end
            while after < len(text) and text[after].isspace():
                after += 1
            if after < len(text) and text[after] == ",":
                end = after + 1
        logger.debug(f"Removing duplicate assessment field span {start}:{end}")
        text = text[:start] + text[end:]
    return text


def trim_to_braces(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return text.strip()
    return text[start:end + 1]


SANITIZE_STEPS: Tuple[SanitizeStep, ...] = (
    SanitizeStep("strip_block_comments", strip_block_comments),
    SanitizeStep("strip_line_comments", strip_line_comments),
    SanitizeStep("remove_duplicate_fields", remove_duplicate_fields),
    SanitizeStep("trim_to_braces", trim_to_braces),
)


# =============================================================================
# PIPELINE
# =============================================================================

def _bounds(text: str, delimiter: str) -> Optional[Tuple[int, int]]:
    if not text:
        return None
    start = text.find(delimiter)
    if start == -1:
        return None
    end = text.find(delimiter, start + len(delimiter))
    if end == -1:
        return None
    return start, end


def locate(text: str, delimiter: str = DELIMITER) -> Optional[str]:
    """
    Interior of the first delimited block, trimmed.

    Returns:
        The raw record text, or None when no complete, non-empty block of
        acceptable size exists
    """
    bounds = _bounds(text, delimiter)
    if bounds is None:
        return None
    start, end = bounds
    interior = text[start + len(delimiter):end].strip()
    if not interior:
        return None
    if len(interior) > MAX_ASSESSMENT_SIZE:
        logger.warning(f"Assessment block too large ({len(interior)} chars), ignoring")
        return None
    return interior


def sanitize(raw: str, steps: Tuple[SanitizeStep, ...] = SANITIZE_STEPS) -> str:
    for step in steps:
        raw = step.apply(raw)
    return raw.strip()


def decode(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Assessment block is not valid JSON: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Assessment block decoded to {type(data).__name__}, expected object")
        return None
    return data


def validate(data: Dict[str, Any]) -> Optional[AssessmentRecord]:
    try:
        return AssessmentRecord.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Assessment rejected: {e.error_count()} validation error(s): "
                       f"{[err['loc'] for err in e.errors()]}")
        return None


def extract(text: str, delimiter: str = DELIMITER) -> Optional[AssessmentRecord]:
    """Run the full pipeline over a complete model response."""
    raw = locate(text, delimiter)
    if raw is None:
        logger.debug("No assessment block in response")
        return None
    data = decode(sanitize(raw))
    if data is None:
        return None
    return validate(data)


def contains_assessment(text: str, delimiter: str = DELIMITER) -> bool:
    return _bounds(text, delimiter) is not None


def strip_assessment(text: str, delimiter: str = DELIMITER) -> str:
    """Remove the first delimited block (delimiters included) for display."""
    bounds = _bounds(text, delimiter)
    if bounds is None:
        return text
    start, end = bounds
    return (text[:start] + text[end + len(delimiter):]).strip()
