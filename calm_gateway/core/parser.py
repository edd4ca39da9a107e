"""
Structured response parsing.

Model output usually wraps JSON in conversational text. The scanner here
finds balanced top-level JSON objects and arrays by tracking bracket depth
(string literals included), parses them, checks them against a shape and
clamps bounded numbers. Anything unusable yields the caller's fallback;
parse errors never escape this module.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSERS = {"{": "}", "[": "]"}


class ShapeMismatch(ValueError):
    """Parsed JSON does not have the expected shape."""


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


@dataclass(frozen=True)
class ShapeRule:
    """Minimal structural expectations for parsed JSON.

    Attributes:
        container: dict for an object, list for an array
        required_keys: Keys an object must contain
        bounds: Numeric object fields and their (low, high) range; values
            outside the range are clamped, non-numeric values fail
        fields: Nested rules for object fields, applied when the field is present
        items: Rule applied to each array element; failing elements are dropped
        min_items: Minimum array length after dropping failed elements
        max_items: Arrays longer than this are truncated
    """
    container: type = dict
    required_keys: Tuple[str, ...] = ()
    bounds: Mapping[str, Tuple[float, float]] = field(default_factory=dict)
    fields: Mapping[str, "ShapeRule"] = field(default_factory=dict)
    items: Optional["ShapeRule"] = None
    min_items: int = 0
    max_items: Optional[int] = None

    def apply(self, value: Any) -> Any:
        """Validate value and return it with bounded numbers clamped.

        Raises:
            ShapeMismatch: If value does not fit this rule
        """
        if not isinstance(value, self.container):
            raise ShapeMismatch(f"expected {self.container.__name__}, got {type(value).__name__}")
        if isinstance(value, dict):
            return self._apply_object(value)
        return self._apply_array(value)

    def _apply_object(self, value: dict) -> dict:
        missing = [key for key in self.required_keys if key not in value]
        if missing:
            raise ShapeMismatch(f"missing keys: {missing}")

        result = dict(value)
        for key, (low, high) in self.bounds.items():
            if key not in result:
                continue
            number = result[key]
            if isinstance(number, bool) or not isinstance(number, (int, float)) or not math.isfinite(number):
                raise ShapeMismatch(f"field '{key}' is not a finite number")
            result[key] = clamp(number, low, high)

        for key, rule in self.fields.items():
            if key in result:
                result[key] = rule.apply(result[key])
        return result

    def _apply_array(self, value: list) -> list:
        if self.items is None:
            kept = list(value)
        else:
            kept = []
            for element in value:
                try:
                    kept.append(self.items.apply(element))
                except ShapeMismatch as e:
                    logger.debug("Dropping array element that does not fit: %s", e)
        if len(kept) < self.min_items:
            raise ShapeMismatch(f"expected at least {self.min_items} valid items, got {len(kept)}")
        if self.max_items is not None:
            kept = kept[:self.max_items]
        return kept


def _balanced_spans(text: str) -> List[Tuple[int, int]]:
    """(start, end) of every bracket pair that closes cleanly, in one pass.

    A mismatched closer invalidates every bracket still open at that point;
    brackets left open at the end of text never close.
    """
    spans = []
    open_brackets: List[Tuple[int, str]] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and open_brackets:
            in_string = True
        elif char in _CLOSERS:
            open_brackets.append((index, _CLOSERS[char]))
        elif char in ("}", "]") and open_brackets:
            start, expected = open_brackets.pop()
            if char == expected:
                spans.append((start, index))
            else:
                open_brackets.clear()
    return spans


def extract_json_candidates(text: str) -> Iterator[str]:
    """Yield each balanced top-level {...} or [...] span of text, in order."""
    last_end = -1
    for start, end in sorted(_balanced_spans(text)):
        if start > last_end:
            yield text[start:end + 1]
            last_end = end


def parse_structured(raw_text: Optional[str], fallback: T, shape: Optional[ShapeRule] = None) -> T:
    """Extract JSON from model output, or return the fallback.

    The first balanced candidate that parses as JSON (and, with a shape, is
    of the expected container type) is validated against the shape.

    Args:
        raw_text: Free-form model output
        fallback: Value returned unchanged when nothing usable is found
        shape: Optional structural rule; bounded numbers are clamped

    Returns:
        Parsed (and clamped) value, or fallback
    """
    if not raw_text:
        logger.warning("No text to parse; using fallback")
        return fallback

    for candidate in extract_json_candidates(raw_text):
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        except RecursionError:
            logger.warning("Structured output nested too deeply to parse; skipping candidate")
            continue
        if shape is None:
            return value
        if not isinstance(value, shape.container):
            continue
        try:
            return shape.apply(value)
        except ShapeMismatch as e:
            logger.warning("Structured output failed shape check (%s); using fallback", e)
            return fallback

    logger.warning("No parseable JSON found in model output; using fallback")
    return fallback
