"""Branch condition evaluation over the accumulated run context."""

from __future__ import annotations

import math
import re
from typing import Any, List, Optional

from .constants import ALWAYS_PATH, WHOLE_CONTEXT_PATH
from .contracts import Condition

_MISSING = object()
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")
_BLOCKED_SEGMENTS = frozenset({"__proto__", "constructor", "prototype"})
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def parse_path(path: str) -> List[str]:
    """Split ``path`` into segments, turning ``a[0]`` into ``a.0``."""
    normalized = _INDEX_PATTERN.sub(r".\1", path)
    return [segment.strip() for segment in normalized.split(".") if segment.strip()]


def is_safe_segment(segment: str) -> bool:
    return segment not in _BLOCKED_SEGMENTS and not segment.startswith("__")


def resolve_path(source: Any, path: str) -> Any:
    """Read ``path`` from nested mappings and sequences.

    Only mapping keys and sequence indexes are followed; attributes are never
    looked up. Returns ``None`` when any segment is missing or unsafe.
    """
    if path == ALWAYS_PATH:
        return True
    if path == WHOLE_CONTEXT_PATH:
        return source

    segments = parse_path(path)
    if not segments:
        return None

    current: Any = source
    for segment in segments:
        if current is None or not is_safe_segment(segment):
            return None
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, (list, tuple)):
            if not segment.isdigit():
                return None
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            return None
        if current is _MISSING:
            return None
    return current


def _normalize_text(value: Any, case_sensitive: bool) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    return text if case_sensitive else text.lower()


def to_number(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float, or ``None``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def compile_regex_flags(flags: Optional[str]) -> int:
    compiled = 0
    for flag in flags or "":
        if flag not in _REGEX_FLAGS:
            raise ValueError(f"Unsupported regex flag: {flag}")
        compiled |= _REGEX_FLAGS[flag]
    return compiled


def evaluate_condition(condition: Condition, source: Any) -> bool:
    """Return whether ``condition`` holds for ``source``."""
    left = resolve_path(source, condition.source_path)
    operator = condition.operator

    if operator == "exists":
        return left is not None
    if operator == "not_exists":
        return left is None

    if operator in ("string_equals", "string_contains"):
        left_text = _normalize_text(left, condition.case_sensitive)
        right_text = _normalize_text(condition.value, condition.case_sensitive)
        if left_text is None or right_text is None:
            return False
        if operator == "string_equals":
            return left_text == right_text
        return right_text in left_text

    if operator == "number_compare":
        left_number = to_number(left)
        right_number = to_number(condition.value)
        if left_number is None or right_number is None:
            return False
        comparator = condition.number_comparator or "eq"
        if comparator == "gt":
            return left_number > right_number
        if comparator == "gte":
            return left_number >= right_number
        if comparator == "lt":
            return left_number < right_number
        if comparator == "lte":
            return left_number <= right_number
        return left_number == right_number

    if operator == "regex_match":
        if not isinstance(condition.value, str) or not condition.value.strip():
            return False
        left_text = _normalize_text(left, True)
        if left_text is None:
            return False
        try:
            pattern = re.compile(condition.value, compile_regex_flags(condition.regex_flags))
        except (re.error, ValueError):
            return False
        return pattern.search(left_text) is not None

    return False


def validate_condition(condition: Condition) -> List[str]:
    """Return authoring-time problems with ``condition``."""
    problems: List[str] = []
    if not condition.source_path.strip():
        problems.append(f"Condition {condition.id} has an empty source path.")
    elif condition.source_path not in (ALWAYS_PATH, WHOLE_CONTEXT_PATH):
        unsafe = [s for s in parse_path(condition.source_path) if not is_safe_segment(s)]
        if unsafe:
            problems.append(
                f"Condition {condition.id} uses reserved path segment(s): {', '.join(unsafe)}."
            )

    if condition.operator == "number_compare":
        if to_number(condition.value) is None:
            problems.append(
                f"Condition {condition.id} uses number_compare with non-numeric value {condition.value!r}."
            )
    elif condition.operator == "regex_match":
        if not isinstance(condition.value, str) or not condition.value.strip():
            problems.append(f"Condition {condition.id} uses regex_match without a pattern.")
        else:
            try:
                re.compile(condition.value, compile_regex_flags(condition.regex_flags))
            except (re.error, ValueError) as exc:
                problems.append(f"Condition {condition.id} has an invalid regex: {exc}.")
    elif condition.operator in ("string_equals", "string_contains"):
        if condition.value is None:
            problems.append(f"Condition {condition.id} uses {condition.operator} without a value.")
    return problems
