"""
Best-effort repair of truncated or malformed JSON produced by an LLM.

The dominant failure is output cut off at the token limit, usually inside a
string. Repair never invents values: an unterminated string is cut back to
the last complete element, and only the missing closing brackets/braces are
appended.
"""
import json
import re
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from vehicle_catalog.exceptions import ParseFailed

logger = structlog.get_logger(__name__)

_CODE_FENCE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?|\n?\s*```\s*$")
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)
_CLOSERS = {"{": "}", "[": "]"}


class ScanState(BaseModel):
    """Result of one pass over the text"""

    stack: list[str]
    in_string: bool
    # (cut index, open containers at that point), latest last
    checkpoints: list[tuple[int, list[str]]]
    # False when the text ends on a bare scalar or a dangling ":"
    complete_tail: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def balanced(self) -> bool:
        return not self.stack and not self.in_string


class StructuredParse(BaseModel):
    data: Any
    repaired: bool = False


def strip_wrappers(text: str) -> str:
    """Remove <think> blocks and markdown code fences"""
    text = _THINK_BLOCK.sub("", text)
    return _CODE_FENCE.sub("", text.strip()).strip()


def extract_json_region(text: str) -> str:
    """Drop prose before the first opening brace/bracket"""
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return text
    return text[min(starts):]


def scan(text: str) -> ScanState:
    """
    Track container nesting and string state in a single pass.

    Checkpoints are positions where the text can be cut and still end on a
    complete element: just before a separating comma, or just after an
    opening bracket/brace. A number or literal at the very end may have been
    cut short, so such a tail is not complete.
    """
    stack: list[str] = []
    checkpoints: list[tuple[int, list[str]]] = []
    in_string = False
    escaped = False
    previous = ""
    tail = "open"

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
                previous = char
            continue

        if char.isspace():
            continue

        if char == '"':
            in_string = True
            tail = "value" if previous == ":" or (stack and stack[-1] == "[") else "key"
        elif char in _CLOSERS:
            stack.append(char)
            checkpoints.append((index + 1, list(stack)))
            tail = "open"
        elif char in "}]":
            if stack:
                stack.pop()
            tail = "value"
        elif char == ",":
            if stack:
                checkpoints.append((index, list(stack)))
            tail = "comma"
        elif char == ":":
            tail = "colon"
        else:
            tail = "scalar"
        previous = char

    return ScanState(
        stack=stack,
        in_string=in_string,
        checkpoints=checkpoints,
        complete_tail=tail not in ("scalar", "colon"),
    )


def _close(prefix: str, stack: list[str]) -> str:
    prefix = prefix.rstrip()
    if prefix.endswith(","):
        prefix = prefix[:-1].rstrip()
    return prefix + "".join(_CLOSERS[opener] for opener in reversed(stack))


def repair_candidates(text: str) -> list[str]:
    """
    Candidate repairs, most complete first.

    The first candidate keeps everything when the scan ended outside a
    string on a complete value; the rest cut back to successively earlier
    checkpoints.
    """
    state = scan(text)
    if state.balanced:
        return [text]

    candidates = []
    if not state.in_string and state.complete_tail:
        candidates.append(_close(text, state.stack))

    for cut, stack in reversed(state.checkpoints):
        candidate = _close(text[:cut], stack)
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def repair(text: str) -> str:
    """
    Return a repaired version of ``text``.

    Balanced input is returned unchanged. If the scan ends inside a string,
    on a bare number or literal, or after a colon, the text is cut back to
    the last complete element; otherwise it is kept whole. Either way only
    the missing closers are appended.
    """
    candidates = repair_candidates(text)
    return candidates[0] if candidates else text


def parse_structured(text: str, excerpt_chars: int = 200) -> StructuredParse:
    """
    Parse LLM output as JSON, falling back to repair.

    A plain parse is always tried first. When the repaired text parses the
    result is flagged ``repaired`` (low confidence).

    Raises:
        ParseFailed: partial=True with ``recovered`` data when the repaired
            text does not parse but an earlier cut still yields data;
            partial=False when there is no usable data at all
    """
    if not text or not text.strip():
        raise ParseFailed("Empty structured output", partial=False)

    cleaned = strip_wrappers(text)
    try:
        return StructuredParse(data=json.loads(cleaned), repaired=False)
    except ValueError as e:
        first_error = e

    region = extract_json_region(cleaned)
    excerpt = region[-excerpt_chars:]
    candidates = repair_candidates(region)

    primary = _loads(candidates[0]) if candidates else None
    if primary is not None:
        if _is_empty(primary):
            raise ParseFailed(
                "Structured output was truncated before any complete record",
                partial=False,
                raw_excerpt=excerpt,
                original_exception=first_error,
            )
        logger.warning(
            "Structured output required repair",
            original_chars=len(region),
            repaired_chars=len(candidates[0]),
        )
        return StructuredParse(data=primary, repaired=True)

    for candidate in candidates[1:]:
        recovered = _loads(candidate)
        if recovered is not None and not _is_empty(recovered):
            logger.warning(
                "Recovered a prefix of unrepairable output",
                original_chars=len(region),
                recovered_chars=len(candidate),
            )
            raise ParseFailed(
                "Structured output not repairable; earlier records recovered",
                partial=True,
                recovered=recovered,
                raw_excerpt=excerpt,
                original_exception=first_error,
            )

    raise ParseFailed(
        f"Structured output is not repairable: {first_error}",
        partial=False,
        raw_excerpt=excerpt,
        original_exception=first_error,
    )


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _is_empty(data: Any) -> bool:
    if isinstance(data, dict):
        return all(_is_empty(value) for value in data.values())
    if isinstance(data, list):
        return all(_is_empty(value) for value in data)
    return False
