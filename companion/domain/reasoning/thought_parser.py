from typing import Any, Dict, Optional
from pydantic import BaseModel
import json
import math
import re

from companion.domain.errors import ReasoningParseFailure
from companion.domain.models.reasoning import ReasoningAction, Thought

FALLBACK_CONFIDENCE = 0.5

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class ThoughtParseResult(BaseModel):
    thought: Thought
    parsed: bool
    error: Optional[str] = None


def _extract_object(raw: str) -> Dict[str, Any]:
    text = raw.strip()
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ReasoningParseFailure("No JSON object in reasoning response")

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ReasoningParseFailure(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ReasoningParseFailure("Reasoning response is not an object")
    return data


def _action(value: Any) -> ReasoningAction:
    normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return ReasoningAction(normalized)
    except ValueError:
        return ReasoningAction.RESPOND


def _confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return FALLBACK_CONFIDENCE
    return FALLBACK_CONFIDENCE if math.isnan(confidence) else confidence


def parse_thought(raw: Optional[str]) -> ThoughtParseResult:
    """Parse a structured thought. Never raises.

    Anything that is not a JSON object becomes a respond thought with the
    raw text as analysis and neutral confidence. Unknown actions map to
    respond.
    """

    raw = raw or ""
    try:
        data = _extract_object(raw)
    except ReasoningParseFailure as e:
        return ThoughtParseResult(
            thought=Thought(analysis=raw.strip(), action=ReasoningAction.RESPOND, confidence=FALLBACK_CONFIDENCE),
            parsed=False,
            error=str(e)
        )

    target = data.get("action_target")
    thought = Thought(
        analysis=str(data.get("analysis") or "").strip(),
        action=_action(data.get("action")),
        action_target=str(target).strip() if target not in (None, "") else None,
        confidence=_confidence(data.get("confidence", FALLBACK_CONFIDENCE))
    )
    return ThoughtParseResult(thought=thought, parsed=True)
