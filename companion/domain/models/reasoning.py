from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class ReasoningAction(str, Enum):
    """Actions the reasoning loop can choose between"""
    RESPOND = "respond"
    RECALL_MEMORY = "recall_memory"
    STORE_MEMORY = "store_memory"
    ANALYZE_CONTEXT = "analyze_context"
    CONSIDER_TONE = "consider_tone"
    REFLECT = "reflect"
    CLARIFY = "clarify"
    WEB_SEARCH = "web_search"


class Thought(BaseModel):
    """One structured reasoning decision"""
    analysis: str = ""
    action: ReasoningAction = ReasoningAction.RESPOND
    action_target: Optional[str] = None
    confidence: float = Field(default=0.5, description="Confidence in [0, 1]")

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, value: float) -> float:
        return max(0.0, min(1.0, value))


class ReasoningTrace(BaseModel):
    """Per-request reasoning record. Never persisted."""
    thoughts: List[Thought] = Field(default_factory=list)
    observations: List[str] = Field(default_factory=list)
    final_action: Optional[ReasoningAction] = None
    final_confidence: float = 0.0
    suggested_tone: Optional[str] = None
    clarification_topic: Optional[str] = None
    iterations: int = 0

    def render(self) -> str:
        """Thoughts and observations so far, for the next thought prompt"""
        lines = []
        for index, thought in enumerate(self.thoughts, start=1):
            target = f" -> {thought.action_target}" if thought.action_target else ""
            lines.append(
                f"Thought {index}: {thought.analysis} "
                f"[{thought.action.value}{target}, confidence {thought.confidence:.2f}]"
            )
        for observation in self.observations:
            lines.append(f"Observation: {observation}")
        return "\n".join(lines)

    def to_context_block(self) -> Optional[str]:
        """Fold the trace into the enrichment appended before final generation"""
        parts = []
        if self.observations:
            parts.append("Observations:\n" + "\n".join(f"- {o}" for o in self.observations))
        if self.suggested_tone:
            parts.append(f"Suggested tone: {self.suggested_tone}")
        if self.clarification_topic:
            parts.append(
                "The request may be ambiguous about: "
                f"{self.clarification_topic}. Acknowledge the ambiguity briefly while answering."
            )
        if not parts:
            return None
        return "[Reasoning Notes]\n" + "\n\n".join(parts)
