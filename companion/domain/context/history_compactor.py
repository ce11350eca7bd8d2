from typing import List, Optional, Tuple
from pydantic import BaseModel, Field
import structlog

from companion.domain.context.tokens import TokenCounter
from companion.domain.errors import CompactionFailure
from companion.domain.models.conversation import ConversationMessage, TokenUsage
from companion.domain.ports import SideCompletion

logger = structlog.get_logger(__name__)

SUMMARY_INSTRUCTION = (
    "Summarize the following conversation excerpt objectively and concisely. "
    "Keep facts, names, decisions, user preferences and open questions. "
    "Write in neutral third person. Do not role-play, do not address anyone, "
    "and do not add opinions."
)

CONSOLIDATION_INSTRUCTION = (
    "The following are running summaries of one long conversation, oldest first. "
    "Condense them into a single neutral paragraph that keeps the facts, names, "
    "preferences and unresolved topics that still matter. Drop repetition."
)


class CompactionResult(BaseModel):
    removed_count: int = 0
    summary: str = ""
    remaining_tokens: int = 0
    consolidated: bool = False
    removed_messages: List[ConversationMessage] = Field(default_factory=list)


class HistoryCompactor:
    """Keeps the prompt inside the token budget by summarizing old turns"""

    def __init__(
        self,
        summarizer: SideCompletion,
        max_tokens: int,
        token_counter: Optional[TokenCounter] = None
    ):
        self.summarizer = summarizer
        self.max_tokens = max_tokens
        self.tokens = token_counter or TokenCounter()

    @property
    def target_tokens(self) -> float:
        return self.max_tokens / 2

    @property
    def summary_max_tokens(self) -> int:
        return max(1, self.max_tokens // 4)

    @property
    def consolidation_threshold(self) -> int:
        return max(1, self.max_tokens // 4)

    def should_compact(self, usage: TokenUsage) -> bool:
        """Cached prompt tokens count half toward pressure"""

        cached = usage.cached_prompt_tokens or 0
        return usage.total_tokens - cached / 2 > self.max_tokens

    def plan_removal(self, messages: List[ConversationMessage]) -> Tuple[int, int]:
        """Number of oldest messages to remove and the tokens that stay.

        The walk stops once the kept tokens are under the target and an even
        number of messages is marked, so turns leave in user/assistant pairs.
        """

        counts = [self.tokens.count(m.content) for m in messages]
        current = sum(counts)
        removed = 0

        for tokens in counts:
            if current < self.target_tokens and removed % 2 == 0:
                break
            current -= tokens
            removed += 1

        if removed % 2 == 1:
            removed -= 1
            current += counts[removed]

        return removed, current

    def _transcript(self, messages: List[ConversationMessage]) -> str:
        return "\n".join(f"{m.role.value}: {m.content}" for m in messages)

    async def _summarize(self, instruction: str, text: str) -> str:
        try:
            summary = await self.summarizer(f"{instruction}\n\n{text}", self.summary_max_tokens)
        except Exception as e:
            raise CompactionFailure(f"Summarization call failed: {e}") from e
        summary = (summary or "").strip()
        if not summary:
            raise CompactionFailure("Summarization returned no text")
        return summary

    async def compact(
        self,
        messages: List[ConversationMessage],
        existing_summary: Optional[str] = None
    ) -> CompactionResult:
        """Summarize the oldest turns into the running summary.

        Raises CompactionFailure when the summary call fails; the caller
        leaves the history untouched in that case.
        """

        existing_summary = (existing_summary or "").strip()
        removed_count, remaining_tokens = self.plan_removal(messages)
        if removed_count == 0:
            return CompactionResult(summary=existing_summary, remaining_tokens=remaining_tokens)

        removed = messages[:removed_count]
        new_summary = await self._summarize(SUMMARY_INSTRUCTION, self._transcript(removed))
        combined = f"{existing_summary}\n\n{new_summary}" if existing_summary else new_summary

        consolidated = False
        if self.tokens.count(combined) > self.consolidation_threshold:
            try:
                combined = await self._summarize(CONSOLIDATION_INSTRUCTION, combined)
                consolidated = True
            except CompactionFailure as e:
                logger.warning("Summary consolidation failed, keeping appended summary", error=str(e))

        return CompactionResult(
            removed_count=removed_count,
            summary=combined,
            remaining_tokens=remaining_tokens,
            consolidated=consolidated,
            removed_messages=list(removed)
        )
