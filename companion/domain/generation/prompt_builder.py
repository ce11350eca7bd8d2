from typing import List, Optional

from companion.domain.models.conversation import ConversationMessage

MEMORY_NOTE_HEADER = "[Memory Context - use this information to inform your response]"
SUMMARY_HEADER = "Previous conversation context:"

NEUTRAL_SYSTEM_MESSAGE = (
    "You are a precise assistant that follows instructions exactly. "
    "Do not adopt any persona and do not add commentary."
)


class PromptBuilder:
    """Builds the message list in prefix-cache friendly order.

    Stable text goes first (global persona, server persona, running summary),
    then the literal dialogue, then the current user turn. Volatile memory and
    reasoning notes are appended last as a system note that is never
    persisted, so they never invalidate the cached prefix.
    """

    def __init__(self, global_system_message: str = ""):
        self.global_system_message = global_system_message

    def system_message(self, persona: Optional[str] = None, summary: Optional[str] = None) -> ConversationMessage:
        parts = [p.strip() for p in (self.global_system_message, persona) if p and p.strip()]
        if summary and summary.strip():
            parts.append(f"{SUMMARY_HEADER}\n{summary.strip()}")
        return ConversationMessage.system("\n\n".join(parts))

    def build(
        self,
        history: List[ConversationMessage],
        user_message: ConversationMessage,
        persona: Optional[str] = None,
        summary: Optional[str] = None,
        memory_context: Optional[str] = None,
        enrichment: Optional[str] = None
    ) -> List[ConversationMessage]:
        messages = [self.system_message(persona, summary)]
        messages.extend(m for m in history if m.include_in_context)
        messages.append(user_message)

        volatile = [block.strip() for block in (memory_context, enrichment) if block and block.strip()]
        if volatile:
            messages.append(
                ConversationMessage.system(
                    f"{MEMORY_NOTE_HEADER}\n" + "\n\n".join(volatile),
                    include_in_context=False
                )
            )
        return messages

    @staticmethod
    def side_request(prompt: str) -> List[ConversationMessage]:
        """Persona-free request used for summaries and reasoning"""
        return [
            ConversationMessage.system(NEUTRAL_SYSTEM_MESSAGE),
            ConversationMessage.user(prompt)
        ]
