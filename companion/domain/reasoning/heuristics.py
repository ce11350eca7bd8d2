from typing import List
import re

from companion.domain.models.conversation import ConversationMessage, MessageRole

HUMOR_MARKERS = ("lol", "lmao", "haha", "hehe", "rofl", "xd", ":)", ":d", ";)", "😂", "🤣", "😄")
POLITENESS_MARKERS = ("please", "thank", "thanks", "sorry", "would you", "could you", "appreciate")

_WORD = re.compile(r"[A-Za-z]{2,}")


def analyze_context(history: List[ConversationMessage], message: str) -> str:
    """Describe conversation shape: length, question density, message size"""

    user_turns = [m for m in history if m.role == MessageRole.USER]
    turn_count = len(user_turns) + 1
    questions = sum(1 for m in user_turns if "?" in m.content) + (1 if "?" in message else 0)
    question_ratio = questions / turn_count

    lengths = [len(m.content) for m in user_turns] + [len(message)]
    average_length = sum(lengths) / len(lengths)

    if turn_count <= 2:
        stage = "The conversation has just started"
    elif turn_count <= 10:
        stage = f"The conversation is ongoing ({turn_count} user turns)"
    else:
        stage = f"This is a long conversation ({turn_count} user turns)"

    if question_ratio >= 0.6:
        density = "the user mostly asks questions, so direct answers are expected"
    elif question_ratio >= 0.3:
        density = "the user mixes questions with statements"
    else:
        density = "the user mostly shares statements, so engagement matters more than answers"

    if len(message) < 40:
        size = "The current message is short; a brief reply fits."
    elif len(message) > 400:
        size = "The current message is long; a thorough reply fits."
    else:
        size = "The current message is of moderate length."

    return f"{stage}; {density}. Average user message length is {average_length:.0f} characters. {size}"


def infer_tone(message: str) -> str:
    """Suggest a reply tone from lexical cues in the user's message"""

    lowered = message.lower()
    cues = []

    if any(marker in lowered for marker in HUMOR_MARKERS):
        cues.append("playful and light-hearted")
    if any(marker in lowered for marker in POLITENESS_MARKERS):
        cues.append("warm and courteous")

    words = _WORD.findall(message)
    shouting = words and sum(1 for w in words if w.isupper()) / len(words) > 0.5
    if message.count("!") >= 2 or shouting:
        cues.append("energetic, matching the user's emphasis")

    if len(message.strip()) < 20:
        cues.append("short and direct")

    if not cues:
        return "friendly and conversational"
    return ", ".join(cues)
