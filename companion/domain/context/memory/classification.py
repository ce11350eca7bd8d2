from typing import Optional, Tuple

from companion.domain.models.memory import MemoryType

INSTRUCTION_CUES: Tuple[str, ...] = ("always ", "never ", "please remember", "remember to", "from now on")
PREFERENCE_CUES: Tuple[str, ...] = ("prefer", "don't like", "do not like", "favorite", "favourite", "i love", "i hate")
FACT_CUES: Tuple[str, ...] = ("i am ", "i'm ", "i like ", "my name is", "i live", "i work")


def detect_memory_type(text: str) -> Optional[MemoryType]:
    """Memory type suggested by lexical cues, or None when nothing stands out"""

    lowered = f" {text.lower()} "
    if any(cue in lowered for cue in INSTRUCTION_CUES):
        return MemoryType.INSTRUCTION
    # Checked before facts so "I don't like" is not read as "I like"
    if any(cue in lowered for cue in PREFERENCE_CUES):
        return MemoryType.PREFERENCE
    if any(cue in lowered for cue in FACT_CUES):
        return MemoryType.FACT
    return None


def classify_memory_type(text: str) -> MemoryType:
    return detect_memory_type(text) or MemoryType.CONTEXT
