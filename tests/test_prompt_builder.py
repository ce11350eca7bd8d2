from companion.domain.generation.prompt_builder import MEMORY_NOTE_HEADER, SUMMARY_HEADER, PromptBuilder
from companion.domain.models.conversation import ConversationMessage, MessageRole


def test_stable_prefix_then_dialogue_then_volatile_note() -> None:
    builder = PromptBuilder("Global persona")
    history = [
        ConversationMessage.user("old question"),
        ConversationMessage.assistant("old answer"),
        ConversationMessage.user("compacted away").excluded(),
    ]

    messages = builder.build(
        history,
        ConversationMessage.user("new question"),
        persona="Server persona",
        summary="They talked about chess.",
        memory_context="From this conversation:\n- [fact] likes chess",
        enrichment="[Reasoning Notes]\nSuggested tone: warm",
    )

    system = messages[0]
    assert system.role == MessageRole.SYSTEM
    assert system.content.index("Global persona") < system.content.index("Server persona")
    assert system.content.index("Server persona") < system.content.index(SUMMARY_HEADER)
    assert [m.content for m in messages[1:4]] == ["old question", "old answer", "new question"]

    note = messages[-1]
    assert note.role == MessageRole.SYSTEM
    assert note.include_in_context is False
    assert note.content.startswith(MEMORY_NOTE_HEADER)
    assert note.content.index("likes chess") < note.content.index("Suggested tone")
    assert len(messages) == 5


def test_prefix_is_identical_when_only_memory_changes() -> None:
    builder = PromptBuilder("Global persona")
    history = [ConversationMessage.user("hi"), ConversationMessage.assistant("hello")]
    user = ConversationMessage.user("next")

    first = builder.build(history, user, summary="s", memory_context="memory one")
    second = builder.build(history, user, summary="s", memory_context="memory two")

    assert [m.content for m in first[:-1]] == [m.content for m in second[:-1]]


def test_no_volatile_note_without_memory_or_enrichment() -> None:
    messages = PromptBuilder("persona").build([], ConversationMessage.user("hi"))

    assert [m.role for m in messages] == [MessageRole.SYSTEM, MessageRole.USER]
    assert SUMMARY_HEADER not in messages[0].content
