import json
from typing import Optional

import pytest

from companion.domain.models.conversation import ConversationMessage
from companion.domain.models.memory import MemoryScope, MemoryType
from companion.domain.models.reasoning import ReasoningAction
from companion.domain.ports import WebSearchResult, WebSearchResultItem
from companion.domain.reasoning.reasoning_loop import ReasoningLoop, ReasoningRequest
from companion.infrastructure.config.settings import ReasoningSettings

from conftest import ScriptedCompletion


def thought(action: str, confidence: float, target: Optional[str] = None, analysis: str = "thinking") -> str:
    return json.dumps({"analysis": analysis, "action": action, "action_target": target, "confidence": confidence})


def _request(message: str = "What should I name my new puppy?", user_id: Optional[str] = "u1") -> ReasoningRequest:
    return ReasoningRequest(
        message=message,
        session_id="s1",
        user_id=user_id,
        history=[ConversationMessage.user("I just got a dog"), ConversationMessage.assistant("Congrats!")]
    )


class FakeWebSearch:
    def __init__(self, result: Optional[WebSearchResult] = None, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.queries = []

    async def search(self, query: str, max_results: int = 5) -> WebSearchResult:
        self.queries.append((query, max_results))
        if self.error:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_low_confidence_responds_run_until_iteration_cap() -> None:
    complete = ScriptedCompletion([thought("respond", 0.4), thought("respond", 0.6), thought("respond", 0.5)])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=3, confidence_threshold=0.8))

    trace = await loop.run(_request())

    assert trace.iterations == 3
    assert len(complete.prompts) == 3
    assert trace.final_action == ReasoningAction.RESPOND
    assert trace.final_confidence == 0.5


@pytest.mark.asyncio
async def test_confident_respond_finishes_immediately() -> None:
    complete = ScriptedCompletion([thought("respond", 0.9)])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=4))

    trace = await loop.run(_request())

    assert trace.iterations == 1
    assert trace.final_confidence == 0.9


@pytest.mark.asyncio
async def test_first_call_failure_finalizes_with_empty_trace() -> None:
    loop = ReasoningLoop(ScriptedCompletion([RuntimeError("no provider")]))

    trace = await loop.run(_request())

    assert trace.iterations == 0
    assert trace.final_action == ReasoningAction.RESPOND
    assert trace.final_confidence == 0.5
    assert trace.to_context_block() is None


@pytest.mark.asyncio
async def test_garbage_output_counts_as_neutral_respond() -> None:
    complete = ScriptedCompletion(["not json at all"])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=2, confidence_threshold=0.7))

    trace = await loop.run(_request())

    assert trace.iterations == 2
    assert trace.final_confidence == 0.5


@pytest.mark.asyncio
async def test_action_on_last_iteration_still_executes() -> None:
    complete = ScriptedCompletion([thought("consider_tone", 0.6)])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=1))

    trace = await loop.run(_request("thanks so much, could you help me lol"))

    assert trace.iterations == 1
    assert "playful" in trace.suggested_tone
    assert "warm" in trace.suggested_tone
    assert "Suggested tone:" in trace.to_context_block()


@pytest.mark.asyncio
async def test_recall_adds_memories_as_observation(memory_store) -> None:
    await memory_store.create("s1", "My dog is a golden retriever", MemoryType.FACT, user_id="u1")
    complete = ScriptedCompletion([
        thought("recall_memory", 0.3, target="My dog is a golden retriever"),
        thought("respond", 0.9),
    ])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=3), memory=memory_store)

    trace = await loop.run(_request())

    assert "golden retriever" in trace.observations[0]
    assert "golden retriever" in complete.prompts[1]


@pytest.mark.asyncio
async def test_store_memory_uses_explicit_importance(memory_store, vector_store) -> None:
    complete = ScriptedCompletion([thought("store_memory", 0.5, target="I prefer short names"), thought("respond", 0.9)])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=3), memory=memory_store, explicit_importance=0.9)

    trace = await loop.run(_request())

    [stored] = list(vector_store.points.values())
    payload = stored[1]
    assert payload["importance"] == 0.9
    assert payload["scope"] == MemoryScope.USER.value
    assert payload["memory_type"] == MemoryType.PREFERENCE.value
    assert trace.observations[0].startswith("Stored preference memory")


@pytest.mark.asyncio
async def test_store_without_user_is_session_scoped(memory_store, vector_store) -> None:
    complete = ScriptedCompletion([thought("store_memory", 0.5, target="remember the vet is on Friday")])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=1), memory=memory_store)

    await loop.run(_request(user_id=None))

    [stored] = list(vector_store.points.values())
    assert stored[1]["scope"] == MemoryScope.SESSION.value


@pytest.mark.asyncio
async def test_reflection_needs_two_thoughts() -> None:
    complete = ScriptedCompletion([
        thought("reflect", 0.4),
        thought("reflect", 0.5),
        "Consider whether they want a funny or serious name.",
        thought("respond", 0.9),
    ])
    loop = ReasoningLoop(complete, ReasoningSettings(max_iterations=4, token_limit=300))

    trace = await loop.run(_request())

    assert trace.observations == ["Reflection: Consider whether they want a funny or serious name."]
    assert complete.max_tokens == [300, 300, 150, 300]


@pytest.mark.asyncio
async def test_clarify_sets_topic() -> None:
    complete = ScriptedCompletion([thought("clarify", 0.5, target="which puppy"), thought("respond", 0.8)])
    loop = ReasoningLoop(complete)

    trace = await loop.run(_request())

    assert trace.clarification_topic == "which puppy"
    assert "which puppy" in trace.to_context_block()


@pytest.mark.asyncio
async def test_web_search_results_and_failures_become_observations() -> None:
    search = FakeWebSearch(WebSearchResult(
        query="puppy names",
        items=[WebSearchResultItem(title="Top names", snippet="Max, Luna", url="https://example.org")]
    ))
    complete = ScriptedCompletion([thought("web_search", 0.5, target="puppy names"), thought("respond", 0.9)])
    trace = await ReasoningLoop(complete, web_search=search, web_search_max_results=3).run(_request())

    assert search.queries == [("puppy names", 3)]
    assert "Top names: Max, Luna" in trace.observations[0]

    broken = FakeWebSearch(error=ConnectionError("offline"))
    complete = ScriptedCompletion([thought("web_search", 0.5, target="puppy names"), thought("respond", 0.9)])
    trace = await ReasoningLoop(complete, web_search=broken).run(_request())

    assert trace.observations == ["Web search for 'puppy names' failed."]


@pytest.mark.asyncio
async def test_analyze_context_describes_conversation() -> None:
    complete = ScriptedCompletion([thought("analyze_context", 0.5), thought("respond", 0.9)])

    trace = await ReasoningLoop(complete).run(_request())

    assert trace.observations[0].startswith("The conversation has just started")


def test_short_or_disabled_messages_skip_reasoning() -> None:
    loop = ReasoningLoop(ScriptedCompletion(["x"]), ReasoningSettings(min_message_length=15))

    assert not loop.should_reason("hi there")
    assert loop.should_reason("what is a good name for a dog?")
    assert not ReasoningLoop(ScriptedCompletion(["x"]), ReasoningSettings(enabled=False)).should_reason(
        "what is a good name for a dog?"
    )
