from typing import TypedDict, List, Optional
from pydantic import BaseModel, Field
from langgraph.graph import StateGraph, END
import structlog

from companion.domain.context.memory.classification import classify_memory_type
from companion.domain.context.memory.scoped_memory_store import ScopedMemoryStore
from companion.domain.errors import CompanionError
from companion.domain.models.conversation import ConversationMessage
from companion.domain.models.memory import MemoryScope
from companion.domain.models.reasoning import ReasoningAction, ReasoningTrace, Thought
from companion.domain.ports import SideCompletion, WebSearchProvider
from companion.domain.reasoning import heuristics
from companion.domain.reasoning.thought_parser import parse_thought, FALLBACK_CONFIDENCE
from companion.infrastructure.config.settings import ReasoningSettings
from companion.infrastructure.observability.logging import conversation_logger, metrics

logger = structlog.get_logger(__name__)

ACTION_NAMES = ", ".join(a.value for a in ReasoningAction)

THOUGHT_PROMPT = """You are the private reasoning step of a chat companion. Decide what to do before the reply is written.

User message:
{message}

Recent conversation:
{recent}

Known memories:
{memories}

Reasoning so far:
{trace}

Available actions: {actions}.
- respond: you have enough to answer well
- recall_memory: search long-term memory (action_target is the search query)
- store_memory: remember something the user said (action_target is the text to keep)
- analyze_context: look at the shape of the conversation
- consider_tone: pick a tone for the reply
- reflect: critique the reasoning so far
- clarify: the request is ambiguous (action_target is what is unclear)
- web_search: look up current information (action_target is the query)

Reply with one JSON object and nothing else:
{{"analysis": "...", "action": "...", "action_target": "...", "confidence": 0.0}}"""

REFLECTION_PROMPT = """Critique the following reasoning about how to answer a user in two or three sentences. Point out gaps, wrong assumptions, or anything the reply should be careful about.

User message:
{message}

Reasoning:
{trace}"""


class ReasoningRequest(BaseModel):
    message: str
    session_id: str
    user_id: Optional[str] = None
    server_id: Optional[str] = None
    history: List[ConversationMessage] = Field(default_factory=list)


class ReasoningState(TypedDict):
    request: ReasoningRequest
    trace: ReasoningTrace
    memory_context: Optional[str]
    last_thought: Optional[Thought]
    aborted: bool


class ReasoningLoop:
    """Bounded think -> act cycle run before the final generation"""

    def __init__(
        self,
        complete: SideCompletion,
        settings: Optional[ReasoningSettings] = None,
        memory: Optional[ScopedMemoryStore] = None,
        web_search: Optional[WebSearchProvider] = None,
        explicit_importance: float = 0.9,
        web_search_max_results: int = 5
    ):
        self.complete = complete
        self.settings = settings or ReasoningSettings()
        self.memory = memory
        self.web_search = web_search
        self.explicit_importance = explicit_importance
        self.web_search_max_results = web_search_max_results
        self.graph = self._create_graph()

    def _create_graph(self):
        graph = StateGraph(ReasoningState)

        graph.add_node("think", self.think_node)
        graph.add_node("act", self.act_node)
        graph.add_node("finalize", self.finalize_node)

        graph.set_entry_point("think")

        graph.add_conditional_edges(
            "think",
            self.route_after_think,
            {
                "think": "think",
                "act": "act",
                "finalize": "finalize"
            }
        )
        graph.add_conditional_edges(
            "act",
            self.route_after_act,
            {
                "think": "think",
                "finalize": "finalize"
            }
        )
        graph.add_edge("finalize", END)

        return graph.compile()

    def should_reason(self, message: str) -> bool:
        return (
            self.settings.enabled
            and self.settings.max_iterations > 0
            and len(message.strip()) >= self.settings.min_message_length
        )

    async def run(
        self,
        request: ReasoningRequest,
        memory_context: Optional[str] = None
    ) -> ReasoningTrace:
        """Run the loop and return the finished trace. Never raises for reasoning failures."""

        trace = ReasoningTrace()
        if self.settings.max_iterations <= 0:
            trace.final_action = ReasoningAction.RESPOND
            trace.final_confidence = FALLBACK_CONFIDENCE
            return trace

        state: ReasoningState = {
            "request": request,
            "trace": trace,
            "memory_context": memory_context if self.settings.use_memories else None,
            "last_thought": None,
            "aborted": False,
        }
        final_state = await self.graph.ainvoke(
            state,
            config={"recursion_limit": 2 * self.settings.max_iterations + 5}
        )

        trace = final_state["trace"]
        metrics.increment_counter("reasoning.iterations", trace.iterations)
        if self.settings.log_trace:
            logger.info(
                "Reasoning trace",
                session_id=request.session_id,
                iterations=trace.iterations,
                final_confidence=trace.final_confidence,
                trace=trace.render()
            )
        return trace

    def _recent_turns(self, history: List[ConversationMessage]) -> str:
        window = [m for m in history if m.include_in_context][-self.settings.recent_turns:]
        if not window:
            return "(none)"
        return "\n".join(f"{m.role.value}: {m.content}" for m in window)

    def _thought_prompt(self, state: ReasoningState) -> str:
        request = state["request"]
        return THOUGHT_PROMPT.format(
            message=request.message,
            recent=self._recent_turns(request.history),
            memories=state.get("memory_context") or "(none)",
            trace=state["trace"].render() or "(none)",
            actions=ACTION_NAMES
        )

    async def think_node(self, state: ReasoningState):
        trace = state["trace"]
        try:
            raw = await self.complete(self._thought_prompt(state), self.settings.token_limit)
        except Exception as e:
            logger.warning("Reasoning call failed, finalizing", error=str(e), iteration=trace.iterations + 1)
            return {"aborted": True}

        result = parse_thought(raw)
        trace.thoughts.append(result.thought)
        trace.iterations += 1
        conversation_logger.log_reasoning_step(
            trace.iterations,
            result.thought.action.value,
            result.thought.confidence,
            target=result.thought.action_target,
            parsed=result.parsed
        )
        return {"trace": trace, "last_thought": result.thought}

    def _has_iterations_left(self, state: ReasoningState) -> bool:
        return state["trace"].iterations < self.settings.max_iterations

    def route_after_think(self, state: ReasoningState) -> str:
        if state.get("aborted"):
            return "finalize"

        thought = state["last_thought"]
        if thought.action == ReasoningAction.RESPOND:
            if thought.confidence >= self.settings.confidence_threshold:
                return "finalize"
            return "think" if self._has_iterations_left(state) else "finalize"
        return "act"

    def route_after_act(self, state: ReasoningState) -> str:
        return "think" if self._has_iterations_left(state) else "finalize"

    async def act_node(self, state: ReasoningState):
        trace = state["trace"]
        request = state["request"]
        thought = state["last_thought"]
        target = (thought.action_target or "").strip()

        handlers = {
            ReasoningAction.RECALL_MEMORY: self._recall_memory,
            ReasoningAction.STORE_MEMORY: self._store_memory,
            ReasoningAction.ANALYZE_CONTEXT: self._analyze_context,
            ReasoningAction.CONSIDER_TONE: self._consider_tone,
            ReasoningAction.REFLECT: self._reflect,
            ReasoningAction.CLARIFY: self._clarify,
            ReasoningAction.WEB_SEARCH: self._web_search,
        }
        await handlers[thought.action](request, trace, target)
        return {"trace": trace}

    async def _recall_memory(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        query = target or request.message
        if self.memory is None:
            trace.observations.append("Memory recall is unavailable.")
            return
        found = await self.memory.query_combined(request.session_id, request.user_id, request.server_id, query)
        if found:
            trace.observations.append(f"Recalled memories for '{query}':\n{found}")
        else:
            trace.observations.append(f"No memories found for '{query}'.")

    async def _store_memory(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        content = target or request.message
        if self.memory is None:
            trace.observations.append("Memory storage is unavailable.")
            return
        memory_type = classify_memory_type(content)
        scope = MemoryScope.USER if request.user_id else MemoryScope.SESSION
        try:
            await self.memory.create(
                session_id=request.session_id,
                content=content,
                memory_type=memory_type,
                user_id=request.user_id,
                server_id=request.server_id,
                scope=scope,
                importance=self.explicit_importance
            )
        except CompanionError as e:
            logger.info("Explicit memory not stored", session_id=request.session_id, reason=str(e))
            trace.observations.append(f"Could not store memory: {e}")
            return
        trace.observations.append(f"Stored {memory_type.value} memory: {content}")

    async def _analyze_context(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        trace.observations.append(heuristics.analyze_context(request.history, request.message))

    async def _consider_tone(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        trace.suggested_tone = heuristics.infer_tone(request.message)

    async def _reflect(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        if not self.settings.enable_self_reflection or len(trace.thoughts) < 2:
            logger.debug("Reflection skipped", thoughts=len(trace.thoughts))
            return
        prompt = REFLECTION_PROMPT.format(message=request.message, trace=trace.render())
        try:
            critique = await self.complete(prompt, max(1, self.settings.token_limit // 2))
        except Exception as e:
            logger.warning("Reflection call failed", error=str(e))
            return
        if critique and critique.strip():
            trace.observations.append(f"Reflection: {critique.strip()}")

    async def _clarify(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        trace.clarification_topic = target or "what the user is asking for"

    async def _web_search(self, request: ReasoningRequest, trace: ReasoningTrace, target: str):
        query = target or request.message
        if self.web_search is None:
            trace.observations.append(f"Web search for '{query}' is unavailable.")
            return
        try:
            result = await self.web_search.search(query, self.web_search_max_results)
        except Exception as e:
            logger.warning("Web search failed", query=query, error=str(e))
            trace.observations.append(f"Web search for '{query}' failed.")
            return
        if not result.success or not result.items:
            trace.observations.append(f"Web search for '{query}' returned no results.")
            return
        lines = [f"- {item.title}: {item.snippet} ({item.url})" for item in result.items]
        trace.observations.append(f"Web results for '{query}':\n" + "\n".join(lines))

    async def finalize_node(self, state: ReasoningState):
        trace = state["trace"]
        last = state.get("last_thought")
        trace.final_action = ReasoningAction.RESPOND
        trace.final_confidence = last.confidence if last is not None else FALLBACK_CONFIDENCE
        return {"trace": trace}
