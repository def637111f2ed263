"""Two-stage streaming chat orchestrator.

One turn moves through ``IDLE → CONTEXT_GATHERING → STREAMING → TOOL_DECISION
→ TOOL_EXECUTING (optional) → FINALIZING → DONE``:

1. Cache-eligible turns (no action intent in the user text) are answered from
   the response cache when possible, skipping retrieval entirely.
2. Otherwise the user's knowledge is retrieved and folded into the prompt, and
   prose deltas are streamed as they arrive.
3. While the prose streams, the tool-analysis model decides whether the turn
   needs a tool. Malformed or invalid decisions fall back to parameters read
   straight from the user text. At most one tool runs.
4. The finished turn goes to the value analyzer in the background, and the
   answer is cached only when no tool was involved.

Nothing here depends on FastAPI; the route just serialises the events.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing

from loguru import logger

from marketplace_assistant.application.exceptions import (
    CacheUnavailableError,
    EmptyQueryError,
    KnowledgeStoreUnavailableError,
    MissingUserError,
    ToolExecutionError,
    ToolParameterError,
)
from marketplace_assistant.application.intent import (
    ToolDecision,
    derive_parameters,
    detect_intent,
    parse_tool_decision,
)
from marketplace_assistant.application.retrieval import RetrievalEngine, format_context
from marketplace_assistant.application.value_analyzer import ValueAnalyzer
from marketplace_assistant.domain.models import (
    CachedResponse,
    ChatTurn,
    ContentEvent,
    DoneEvent,
    EmbeddingResult,
    RetrievalResult,
    StreamEvent,
    ToolEvent,
    ToolInvocation,
    TurnRequest,
    TurnState,
)
from marketplace_assistant.domain.protocols import (
    IEmbeddingProvider,
    IResponseCache,
    ITextGenerator,
    IToolDecider,
    IToolRegistry,
)
from marketplace_assistant.infrastructure.tools import canonical_tool_name

COULD_NOT_DETERMINE_PARAMETERS = "could_not_determine_parameters"
TOOL_FAILED = "tool_failed"


class StreamOrchestrator:
    """Runs one chat turn end to end and yields client events.

    Parameters
    ----------
    retrieval:
        Hybrid retrieval engine over the user's knowledge base.
    cache:
        Per-user response cache.
    value_analyzer:
        Decides (in the background) whether the turn is stored as knowledge.
    generator:
        Streams prose deltas.
    tool_decider:
        Returns the raw JSON tool decision.
    tools:
        Registry that validates and runs tools.
    embedder:
        Optional; when given, the query is embedded once per turn and the
        result is shared by the cache lookup (semantic matching) and retrieval.
    """

    def __init__(
        self,
        *,
        retrieval: RetrievalEngine,
        cache: IResponseCache,
        value_analyzer: ValueAnalyzer,
        generator: ITextGenerator,
        tool_decider: IToolDecider,
        tools: IToolRegistry,
        embedder: IEmbeddingProvider | None = None,
        retrieval_limit: int | None = None,
    ) -> None:
        self.retrieval = retrieval
        self.cache = cache
        self.value_analyzer = value_analyzer
        self.generator = generator
        self.tool_decider = tool_decider
        self.tools = tools
        self.embedder = embedder
        self.retrieval_limit = retrieval_limit

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream(self, request: TurnRequest, turn: ChatTurn | None = None) -> AsyncIterator[StreamEvent]:
        """Run a turn, yielding ``ContentEvent``/``ToolEvent`` items and a final ``DoneEvent``.

        Raises:
            MissingUserError: If the request has no user id.
            EmptyQueryError: If the message is empty.
            Exception: Whatever the generator raises; only a failed generation
                aborts the turn.
        """
        if not request.user_id:
            raise MissingUserError("user_id is required")
        if not request.message or not request.message.strip():
            raise EmptyQueryError("message must not be empty")

        turn = turn or ChatTurn(user_id=request.user_id, user_message=request.message)
        self._enter(turn, TurnState.CONTEXT_GATHERING)

        intent = detect_intent(request.message)
        turn.cache_eligible = intent is None
        query_embedding = await self._embed(request.message)

        if turn.cache_eligible:
            cached = await self._cached_answer(turn, request, query_embedding)
            if cached is not None:
                yield ContentEvent(cached)
                self._enter(turn, TurnState.DONE)
                yield DoneEvent(cached=True, context_ids=turn.used_context_ids)
                return

        context_result = await self._gather_context(request, query_embedding)
        context = format_context(context_result)
        turn.used_context_ids = context_result.ids

        self._enter(turn, TurnState.STREAMING)
        decision_task = asyncio.create_task(
            self._decide(request, context, intent), name="tool-decision"
        )
        try:
            async with aclosing(
                self.generator.stream(
                    request.message, context, request.history, request.current_filters
                )
            ) as chunks:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    turn.assistant_text += chunk
                    yield ContentEvent(chunk)

            self._enter(turn, TurnState.TOOL_DECISION)
            invocation = await decision_task
            if invocation is not None:
                self._enter(turn, TurnState.TOOL_EXECUTING)
                turn.tool_invocation = await self._execute(invocation)
                yield ToolEvent(
                    name=invocation.name,
                    result=invocation.result,
                    error=invocation.error,
                    parameters=invocation.parameters,
                )

            self._enter(turn, TurnState.FINALIZING)
            await self._finalize(turn, request, query_embedding)
            self._enter(turn, TurnState.DONE)
            yield DoneEvent(
                cached=False,
                context_ids=turn.used_context_ids,
                tool=invocation.name if invocation else None,
            )
        finally:
            if not decision_task.done():
                decision_task.cancel()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @staticmethod
    def _enter(turn: ChatTurn, state: TurnState) -> None:
        logger.debug("Turn state | user={} {} -> {}", turn.user_id, turn.state.value, state.value)
        turn.states.append(state)

    async def _embed(self, text: str) -> EmbeddingResult | None:
        if self.embedder is None:
            return None
        return await self.embedder.embed(text)

    async def _cached_answer(
        self, turn: ChatTurn, request: TurnRequest, query_embedding: EmbeddingResult | None
    ) -> str | None:
        try:
            entry = await self.cache.lookup(request.user_id, request.message, query_embedding)
            if entry is None:
                return None
            await self.cache.record_hit(entry)
        except CacheUnavailableError as exc:
            logger.warning("Cache lookup failed, treating as miss | error={}", exc)
            return None

        turn.cache_hit = True
        turn.assistant_text = entry.response.text
        turn.used_context_ids = list(entry.response.source_ids)
        logger.info("Cache hit | user={} hits={}", request.user_id, entry.hit_count)
        return entry.response.text

    async def _gather_context(
        self, request: TurnRequest, query_embedding: EmbeddingResult | None
    ) -> RetrievalResult:
        try:
            return await self.retrieval.retrieve(
                request.user_id,
                request.message,
                self.retrieval_limit,
                query_embedding=query_embedding,
            )
        except KnowledgeStoreUnavailableError as exc:
            logger.warning("Knowledge store unavailable, continuing without context | error={}", exc)
            return RetrievalResult()

    async def _decide(self, request: TurnRequest, context: str, intent: str | None) -> ToolInvocation | None:
        """Pick at most one tool for the turn, falling back to text heuristics."""
        decision: ToolDecision | None = None
        try:
            raw = await self.tool_decider.decide(
                request.message, "", context, request.current_filters
            )
            decision = parse_tool_decision(raw)
        except ToolParameterError as exc:
            logger.warning("Malformed tool decision, using heuristics | error={}", exc)
        except Exception:
            logger.exception("Tool analysis failed, using heuristics")

        name = intent
        if decision is not None:
            if not decision.should_execute_tool:
                return None
            name = canonical_tool_name(decision.tool_name)
            if name in self.tools.names:
                try:
                    params = self.tools.validate(name, decision.parameters)
                    return ToolInvocation(name=name, parameters=params, source="model")
                except ToolParameterError as exc:
                    logger.warning("Invalid tool parameters from model | error={}", exc)
            else:
                name = intent

        if name is None or name not in self.tools.names:
            return None

        derived = derive_parameters(name, request.message, request.current_filters)
        if derived is not None:
            try:
                params = self.tools.validate(name, derived)
                return ToolInvocation(name=name, parameters=params, source="heuristic")
            except ToolParameterError as exc:
                logger.warning("Heuristic tool parameters rejected | error={}", exc)

        return ToolInvocation(name=name, error=COULD_NOT_DETERMINE_PARAMETERS, source="heuristic")

    async def _execute(self, invocation: ToolInvocation) -> ToolInvocation:
        if invocation.error is not None:
            return invocation
        try:
            invocation.result = await self.tools.execute(invocation.name, invocation.parameters)
        except ToolParameterError as exc:
            logger.warning("Tool rejected parameters | error={}", exc)
            invocation.error = COULD_NOT_DETERMINE_PARAMETERS
        except ToolExecutionError as exc:
            logger.warning("Tool failed | error={}", exc)
            invocation.error = f"{TOOL_FAILED}: {exc.detail}"
        return invocation

    async def _finalize(
        self, turn: ChatTurn, request: TurnRequest, query_embedding: EmbeddingResult | None
    ) -> None:
        self.value_analyzer.schedule(turn)

        if not turn.cache_eligible or turn.tool_invocation is not None or not turn.assistant_text:
            return
        try:
            await self.cache.store(
                request.user_id,
                request.message,
                CachedResponse(text=turn.assistant_text),
                used_context_ids=turn.used_context_ids,
                query_embedding=query_embedding,
            )
        except CacheUnavailableError as exc:
            logger.warning("Cache write dropped | user={} error={}", request.user_id, exc)
