"""Tests for the streaming turn orchestrator.

Generation and tool analysis are replaced with small fakes; the stores,
retrieval, cache, value analyzer and tools are the real implementations on
temporary SQLite files.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import DA_ANSWER, NO_TOOL, DegradedEmbedder, FakeDecider, FakeGenerator

from marketplace_assistant.application.background import BackgroundTasks
from marketplace_assistant.application.exceptions import (
    CacheUnavailableError,
    EmptyQueryError,
    KnowledgeStoreUnavailableError,
    MissingUserError,
    ToolExecutionError,
)
from marketplace_assistant.application.orchestrator import (
    COULD_NOT_DETERMINE_PARAMETERS,
    StreamOrchestrator,
)
from marketplace_assistant.application.retrieval import RetrievalEngine
from marketplace_assistant.application.value_analyzer import ValueAnalyzer
from marketplace_assistant.domain.models import (
    ChatTurn,
    ContentEvent,
    ContentType,
    DoneEvent,
    KnowledgeItem,
    ToolEvent,
    TurnRequest,
    TurnState,
)
from marketplace_assistant.infrastructure.embedding_provider import HashingEmbeddingProvider
from marketplace_assistant.infrastructure.tools import ToolRegistry


@pytest.fixture()
def background():
    return BackgroundTasks()


@pytest.fixture()
def build(knowledge_store, response_cache, embedder, clock, background):
    """Factory for an orchestrator with the given fakes."""

    def _build(generator=None, decider=None, **overrides):
        kwargs = dict(
            retrieval=RetrievalEngine(knowledge_store, embedder, background=background, clock=clock),
            cache=response_cache,
            value_analyzer=ValueAnalyzer(knowledge_store, background=background),
            generator=generator or FakeGenerator(),
            tool_decider=decider or FakeDecider(),
            tools=ToolRegistry(),
            embedder=embedder,
        )
        kwargs.update(overrides)
        return StreamOrchestrator(**kwargs)

    return _build


async def collect(orchestrator, request, turn=None):
    return [event async for event in orchestrator.stream(request, turn)]


def _request(message, user_id="u1", **kw):
    return TurnRequest(user_id=user_id, message=message, **kw)


def _text(events):
    return "".join(e.text for e in events if isinstance(e, ContentEvent))


def _tool_events(events):
    return [e for e in events if isinstance(e, ToolEvent)]


class CountingDegradedEmbedder(DegradedEmbedder):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        return await super().embed(text)


class CountingEmbedder(HashingEmbeddingProvider):
    def __init__(self):
        super().__init__()
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        return await super().embed(text)


class TestValidation:
    async def test_empty_message(self, build):
        with pytest.raises(EmptyQueryError):
            await collect(build(), _request("   "))

    async def test_missing_user(self, build):
        with pytest.raises(MissingUserError):
            await collect(build(), _request("hello there", user_id=""))


class TestInformationalTurns:
    async def test_streams_prose_then_done(self, build, background):
        turn = ChatTurn(user_id="u1", user_message="what is domain authority?")
        events = await collect(build(), _request("what is domain authority?"), turn)

        assert [type(e) for e in events] == [ContentEvent, ContentEvent, ContentEvent, DoneEvent]
        assert _text(events) == "".join(DA_ANSWER)
        assert events[-1].cached is False
        assert events[-1].tool is None
        assert turn.states == [
            TurnState.CONTEXT_GATHERING,
            TurnState.STREAMING,
            TurnState.TOOL_DECISION,
            TurnState.FINALIZING,
            TurnState.DONE,
        ]
        await background.drain()

    async def test_second_identical_query_is_served_from_cache(self, build, response_cache, background):
        generator = FakeGenerator()
        orchestrator = build(generator=generator)

        await collect(orchestrator, _request("What is domain authority?"))
        events = await collect(orchestrator, _request("what is domain authority?"))

        assert len(generator.calls) == 1
        assert [type(e) for e in events] == [ContentEvent, DoneEvent]
        assert events[0].text == "".join(DA_ANSWER)
        assert events[1].cached is True
        assert (await response_cache.stats("u1")).total_hits == 1
        await background.drain()

    async def test_cache_is_per_user(self, build, background):
        generator = FakeGenerator()
        orchestrator = build(generator=generator)

        await collect(orchestrator, _request("what is domain authority?", user_id="alice"))
        events = await collect(orchestrator, _request("what is domain authority?", user_id="bob"))

        assert len(generator.calls) == 2
        assert events[-1].cached is False
        await background.drain()

    async def test_user_knowledge_reaches_the_prompt(self, build, knowledge_store, background):
        item_id = await knowledge_store.write(
            KnowledgeItem(user_id="u1", content="My name is Ava", content_type=ContentType.PREFERENCE)
        )
        generator = FakeGenerator(chunks=["Your name is Ava."])

        events = await collect(build(generator=generator), _request("What is my name?"))

        assert "My name is Ava" in generator.calls[0]["context"]
        assert events[-1].context_ids == [item_id]
        await background.drain()

    async def test_store_outage_continues_without_context(self, build, background):
        retrieval = MagicMock()
        retrieval.retrieve = AsyncMock(side_effect=KnowledgeStoreUnavailableError("locked"))
        generator = FakeGenerator()

        events = await collect(build(generator=generator, retrieval=retrieval), _request("what is domain authority?"))

        assert generator.calls[0]["context"] == ""
        assert isinstance(events[-1], DoneEvent)
        await background.drain()

    async def test_cache_outage_is_a_miss(self, build, background):
        cache = MagicMock()
        cache.lookup = AsyncMock(side_effect=CacheUnavailableError("locked"))
        cache.store = AsyncMock(side_effect=CacheUnavailableError("locked"))

        events = await collect(build(cache=cache), _request("what is domain authority?"))

        assert _text(events) == "".join(DA_ANSWER)
        assert events[-1].cached is False
        await background.drain()

    async def test_valuable_turn_is_remembered(self, build, knowledge_store, background):
        await collect(build(generator=FakeGenerator(["Nice to meet you, Ava!"])), _request("My name is Ava"))
        await background.drain()

        items = await knowledge_store.query("u1")
        assert [i.content for i in items] == ["My name is Ava"]


class TestToolTurns:
    async def test_model_decision_runs_tool(self, build, background):
        decider = FakeDecider(
            '{"shouldExecuteTool": true, "toolName": "apply_filters", '
            '"parameters": {"priceMax": 500}, "confidence": 0.95, "reasoning": "price"}'
        )
        turn = ChatTurn(user_id="u1", user_message="show me sites under $500")

        events = await collect(
            build(generator=FakeGenerator(["Here are sites under $500."]), decider=decider),
            _request("show me sites under $500"),
            turn,
        )

        [tool] = _tool_events(events)
        assert tool.name == "apply_filters"
        assert tool.result.action == "filter_applied"
        assert tool.result.data["url"] == "/publishers?priceMax=500"
        assert events[-1].tool == "apply_filters"
        assert TurnState.TOOL_EXECUTING in turn.states
        await background.drain()

    async def test_action_turns_are_never_cached(self, build, response_cache, background):
        generator = FakeGenerator(["Here you go."])
        orchestrator = build(generator=generator, decider=FakeDecider("garbage"))

        await collect(orchestrator, _request("show me sites under $500"))
        await collect(orchestrator, _request("show me sites under $500"))

        assert len(generator.calls) == 2
        assert (await response_cache.stats("u1")).entries == 0
        await background.drain()

    async def test_malformed_decision_falls_back_to_heuristics(self, build, background):
        decider = FakeDecider("I think you want filters but I forgot the JSON")

        events = await collect(build(decider=decider), _request("show me sites under $500"))

        [tool] = _tool_events(events)
        assert tool.parameters == {"priceMax": 500}
        assert tool.result.success is True
        await background.drain()

    async def test_invalid_model_parameters_fall_back_to_heuristics(self, build, background):
        decider = FakeDecider('{"shouldExecuteTool": true, "toolName": "applyFilters", "parameters": {"daMin": 500}}')

        events = await collect(build(decider=decider), _request("show me sites under $500"))

        [tool] = _tool_events(events)
        assert tool.name == "apply_filters"
        assert tool.parameters == {"priceMax": 500}
        await background.drain()

    async def test_fallback_merges_with_current_filters(self, build, background):
        events = await collect(
            build(decider=FakeDecider(error=RuntimeError("tool model down"))),
            _request("also only US sites", current_filters={"niche": "tech"}),
        )

        [tool] = _tool_events(events)
        assert tool.parameters == {"niche": "tech", "country": "us"}
        await background.drain()

    async def test_unrecoverable_parameters_are_reported(self, build, background):
        events = await collect(build(decider=FakeDecider("nope")), _request("add this to my cart"))

        [tool] = _tool_events(events)
        assert tool.name == "add_to_cart"
        assert tool.error == COULD_NOT_DETERMINE_PARAMETERS
        assert tool.result is None
        assert _text(events) == "".join(DA_ANSWER)
        await background.drain()

    async def test_model_can_decline_a_tool(self, build, background):
        events = await collect(build(decider=FakeDecider(NO_TOOL)), _request("show me sites under $500"))
        assert _tool_events(events) == []
        assert events[-1].tool is None
        await background.drain()

    async def test_tool_failure_is_reported_inline(self, build, background):
        tools = MagicMock()
        tools.names = ["navigate"]
        tools.validate = MagicMock(return_value={"route": "/orders"})
        tools.execute = AsyncMock(side_effect=ToolExecutionError("navigate", "router offline"))

        events = await collect(
            build(tools=tools, decider=FakeDecider("x")),
            _request("take me to my orders"),
        )

        [tool] = _tool_events(events)
        assert tool.error == "tool_failed: router offline"
        assert _text(events) == "".join(DA_ANSWER)
        assert isinstance(events[-1], DoneEvent)
        await background.drain()

    async def test_tool_turn_confirmation_is_not_remembered(self, build, knowledge_store, background):
        await collect(
            build(generator=FakeGenerator(["Filter applied."]), decider=FakeDecider("x")),
            _request("show me sites under $500"),
        )
        await background.drain()
        assert await knowledge_store.count("u1") == 0


class TestFailures:
    async def test_generation_failure_propagates_after_partial_prose(self, build, background):
        generator = FakeGenerator(["Partial "], error=RuntimeError("upstream 500"))
        decider = FakeDecider(delay=5)
        events = []

        with pytest.raises(RuntimeError, match="upstream 500"):
            async for event in build(generator=generator, decider=decider).stream(
                _request("what is domain authority?")
            ):
                events.append(event)

        assert [e.text for e in events] == ["Partial "]
        await asyncio.sleep(0.01)
        assert decider.cancelled is True
        await background.drain()

    async def test_client_disconnect_closes_generation_and_cancels_decision(self, build, background):
        class EndlessGenerator:
            closed = False

            async def stream(self, user_message, context, history, current_filters=None):
                try:
                    while True:
                        yield "more "
                        await asyncio.sleep(0)
                finally:
                    EndlessGenerator.closed = True

        decider = FakeDecider(delay=1.0)
        stream = build(generator=EndlessGenerator(), decider=decider).stream(_request("what is domain authority?"))

        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        await asyncio.sleep(0)

        assert [first.text, second.text] == ["more ", "more "]
        assert EndlessGenerator.closed is True
        assert decider.cancelled is True
        await background.drain()


class TestQueryEmbedding:
    async def test_query_is_embedded_once_during_an_outage(self, build, knowledge_store, clock, background):
        embedder = CountingDegradedEmbedder()
        retrieval = RetrievalEngine(knowledge_store, embedder, background=background, clock=clock)

        events = await collect(build(retrieval=retrieval, embedder=embedder), _request("what is domain authority?"))

        assert isinstance(events[-1], DoneEvent)
        assert embedder.calls == 1
        await background.drain()

    async def test_query_is_embedded_once_when_healthy(self, build, knowledge_store, clock, background):
        embedder = CountingEmbedder()
        retrieval = RetrievalEngine(knowledge_store, embedder, background=background, clock=clock)

        await collect(build(retrieval=retrieval, embedder=embedder), _request("what is domain authority?"))

        assert embedder.calls == ["what is domain authority?"]
        await background.drain()
