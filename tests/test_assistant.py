from unittest.mock import AsyncMock, MagicMock

import pytest

from livedesk import catalog
from livedesk.assistant import (
    ResponseEngine,
    expand_query,
    is_greeting,
    is_question,
    relevance_floor,
)
from livedesk.models import IntentClassification, KnowledgePassage, ReplyKind
from livedesk.storage import InMemoryChatStore


def passage(content="Employees get 20 days of annual leave.", similarity=0.6):
    return KnowledgePassage(content=content, similarity=similarity, metadata={"source": "handbook.pdf"})


@pytest.fixture
def language_model():
    model = MagicMock()
    model.classify_intent = AsyncMock(return_value=IntentClassification())
    model.generate = AsyncMock(return_value="You get 20 days of annual leave.")
    return model


@pytest.fixture
def knowledge():
    search = MagicMock()
    search.search = AsyncMock(return_value=[passage()])
    return search


@pytest.fixture
def store():
    return InMemoryChatStore()


@pytest.fixture
def engine(language_model, knowledge, store):
    return ResponseEngine(language_model, knowledge, store)


def test_greeting_detection():
    assert is_greeting("hello")
    assert is_greeting("Hi there")
    assert not is_greeting("hi, could you explain the annual leave policy?")
    assert not is_greeting("this is odd")


def test_question_detection():
    assert is_question("leave policy?")
    assert is_question("How many days off do I get")
    assert not is_question("I need some help")


def test_expand_query_adds_intent_synonyms_and_phrases():
    classification = IntentClassification(intent="pricing_inquiry")
    expanded = expand_query("types of plans", classification)
    assert expanded.startswith("types of plans")
    assert "pricing" in expanded
    assert catalog.PHRASE_EXPANSIONS["types of"] in expanded


def test_relevance_floor():
    assert relevance_floor(IntentClassification(intent="hr_policy", confidence=0.9)) == 0.2
    assert relevance_floor(IntentClassification(confidence=0.9)) == 0.25
    assert relevance_floor(IntentClassification(confidence=0.5)) == 0.3


@pytest.mark.asyncio
async def test_greeting_skips_search_and_intent_log(engine, knowledge, store):
    reply = await engine.respond("s1", "hello")

    assert reply.kind == ReplyKind.GREETING
    assert reply.message == catalog.GREETING_REPLY
    knowledge.search.assert_not_awaited()
    assert store.intents == []


@pytest.mark.asyncio
async def test_capability_question(engine, knowledge):
    reply = await engine.respond("s1", "What can you help me with?")
    assert reply.kind == ReplyKind.CAPABILITIES
    knowledge.search.assert_not_awaited()


@pytest.mark.asyncio
async def test_confident_human_request_suggests_handoff(engine, language_model, store):
    language_model.classify_intent.return_value = IntentClassification(
        intent="human_request", category="support", confidence=0.95
    )

    reply = await engine.respond("s1", "Let me talk to a real person please")

    assert reply.kind == ReplyKind.HANDOFF
    assert reply.message == catalog.HUMAN_REQUEST_REPLY
    assert store.intents[0].response_type == "handoff_suggestion"
    assert store.intents[0].intent == "human_request"


@pytest.mark.asyncio
async def test_statement_prompts_for_a_question(engine, knowledge):
    reply = await engine.respond("s1", "I have a leave request")
    assert reply.kind == ReplyKind.PROMPT_FOR_QUESTION
    knowledge.search.assert_not_awaited()


@pytest.mark.asyncio
async def test_grounded_answer(engine, knowledge, store):
    reply = await engine.respond("s1", "How much annual leave do I get?")

    assert reply.kind == ReplyKind.ANSWER
    assert reply.message == "You get 20 days of annual leave."
    assert reply.confidence == pytest.approx(0.5 + 0.6 * 0.3)
    assert reply.sources[0]["content"] == "Employees get 20 days of annual leave."[:100] + "..."
    assert reply.sources[0]["metadata"] == {"source": "handbook.pdf"}
    knowledge.search.assert_awaited_once()
    assert store.intents[0].response_type == "ai_response"


@pytest.mark.asyncio
async def test_confident_classification_lowers_threshold(engine, language_model, knowledge):
    language_model.classify_intent.return_value = IntentClassification(intent="hr_policy", confidence=0.9)

    await engine.respond("s1", "How much annual leave do I get?")

    query, threshold, limit = knowledge.search.await_args_list[0].args
    assert "vacation" in query
    assert threshold == pytest.approx(0.3)
    assert limit == 5


@pytest.mark.asyncio
async def test_no_knowledge_retries_then_falls_back(engine, knowledge, language_model):
    knowledge.search.return_value = []

    reply = await engine.respond("s1", "Where is the office parking?")

    assert reply.kind == ReplyKind.HANDOFF
    assert reply.reason == "No relevant knowledge found"
    thresholds = [call.args[1] for call in knowledge.search.await_args_list]
    assert thresholds == [pytest.approx(0.4), pytest.approx(0.25), pytest.approx(0.2)]
    assert knowledge.search.await_args_list[2].args == ("Where is the office parking?", 0.2, 3)
    language_model.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_weak_hits_are_filtered(engine, knowledge):
    knowledge.search.return_value = [passage(similarity=0.28)]

    reply = await engine.respond("s1", "Where is the office parking?")

    # Below the 0.3 floor, so only the lenient raw-message search keeps it
    assert reply.kind == ReplyKind.ANSWER
    assert len(knowledge.search.await_args_list) == 2


@pytest.mark.asyncio
async def test_search_failure_suggests_handoff(engine, knowledge, store):
    knowledge.search.side_effect = ConnectionError("vector store down")

    reply = await engine.respond("s1", "Where is the office parking?")

    assert reply.kind == ReplyKind.HANDOFF
    assert reply.reason == "Knowledge search unavailable"
    assert store.intents[0].response_type == "handoff_suggestion"


@pytest.mark.asyncio
async def test_classification_failure_uses_default(engine, language_model):
    language_model.classify_intent.side_effect = TimeoutError("model timeout")

    reply = await engine.respond("s1", "How much annual leave do I get?")

    assert reply.kind == ReplyKind.ANSWER
    assert reply.intent == "general_inquiry"


@pytest.mark.asyncio
async def test_generation_failure_suggests_handoff(engine, language_model):
    language_model.generate.side_effect = RuntimeError("rate limited")

    reply = await engine.respond("s1", "How much annual leave do I get?")

    assert reply.kind == ReplyKind.HANDOFF
    assert reply.message == catalog.ERROR_REPLY


@pytest.mark.asyncio
async def test_non_answer_becomes_handoff(engine, language_model):
    language_model.generate.return_value = "I'm sorry, the context does not contain that."

    reply = await engine.respond("s1", "How much annual leave do I get?")

    assert reply.kind == ReplyKind.HANDOFF
    assert reply.reason == "Model could not answer from context"


@pytest.mark.asyncio
async def test_intent_log_failure_is_swallowed(engine, store):
    store.log_intent = AsyncMock(side_effect=RuntimeError("db down"))

    reply = await engine.respond("s1", "How much annual leave do I get?")

    assert reply.kind == ReplyKind.ANSWER
