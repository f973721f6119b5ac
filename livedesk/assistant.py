"""
AI first-line responder: intent classification, knowledge lookup and handoff decisions.
"""
import time
from typing import List, Optional, Protocol, Sequence

from loguru import logger

from livedesk import catalog, config
from livedesk.models import (
    AssistantReply,
    ChatMessage,
    CustomerInfo,
    IntentClassification,
    IntentLogRecord,
    KnowledgePassage,
    ReplyKind,
)
from livedesk.observability import add_span_attributes, record_ai_reply, trace_operation
from livedesk.storage import ChatStore

HIGH_CONFIDENCE = 0.8
HUMAN_REQUEST_CONFIDENCE = 0.7
CONFIDENT_THRESHOLD_DELTA = 0.1
RETRY_THRESHOLD = 0.25
FALLBACK_THRESHOLD = 0.2
FALLBACK_LIMIT = 3
HR_MIN_SIMILARITY = 0.2
CONFIDENT_MIN_SIMILARITY = 0.25
DEFAULT_MIN_SIMILARITY = 0.3
SIMILARITY_WEIGHT = 0.3


class LanguageModel(Protocol):
    async def classify_intent(self, message: str, history: Sequence[ChatMessage]) -> IntentClassification: ...

    async def generate(self, prompt: str) -> str: ...


class KnowledgeSearch(Protocol):
    async def search(self, query: str, threshold: float, limit: int) -> List[KnowledgePassage]: ...


class KnowledgeSearchError(Exception):
    """Raised when the knowledge base cannot be queried at all."""


def is_greeting(message: str) -> bool:
    text = message.lower().strip()
    if len(message) >= catalog.GREETING_MAX_LENGTH:
        return False
    return any(
        text == word or f"{word} " in text or f" {word}" in text
        for word in catalog.GREETING_WORDS
    )


def is_capability_question(message: str) -> bool:
    text = message.lower()
    return any(phrase in text for phrase in catalog.CAPABILITY_PHRASES)


def is_service_question(message: str) -> bool:
    text = message.lower()
    return any(keyword in text for keyword in catalog.SERVICE_KEYWORDS)


def is_question(message: str) -> bool:
    if "?" in message:
        return True
    text = message.lower().strip()
    return any(text.startswith(word) for word in catalog.QUESTION_WORDS)


def expand_query(query: str, classification: Optional[IntentClassification]) -> str:
    """Append intent synonyms and phrase expansions to a search query."""
    parts = [query]
    if classification is not None and classification.intent in catalog.INTENT_EXPANSIONS:
        parts.extend(catalog.INTENT_EXPANSIONS[classification.intent])
    lowered = query.lower()
    for phrase, expansion in catalog.PHRASE_EXPANSIONS.items():
        if phrase in lowered:
            parts.append(expansion)
    return " ".join(parts)


def relevance_floor(classification: IntentClassification) -> float:
    if classification.intent == "hr_policy" or classification.category == "hr_policy":
        return HR_MIN_SIMILARITY
    if classification.confidence > HIGH_CONFIDENCE:
        return CONFIDENT_MIN_SIMILARITY
    return DEFAULT_MIN_SIMILARITY


def is_non_answer(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in catalog.NO_ANSWER_PHRASES)


def build_answer_prompt(question: str, passages: Sequence[KnowledgePassage]) -> str:
    context = "\n".join(f"- {passage.content}" for passage in passages)
    return f"""You are a helpful company assistant. Answer the customer's question using the information provided below. Be direct and helpful.

Relevant company information:
{context}

Customer question: "{question}"

Instructions:
- Answer only from the company information above
- If the question asks about "types of" something, summarize all the different types mentioned in the information
- If the question uses different words but asks about the same topic, understand the intent and answer appropriately
- Be comprehensive - if multiple related policies are mentioned, include them all
- Provide a clear, helpful answer based on the company information above"""


class ResponseEngine:
    """
    Produces the assistant's reply for one customer message.

    The engine never raises: collaborator failures degrade to a handoff
    suggestion. Handoff suggestions and knowledge-grounded answers are
    written to the intent log.
    """

    def __init__(
        self,
        language_model: LanguageModel,
        knowledge: KnowledgeSearch,
        store: ChatStore,
        similarity_threshold: float = config.SIMILARITY_THRESHOLD,
        search_limit: int = 5,
    ):
        self.language_model = language_model
        self.knowledge = knowledge
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.search_limit = search_limit

    async def respond(
        self,
        session_id: str,
        message: str,
        history: Sequence[ChatMessage] = (),
        customer_info: Optional[CustomerInfo] = None,
    ) -> AssistantReply:
        start_time = time.time()
        try:
            reply = await self._respond(message, list(history))
        except Exception as e:
            logger.exception("AI generation error for session {}: {}", session_id, e)
            reply = AssistantReply(kind=ReplyKind.HANDOFF, message=catalog.ERROR_REPLY, reason="AI processing error")

        if reply.kind in (ReplyKind.ANSWER, ReplyKind.HANDOFF):
            await self._log_intent(session_id, message, reply, customer_info)

        record_ai_reply(reply.kind.value, (time.time() - start_time) * 1000)
        return reply

    async def classify(self, message: str, history: Sequence[ChatMessage]) -> IntentClassification:
        with trace_operation("intent_classification", {"intent.message_length": len(message)}, record_exception=False):
            try:
                classification = await self.language_model.classify_intent(message, history[-2:])
            except Exception as e:
                logger.error("Intent classification failed, using default: {}", e)
                return IntentClassification(reasoning="Classification error")
            add_span_attributes({"intent.name": classification.intent, "intent.confidence": classification.confidence})
            return classification

    async def _respond(self, message: str, history: List[ChatMessage]) -> AssistantReply:
        classification = await self.classify(message, history)

        if is_greeting(message):
            return AssistantReply(kind=ReplyKind.GREETING, message=catalog.GREETING_REPLY,
                                  intent="greeting", category="general")

        if is_capability_question(message):
            return AssistantReply(kind=ReplyKind.CAPABILITIES, message=catalog.CAPABILITY_REPLY)

        if classification.intent == "human_request" and classification.confidence > HUMAN_REQUEST_CONFIDENCE:
            return self._handoff(
                catalog.HUMAN_REQUEST_REPLY,
                f"AI detected human request (confidence: {classification.confidence})",
                classification,
            )

        if is_service_question(message):
            return AssistantReply(kind=ReplyKind.SERVICES, message=catalog.SERVICE_REPLY)

        if not is_question(message):
            return AssistantReply(kind=ReplyKind.PROMPT_FOR_QUESTION, message=catalog.PROMPT_FOR_QUESTION_REPLY)

        try:
            passages = await self.find_passages(message, classification)
        except KnowledgeSearchError as e:
            logger.error("Knowledge search failed: {}", e)
            return self._handoff(catalog.NO_KNOWLEDGE_REPLY, "Knowledge search unavailable", classification)

        if not passages:
            logger.info("No relevant knowledge found for: {!r}", message)
            return self._handoff(catalog.NO_KNOWLEDGE_REPLY, "No relevant knowledge found", classification)

        try:
            with trace_operation("answer_generation", {"generation.passages": len(passages)}):
                answer = await self.language_model.generate(build_answer_prompt(message, passages))
        except Exception as e:
            logger.error("Answer generation failed: {}", e)
            return self._handoff(catalog.ERROR_REPLY, "AI processing error", classification)

        if not answer or not answer.strip() or is_non_answer(answer):
            return self._handoff(catalog.NO_KNOWLEDGE_REPLY, "Model could not answer from context", classification)

        avg_similarity = sum(p.similarity for p in passages) / len(passages)
        return AssistantReply(
            kind=ReplyKind.ANSWER,
            message=answer.strip(),
            intent=classification.intent,
            category=classification.category,
            confidence=min(classification.confidence + avg_similarity * SIMILARITY_WEIGHT, 1.0),
            sources=[
                {
                    "content": passage.content[:100] + "...",
                    "similarity": passage.similarity,
                    "metadata": passage.metadata,
                }
                for passage in passages
            ],
        )

    async def find_passages(self, message: str, classification: IntentClassification) -> List[KnowledgePassage]:
        """
        Search with the intent-expanded query, then filter by relevance.

        The expanded search is retried once at a lower threshold; if nothing
        clears the relevance floor the raw message is searched leniently.
        """
        expanded = expand_query(message, classification)
        threshold = self.similarity_threshold
        if classification.confidence > HIGH_CONFIDENCE:
            threshold -= CONFIDENT_THRESHOLD_DELTA

        with trace_operation("knowledge_search", {"search.threshold": threshold}):
            hits = await self._search(expanded, threshold, self.search_limit)
            if not hits:
                logger.debug("No hits at {:.2f}, retrying at {:.2f}", threshold, RETRY_THRESHOLD)
                hits = await self._search(expanded, RETRY_THRESHOLD, self.search_limit)

            floor = relevance_floor(classification)
            relevant = [hit for hit in hits if hit.similarity > floor]
            logger.debug("Filtered {} hits to {} (min similarity {})", len(hits), len(relevant), floor)

            if not relevant:
                fallback = await self._search(message, FALLBACK_THRESHOLD, FALLBACK_LIMIT)
                relevant = [hit for hit in fallback if hit.similarity > FALLBACK_THRESHOLD]
            add_span_attributes({"search.results": len(relevant)})
        return relevant

    async def _search(self, query: str, threshold: float, limit: int) -> List[KnowledgePassage]:
        try:
            return list(await self.knowledge.search(query, threshold, limit))
        except Exception as e:
            raise KnowledgeSearchError(str(e)) from e

    def _handoff(self, message: str, reason: str, classification: IntentClassification) -> AssistantReply:
        return AssistantReply(
            kind=ReplyKind.HANDOFF,
            message=message,
            reason=reason,
            intent=classification.intent,
            category=classification.category,
            confidence=classification.confidence,
        )

    async def _log_intent(self, session_id: str, message: str, reply: AssistantReply,
                          customer_info: Optional[CustomerInfo]):
        record = IntentLogRecord(
            session_id=session_id,
            message=message,
            intent=reply.intent or "unknown",
            category=reply.category or "general",
            confidence=reply.confidence,
            sources=reply.sources,
            response_type="handoff_suggestion" if reply.is_handoff else "ai_response",
            customer_info=customer_info,
        )
        try:
            await self.store.log_intent(record)
        except Exception as e:
            logger.error("Failed to log intent for session {}: {}", session_id, e)
