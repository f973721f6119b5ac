"""
OpenAI-backed intent classification and answer generation.
"""
import json
import re
from typing import Optional, Sequence

from loguru import logger
from openai import AsyncOpenAI

from livedesk import catalog, config
from livedesk.models import ChatMessage, IntentClassification

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_classification_prompt(message: str, history: Sequence[ChatMessage]) -> str:
    categories = "\n".join(f"- {name}: {description}" for name, description in catalog.INTENT_TAXONOMY.items())
    context = "\n".join(f"{entry.role}: {entry.content}" for entry in history)
    return f"""Analyze this customer message and classify the intent. Consider the conversation context if provided.

Available intent categories:
{categories}

Conversation context:
{context}

Customer message: "{message}"

Respond with only a JSON object:
{{
  "intent": "category_name",
  "category": "main_category",
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation"
}}"""


def parse_classification(text: str) -> IntentClassification:
    """Pull the first JSON object out of a model reply; fall back to a neutral classification."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return IntentClassification(reasoning="AI classification failed")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return IntentClassification(reasoning="AI classification failed")

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    return IntentClassification(
        intent=data.get("intent") or "general_inquiry",
        category=data.get("category") or "general",
        confidence=max(0.0, min(1.0, confidence)),
        reasoning=data.get("reasoning") or "",
    )


class OpenAILanguageModel:
    """Implements the assistant's language-model collaborator with the OpenAI chat API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = config.OPENAI_MODEL):
        self.client = client or AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        self.model = model

    async def classify_intent(self, message: str, history: Sequence[ChatMessage]) -> IntentClassification:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": build_classification_prompt(message, history)}],
            temperature=0.2,  # Low temperature for consistent labels
            max_tokens=200,
        )
        text = response.choices[0].message.content if response.choices else ""
        classification = parse_classification(text)
        logger.debug("Classified {!r} as {} ({:.2f})", message[:60], classification.intent, classification.confidence)
        return classification

    async def generate(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.3,
            max_tokens=600,
        )
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()
