"""
Durable storage collaborators: chat history, feedback, intent logs and agent identities.

The coordinator only depends on the protocols below. The in-memory
implementations back the development server and the tests.
"""
import secrets
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from loguru import logger

from livedesk.models import (
    AgentIdentity,
    ChatHistoryRecord,
    FeedbackRecord,
    IntentLogRecord,
    Satisfaction,
)


class ChatStore(Protocol):
    async def save_chat_history(self, record: ChatHistoryRecord) -> None: ...

    async def find_chat_history(self, session_id: str) -> Optional[ChatHistoryRecord]: ...

    async def list_chat_history(self, limit: int = 50) -> List[ChatHistoryRecord]: ...

    async def record_satisfaction(self, session_id: str, satisfaction: Satisfaction) -> bool: ...

    async def save_feedback(self, record: FeedbackRecord) -> None: ...

    async def log_intent(self, record: IntentLogRecord) -> None: ...


class AgentDirectory(Protocol):
    async def verify_token(self, token: str) -> Optional[AgentIdentity]: ...


class InMemoryChatStore:
    """Append-only lists; lost on restart."""

    def __init__(self):
        self.chat_history: List[ChatHistoryRecord] = []
        self.feedback: List[FeedbackRecord] = []
        self.intents: List[IntentLogRecord] = []

    async def save_chat_history(self, record: ChatHistoryRecord) -> None:
        self.chat_history.append(record)
        logger.info("Chat history saved for session {} ({})", record.session_id, record.end_reason.value)

    async def find_chat_history(self, session_id: str) -> Optional[ChatHistoryRecord]:
        for record in reversed(self.chat_history):
            if record.session_id == session_id:
                return record
        return None

    async def list_chat_history(self, limit: int = 50) -> List[ChatHistoryRecord]:
        return self.chat_history[-limit:] if limit > 0 else []

    async def record_satisfaction(self, session_id: str, satisfaction: Satisfaction) -> bool:
        record = await self.find_chat_history(session_id)
        if record is None:
            return False
        record.satisfaction = satisfaction
        return True

    async def save_feedback(self, record: FeedbackRecord) -> None:
        self.feedback.append(record)

    async def log_intent(self, record: IntentLogRecord) -> None:
        self.intents.append(record)


class InMemoryAgentDirectory:
    """Issues opaque bearer tokens for known agent identities."""

    def __init__(self, identities: Optional[List[AgentIdentity]] = None):
        self._identities: Dict[str, AgentIdentity] = {
            identity.agent_id: identity for identity in identities or []
        }
        self._tokens: Dict[str, tuple] = {}

    def add(self, identity: AgentIdentity):
        self._identities[identity.agent_id] = identity

    def issue_token(self, agent_id: str, ttl_seconds: int = 24 * 60 * 60, token: Optional[str] = None) -> str:
        if agent_id not in self._identities:
            raise KeyError(f"Unknown agent: {agent_id}")
        token = token or secrets.token_urlsafe(32)
        self._tokens[token] = (agent_id, datetime.now().timestamp() + ttl_seconds)
        return token

    def revoke(self, token: str):
        self._tokens.pop(token, None)

    async def verify_token(self, token: str) -> Optional[AgentIdentity]:
        if not token:
            return None
        entry = self._tokens.get(token)
        if entry is None:
            return None
        agent_id, expires_at = entry
        if expires_at < datetime.now().timestamp():
            self._tokens.pop(token, None)
            return None
        return self._identities.get(agent_id)
