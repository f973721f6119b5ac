"""
Registry of live customer conversations.
"""
from datetime import datetime
from typing import Dict, Iterator, Optional

from loguru import logger

from livedesk.models import ChatMessage, Conversation, ConversationState, CustomerInfo


class ConversationRegistry:
    """
    Owns every live conversation keyed by session id.

    State transitions go through the methods below so that agent-binding
    fields are only ever populated in the HUMAN_ASSIGNED state.
    """

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}

    def get(self, session_id: str) -> Optional[Conversation]:
        return self._conversations.get(session_id)

    def get_or_create(self, session_id: str, channel=None) -> Conversation:
        conversation = self._conversations.get(session_id)
        if conversation is None:
            conversation = Conversation(session_id=session_id)
            self._conversations[session_id] = conversation
            logger.info("Created conversation {}", session_id)
        if channel is not None:
            conversation.customer_channel = channel
        return conversation

    def attach(self, session_id: str, channel, customer_info: Optional[CustomerInfo] = None):
        """
        Re-attach a customer channel, creating the conversation if it is unknown.

        Returns ``(conversation, created)``.
        """
        created = session_id not in self._conversations
        conversation = self.get_or_create(session_id, channel)
        if customer_info is not None:
            conversation.customer_info = customer_info
        return conversation, created

    def remove(self, session_id: str) -> Optional[Conversation]:
        conversation = self._conversations.pop(session_id, None)
        if conversation is not None:
            conversation.state = ConversationState.ENDED
            conversation.end_time = conversation.end_time or datetime.now()
            logger.info("Removed conversation {}", session_id)
        return conversation

    def append_message(self, session_id: str, entry: ChatMessage) -> bool:
        conversation = self._conversations.get(session_id)
        if conversation is None:
            return False
        conversation.messages.append(entry)
        return True

    def find_by_customer_channel(self, channel) -> Optional[Conversation]:
        for conversation in self._conversations.values():
            if conversation.customer_channel is channel:
                return conversation
        return None

    # ==================== Transitions ====================

    def mark_queued(self, session_id: str) -> bool:
        conversation = self._conversations.get(session_id)
        if conversation is None or conversation.has_human:
            return False
        conversation.state = ConversationState.QUEUED
        return True

    def try_assign(self, session_id: str, agent_id: str, agent_name: str, agent_channel) -> bool:
        """
        Bind a human agent to the session.

        This is the single commit point for accepting a customer: the first
        caller wins and every later caller gets False.
        """
        conversation = self._conversations.get(session_id)
        if conversation is None or conversation.has_human:
            return False
        conversation.state = ConversationState.HUMAN_ASSIGNED
        conversation.assigned_agent = agent_id
        conversation.agent_name = agent_name
        conversation.agent_channel = agent_channel
        return True

    def release(self, session_id: str) -> Optional[Conversation]:
        """Drop any agent binding or queue state and hand the session back to the assistant."""
        conversation = self._conversations.get(session_id)
        if conversation is None:
            return None
        conversation.state = ConversationState.AI_HANDLING
        conversation.assigned_agent = None
        conversation.agent_name = None
        conversation.agent_channel = None
        return conversation

    # ==================== Introspection ====================

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._conversations

    def __iter__(self) -> Iterator[Conversation]:
        return iter(list(self._conversations.values()))

    def __len__(self) -> int:
        return len(self._conversations)
