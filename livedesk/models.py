"""
Data models for the live chat routing core.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationState(str, Enum):
    """Phases of a customer conversation."""
    AI_HANDLING = "ai_handling"
    QUEUED = "queued"
    HUMAN_ASSIGNED = "human_assigned"
    ENDED = "ended"


class AgentStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"


class EndReason(str, Enum):
    """Why a conversation's history was flushed."""
    AGENT_ENDED = "agent_ended"
    CUSTOMER_ENDED = "customer_ended"
    CUSTOMER_IDLE = "customer_idle"
    AGENT_TIMEOUT = "agent_timeout"
    CUSTOMER_DISCONNECTED = "customer_disconnected"


class ChatMessage(BaseModel):
    """A single entry of a conversation transcript."""
    role: Literal["customer", "assistant", "agent"]
    content: str
    message_type: str = "text"
    timestamp: datetime = Field(default_factory=datetime.now)


class CustomerInfo(BaseModel):
    """Identity fields a customer may volunteer before a handoff."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None


class AgentIdentity(BaseModel):
    """A verified human agent account."""
    agent_id: str
    username: str
    name: str
    email: Optional[str] = None
    role: str = "agent"


class Conversation(BaseModel):
    """
    Live state of one customer session.

    ``assigned_agent``, ``agent_name`` and ``agent_channel`` are only
    meaningful while ``state`` is HUMAN_ASSIGNED; the registry clears them
    on every other transition.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    state: ConversationState = ConversationState.AI_HANDLING
    messages: List[ChatMessage] = Field(default_factory=list)
    assigned_agent: Optional[str] = None
    agent_name: Optional[str] = None
    customer_channel: Optional[Any] = Field(default=None, exclude=True)
    agent_channel: Optional[Any] = Field(default=None, exclude=True)
    customer_info: Optional[CustomerInfo] = None
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def has_human(self) -> bool:
        return self.state == ConversationState.HUMAN_ASSIGNED

    def last_message_preview(self, default: str) -> str:
        return self.messages[-1].content if self.messages else default


class Agent(BaseModel):
    """Presence entry for a human agent; survives channel drops."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    agent_id: str
    identity: AgentIdentity
    status: AgentStatus = AgentStatus.ONLINE
    current_session_id: Optional[str] = None
    channel: Optional[Any] = Field(default=None, exclude=True)

    @property
    def name(self) -> str:
        return self.identity.name


class IntentClassification(BaseModel):
    intent: str = "general_inquiry"
    category: str = "general"
    confidence: float = 0.5
    reasoning: str = ""


class KnowledgePassage(BaseModel):
    """A ranked hit from the knowledge base."""
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReplyKind(str, Enum):
    GREETING = "greeting"
    CAPABILITIES = "capabilities"
    SERVICES = "services"
    PROMPT_FOR_QUESTION = "prompt_for_question"
    ANSWER = "answer"
    HANDOFF = "handoff"


class AssistantReply(BaseModel):
    """Outcome of one AI turn."""
    kind: ReplyKind
    message: str
    reason: Optional[str] = None
    intent: Optional[str] = None
    category: Optional[str] = None
    confidence: float = 0.0
    sources: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_handoff(self) -> bool:
        return self.kind == ReplyKind.HANDOFF


class IntentLogRecord(BaseModel):
    session_id: str
    message: str
    intent: str
    category: str
    confidence: float
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    response_type: str
    customer_info: Optional[CustomerInfo] = None
    created_at: datetime = Field(default_factory=datetime.now)


class Satisfaction(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ChatHistoryRecord(BaseModel):
    """Durable snapshot of a conversation written when it ends or is abandoned."""
    session_id: str
    messages: List[ChatMessage]
    start_time: datetime
    end_time: datetime = Field(default_factory=datetime.now)
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    end_reason: EndReason
    customer_info: Optional[CustomerInfo] = None
    satisfaction: Optional[Satisfaction] = None


class FeedbackRecord(BaseModel):
    session_id: str
    rating: int = Field(ge=1, le=5)
    feedback_text: Optional[str] = None
    interaction_type: Literal["human_agent", "ai_only"] = "human_agent"
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
