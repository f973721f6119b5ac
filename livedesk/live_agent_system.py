"""
Session coordinator: the event-driven state machine that routes customers
between the AI assistant, the waiting queue and human agents.

All registry mutations for one event happen synchronously before the
handler's first ``await``; awaits are reserved for notifications and
external collaborators, so on a single event loop concurrent accepts for one
customer resolve first-committer-wins.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from livedesk import catalog, config
from livedesk.agents import AgentRegistry
from livedesk.assistant import ResponseEngine
from livedesk.channels import Channel, broadcast, is_open, send_if_open
from livedesk.conversations import ConversationRegistry
from livedesk.models import (
    Agent,
    AgentStatus,
    ChatHistoryRecord,
    ChatMessage,
    Conversation,
    ConversationState,
    CustomerInfo,
    EndReason,
    FeedbackRecord,
    IntentLogRecord,
    Satisfaction,
)
from livedesk.observability import (
    record_accept,
    record_agent_reconnect,
    record_handoff_offer,
    record_human_request,
    record_queue_timeout,
    record_session_end,
)
from livedesk.storage import AgentDirectory, ChatStore
from livedesk.timeouts import TimeoutManager
from livedesk.waiting_queue import WaitingQueue

# Timer families
QUEUE_TIMER = "queue"
IDLE_TIMER = "idle"
RECONNECT_TIMER = "reconnect"
FAREWELL_TIMER = "farewell"

FAREWELL_MESSAGES = {
    EndReason.AGENT_ENDED: "The agent has ended the chat. Feel free to ask me anything else!",
    EndReason.CUSTOMER_ENDED: "Session ended. Thank you for chatting with us!",
    EndReason.CUSTOMER_IDLE: "The chat has ended due to inactivity. Feel free to start a new conversation!",
    EndReason.AGENT_TIMEOUT: (
        "Your agent has been disconnected for too long. The chat has been ended. "
        "Feel free to start a new conversation!"
    ),
}


class InvariantViolation(Exception):
    """The session, agent and queue registries disagree with each other."""


def _now() -> str:
    return datetime.now().isoformat()


class SessionCoordinator:
    """Single owner of all live conversation, agent and queue state."""

    def __init__(
        self,
        engine: ResponseEngine,
        store: ChatStore,
        directory: AgentDirectory,
        timeouts: Optional[TimeoutManager] = None,
        queue_timeout: float = config.QUEUE_TIMEOUT_SECONDS,
        idle_timeout: float = config.IDLE_TIMEOUT_SECONDS,
        reconnect_window: float = config.AGENT_RECONNECT_SECONDS,
        farewell_delay: float = config.FAREWELL_DELAY_SECONDS,
        reconnect_history_size: int = config.RECONNECT_HISTORY_SIZE,
        meaningful_message_count: int = config.MEANINGFUL_MESSAGE_COUNT,
        strict: bool = config.STRICT_INVARIANTS,
    ):
        self.engine = engine
        self.store = store
        self.directory = directory
        self.timeouts = timeouts or TimeoutManager()
        self.conversations = ConversationRegistry()
        self.agents = AgentRegistry()
        self.queue = WaitingQueue()

        self.queue_timeout = queue_timeout
        self.idle_timeout = idle_timeout
        self.reconnect_window = reconnect_window
        self.farewell_delay = farewell_delay
        self.reconnect_history_size = reconnect_history_size
        self.meaningful_message_count = meaningful_message_count
        self.strict = strict

        self._customer_locks: Dict[str, asyncio.Lock] = {}
        self._handlers: Dict[str, Callable[[Channel, Dict[str, Any]], Awaitable[None]]] = {
            "customer_message": self._on_customer_message,
            "request_human": self._on_request_human,
            "customer_info_submitted": self._on_customer_info,
            "accept_request": self._on_accept_request,
            "agent_join": self._on_agent_join,
            "agent_message": self._on_agent_message,
            "end_chat": self._on_end_chat,
            "end_session": self._on_end_session,
            "restore_session": self._on_restore_session,
            "handoff_response": self._on_handoff_response,
            "satisfaction_response": self._on_satisfaction_response,
            "file_uploaded": self._on_file_uploaded,
        }

    # ==================== Inbound dispatch ====================

    async def handle_event(self, channel: Channel, data: Dict[str, Any]):
        """Route one inbound JSON event from a customer or agent channel."""
        event_type = data.get("type") if isinstance(data, dict) else None
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning("Unknown message type: {}", event_type)
            return

        logger.debug("Received {} on {}", event_type, channel)
        try:
            await handler(channel, data)
        except Exception:
            logger.exception("Message handling error for {}", event_type)
        self.audit()

    async def _require_session(self, channel: Channel, data: Dict[str, Any]) -> Optional[str]:
        session_id = data.get("session_id")
        if not session_id or not isinstance(session_id, str):
            await channel.send({"type": "error", "message": "session_id is required"})
            return None
        return session_id

    async def _on_customer_message(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.customer_message(channel, session_id, str(data.get("message", "")))

    async def _on_request_human(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.request_human(session_id, _customer_info(data))

    async def _on_customer_info(self, channel, data):
        session_id = await self._require_session(channel, data)
        info = _customer_info(data)
        if session_id and info is not None:
            self.submit_customer_info(session_id, info)

    async def _on_accept_request(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.accept_request(channel, session_id)

    async def _on_agent_join(self, channel, data):
        await self.agent_join(channel, data.get("token", ""))

    async def _on_agent_message(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.agent_message(
                channel, session_id, str(data.get("message", "")), data.get("message_type", "text")
            )

    async def _on_end_chat(self, channel, data):
        session_id = await self._require_session(channel, data)
        if not session_id:
            return
        agent = self.agents.find_by_channel(channel)
        conversation = self.conversations.get(session_id)
        if agent is None or conversation is None or conversation.assigned_agent != agent.agent_id:
            logger.warning("Ignoring end_chat for {} from a channel that does not own it", session_id)
            return
        await self.end_chat(session_id, EndReason.AGENT_ENDED)

    async def _on_end_session(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.end_session(session_id)

    async def _on_restore_session(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.restore_session(channel, session_id, _customer_info(data))

    async def _on_handoff_response(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.handoff_response(session_id, bool(data.get("accepted")))

    async def _on_satisfaction_response(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.satisfaction_response(
                session_id,
                data.get("rating"),
                data.get("feedback"),
                data.get("interaction_type", "human_agent"),
            )

    async def _on_file_uploaded(self, channel, data):
        session_id = await self._require_session(channel, data)
        if session_id:
            await self.file_uploaded(session_id, data.get("file_info") or {})

    # ==================== Customer events ====================

    async def customer_message(self, channel: Channel, session_id: str, text: str):
        """Handle a customer message; messages of one session are processed in arrival order."""
        lock = self._customer_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            await self._customer_message(channel, session_id, text)

    async def _customer_message(self, channel: Channel, session_id: str, text: str):
        conversation = self.conversations.get_or_create(session_id, channel)
        self.conversations.append_message(session_id, ChatMessage(role="customer", content=text))
        self._arm_idle_timeout(session_id)
        if session_id in self.queue:
            self._arm_queue_timeout(session_id)

        if conversation.has_human:
            if is_open(conversation.agent_channel):
                await conversation.agent_channel.send({
                    "type": "customer_message",
                    "session_id": session_id,
                    "message": text,
                    "timestamp": _now(),
                })
            else:
                logger.info("Agent {} connection lost for session {}", conversation.assigned_agent, session_id)
                self._arm_reconnect_timeout(conversation.assigned_agent, session_id)
                await send_if_open(conversation.customer_channel, {
                    "type": "agent_disconnected_temp",
                    "message": "Your agent seems to have lost connection. Please wait while they reconnect...",
                })
            return

        if conversation.state == ConversationState.QUEUED:
            await send_if_open(conversation.customer_channel, self._waiting_notice(session_id))
            return

        reply = await self.engine.respond(
            session_id, text, conversation.messages[:-1], conversation.customer_info
        )

        # The conversation may have ended or been handed to a human while the assistant was working
        current = self.conversations.get(session_id)
        if current is not conversation or conversation.has_human:
            logger.info("Dropping stale AI reply for session {}", session_id)
            return

        if reply.is_handoff:
            record_handoff_offer(reply.reason or "unknown")
            await send_if_open(conversation.customer_channel, {
                "type": "handoff_offer",
                "session_id": session_id,
                "message": reply.message,
                "reason": reply.reason,
            })
            return

        self.conversations.append_message(session_id, ChatMessage(role="assistant", content=reply.message))
        await send_if_open(conversation.customer_channel, {
            "type": "ai_response",
            "session_id": session_id,
            "message": reply.message,
            "kind": reply.kind.value,
            "sources": reply.sources,
        })

    async def request_human(self, session_id: str, customer_info: Optional[CustomerInfo] = None) -> bool:
        """Put the session in the waiting queue if at least one agent is reachable."""
        conversation = self.conversations.get(session_id)
        if conversation is None:
            logger.warning("No conversation found for human request {}", session_id)
            return False
        if customer_info is not None:
            conversation.customer_info = customer_info
        if conversation.has_human:
            logger.info("Session {} already has an agent", session_id)
            return False

        online = self.agents.list_online()
        queued = bool(online)
        if queued:
            self.queue.enqueue(session_id)
            self.conversations.mark_queued(session_id)
            self._arm_queue_timeout(session_id)
        record_human_request("queued" if queued else "no_agents")

        await self._log_human_request(conversation)

        if not queued:
            await send_if_open(conversation.customer_channel, {
                "type": "no_agents_available",
                "message": (
                    "Sorry, no human agents are currently available. "
                    "Please try again later or continue chatting with me!"
                ),
            })
            return False

        position = self.queue.position_of(session_id)
        await self._broadcast_agents({
            "type": "pending_request",
            "session_id": session_id,
            "position": position,
            "total_in_queue": self.queue.length(),
            "last_message": conversation.last_message_preview("Customer wants to speak with human"),
        })
        await send_if_open(conversation.customer_channel, self._waiting_notice(session_id))
        logger.info("Human request added to queue for session {}, position {}", session_id, position)
        return True

    def submit_customer_info(self, session_id: str, customer_info: CustomerInfo) -> bool:
        """Attach contact details to a live conversation."""
        conversation = self.conversations.get(session_id)
        if conversation is None:
            return False
        conversation.customer_info = customer_info
        return True

    async def handoff_response(self, session_id: str, accepted: bool):
        """Answer to an offered handoff: queue on yes, reassure on no."""
        if accepted:
            await self.request_human(session_id)
            return
        conversation = self.conversations.get(session_id)
        if conversation is not None:
            await send_if_open(conversation.customer_channel, {
                "type": "ai_response",
                "session_id": session_id,
                "message": catalog.HANDOFF_DECLINED_REPLY,
            })

    async def restore_session(self, channel: Channel, session_id: str,
                              customer_info: Optional[CustomerInfo] = None):
        """Re-attach a reconnecting customer, or start a fresh conversation for an unknown id."""
        conversation, created = self.conversations.attach(session_id, channel, customer_info)
        self._arm_idle_timeout(session_id)

        if created:
            logger.info("New session {} created for customer", session_id)
            await channel.send({
                "type": "session_restored",
                "session_id": session_id,
                "is_connected_to_human": False,
                "agent_name": None,
                "message": "New session created.",
            })
            return

        await channel.send({
            "type": "session_restored",
            "session_id": session_id,
            "is_connected_to_human": conversation.has_human,
            "agent_name": conversation.agent_name,
            "message": (
                f"Session restored. You're connected to {conversation.agent_name}."
                if conversation.has_human
                else "Session restored. You can continue chatting with our AI assistant."
            ),
        })
        if conversation.has_human:
            await send_if_open(conversation.agent_channel, {
                "type": "customer_reconnected",
                "session_id": session_id,
                "message": "Customer has reconnected to the chat.",
            })
        logger.info("Session {} restored", session_id)

    async def end_session(self, session_id: str):
        """Customer closes the chat window."""
        conversation = self.conversations.get(session_id)
        if conversation is None:
            return
        if conversation.has_human:
            await self.end_chat(session_id, EndReason.CUSTOMER_ENDED)
            return

        channel = conversation.customer_channel
        record, was_queued = self._discard(session_id, EndReason.CUSTOMER_ENDED)
        if record is not None:
            await self._send_survey(channel, session_id, "ai_only")
        await send_if_open(channel, {
            "type": "session_ended",
            "message": "Session ended. Thank you for chatting with us!",
        })
        if was_queued:
            await self._notify_left_queue(session_id)
        await self._save_history(record)

    async def satisfaction_response(self, session_id: str, rating: Any, feedback: Optional[str] = None,
                                    interaction_type: str = "human_agent") -> bool:
        """Store a survey answer as feedback and on the history record."""
        try:
            satisfaction = Satisfaction(rating=rating, feedback=feedback)
        except ValidationError as e:
            logger.warning("Invalid satisfaction rating for {}: {}", session_id, e)
            return False

        conversation = self.conversations.get(session_id)
        try:
            history = await self.store.find_chat_history(session_id)
            info = (conversation.customer_info if conversation else None) or (history.customer_info if history else None)
            await self.store.save_feedback(FeedbackRecord(
                session_id=session_id,
                rating=satisfaction.rating,
                feedback_text=satisfaction.feedback,
                interaction_type="ai_only" if interaction_type == "ai_only" else "human_agent",
                customer_name=info.name if info else None,
                customer_email=info.email if info else None,
                agent_id=(conversation.assigned_agent if conversation else None) or (history.agent_id if history else None),
                agent_name=(conversation.agent_name if conversation else None) or (history.agent_name if history else None),
            ))
            await self.store.record_satisfaction(session_id, satisfaction)
        except Exception as e:
            logger.error("Error saving feedback for session {}: {}", session_id, e)
            return False
        logger.info("Satisfaction response saved for session {}: {}/5", session_id, satisfaction.rating)
        return True

    async def file_uploaded(self, session_id: str, file_info: Dict[str, Any]):
        """Tell the assigned agent that the customer uploaded a file."""
        conversation = self.conversations.get(session_id)
        if conversation is None or not conversation.has_human:
            return
        await send_if_open(conversation.agent_channel, {
            "type": "customer_file_uploaded",
            "session_id": session_id,
            "file_info": file_info,
        })

    # ==================== Agent events ====================

    async def agent_join(self, channel: Channel, token: str) -> Optional[Agent]:
        """Authenticate an agent channel and register it, restoring a live session binding if any."""
        try:
            identity = await self.directory.verify_token(token)
        except Exception as e:
            logger.error("Agent token verification failed: {}", e)
            identity = None
        if identity is None:
            await channel.send({"type": "auth_error", "message": "Invalid token"})
            await channel.close()
            return None

        agent_id = identity.agent_id
        outcome = self.agents.join(agent_id, channel, identity, self._still_assigned)
        conversation = None
        if outcome.reconnected:
            conversation = self.conversations.get(outcome.session_id)
            conversation.agent_channel = channel
            self.timeouts.cancel((RECONNECT_TIMER, agent_id))
            record_agent_reconnect()
        logger.info("Agent {} ({}) {}", identity.name, agent_id, "reconnected" if outcome.reconnected else "online")

        if conversation is not None:
            await channel.send({
                "type": "connection_restored",
                "session_id": conversation.session_id,
                "message": "Connection restored. You can continue the conversation.",
                "history": _dump_messages(conversation.messages[-self.reconnect_history_size:]),
            })
            await send_if_open(conversation.customer_channel, {
                "type": "agent_reconnected",
                "message": f"{identity.name} has reconnected and is back online.",
            })

        await channel.send({
            "type": "agent_status",
            "message": (
                f"Welcome back, {identity.name}! Connection restored."
                if outcome.reconnected
                else f"Welcome, {identity.name}! You're now online."
            ),
            "waiting_customers": self.queue.length(),
            "total_agents": self.agents.size(),
            "status": "reconnected" if outcome.reconnected else "online",
            "user": identity.model_dump(),
        })

        if not outcome.reconnected:
            total = self.queue.length()
            for position, session_id in enumerate(self.queue.snapshot(), start=1):
                queued = self.conversations.get(session_id)
                if queued is None:
                    continue
                await channel.send({
                    "type": "pending_request",
                    "session_id": session_id,
                    "position": position,
                    "total_in_queue": total,
                    "last_message": queued.last_message_preview("New request"),
                })
            await self._broadcast_agents({
                "type": "agent_joined",
                "agent_id": agent_id,
                "agent_name": identity.name,
                "total_agents": self.agents.size(),
            }, exclude=agent_id)
        return outcome.agent

    async def accept_request(self, channel: Channel, session_id: str) -> bool:
        """
        Bind the agent on ``channel`` to a waiting customer.

        Nothing is awaited between the ``has_human`` check and the commit, so
        when several agents race for one customer the first to be processed
        wins and the rest are told the request is taken.
        """
        agent = self.agents.find_by_channel(channel)
        if agent is None:
            await channel.send({"type": "error", "message": "Join as an agent before accepting requests"})
            return False

        conversation = self.conversations.get(session_id)
        if conversation is None:
            logger.warning("Cannot accept {} - conversation not found", session_id)
            await channel.send({
                "type": "error",
                "session_id": session_id,
                "message": "This request is no longer available",
            })
            return False

        if conversation.has_human:
            record_accept("already_taken")
            await channel.send({
                "type": "request_already_taken",
                "session_id": session_id,
                "message": "This customer has already been assigned to another agent",
            })
            return False

        if agent.status == AgentStatus.BUSY:
            record_accept("agent_busy")
            await channel.send({
                "type": "agent_busy",
                "session_id": session_id,
                "message": "Finish your current chat before accepting another customer",
            })
            return False

        if not self.conversations.try_assign(session_id, agent.agent_id, agent.name, channel):
            return False
        self.agents.bind(agent.agent_id, session_id)
        self.agents.mark_busy(agent.agent_id, session_id)
        self.queue.dequeue(session_id)
        self.timeouts.cancel((QUEUE_TIMER, session_id))
        record_accept("accepted")
        logger.info("Agent {} accepted session {}. Queue now: {}", agent.name, session_id, self.queue.length())

        await self._broadcast_agents({
            "type": "request_taken",
            "session_id": session_id,
            "taken_by": agent.name,
            "remaining_queue": self.queue.length(),
        }, exclude=agent.agent_id)
        await send_if_open(conversation.customer_channel, {
            "type": "human_joined",
            "agent_name": agent.name,
            "message": f"{agent.name} has joined the chat!",
        })
        await channel.send({
            "type": "customer_assigned",
            "session_id": session_id,
            "history": _dump_messages(conversation.messages),
            "queue_position": 0,
            "canned_responses": list(catalog.CANNED_AGENT_RESPONSES),
        })
        return True

    async def agent_message(self, channel: Channel, session_id: str, text: str,
                            message_type: str = "text") -> bool:
        """Relay an agent message to the customer of a session the agent owns."""
        conversation = self.conversations.get(session_id)
        agent = self.agents.find_by_channel(channel)
        if conversation is None or not conversation.has_human:
            logger.warning("Cannot send agent message - session {} has no agent", session_id)
            return False
        if agent is None or conversation.assigned_agent != agent.agent_id:
            logger.warning("Ignoring agent message for {} from an unassigned channel", session_id)
            return False
        if conversation.customer_channel is None:
            # The agent is not told about the failed delivery.
            logger.info("Cannot send agent message - customer {} not connected", session_id)
            return False

        entry = ChatMessage(role="agent", content=text, message_type=message_type)
        self.conversations.append_message(session_id, entry)
        delivered = await send_if_open(conversation.customer_channel, {
            "type": "agent_message",
            "message": text,
            "message_type": message_type,
            "agent_name": conversation.agent_name,
            "timestamp": entry.timestamp.isoformat(),
        })
        if not delivered:
            logger.info("Customer channel for {} is not open; agent message kept in history only", session_id)
        return delivered

    async def end_chat(self, session_id: str, reason: EndReason = EndReason.AGENT_ENDED) -> bool:
        """
        End the human-assisted phase of a session.

        History is flushed and the agent is returned to the pool. An agent-ended
        chat hands the customer back to the assistant; every other reason ends
        the conversation and removes it from the registry.
        """
        conversation = self.conversations.get(session_id)
        if conversation is None or not conversation.has_human:
            logger.warning("end_chat({}) for session {} without an agent", reason.value, session_id)
            return False

        agent_id = conversation.assigned_agent
        agent_name = conversation.agent_name
        customer_channel = conversation.customer_channel
        agent_channel = conversation.agent_channel
        record = self._history_record(conversation, reason)

        self.conversations.release(session_id)
        self._unbind_agent(agent_id, session_id)
        if reason != EndReason.AGENT_ENDED:
            self._remove(session_id)
        record_session_end(reason.value, True)
        logger.info("Chat ended for session {} by {}. Agent: {}", session_id, reason.value, agent_name)

        await self._save_history(record)

        if reason == EndReason.AGENT_TIMEOUT:
            await send_if_open(customer_channel, {
                "type": "agent_left",
                "message": FAREWELL_MESSAGES[reason],
            })
        elif is_open(customer_channel):
            await self._send_survey(customer_channel, session_id, "human_agent")
            farewell = {"type": "agent_left", "message": FAREWELL_MESSAGES[reason]}
            if reason == EndReason.CUSTOMER_ENDED:
                await customer_channel.send(farewell)
            else:
                self.timeouts.schedule(
                    (FAREWELL_TIMER, session_id),
                    self.farewell_delay,
                    lambda: send_if_open(customer_channel, farewell),
                )

        if reason == EndReason.CUSTOMER_ENDED:
            await send_if_open(agent_channel, {
                "type": "session_ended_by_customer",
                "session_id": session_id,
                "message": "Customer has ended the session.",
            })

        await self._broadcast_agents({
            "type": "chat_ended",
            "session_id": session_id,
            "ended_by": "Customer" if reason == EndReason.CUSTOMER_ENDED else (agent_name or "Unknown"),
            "end_reason": reason.value,
            "total_queue": self.queue.length(),
        }, exclude=agent_id)
        return True

    # ==================== Channel lifecycle ====================

    async def channel_closed(self, channel: Channel):
        """The underlying connection dropped; dispatch to agent and/or customer cleanup."""
        channel.mark_closed()
        agent = self.agents.find_by_channel(channel)
        if agent is not None:
            await self._agent_channel_closed(agent)
        conversation = self.conversations.find_by_customer_channel(channel)
        if conversation is not None:
            await self._customer_channel_closed(conversation)
        self.audit()

    async def _agent_channel_closed(self, agent: Agent):
        agent_id = agent.agent_id
        self.agents.detach_channel(agent_id)
        session_id = self.agents.session_for(agent_id)
        conversation = self.conversations.get(session_id) if session_id else None
        logger.info("Agent {} ({}) channel closed; keeping agent entry", agent.name, agent_id)

        if conversation is None or conversation.assigned_agent != agent_id:
            return
        conversation.agent_channel = None
        self._arm_reconnect_timeout(agent_id, session_id)
        await send_if_open(conversation.customer_channel, {
            "type": "agent_disconnected_temp",
            "message": "Your agent seems to have lost connection. They should be back shortly...",
        })

    async def _customer_channel_closed(self, conversation: Conversation):
        session_id = conversation.session_id
        logger.info("Customer {} disconnected", session_id)
        conversation.customer_channel = None
        self.timeouts.cancel((QUEUE_TIMER, session_id))
        self.timeouts.cancel((IDLE_TIMER, session_id))
        self._drop_lock(session_id)

        was_queued = self.queue.dequeue(session_id)
        if was_queued:
            self.conversations.release(session_id)
        record = None
        if conversation.has_human:
            record = self._history_record(conversation, EndReason.CUSTOMER_DISCONNECTED)
            record_session_end(EndReason.CUSTOMER_DISCONNECTED.value, True)

        if was_queued:
            await self._notify_left_queue(session_id)
        # The assigned agent is not notified here, unlike agent drops which notify the customer.
        await self._save_history(record)

    # ==================== Timers ====================

    def _arm_queue_timeout(self, session_id: str):
        self.timeouts.schedule(
            (QUEUE_TIMER, session_id), self.queue_timeout, lambda: self._on_queue_timeout(session_id)
        )

    def _arm_idle_timeout(self, session_id: str):
        self.timeouts.schedule(
            (IDLE_TIMER, session_id), self.idle_timeout, lambda: self._on_idle_timeout(session_id)
        )

    def _arm_reconnect_timeout(self, agent_id: str, session_id: str) -> bool:
        key = (RECONNECT_TIMER, agent_id)
        if self.timeouts.is_active(key):
            return False
        logger.info("Reconnect window opened for agent {}, session {}", agent_id, session_id)
        self.timeouts.schedule(key, self.reconnect_window, lambda: self._on_reconnect_timeout(agent_id, session_id))
        return True

    async def _on_queue_timeout(self, session_id: str):
        conversation = self.conversations.get(session_id)
        if conversation is None or conversation.has_human or session_id not in self.queue:
            return
        self.queue.dequeue(session_id)
        self.conversations.release(session_id)
        record_queue_timeout()
        logger.info("Customer {} timed out and removed from queue", session_id)

        await self._broadcast_agents({
            "type": "customer_timeout",
            "session_id": session_id,
            "remaining_queue": self.queue.length(),
        })
        self.audit()

    async def _on_idle_timeout(self, session_id: str):
        conversation = self.conversations.get(session_id)
        if conversation is None:
            return
        logger.info("Customer {} idle timeout - ending session", session_id)
        await send_if_open(conversation.customer_channel, {
            "type": "session_timeout",
            "message": "Your session has ended due to inactivity. Feel free to start a new conversation!",
        })

        if conversation.has_human:
            await self.end_chat(session_id, EndReason.CUSTOMER_IDLE)
        elif self.conversations.get(session_id) is conversation:
            record, was_queued = self._discard(session_id, EndReason.CUSTOMER_IDLE)
            if was_queued:
                await self._notify_left_queue(session_id)
            await self._save_history(record)
        self.audit()

    async def _on_reconnect_timeout(self, agent_id: str, session_id: str):
        logger.info("Agent {} reconnect timeout expired for session {}", agent_id, session_id)
        conversation = self.conversations.get(session_id)
        if conversation is not None and conversation.has_human and conversation.assigned_agent == agent_id:
            await self.end_chat(session_id, EndReason.AGENT_TIMEOUT)
        elif self.agents.session_for(agent_id) == session_id:
            self._unbind_agent(agent_id, session_id)
        self.audit()

    # ==================== Invariants ====================

    def audit(self) -> List[str]:
        """
        Check that conversations, agents, queue and cross-reference maps agree.

        Violations raise ``InvariantViolation`` in strict mode; otherwise they
        are logged and the affected sessions are treated as unassigned.
        """
        violations: List[str] = []
        broken_sessions = set()
        broken_agents = set()

        for conversation in self.conversations:
            session_id = conversation.session_id
            bound_agent = self.agents.agent_for(session_id)
            in_queue = session_id in self.queue

            if conversation.has_human:
                agent_id = conversation.assigned_agent
                agent = self.agents.get(agent_id) if agent_id else None
                if bound_agent != agent_id or self.agents.session_for(agent_id) != session_id:
                    violations.append(f"session {session_id}: cross-reference maps disagree with assigned agent {agent_id}")
                    broken_sessions.add(session_id)
                if agent is None or agent.status != AgentStatus.BUSY or agent.current_session_id != session_id:
                    violations.append(f"session {session_id}: agent {agent_id} is not busy with it")
                    broken_sessions.add(session_id)
                if in_queue:
                    violations.append(f"session {session_id}: queued while assigned")
                    broken_sessions.add(session_id)
            else:
                if bound_agent is not None or conversation.assigned_agent is not None:
                    violations.append(f"session {session_id}: agent binding without a human phase")
                    broken_sessions.add(session_id)
                if in_queue != (conversation.state == ConversationState.QUEUED):
                    violations.append(f"session {session_id}: queue membership does not match state {conversation.state.value}")
                    broken_sessions.add(session_id)

        for agent in self.agents.list_all():
            if agent.status != AgentStatus.BUSY:
                continue
            conversation = self.conversations.get(agent.current_session_id) if agent.current_session_id else None
            if conversation is None or conversation.assigned_agent != agent.agent_id:
                violations.append(f"agent {agent.agent_id}: busy without an assigned session")
                broken_agents.add(agent.agent_id)

        for session_id in self.queue.snapshot():
            if session_id not in self.conversations:
                violations.append(f"queue: unknown session {session_id}")
                broken_sessions.add(session_id)

        if not violations:
            return violations
        for violation in violations:
            logger.error("Invariant violation: {}", violation)
        if self.strict:
            raise InvariantViolation("; ".join(violations))
        self._heal(broken_sessions, broken_agents)
        return violations

    def _heal(self, session_ids, agent_ids):
        agent_ids = set(agent_ids)
        for session_id in session_ids:
            conversation = self.conversations.get(session_id)
            for agent_id in (self.agents.agent_for(session_id), conversation.assigned_agent if conversation else None):
                if agent_id:
                    agent_ids.add(agent_id)
            self.agents.unbind_session(session_id)
            self.queue.dequeue(session_id)
            if conversation is not None:
                self.conversations.release(session_id)
        for agent_id in agent_ids:
            agent = self.agents.get(agent_id)
            session_id = self.agents.session_for(agent_id)
            if session_id is not None and self._still_assigned(session_id, agent_id):
                self.agents.mark_busy(agent_id, session_id)
                continue
            self.agents.unbind(agent_id)
            if agent is not None:
                self.agents.mark_available(agent_id)
            self.timeouts.cancel((RECONNECT_TIMER, agent_id))

    # ==================== Presence and analytics ====================

    def stats(self) -> Dict[str, Any]:
        """Live counters for the health endpoint."""
        return {
            "status": "OK",
            "agents": self.agents.size(),
            "online_agents": len(self.agents.list_online()),
            "available_agents": sum(1 for a in self.agents.list_online() if a.status == AgentStatus.ONLINE),
            "queue": self.queue.length(),
            "conversations": len(self.conversations),
            "active_sessions": len(self.agents.bindings()),
        }

    async def analytics(self) -> Dict[str, Any]:
        """Totals and 24 hour averages over stored chat history."""
        history = await self.store.list_chat_history(limit=1000)
        since = datetime.now() - timedelta(hours=24)
        recent = [record for record in history if record.end_time >= since]
        rated = [record.satisfaction.rating for record in recent if record.satisfaction]
        durations = [(record.end_time - record.start_time).total_seconds() / 60 for record in recent]
        return {
            "total_chats": len(history),
            "last_24h_chats": len(recent),
            "average_satisfaction": round(sum(rated) / len(rated), 2) if rated else 0,
            "average_chat_duration": round(sum(durations) / len(durations), 2) if durations else 0,
            "current_queue": self.queue.length(),
            "agents": self.agents.size(),
            "agent_statuses": {
                agent.agent_id: {
                    "name": agent.name,
                    "username": agent.identity.username,
                    "status": agent.status.value,
                    "session_id": agent.current_session_id,
                    "connected": is_open(agent.channel),
                }
                for agent in self.agents.list_all()
            },
            "pending_reconnections": sum(
                1 for agent in self.agents.list_all()
                if agent.status == AgentStatus.BUSY and not is_open(agent.channel)
            ),
        }

    def shutdown(self):
        self.timeouts.cancel_all()

    # ==================== Helpers ====================

    def _still_assigned(self, session_id: str, agent_id: str) -> bool:
        conversation = self.conversations.get(session_id)
        return conversation is not None and conversation.has_human and conversation.assigned_agent == agent_id

    def _unbind_agent(self, agent_id: Optional[str], session_id: str):
        self.agents.unbind_session(session_id)
        if agent_id is None:
            return
        if self.agents.session_for(agent_id) == session_id:
            self.agents.unbind(agent_id)
        agent = self.agents.get(agent_id)
        if agent is not None and agent.current_session_id in (session_id, None):
            self.agents.mark_available(agent_id)
        self.timeouts.cancel((RECONNECT_TIMER, agent_id))

    def _remove(self, session_id: str):
        self.timeouts.cancel((QUEUE_TIMER, session_id))
        self.timeouts.cancel((IDLE_TIMER, session_id))
        self.queue.dequeue(session_id)
        self.conversations.remove(session_id)
        self._drop_lock(session_id)

    def _drop_lock(self, session_id: str):
        lock = self._customer_locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._customer_locks[session_id]

    def _discard(self, session_id: str, reason: EndReason):
        """Drop an AI-only conversation, keeping its history only if it was meaningful."""
        conversation = self.conversations.get(session_id)
        record = None
        if len(conversation.messages) > self.meaningful_message_count:
            record = self._history_record(conversation, reason)
        was_queued = session_id in self.queue
        self._remove(session_id)
        record_session_end(reason.value, False)
        return record, was_queued

    def _history_record(self, conversation: Conversation, reason: EndReason) -> ChatHistoryRecord:
        return ChatHistoryRecord(
            session_id=conversation.session_id,
            messages=[message.model_copy() for message in conversation.messages],
            start_time=conversation.start_time,
            agent_id=conversation.assigned_agent,
            agent_name=conversation.agent_name or ("Unknown" if conversation.has_human else None),
            end_reason=reason,
            customer_info=conversation.customer_info,
        )

    async def _save_history(self, record: Optional[ChatHistoryRecord]):
        if record is None:
            return
        try:
            await self.store.save_chat_history(record)
        except Exception as e:
            logger.error("Failed to save chat history for {}: {}", record.session_id, e)

    async def _log_human_request(self, conversation: Conversation):
        try:
            await self.store.log_intent(IntentLogRecord(
                session_id=conversation.session_id,
                message="Customer requested human support",
                intent="human_request",
                category="support",
                confidence=0,
                response_type="human_request",
                customer_info=conversation.customer_info,
            ))
        except Exception as e:
            logger.error("Failed to log human request for {}: {}", conversation.session_id, e)

    async def _send_survey(self, channel, session_id: str, interaction_type: str):
        await send_if_open(channel, {
            "type": "satisfaction_survey",
            "session_id": session_id,
            "interaction_type": interaction_type,
            "message": (
                "How was your experience with our AI assistant?"
                if interaction_type == "ai_only"
                else "How was your experience with our support?"
            ),
            "options": catalog.SATISFACTION_OPTIONS,
        })

    def _waiting_notice(self, session_id: str) -> Dict[str, Any]:
        position = self.queue.position_of(session_id)
        return {
            "type": "waiting_for_human",
            "position": position,
            "total_in_queue": self.queue.length(),
            "message": (
                f"You've been added to the queue (position {position}). "
                "A human agent will be with you shortly."
            ),
        }

    async def _notify_left_queue(self, session_id: str):
        await self._broadcast_agents({
            "type": "customer_left_queue",
            "session_id": session_id,
            "remaining_queue": self.queue.length(),
        })

    async def _broadcast_agents(self, message: Dict[str, Any], exclude: Optional[str] = None) -> int:
        channels = [agent.channel for agent in self.agents.list_online() if agent.agent_id != exclude]
        return await broadcast(channels, message)


def _customer_info(data: Dict[str, Any]) -> Optional[CustomerInfo]:
    raw = data.get("customer_info")
    if not isinstance(raw, dict):
        return None
    try:
        return CustomerInfo.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring malformed customer_info: {}", raw)
        return None


def _dump_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    return [message.model_dump(mode="json") for message in messages]
