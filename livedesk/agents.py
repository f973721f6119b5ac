"""
Agent presence registry and the agent <-> session cross-reference maps.
"""
from typing import Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel

from livedesk.channels import is_open
from livedesk.models import Agent, AgentIdentity, AgentStatus


class JoinOutcome(BaseModel):
    agent: Agent
    reconnected: bool = False
    session_id: Optional[str] = None
    stale_session_id: Optional[str] = None


class AgentRegistry:
    """
    Tracks every agent that has joined since startup.

    Entries are never deleted on disconnect: only the channel handle is
    cleared, so a busy agent keeps its session across a network blip.
    """

    def __init__(self):
        self._agents: Dict[str, Agent] = {}
        self._agent_sessions: Dict[str, str] = {}
        self._session_agents: Dict[str, str] = {}

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def join(
        self,
        agent_id: str,
        channel,
        identity: AgentIdentity,
        still_assigned: Callable[[str, str], bool],
    ) -> JoinOutcome:
        """
        Register or re-register an agent connection.

        If the agent already holds a session binding and ``still_assigned``
        confirms the conversation is still theirs, the binding is restored
        onto the new channel. A stale binding is dropped and the agent joins
        fresh.
        """
        agent = self._agents.get(agent_id)
        previous_session = self._agent_sessions.get(agent_id)

        if previous_session is not None:
            if still_assigned(previous_session, agent_id):
                agent = agent or Agent(agent_id=agent_id, identity=identity)
                agent.identity = identity
                agent.channel = channel
                agent.status = AgentStatus.BUSY
                agent.current_session_id = previous_session
                self._agents[agent_id] = agent
                logger.info("Agent {} reconnected to session {}", agent_id, previous_session)
                return JoinOutcome(agent=agent, reconnected=True, session_id=previous_session)

            logger.info("Session {} is no longer valid for agent {}", previous_session, agent_id)
            self.unbind(agent_id)

        if agent is None:
            agent = Agent(agent_id=agent_id, identity=identity)
            self._agents[agent_id] = agent
        agent.identity = identity
        agent.channel = channel
        # Without a binding an agent cannot be busy.
        agent.status = AgentStatus.ONLINE
        agent.current_session_id = None
        return JoinOutcome(agent=agent, stale_session_id=previous_session)

    def mark_busy(self, agent_id: str, session_id: str):
        agent = self._agents[agent_id]
        agent.status = AgentStatus.BUSY
        agent.current_session_id = session_id

    def mark_available(self, agent_id: str):
        agent = self._agents.get(agent_id)
        if agent is not None:
            agent.status = AgentStatus.ONLINE
            agent.current_session_id = None

    def detach_channel(self, agent_id: str):
        agent = self._agents.get(agent_id)
        if agent is not None:
            agent.channel = None

    def find_by_channel(self, channel) -> Optional[Agent]:
        if channel is None:
            return None
        for agent in self._agents.values():
            if agent.channel is channel:
                return agent
        return None

    def list_online(self) -> List[Agent]:
        """Agents whose channel is currently open."""
        return [agent for agent in self._agents.values() if is_open(agent.channel)]

    def list_all(self) -> List[Agent]:
        return list(self._agents.values())

    def size(self) -> int:
        return len(self._agents)

    # ==================== Cross-reference maps ====================

    def bind(self, agent_id: str, session_id: str):
        self._agent_sessions[agent_id] = session_id
        self._session_agents[session_id] = agent_id

    def unbind(self, agent_id: str) -> Optional[str]:
        session_id = self._agent_sessions.pop(agent_id, None)
        if session_id is not None and self._session_agents.get(session_id) == agent_id:
            del self._session_agents[session_id]
        return session_id

    def unbind_session(self, session_id: str) -> Optional[str]:
        agent_id = self._session_agents.pop(session_id, None)
        if agent_id is not None and self._agent_sessions.get(agent_id) == session_id:
            del self._agent_sessions[agent_id]
        return agent_id

    def session_for(self, agent_id: str) -> Optional[str]:
        return self._agent_sessions.get(agent_id)

    def agent_for(self, session_id: str) -> Optional[str]:
        return self._session_agents.get(session_id)

    def bindings(self) -> Dict[str, str]:
        return dict(self._agent_sessions)
