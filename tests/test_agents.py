import pytest

from livedesk.agents import AgentRegistry
from livedesk.models import AgentIdentity, AgentStatus

from conftest import make_channel

ALICE = AgentIdentity(agent_id="agent-1", username="alice", name="Alice")
BOB = AgentIdentity(agent_id="agent-2", username="bob", name="Bob")


def never_assigned(session_id, agent_id):
    return False


def always_assigned(session_id, agent_id):
    return True


@pytest.fixture
def registry():
    return AgentRegistry()


class TestAgentRegistry:

    def test_fresh_join_is_online(self, registry):
        channel = make_channel("agent")
        outcome = registry.join("agent-1", channel, ALICE, never_assigned)

        assert outcome.reconnected is False
        assert outcome.agent.status == AgentStatus.ONLINE
        assert outcome.agent.channel is channel
        assert outcome.agent.name == "Alice"
        assert registry.find_by_channel(channel) is outcome.agent

    def test_detached_agents_are_known_but_not_online(self, registry):
        registry.join("agent-1", make_channel("agent"), ALICE, never_assigned)
        closed = make_channel("agent")
        registry.join("agent-2", closed, BOB, never_assigned)

        registry.detach_channel("agent-1")
        closed.mark_closed()

        assert registry.list_online() == []
        assert registry.size() == 2
        assert registry.get("agent-1").channel is None

    def test_rejoin_restores_live_binding(self, registry):
        registry.join("agent-1", make_channel("agent"), ALICE, never_assigned)
        registry.bind("agent-1", "s1")
        registry.mark_busy("agent-1", "s1")
        registry.detach_channel("agent-1")

        new_channel = make_channel("agent")
        outcome = registry.join("agent-1", new_channel, ALICE, always_assigned)

        assert outcome.reconnected is True
        assert outcome.session_id == "s1"
        assert outcome.agent.status == AgentStatus.BUSY
        assert outcome.agent.current_session_id == "s1"
        assert outcome.agent.channel is new_channel
        assert registry.session_for("agent-1") == "s1"

    def test_rejoin_drops_stale_binding(self, registry):
        registry.join("agent-1", make_channel("agent"), ALICE, never_assigned)
        registry.bind("agent-1", "s1")
        registry.mark_busy("agent-1", "s1")

        outcome = registry.join("agent-1", make_channel("agent"), ALICE, never_assigned)

        assert outcome.reconnected is False
        assert outcome.stale_session_id == "s1"
        assert outcome.agent.status == AgentStatus.ONLINE
        assert outcome.agent.current_session_id is None
        assert registry.session_for("agent-1") is None
        assert registry.agent_for("s1") is None

    def test_cross_reference_maps_stay_symmetric(self, registry):
        registry.bind("agent-1", "s1")
        registry.bind("agent-2", "s2")
        assert registry.agent_for("s1") == "agent-1"
        assert registry.bindings() == {"agent-1": "s1", "agent-2": "s2"}

        assert registry.unbind("agent-1") == "s1"
        assert registry.agent_for("s1") is None

        assert registry.unbind_session("s2") == "agent-2"
        assert registry.session_for("agent-2") is None
        assert registry.bindings() == {}

    def test_mark_available_resets_status(self, registry):
        registry.join("agent-1", make_channel("agent"), ALICE, never_assigned)
        registry.mark_busy("agent-1", "s1")
        registry.mark_available("agent-1")

        agent = registry.get("agent-1")
        assert agent.status == AgentStatus.ONLINE
        assert agent.current_session_id is None
