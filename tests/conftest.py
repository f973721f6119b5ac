from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from livedesk.channels import Channel
from livedesk.live_agent_system import SessionCoordinator
from livedesk.models import AgentIdentity, AssistantReply, ReplyKind
from livedesk.storage import InMemoryAgentDirectory, InMemoryChatStore


class FakeSocket:
    """Stands in for a starlette WebSocket; records every JSON event sent."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed = False
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(message)

    async def close(self):
        self.closed = True


def make_channel(label="client", fail=False) -> Channel:
    return Channel(FakeSocket(fail=fail), label)


def sent(channel: Channel, event_type=None):
    messages = channel.websocket.sent
    if event_type is None:
        return messages
    return [message for message in messages if message["type"] == event_type]


def sent_types(channel: Channel):
    return [message["type"] for message in channel.websocket.sent]


@pytest.fixture
def store():
    return InMemoryChatStore()


@pytest.fixture
def directory():
    return InMemoryAgentDirectory([
        AgentIdentity(agent_id="agent-1", username="alice", name="Alice"),
        AgentIdentity(agent_id="agent-2", username="bob", name="Bob"),
        AgentIdentity(agent_id="agent-3", username="carol", name="Carol"),
    ])


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.respond = AsyncMock(return_value=AssistantReply(kind=ReplyKind.ANSWER, message="Here is what I found."))
    return engine


@pytest_asyncio.fixture
async def coordinator(engine, store, directory):
    coordinator = SessionCoordinator(
        engine,
        store,
        directory,
        queue_timeout=0.05,
        idle_timeout=5,
        reconnect_window=0.05,
        farewell_delay=0.01,
        strict=True,
    )
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def join_agent(coordinator, directory):
    async def join(agent_id="agent-1"):
        channel = make_channel("agent")
        await coordinator.handle_event(channel, {"type": "agent_join", "token": directory.issue_token(agent_id)})
        return channel
    return join


@pytest.fixture
def open_customer(coordinator):
    async def open_session(session_id="session-1", message="hello"):
        channel = make_channel("customer")
        await coordinator.handle_event(channel, {
            "type": "customer_message",
            "session_id": session_id,
            "message": message,
        })
        return channel
    return open_session
