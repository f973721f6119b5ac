from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from livedesk.live_agent_system import SessionCoordinator
from livedesk.main import create_app
from livedesk.models import ChatHistoryRecord, ChatMessage, CustomerInfo, EndReason, Satisfaction


@pytest.fixture
def client(engine, store, directory):
    coordinator = SessionCoordinator(engine, store, directory, strict=True)
    with TestClient(create_app(coordinator)) as client:
        yield client


def test_health_reports_empty_desk(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["service"] == "livedesk"
    assert body["agents"] == 0
    assert body["queue"] == 0


def test_customer_websocket_gets_ai_reply(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "customer_message", "session_id": "web-1", "message": "hello"})
        reply = websocket.receive_json()

        assert reply["type"] == "ai_response"
        assert reply["session_id"] == "web-1"
        assert client.get("/health").json()["conversations"] == 1


def test_agent_join_over_websocket(client, directory):
    token = directory.issue_token("agent-1")
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "agent_join", "token": token})
        status = websocket.receive_json()

        assert status["type"] == "agent_status"
        assert status["user"]["name"] == "Alice"
        assert client.get("/health").json()["online_agents"] == 1


def test_agent_join_with_bad_token(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "agent_join", "token": "nope"})
        assert websocket.receive_json() == {"type": "auth_error", "message": "Invalid token"}


def test_chat_history_and_analytics(client, store):
    now = datetime.now()
    store.chat_history.append(ChatHistoryRecord(
        session_id="old-1",
        messages=[ChatMessage(role="customer", content="hi"), ChatMessage(role="agent", content="hello")],
        start_time=now - timedelta(minutes=10),
        end_time=now,
        agent_id="agent-1",
        agent_name="Alice",
        end_reason=EndReason.AGENT_ENDED,
        customer_info=CustomerInfo(name="Dana"),
        satisfaction=Satisfaction(rating=5),
    ))

    history = client.get("/chat-history", params={"limit": 10}).json()["history"]
    assert history[0]["session_id"] == "old-1"
    assert history[0]["message_count"] == 2
    assert history[0]["customer_name"] == "Dana"
    assert history[0]["rating"] == 5

    analytics = client.get("/analytics").json()
    assert analytics["total_chats"] == 1
    assert analytics["last_24h_chats"] == 1
    assert analytics["average_satisfaction"] == 5
    assert analytics["average_chat_duration"] == pytest.approx(10, abs=0.1)
