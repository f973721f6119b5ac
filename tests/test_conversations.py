from livedesk.conversations import ConversationRegistry
from livedesk.models import ChatMessage, ConversationState, CustomerInfo

from conftest import make_channel


class TestConversationRegistry:

    def test_get_or_create_starts_in_ai_handling(self):
        registry = ConversationRegistry()
        channel = make_channel("customer")

        conversation = registry.get_or_create("s1", channel)

        assert conversation.state == ConversationState.AI_HANDLING
        assert conversation.has_human is False
        assert conversation.customer_channel is channel
        assert registry.get_or_create("s1") is conversation
        assert len(registry) == 1

    def test_attach_reports_creation_and_keeps_customer_info(self):
        registry = ConversationRegistry()
        first, created = registry.attach("s1", make_channel(), CustomerInfo(name="Dana"))
        assert created is True

        second_channel = make_channel()
        again, created = registry.attach("s1", second_channel)
        assert created is False
        assert again is first
        assert again.customer_channel is second_channel
        assert again.customer_info.name == "Dana"

    def test_first_assignment_wins(self):
        registry = ConversationRegistry()
        registry.get_or_create("s1")
        registry.mark_queued("s1")

        assert registry.try_assign("s1", "agent-1", "Alice", make_channel("agent")) is True
        assert registry.try_assign("s1", "agent-2", "Bob", make_channel("agent")) is False

        conversation = registry.get("s1")
        assert conversation.state == ConversationState.HUMAN_ASSIGNED
        assert conversation.assigned_agent == "agent-1"
        assert conversation.agent_name == "Alice"

    def test_try_assign_unknown_session(self):
        registry = ConversationRegistry()
        assert registry.try_assign("missing", "agent-1", "Alice", None) is False

    def test_release_clears_agent_fields(self):
        registry = ConversationRegistry()
        registry.get_or_create("s1")
        registry.try_assign("s1", "agent-1", "Alice", make_channel("agent"))

        conversation = registry.release("s1")

        assert conversation.state == ConversationState.AI_HANDLING
        assert conversation.assigned_agent is None
        assert conversation.agent_name is None
        assert conversation.agent_channel is None

    def test_mark_queued_refused_while_assigned(self):
        registry = ConversationRegistry()
        registry.get_or_create("s1")
        registry.try_assign("s1", "agent-1", "Alice", None)
        assert registry.mark_queued("s1") is False
        assert registry.get("s1").state == ConversationState.HUMAN_ASSIGNED

    def test_remove_marks_ended(self):
        registry = ConversationRegistry()
        registry.get_or_create("s1")

        removed = registry.remove("s1")

        assert removed.state == ConversationState.ENDED
        assert removed.end_time is not None
        assert "s1" not in registry
        assert registry.remove("s1") is None

    def test_messages_and_channel_lookup(self):
        registry = ConversationRegistry()
        channel = make_channel()
        registry.get_or_create("s1", channel)
        registry.get_or_create("s2", make_channel())

        assert registry.append_message("s1", ChatMessage(role="customer", content="hi")) is True
        assert registry.append_message("missing", ChatMessage(role="customer", content="hi")) is False
        assert registry.find_by_customer_channel(channel).session_id == "s1"
        assert registry.find_by_customer_channel(make_channel()) is None
        assert registry.get("s1").last_message_preview("none") == "hi"
        assert registry.get("s2").last_message_preview("none") == "none"
