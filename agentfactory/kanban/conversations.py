"""Conversation thread helpers.

Threads are how the factory talks to people: blockers, questions for the
user, signoff reports and merge notices all land here.
"""

import logging

from agentfactory.kanban.models import Conversation, Message

logger = logging.getLogger(__name__)

THREAD_TYPES = (
    "dev_discussion", "qa_feedback", "pm_checkin", "blocker", "user_question",
    "dev_signoff", "qa_signoff", "ux_signoff", "security_signoff", "pm_signoff",
)


def open_thread(store, ticket_id: str, thread_type: str, title: str, agent: str,
                content: str, message_type: str = "status_update", status: str = "open") -> Conversation:
    """Create a thread whose first message is ``content``."""
    if thread_type not in THREAD_TYPES:
        raise ValueError(f"Unknown thread type: {thread_type}")
    conv = Conversation(
        id=store.next_id(f"conv-{ticket_id}"),
        ticket_id=ticket_id,
        type=thread_type,
        title=title,
        status=status,
        messages=[Message(id=store.next_id("msg"), agent=agent, type=message_type, content=content)],
    )
    store.create_conversation(conv)
    logger.debug(f"[THREAD] {ticket_id}: opened {thread_type} '{title}'")
    return conv


def post(store, conversation_id: str, agent: str, content: str, message_type: str = "response") -> None:
    store.add_message(conversation_id, Message(id=store.next_id("msg"), agent=agent, type=message_type, content=content))
