from __future__ import annotations

from typing import Set

from chatfeed.repositories.base import MessageRepository


class ConversationIndex:
    """
    Who has a user exchanged direct messages with?

    The result is the notification audience for that user's activity and the
    author filter for their feed.
    """

    def __init__(self, messages: MessageRepository) -> None:
        self.messages = messages

    def audience_for(self, user_id: str) -> Set[str]:
        audience: Set[str] = set()
        for msg in self.messages.messages_for(user_id):
            sender = str(msg.get("sender_id") or "")
            receiver = str(msg.get("receiver_id") or "")
            other = receiver if sender == user_id else sender
            if other:
                audience.add(other)
        # Self-messages would otherwise put the user in their own audience.
        audience.discard(user_id)
        return audience
