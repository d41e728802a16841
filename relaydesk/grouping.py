"""
Conversation grouping for the delivery pipeline.

A conversation is every message sharing one (sender, receiver) pair. The
relay only accepts a conversation's messages in strictly increasing
timestamp order, so dispatch always walks conversation by conversation,
oldest first.
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

from relaydesk.schemas import MessageRecord


def conversation_key(message) -> tuple[str, str]:
    """(sender, receiver) of a record or ORM row."""
    return (message.sender, message.receiver)


@dataclass(frozen=True)
class ConversationGroup:
    """Messages of one conversation, ascending by unix_timestamp."""
    sender: str
    receiver: str
    messages: tuple

    @property
    def key(self) -> tuple[str, str]:
        return (self.sender, self.receiver)

    def __len__(self) -> int:
        return len(self.messages)


def group_conversations(messages: Iterable) -> list[ConversationGroup]:
    """
    Partition messages into conversation groups.

    Groups come out in order of first appearance in the input. Within a
    group, messages are sorted by unix_timestamp; the sort is stable, so
    equal timestamps keep their input order.

    Args:
        messages: MessageRecord snapshots (or ORM rows) in list order

    Returns:
        List of ConversationGroup
    """
    buckets: dict[tuple[str, str], list] = {}
    for message in messages:
        buckets.setdefault(conversation_key(message), []).append(message)

    return [
        ConversationGroup(
            sender=sender,
            receiver=receiver,
            messages=tuple(sorted(members, key=lambda m: m.unix_timestamp)),
        )
        for (sender, receiver), members in buckets.items()
    ]


def flatten(groups: Sequence[ConversationGroup]) -> list[MessageRecord]:
    """Concatenate groups, keeping group order and each group's internal order."""
    return [message for group in groups for message in group.messages]


def arrange(messages: Iterable) -> list:
    """List order used by the store: conversations together, oldest first."""
    return flatten(group_conversations(messages))
