import unittest
from unittest.mock import Mock

from chatfeed.repositories.dynamo import DynamoMessageRepository
from chatfeed.repositories.in_memory import InMemoryMessageRepository
from chatfeed.services.conversations import ConversationIndex


class TestConversationIndex(unittest.TestCase):
    def setUp(self):
        self.messages = InMemoryMessageRepository()
        self.index = ConversationIndex(self.messages)

    def test_empty_when_user_never_chatted(self):
        self.messages.record("bob", "carol")
        self.assertEqual(self.index.audience_for("alice"), set())

    def test_collects_both_directions_without_duplicates(self):
        self.messages.record("alice", "bob")
        self.messages.record("bob", "alice")
        self.messages.record("alice", "bob")
        self.messages.record("carol", "alice")
        self.messages.record("dave", "erin")

        self.assertEqual(self.index.audience_for("alice"), {"bob", "carol"})

    def test_excludes_self_messages(self):
        self.messages.record("alice", "alice")
        self.messages.record("alice", "bob")

        audience = self.index.audience_for("alice")
        self.assertNotIn("alice", audience)
        self.assertEqual(audience, {"bob"})


class TestDynamoMessageRepository(unittest.TestCase):
    def test_queries_both_participant_indexes_and_follows_pages(self):
        table = Mock()
        table.query.side_effect = [
            {"Items": [{"sender_id": "alice", "receiver_id": "bob"}], "LastEvaluatedKey": {"k": 1}},
            {"Items": [{"sender_id": "alice", "receiver_id": "carol"}]},
            {"Items": [{"sender_id": "bob", "receiver_id": "alice"}]},
        ]
        repo = DynamoMessageRepository(table, sender_index="by-sender", receiver_index="by-receiver")

        audience = ConversationIndex(repo).audience_for("alice")

        self.assertEqual(audience, {"bob", "carol"})
        self.assertEqual(table.query.call_count, 3)
        indexes = [c.kwargs["IndexName"] for c in table.query.call_args_list]
        self.assertEqual(indexes, ["by-sender", "by-sender", "by-receiver"])
        self.assertEqual(table.query.call_args_list[1].kwargs["ExclusiveStartKey"], {"k": 1})
        self.assertNotIn("ExclusiveStartKey", table.query.call_args_list[2].kwargs)
        table.scan.assert_not_called()
