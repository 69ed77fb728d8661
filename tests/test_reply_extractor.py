"""
Reply extraction tests.

Pairing of operator replies with the end-user message they answer, part id
fallback and conversation-level enrichment.
"""

from datetime import datetime, timezone

from reply_sync.models import Message
from reply_sync.normalizer import build_ordered_messages
from reply_sync.reply_extractor import (
    build_reply_records,
    extract_assignee_id,
    extract_replies,
    extract_tags,
    extract_user_identity,
    find_previous_user_message,
)


def user(body, part_id=None, created_at=None):
    return Message(part_id=part_id, role="end_user", body_text=body, created_at=created_at)


def operator(body, part_id=None, created_at=None, author_id="a1", author_name="Agent"):
    return Message(
        part_id=part_id, role="operator", body_text=body, created_at=created_at,
        author_id=author_id, author_name=author_name,
    )


def sample_conversation():
    return {
        "id": "c-100",
        "source": {
            "id": "src-1",
            "created_at": 100,
            "body": "<p>My invoice is wrong</p>",
            "author": {"type": "user", "id": "u1", "name": "Sam", "email": "sam@example.com"},
        },
        "conversation_parts": {"conversation_parts": [
            {
                "id": "p1", "created_at": 200, "body": "<p>Let me check</p>",
                "author": {"type": "admin", "id": "a9", "name": "Ana"},
            },
            {"id": "p2", "created_at": 250, "body": None, "author": {"type": "admin", "id": "a9"}},
            {
                "id": "p3", "created_at": 300, "body": "Thanks!",
                "author": {"type": "user", "id": "u1", "name": "Sam"},
            },
            {
                "id": "p4", "created_at": 400, "body": "You're welcome",
                "author": {"type": "admin", "id": "a9", "name": "Ana"},
            },
        ]},
        "tags": {"type": "tag.list", "tags": [{"name": "billing"}, {"name": "refund"}]},
        "assignee": {"id": 77},
        "contacts": {"contacts": [{"id": "contact-1", "external_id": "ext-42"}]},
    }


class TestFindPreviousUserMessage:
    """Tests for backward lookup of the user message a reply answers."""

    def test_skips_empty_user_messages(self):
        """[user:A, op:B, user:'', op:C] pairs both replies with A."""
        messages = [user("A"), operator("B"), user("   "), operator("C")]

        assert find_previous_user_message(messages, 1) == "A"
        assert find_previous_user_message(messages, 3) == "A"

    def test_nearest_user_wins(self):
        messages = [user("first"), user("second"), operator("reply")]
        assert find_previous_user_message(messages, 2) == "second"

    def test_operators_are_not_candidates(self):
        messages = [operator("earlier reply"), operator("reply")]
        assert find_previous_user_message(messages, 1) is None

    def test_first_message(self):
        assert find_previous_user_message([operator("x")], 0) is None


class TestExtractReplies:
    """Tests for extract_replies."""

    def test_pairs_and_order(self):
        """One record per non-empty operator message, in order."""
        messages = [
            user("A", "u-1", 1), operator("B", "o-1", 2), user("", "u-2", 3), operator("C", "o-2", 4),
        ]

        records = extract_replies("conv", messages)

        assert [(r.part_id, r.agent_reply, r.user_prev_message) for r in records] == [
            ("o-1", "B", "A"),
            ("o-2", "C", "A"),
        ]

    def test_empty_operator_messages_not_emitted(self):
        records = extract_replies("conv", [user("hi"), operator("  ")])
        assert records == []

    def test_reply_timestamp_is_utc(self):
        records = extract_replies("conv", [operator("B", "o-1", 1700000000)])
        assert records[0].reply_created_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_fallback_part_id_uses_created_at(self):
        """Operator messages without an id get a stable synthetic key."""
        records = extract_replies("conv", [user("q"), operator("B", None, 555)])
        assert records[0].part_id == "source_admin_conv_555"

    def test_fallback_part_id_uses_index_without_timestamp(self):
        records = extract_replies("conv", [user("q"), operator("B")])
        assert records[0].part_id == "source_admin_conv_1"

    def test_context_copied_to_every_record(self):
        context = {"tags": "vip", "assignee_id": "9", "user_id": "u"}
        records = extract_replies("conv", [operator("a", "1"), operator("b", "2")], context)

        assert all(r.tags == "vip" and r.assignee_id == "9" and r.user_id == "u" for r in records)

    def test_teammate_fields(self):
        records = extract_replies("conv", [operator("B", "o-1", author_id="a7", author_name="Ana")])
        assert (records[0].teammate_id, records[0].teammate_name) == ("a7", "Ana")


class TestOperatorOnlyConversation:
    """A conversation whose only message is an operator source."""

    def test_operator_source_without_user_message(self):
        """C1: one operator message yields one record with no previous user message."""
        conversation = {
            "id": "C1",
            "source": {"id": "s1", "created_at": 100, "body": "<p>Hi</p>", "author": {"type": "admin"}},
        }

        messages = build_ordered_messages(conversation)
        assert len(messages) == 1
        assert messages[0].role == "operator"
        assert messages[0].body_text == "Hi"

        records = build_reply_records(conversation)
        assert len(records) == 1
        assert records[0].agent_reply == "Hi"
        assert records[0].user_prev_message is None


class TestEnrichment:
    """Tests for conversation-level fields."""

    def test_tags_from_envelope(self):
        assert extract_tags({"tags": {"tags": [{"name": "a"}, {"name": "b"}]}}) == "a, b"

    def test_tags_from_bare_list(self):
        assert extract_tags({"tags": [{"name": "a"}, {}, "junk"]}) == "a"

    def test_no_tags(self):
        assert extract_tags({}) is None
        assert extract_tags({"tags": {"tags": []}}) is None

    def test_assignee_prefers_object(self):
        assert extract_assignee_id({"assignee": {"id": 5}, "admin_assignee_id": 6}) == "5"

    def test_assignee_falls_back_to_admin_assignee_id(self):
        assert extract_assignee_id({"admin_assignee_id": 6}) == "6"
        assert extract_assignee_id({}) is None

    def test_user_identity_from_source_author(self):
        identity = extract_user_identity(sample_conversation())

        assert identity == {
            "user_id": "u1",
            "user_name": "Sam",
            "user_email": "sam@example.com",
            "user_external_id": "ext-42",
        }

    def test_user_identity_from_first_user_part(self):
        """When the source is operator-authored, the first user part supplies identity."""
        conversation = {
            "source": {"author": {"type": "admin", "id": "a1"}},
            "conversation_parts": {"conversation_parts": [
                {"author": {"type": "admin", "id": "a1"}},
                {"author": {"type": "user", "id": "u5", "name": "Lee"}},
            ]},
        }

        identity = extract_user_identity(conversation)
        assert identity["user_id"] == "u5"
        assert identity["user_name"] == "Lee"

    def test_user_identity_contact_fallback(self):
        identity = extract_user_identity({"contacts": {"contacts": [{"id": "c9"}]}})

        assert identity["user_id"] == "c9"
        assert identity["user_name"] is None
        assert identity["user_external_id"] is None


class TestBuildReplyRecords:
    """End-to-end derivation for one conversation."""

    def test_full_conversation(self):
        records = build_reply_records(sample_conversation())

        assert [r.part_id for r in records] == ["p1", "p4"]
        assert records[0].user_prev_message == "My invoice is wrong"
        assert records[1].user_prev_message == "Thanks!"
        assert all(r.conversation_id == "c-100" for r in records)
        assert all(r.tags == "billing, refund" for r in records)
        assert all(r.assignee_id == "77" for r in records)
        assert records[0].teammate_name == "Ana"

    def test_deterministic(self):
        """Deriving twice from the same object gives equal records."""
        assert build_reply_records(sample_conversation()) == build_reply_records(sample_conversation())

    def test_missing_id(self):
        conversation = sample_conversation()
        del conversation["id"]
        assert build_reply_records(conversation) == []
