"""
Inbox assembly from a flat message list (no database).
"""
from datetime import datetime, timedelta, timezone

from models import Message
from services.conversation_keys import derive_conversation_id
from services.conversation_threads import assemble_conversations, counterpart_ids
from services.user_directory import ProfileSummary

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _msg(mid, sender, recipient, content, minute, *, read=False, sender_name=None, recipient_name=None, naive=False):
    ts = T0 + timedelta(minutes=minute)
    if naive:
        ts = ts.replace(tzinfo=None)
    return Message(
        id=mid,
        conversation_id=derive_conversation_id(sender, recipient),
        sender_id=sender,
        recipient_id=recipient,
        content=content,
        sender_name=sender_name,
        recipient_name=recipient_name,
        timestamp=ts,
        read=read,
    )


def test_groups_by_counterpart_and_orders_latest_first():
    messages = [
        _msg("m1", "u1", "u2", "hi u2", 0),
        _msg("m2", "u3", "u1", "hi u1 from u3", 5),
        _msg("m3", "u2", "u1", "reply from u2", 10),
    ]

    summaries = assemble_conversations("u1", messages)

    assert [s.conversation_id for s in summaries] == ["u1_u2", "u1_u3"]
    assert summaries[0].last_message_content == "reply from u2"
    assert summaries[0].other_party_id == "u2"
    assert summaries[1].other_party_id == "u3"


def test_unread_counts_only_messages_addressed_to_viewer():
    messages = [
        _msg("m1", "u2", "u1", "one", 0),
        _msg("m2", "u2", "u1", "two", 1, read=True),
        _msg("m3", "u1", "u2", "mine", 2),
        _msg("m4", "u2", "u1", "three", 3),
    ]

    [summary] = assemble_conversations("u1", messages)

    assert summary.unread_count == 2
    # The viewer's own unread outgoing message counts for the other side only.
    [other_view] = assemble_conversations("u2", messages)
    assert other_view.unread_count == 1


def test_input_order_does_not_matter():
    messages = [
        _msg("m2", "u2", "u1", "newest", 9),
        _msg("m1", "u1", "u2", "oldest", 1),
    ]

    [summary] = assemble_conversations("u1", messages)

    assert summary.last_message_content == "newest"


def test_profile_name_and_avatar_used():
    profiles = {"u2": ProfileSummary(id="u2", name="Coach Kim", profile_image_url="https://img/kim.png", role="coach")}
    messages = [_msg("m1", "u2", "u1", "hello", 0, sender_name="Kim (old)")]

    [summary] = assemble_conversations("u1", messages, profiles)

    assert summary.other_party_name == "Coach Kim"
    assert summary.other_party_avatar == "https://img/kim.png"


def test_denormalized_name_when_profile_missing():
    messages = [
        _msg("m1", "u1", "u2", "hello", 0, recipient_name="Kim"),
    ]

    [summary] = assemble_conversations("u1", messages, {"u2": None})

    assert summary.other_party_name == "Kim"
    assert summary.other_party_avatar is None


def test_placeholders_fall_back_to_unknown_user():
    messages = [_msg("m1", "u1", "u2", "hello", 0, recipient_name="Unknown Recipient")]

    [summary] = assemble_conversations("u1", messages)

    assert summary.other_party_name == "Unknown User"


def test_naive_and_aware_timestamps_compare():
    messages = [
        _msg("m1", "u1", "u2", "aware", 0),
        _msg("m2", "u3", "u1", "naive later", 5, naive=True),
    ]

    summaries = assemble_conversations("u1", messages)

    assert summaries[0].other_party_id == "u3"
    assert summaries[0].last_message_timestamp.tzinfo is not None


def test_equal_timestamps_break_ties_by_message_id():
    messages = [
        _msg("b", "u2", "u1", "second by id", 0),
        _msg("a", "u2", "u1", "first by id", 0),
    ]

    [summary] = assemble_conversations("u1", messages)

    assert summary.last_message_content == "second by id"


def test_counterpart_ids_are_distinct_in_first_seen_order():
    messages = [
        _msg("m1", "u1", "u3", "x", 2),
        _msg("m2", "u2", "u1", "y", 1),
        _msg("m3", "u3", "u1", "z", 0),
    ]

    assert counterpart_ids(messages, "u1") == ["u3", "u2"]


def test_empty_input():
    assert assemble_conversations("u1", []) == []
