import pytest

from chatd.errors import StorageError
from chatd.models import FileRef, MessageContent, MessageDraft, Reaction, ReadReceipt


def _room_draft(sender_id: str, room_id: str, text: str) -> MessageDraft:
    return MessageDraft(sender_id=sender_id, content=MessageContent(text=text), room_id=room_id)


def test_users_and_membership(store) -> None:
    alice = store.create_user("alice", email="alice@example.org")
    bob = store.create_user("bob")
    room = store.create_room("general", alice.id)

    assert store.find_user_by_id(alice.id).username == "alice"
    assert store.find_user_by_id("missing") is None
    # The creator is a member from the start.
    assert store.is_room_member(room, alice.id)
    assert not store.is_room_member(room, bob.id)

    store.add_room_member(room, bob.id)
    store.add_room_member(room, bob.id)
    assert store.is_room_member(room, bob.id)


def test_duplicate_username_is_a_storage_error(store) -> None:
    store.create_user("alice")
    with pytest.raises(StorageError):
        store.create_user("alice")


def test_save_and_load_message(store) -> None:
    alice = store.create_user("alice")
    room = store.create_room("general", alice.id)
    draft = MessageDraft(
        sender_id=alice.id,
        content=MessageContent(text="look", file=FileRef(url="/uploads/a.png", size=12)),
        message_type="image",
        room_id=room,
        reply_to="abc",
    )

    saved = store.save_message(draft, created_at=1234)
    loaded = store.get_message(saved.id)

    assert loaded.text == "look"
    assert loaded.content.file == FileRef(url="/uploads/a.png", size=12)
    assert loaded.message_type == "image"
    assert loaded.room_id == room
    assert loaded.recipient_id is None
    assert loaded.is_private is False
    assert loaded.reply_to == "abc"
    assert loaded.created_at == 1234
    assert loaded.sender.username == "alice"


def test_update_message_persists_receipts_and_reactions(store) -> None:
    alice = store.create_user("alice")
    room = store.create_room("general", alice.id)
    msg = store.save_message(_room_draft(alice.id, room, "hi"), created_at=1)

    msg.is_edited = True
    msg.edited_at = 2
    msg.content = MessageContent(text="hello")
    msg.read_by.append(ReadReceipt(user_id=alice.id, read_at=3))
    msg.reactions.append(Reaction(user_id=alice.id, emoji="+1", added_at=4))
    store.update_message(msg)

    loaded = store.get_message(msg.id)
    assert loaded.text == "hello"
    assert loaded.is_edited and loaded.edited_at == 2
    assert loaded.is_read_by(alice.id)
    assert [(r.user_id, r.emoji) for r in loaded.reactions] == [(alice.id, "+1")]


def test_room_messages_newest_first_without_deleted(store) -> None:
    alice = store.create_user("alice")
    room = store.create_room("general", alice.id)
    first = store.save_message(_room_draft(alice.id, room, "one"), created_at=1)
    store.save_message(_room_draft(alice.id, room, "two"), created_at=2)
    store.save_message(_room_draft(alice.id, room, "three"), created_at=3)

    first.is_deleted = True
    first.deleted_at = 10
    store.update_message(first)

    texts = [m.text for m in store.room_messages(room, limit=10, offset=0)]
    assert texts == ["three", "two"]
    assert [m.text for m in store.room_messages(room, limit=1, offset=1)] == ["two"]


def test_private_messages_cover_both_directions(store) -> None:
    alice = store.create_user("alice")
    bob = store.create_user("bob")
    carol = store.create_user("carol")

    def pm(sender, recipient, text, ts):
        return store.save_message(
            MessageDraft(
                sender_id=sender.id,
                content=MessageContent(text=text),
                recipient_id=recipient.id,
            ),
            created_at=ts,
        )

    pm(alice, bob, "hi bob", 1)
    pm(bob, alice, "hi alice", 2)
    pm(alice, carol, "hi carol", 3)

    convo = store.private_messages(alice.id, bob.id, limit=10, offset=0)
    assert [m.text for m in convo] == ["hi alice", "hi bob"]
    assert all(m.is_private for m in convo)


def test_update_unknown_message_fails(store) -> None:
    alice = store.create_user("alice")
    room = store.create_room("general", alice.id)
    msg = store.save_message(_room_draft(alice.id, room, "hi"), created_at=1)
    msg.id = "does-not-exist"

    with pytest.raises(StorageError):
        store.update_message(msg)
