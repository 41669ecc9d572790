import pytest

from chatd.constants import DELETED_TEXT, MAX_TEXT_CHARS
from chatd.errors import AuthorizationError, NotFound, PermissionDenied, StorageError, ValidationError
from chatd.gateway import MessageGateway
from chatd.models import FileRef, MessageContent, PrivateTarget, RoomTarget


class Clock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gateway(store, clock):
    return MessageGateway(store, page_size=3, clock=clock)


@pytest.fixture
def people(store):
    alice = store.create_user("alice")
    bob = store.create_user("bob")
    carol = store.create_user("carol")
    room = store.create_room("general", alice.id)
    store.add_room_member(room, bob.id)
    return alice, bob, carol, room


def test_persist_room_message(gateway, people) -> None:
    alice, _, _, room = people
    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="hi"))

    assert msg.room_id == room
    assert msg.sender.username == "alice"
    assert msg.created_at == 1_000_000
    assert msg.to_event("alice")["_id"] == msg.id


@pytest.mark.parametrize("text", [None, "", "   "])
def test_text_message_needs_content(gateway, people, text) -> None:
    alice, _, _, room = people
    with pytest.raises(ValidationError, match="Message content is required"):
        gateway.persist(alice.id, RoomTarget(room), MessageContent(text=text))


def test_text_length_limit(gateway, people) -> None:
    alice, _, _, room = people
    gateway.persist(alice.id, RoomTarget(room), MessageContent(text="x" * MAX_TEXT_CHARS))
    with pytest.raises(ValidationError):
        gateway.persist(alice.id, RoomTarget(room), MessageContent(text="x" * (MAX_TEXT_CHARS + 1)))


def test_image_needs_file_or_url(gateway, people) -> None:
    alice, _, _, room = people
    with pytest.raises(ValidationError):
        gateway.persist(alice.id, RoomTarget(room), MessageContent(), "image")

    msg = gateway.persist(
        alice.id, RoomTarget(room), MessageContent(file=FileRef(url="/u/a.png")), "image"
    )
    assert msg.content.file.url == "/u/a.png"


def test_unknown_message_type(gateway, people) -> None:
    alice, _, _, room = people
    with pytest.raises(ValidationError, match="unknown messageType"):
        gateway.persist(alice.id, RoomTarget(room), MessageContent(text="hi"), "video")


def test_edit_within_window_by_sender_only(gateway, people, clock) -> None:
    alice, bob, _, room = people
    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="hi"))

    with pytest.raises(PermissionDenied):
        gateway.edit(msg.id, bob.id, "hijack")

    clock.now += 60_000
    edited = gateway.edit(msg.id, alice.id, "hello")
    assert edited.text == "hello"
    assert edited.is_edited and edited.edited_at == clock.now

    clock.now += 15 * 60 * 1000
    with pytest.raises(PermissionDenied, match="Cannot edit this message"):
        gateway.edit(msg.id, alice.id, "too late")


def test_delete_replaces_content(gateway, people, store) -> None:
    alice, _, _, room = people
    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="oops"))

    deleted = gateway.delete(msg.id, alice.id)

    assert deleted.is_deleted
    assert deleted.text == DELETED_TEXT
    assert store.get_message(msg.id).text == DELETED_TEXT
    with pytest.raises(NotFound):
        gateway.delete(msg.id, alice.id)


def test_reactions(gateway, people) -> None:
    alice, bob, _, room = people
    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="hi"))

    updated = gateway.add_reaction(msg.id, bob.id, " +1 ")
    assert [(r.user_id, r.emoji) for r in updated.reactions] == [(bob.id, "+1")]

    with pytest.raises(ValidationError, match="Reaction already exists"):
        gateway.add_reaction(msg.id, bob.id, "+1")
    with pytest.raises(ValidationError, match="Emoji is required"):
        gateway.add_reaction(msg.id, bob.id, "")

    assert gateway.remove_reaction(msg.id, bob.id, "+1").reactions == []
    # Removing again is a no-op, not an error.
    assert gateway.remove_reaction(msg.id, bob.id, "+1").reactions == []


def test_room_reactions_need_membership(gateway, people) -> None:
    alice, _, carol, room = people
    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="hi"))

    with pytest.raises(AuthorizationError):
        gateway.add_reaction(msg.id, carol.id, "+1")


def test_private_messages_only_touchable_by_participants(gateway, people) -> None:
    alice, bob, carol, _ = people
    msg = gateway.persist(alice.id, PrivateTarget(bob.id), MessageContent(text="psst"))

    assert msg.is_private
    gateway.mark_read(msg.id, bob.id)
    with pytest.raises(PermissionDenied):
        gateway.mark_read(msg.id, carol.id)


def test_mark_read_is_idempotent(gateway, people, clock) -> None:
    alice, bob, _, room = people
    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="hi"))

    first = gateway.mark_read(msg.id, bob.id)
    clock.now += 5000
    second = gateway.mark_read(msg.id, bob.id)

    assert len(second.read_by) == 1
    assert second.read_by[0].read_at == first.read_by[0].read_at


def test_room_history_pages_oldest_first(gateway, people, clock) -> None:
    alice, bob, carol, room = people
    for i in range(5):
        clock.now += 1
        gateway.persist(alice.id, RoomTarget(room), MessageContent(text=f"m{i}"))

    first = gateway.room_history(room, bob.id)
    assert [m.text for m in first.messages] == ["m2", "m3", "m4"]
    assert first.has_more and first.page == 1
    assert all(m.is_read_by(bob.id) for m in first.messages)

    second = gateway.room_history(room, bob.id, page=2)
    assert [m.text for m in second.messages] == ["m0", "m1"]
    assert not second.has_more

    with pytest.raises(AuthorizationError):
        gateway.room_history(room, carol.id)


def test_private_history(gateway, people, clock) -> None:
    alice, bob, _, _ = people
    gateway.persist(alice.id, PrivateTarget(bob.id), MessageContent(text="hi bob"))
    clock.now += 1
    gateway.persist(bob.id, PrivateTarget(alice.id), MessageContent(text="hi alice"))

    page = gateway.private_history(alice.id, bob.id)
    assert [m.text for m in page.messages] == ["hi bob", "hi alice"]
    # Only messages addressed to the reader get marked read.
    assert page.messages[1].is_read_by(alice.id)
    assert not page.messages[0].is_read_by(alice.id)

    with pytest.raises(NotFound, match="User not found"):
        gateway.private_history(alice.id, "nobody")


class _BrokenStore:
    def find_user_by_id(self, user_id):
        raise OSError("disk gone")

    def save_message(self, draft, *, created_at):
        raise TimeoutError("locked")


def test_backend_failures_become_storage_errors() -> None:
    gateway = MessageGateway(_BrokenStore())

    with pytest.raises(StorageError) as exc:
        gateway.persist("u1", RoomTarget("r1"), MessageContent(text="hi"))
    assert exc.value.client_text() == "storage failure"

    with pytest.raises(StorageError):
        gateway.private_history("u1", "u2")


def test_private_message_to_unknown_user_is_not_stored(gateway, store, people) -> None:
    alice, _, _, _ = people

    with pytest.raises(NotFound, match="Recipient not found"):
        gateway.persist(alice.id, PrivateTarget("no-such-user"), MessageContent(text="hello?"))

    assert store.private_messages(alice.id, "no-such-user", limit=10, offset=0) == []


def test_stored_message_survives_failed_sender_lookup(gateway, store, people, monkeypatch) -> None:
    alice, _, _, room = people
    save = store.save_message

    def save_without_profile(draft, *, created_at):
        msg = save(draft, created_at=created_at)
        msg.sender = None
        return msg

    def lookup_fails(user_id):
        raise StorageError("database is locked")

    monkeypatch.setattr(store, "save_message", save_without_profile)
    monkeypatch.setattr(store, "find_user_by_id", lookup_fails)

    msg = gateway.persist(alice.id, RoomTarget(room), MessageContent(text="kept"))

    assert msg.sender is None
    assert store.get_message(msg.id).text == "kept"
