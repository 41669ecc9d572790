from chatd.rooms import RoomIndex


def test_join_is_idempotent() -> None:
    idx = RoomIndex()
    link = object()

    assert idx.join(link, "general") is True
    assert idx.join(link, "general") is False
    assert idx.members("general") == {link}
    assert idx.subscription_count(link) == 1


def test_leave_only_when_subscribed() -> None:
    idx = RoomIndex()
    link = object()

    assert idx.leave(link, "general") is False
    idx.join(link, "general")
    assert idx.leave(link, "general") is True
    assert idx.members("general") == set()
    assert "general" not in idx.rooms


def test_remove_link_drops_every_subscription() -> None:
    idx = RoomIndex()
    a, b = object(), object()
    idx.join(a, "x")
    idx.join(a, "y")
    idx.join(b, "y")

    assert idx.remove_link(a) == ["x", "y"]
    assert idx.rooms_for(a) == set()
    assert idx.members("y") == {b}
    assert "x" not in idx.rooms


def test_room_ids_keep_case() -> None:
    idx = RoomIndex()
    link = object()
    idx.join(link, "Room")

    assert idx.is_subscribed(link, "Room")
    assert not idx.is_subscribed(link, "room")


def test_stats() -> None:
    idx = RoomIndex()
    a, b = object(), object()
    idx.join(a, "busy")
    idx.join(b, "busy")
    idx.join(a, "quiet")

    stats = idx.get_stats()
    assert stats["rooms_total"] == 2
    assert stats["memberships"] == 3
    assert stats["top_rooms"][0] == ("busy", 2)
