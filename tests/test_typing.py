from chatd.typing_bus import TypingTracker

from conftest import FakeTimers


def _tracker(timeout_s: float = 3.0):
    timers = FakeTimers()
    fired: list[tuple] = []
    tracker = TypingTracker(timeout_s, lambda *args: fired.append(args), timer_factory=timers)
    return tracker, timers, fired


def test_start_reports_transition_once() -> None:
    tracker, timers, _ = _tracker()

    assert tracker.start("u1", "alice", "general") is True
    assert tracker.start("u1", "alice", "general") is False
    assert tracker.typing_users("general") == ["alice"]
    # The renewal replaced the first timer.
    assert timers.timers[0].cancelled
    assert timers.pending() == [timers.timers[1]]


def test_stop_reports_transition_once() -> None:
    tracker, timers, _ = _tracker()
    tracker.start("u1", "alice", "general")

    assert tracker.stop("u1", "general") is True
    assert tracker.stop("u1", "general") is False
    assert timers.pending() == []


def test_expire_ignores_superseded_timer() -> None:
    tracker, timers, fired = _tracker()
    tracker.start("u1", "alice", "general")
    tracker.start("u1", "alice", "general")

    timers.timers[0].fire()
    old_generation = fired[-1][2]
    assert tracker.expire("u1", "general", old_generation) is None
    assert tracker.is_typing("u1", "general")

    timers.timers[1].fire()
    assert tracker.expire(*fired[-1]) == "alice"
    assert not tracker.is_typing("u1", "general")


def test_zero_timeout_starts_no_timer() -> None:
    tracker, timers, _ = _tracker(timeout_s=0)

    assert tracker.start("u1", "alice", "general") is True
    assert timers.timers == []


def test_clear_user_limited_to_rooms() -> None:
    tracker, timers, _ = _tracker()
    tracker.start("u1", "alice", "a")
    tracker.start("u1", "alice", "b")
    tracker.start("u2", "bob", "a")

    assert tracker.clear_user("u1", {"b"}) == [("b", "alice")]
    assert tracker.clear_user("u1") == [("a", "alice")]
    assert tracker.typing_users("a") == ["bob"]

    tracker.clear_all()
    assert tracker.typing_users("a") == []
    assert timers.pending() == []
