import pytest

from chatd.constants import (
    K_BODY,
    K_ID,
    K_ROOM,
    K_SRC,
    K_T,
    K_TS,
    K_V,
    PROTOCOL_VERSION,
    T_JOIN_ROOM,
    T_ROOM_MESSAGE,
)
from chatd.envelope import (
    decode,
    decode_envelope,
    encode,
    event_name,
    make_envelope,
    validate_envelope,
)


def test_validate_accepts_make_envelope() -> None:
    env = make_envelope(T_ROOM_MESSAGE, src=b"peer", room="general", body={"message": "hi"})
    validate_envelope(env)
    assert env[K_V] == PROTOCOL_VERSION
    assert env[K_ROOM] == "general"


def test_optional_keys_are_omitted() -> None:
    env = make_envelope(T_JOIN_ROOM, src=b"peer")
    assert K_ROOM not in env
    assert K_BODY not in env


def test_envelope_survives_cbor() -> None:
    env = make_envelope(T_ROOM_MESSAGE, src=b"\x01\x02", body={"message": "hello", 3: b"x"})
    decoded = decode_envelope(encode(env))
    assert decoded[K_T] == T_ROOM_MESSAGE
    assert decoded[K_SRC] == b"\x01\x02"
    assert decoded[K_BODY] == {"message": "hello", 3: b"x"}


@pytest.mark.parametrize("missing", [K_V, K_T, K_ID, K_TS, K_SRC])
def test_validate_rejects_missing_required_key(missing) -> None:
    env = make_envelope(T_JOIN_ROOM, src=b"peer")
    del env[missing]
    with pytest.raises(ValueError, match="missing envelope key"):
        validate_envelope(env)


def test_validate_rejects_unknown_version() -> None:
    env = make_envelope(T_JOIN_ROOM, src=b"peer")
    env[K_V] = PROTOCOL_VERSION + 1
    with pytest.raises(ValueError, match="unsupported version"):
        validate_envelope(env)


def test_validate_rejects_string_keys() -> None:
    with pytest.raises(TypeError):
        validate_envelope({"t": 1})


def test_validate_rejects_empty_room() -> None:
    env = make_envelope(T_JOIN_ROOM, src=b"peer")
    env[K_ROOM] = ""
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_decode_envelope_rejects_non_map() -> None:
    with pytest.raises(TypeError):
        decode_envelope(encode([1, 2, 3]))


def test_decode_round_trips_plain_values() -> None:
    assert decode(encode({0: 1, 1: "a"})) == {0: 1, 1: "a"}


def test_event_name() -> None:
    assert event_name(T_ROOM_MESSAGE) == "room_message"
    assert event_name(999) == "type999"
