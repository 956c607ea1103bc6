import pytest

from rirc.netio import (
    MESG_LEN,
    Backoff,
    IoError,
    IoErrorCode,
    IoState,
    frame_message,
    io_err,
    transition_event,
)


@pytest.mark.parametrize(
    "code, text",
    [
        (IoErrorCode.NONE, "success"),
        (IoErrorCode.CXED, "socket connected"),
        (IoErrorCode.CXNG, "socket connection in progress"),
        (IoErrorCode.DXED, "socket not connected"),
        (IoErrorCode.FMT, "failed to format message"),
        (IoErrorCode.THREAD, "failed to create thread"),
        (IoErrorCode.SSL_WRITE, "ssl write failure"),
        (IoErrorCode.TRUNC, "data truncated"),
    ],
)
def test_io_err_strings(code, text):
    assert io_err(code) == text
    assert io_err(int(code)) == text


def test_io_err_unknown():
    assert io_err(99) == "unknown error"
    assert io_err(-1) == "unknown error"


def test_io_error_carries_code_and_message():
    err = IoError(IoErrorCode.TRUNC)
    assert err.code is IoErrorCode.TRUNC
    assert str(err) == io_err(IoErrorCode.TRUNC)


def test_backoff_first_is_base():
    b = Backoff()
    assert b.next() == b.base


def test_backoff_grows_by_factor_and_caps():
    b = Backoff(base=3, factor=5, maximum=100)
    prev = b.next()
    assert prev == 3
    for _ in range(10):
        cur = b.next()
        assert cur == min(prev * 5, 100)
        assert cur <= 100
        prev = cur
    assert prev == 100


def test_backoff_reset():
    b = Backoff()
    first = b.next()
    b.next()
    b.next()
    b.reset()
    assert b.current == 0
    assert b.next() == first


def test_backoff_rejects_nonpositive():
    with pytest.raises(ValueError):
        Backoff(base=0)


def test_frame_message_appends_crlf():
    assert frame_message("PING %s", "server") == b"PING server\r\n"
    assert frame_message("CAP END") == b"CAP END\r\n"


def test_frame_message_longest_fits():
    text = "a" * (MESG_LEN - 1)
    framed = frame_message("%s", text)
    assert framed == text.encode() + b"\r\n"
    assert len(framed) == MESG_LEN + 1


def test_frame_message_truncated():
    with pytest.raises(IoError) as info:
        frame_message("%s", "a" * MESG_LEN)
    assert info.value.code is IoErrorCode.TRUNC


def test_frame_message_empty_is_format_error():
    with pytest.raises(IoError) as info:
        frame_message("%s", "")
    assert info.value.code is IoErrorCode.FMT


def test_frame_message_bad_format():
    with pytest.raises(IoError) as info:
        frame_message("PRIVMSG %s %s", "only-one")
    assert info.value.code is IoErrorCode.FMT


def test_transition_connected():
    assert transition_event(IoState.CXNG, IoState.CXED) == "D"


def test_transitions_allowed_are_distinct():
    pairs = [
        (IoState.DXED, IoState.CXNG),
        (IoState.RXNG, IoState.CXNG),
        (IoState.RXNG, IoState.DXED),
        (IoState.CXNG, IoState.DXED),
        (IoState.CXED, IoState.DXED),
        (IoState.PING, IoState.DXED),
        (IoState.CXNG, IoState.CXED),
        (IoState.CXNG, IoState.RXNG),
        (IoState.CXED, IoState.CXNG),
        (IoState.PING, IoState.CXNG),
        (IoState.CXED, IoState.PING),
        (IoState.PING, IoState.PING),
        (IoState.PING, IoState.CXED),
    ]
    labels = [transition_event(a, b) for a, b in pairs]
    assert len(set(labels)) == len(pairs)


@pytest.mark.parametrize(
    "old, new",
    [
        (IoState.DXED, IoState.CXED),
        (IoState.DXED, IoState.DXED),
        (IoState.CXED, IoState.CXED),
        (IoState.RXNG, IoState.PING),
        (IoState.INVALID, IoState.CXNG),
    ],
)
def test_transitions_disallowed(old, new):
    with pytest.raises(ValueError):
        transition_event(old, new)


def test_transition_unknown_state_value():
    with pytest.raises(ValueError):
        transition_event(42, IoState.CXNG)