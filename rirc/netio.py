"""Connection states, flags, error codes and message framing for network IO.

A connection is always in one of these states:

* ``DXED``: socket disconnected, passive
* ``RXNG``: socket disconnected, pending reconnect
* ``CXNG``: socket connection in progress
* ``CXED``: socket connected
* ``PING``: socket connected, network state in question

Allowed transitions carry the labels used by the connection state machine:

* ``A1`` dxed -> cxng, ``A2`` rxng -> cxng (explicit connect or retry)
* ``B1`` rxng -> dxed, ``B2`` cxng -> dxed (connection cancelled)
* ``B3`` cxed -> dxed, ``B4`` ping -> dxed (connection closed)
* ``D`` cxng -> cxed (connection successful)
* ``E`` cxng -> rxng (connection failed, retrying)
* ``F1`` cxed -> cxng, ``F2`` ping -> cxng (connection lost)
* ``G`` cxed -> ping, ``H`` ping -> ping, ``I`` ping -> cxed (ping tracking)

Failed connection attempts retry with exponential backoff:
``t(0) = base`` and ``t(n) = min(t(n - 1) * factor, max)``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

# RFC 2812, section 2.3: maximum message length excluding CR-LF
MESG_LEN = 510

PING_MIN = 150
PING_REFRESH = 5
PING_MAX = 300

RECONNECT_BACKOFF_BASE = 4
RECONNECT_BACKOFF_FACTOR = 2
RECONNECT_BACKOFF_MAX = 86400

DEFAULT_CA_CERTS = (
    "/etc/ssl/ca-bundle.pem",
    "/etc/ssl/cert.pem",
    "/etc/ssl/certs/ca-certificates.crt",
    "/etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem",
    "/etc/pki/tls/cacert.pem",
    "/etc/pki/tls/certs/ca-bundle.crt",
)


class Flag(enum.IntFlag):
    """Connection option flags."""

    IPV_UNSPEC = 1 << 1
    IPV_4 = 1 << 2
    IPV_6 = 1 << 3
    TLS_ENABLED = 1 << 4
    TLS_DISABLED = 1 << 5
    TLS_VRFY_DISABLED = 1 << 6
    TLS_VRFY_OPTIONAL = 1 << 7
    TLS_VRFY_REQUIRED = 1 << 8


class IoState(enum.IntEnum):
    """State of a connection."""

    INVALID = 0
    DXED = 1
    RXNG = 2
    CXNG = 3
    CXED = 4
    PING = 5


class IoErrorCode(enum.IntEnum):
    """Reasons an IO request can fail."""

    NONE = 0
    CXED = 1
    CXNG = 2
    DXED = 3
    FMT = 4
    SSL_WRITE = 5
    THREAD = 6
    TRUNC = 7


_ERROR_STRINGS = {
    IoErrorCode.NONE: "success",
    IoErrorCode.CXED: "socket connected",
    IoErrorCode.CXNG: "socket connection in progress",
    IoErrorCode.DXED: "socket not connected",
    IoErrorCode.FMT: "failed to format message",
    IoErrorCode.THREAD: "failed to create thread",
    IoErrorCode.SSL_WRITE: "ssl write failure",
    IoErrorCode.TRUNC: "data truncated",
}


def io_err(err) -> str:
    """Return the description of an IO error code."""
    try:
        return _ERROR_STRINGS[IoErrorCode(err)]
    except (ValueError, TypeError):
        return "unknown error"


class IoError(Exception):
    """An IO request failed; ``code`` tells why."""

    def __init__(self, code: IoErrorCode) -> None:
        self.code = IoErrorCode(code)
        super().__init__(io_err(self.code))


@dataclass
class Backoff:
    """Exponential reconnect delay, in seconds."""

    base: int = RECONNECT_BACKOFF_BASE
    factor: int = RECONNECT_BACKOFF_FACTOR
    maximum: int = RECONNECT_BACKOFF_MAX
    current: int = 0

    def __post_init__(self) -> None:
        if self.base < 1 or self.factor < 1 or self.maximum < 1:
            raise ValueError("backoff base, factor and maximum must be positive")

    def next(self) -> int:
        """Advance to the next delay and return it."""
        if self.current == 0:
            self.current = self.base
        else:
            self.current = min(self.factor * self.current, self.maximum)
        return self.current

    def reset(self) -> None:
        """Start over from the base delay on the next attempt."""
        self.current = 0


def frame_message(fmt: str, *args) -> bytes:
    """Format a printf-style message and terminate it with CR-LF.

    Raises IoError(FMT) when formatting fails or yields nothing, and
    IoError(TRUNC) when the message does not fit in a single IRC line.
    """
    try:
        text = fmt % args
    except (TypeError, ValueError, KeyError):
        raise IoError(IoErrorCode.FMT) from None

    data = text.encode("utf-8")

    if not data:
        raise IoError(IoErrorCode.FMT)

    if len(data) >= MESG_LEN:
        raise IoError(IoErrorCode.TRUNC)

    return data + b"\r\n"


_TRANSITIONS = {
    (IoState.DXED, IoState.CXNG): "A1",
    (IoState.RXNG, IoState.CXNG): "A2",
    (IoState.RXNG, IoState.DXED): "B1",
    (IoState.CXNG, IoState.DXED): "B2",
    (IoState.CXED, IoState.DXED): "B3",
    (IoState.PING, IoState.DXED): "B4",
    (IoState.CXNG, IoState.CXED): "D",
    (IoState.CXNG, IoState.RXNG): "E",
    (IoState.CXED, IoState.CXNG): "F1",
    (IoState.PING, IoState.CXNG): "F2",
    (IoState.CXED, IoState.PING): "G",
    (IoState.PING, IoState.PING): "H",
    (IoState.PING, IoState.CXED): "I",
}


def transition_event(old, new) -> str:
    """Return the label of the transition from ``old`` to ``new``.

    Raises ValueError for a transition the state machine does not allow.
    """
    try:
        key = (IoState(old), IoState(new))
    except ValueError:
        raise ValueError(f"invalid state transition from: {old} to: {new}") from None
    try:
        return _TRANSITIONS[key]
    except KeyError:
        raise ValueError(
            f"invalid state transition from: {int(key[0])} to: {int(key[1])}"
        ) from None