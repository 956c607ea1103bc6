"""IRCv3 capability negotiation and SASL authentication handlers.

Handlers take an :class:`Ircv3Session` and an :class:`IrcMessage` whose
command has already been consumed. A handler that cannot process its
message raises :class:`Ircv3Error`; the caller reports the message as a
server error.
"""

from __future__ import annotations

import base64
import contextlib
import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional

from .netio import IoError, io_err

# Buffer limits for the SASL PLAIN exchange
_SASL_DECODED_MAX = 300
_SASL_ENCODED_MAX = 400

_DEFAULT_CAPS = (
    "account-notify",
    "away-notify",
    "chghost",
    "extended-join",
    "multi-prefix",
    "sasl",
)


@dataclass
class Cap:
    """One IRCv3 capability and its negotiation state."""

    name: str
    req_auto: bool = True
    supports_del: bool = True
    supported: bool = False
    req: bool = False
    set: bool = False
    val: Optional[str] = None


class Caps:
    """An ordered collection of capabilities, looked up by name."""

    def __init__(self, caps: Optional[Iterable[Cap]] = None) -> None:
        if caps is None:
            caps = (Cap(name) for name in _DEFAULT_CAPS)
        self._caps = {cap.name: cap for cap in caps}

    def __iter__(self) -> Iterator[Cap]:
        return iter(self._caps.values())

    def __len__(self) -> int:
        return len(self._caps)

    def get(self, name: str) -> Optional[Cap]:
        """Return the capability called ``name``, or None if unknown."""
        return self._caps.get(name)

    def req_count(self) -> int:
        """Number of capabilities with a request pending."""
        return sum(1 for cap in self if cap.req)

    def _blank(self) -> "Caps":
        return Caps(
            Cap(cap.name, req_auto=cap.req_auto, supports_del=cap.supports_del)
            for cap in self
        )


class SaslMech(enum.Enum):
    """SASL authentication mechanism."""

    NONE = "NONE"
    EXTERNAL = "EXTERNAL"
    PLAIN = "PLAIN"


class SaslState(enum.IntEnum):
    """Progress of SASL authentication."""

    NONE = 0
    REQ_MECH = 1
    AUTHENTICATED = 2


@dataclass
class IrcMessage:
    """A received message; ``param`` hands out its parameters in order."""

    command: str
    params: List[str] = field(default_factory=list)
    _pos: int = field(default=0, repr=False, compare=False)

    def param(self) -> Optional[str]:
        """Return the next parameter, or None when there are no more."""
        if self._pos >= len(self.params):
            return None
        value = self.params[self._pos]
        self._pos += 1
        return value


class Ircv3Error(Exception):
    """A message could not be handled."""


@dataclass
class Ircv3Session:
    """Per-server IRCv3 state and the actions handlers may take.

    ``send`` writes one line to the server and may raise IoError;
    ``info`` and ``error`` show messages; ``disconnect``, when given,
    drops the link.
    """

    send: Callable[[str], None]
    info: Callable[[str], None]
    error: Callable[[str], None]
    disconnect: Optional[Callable[[], None]] = None
    registered: bool = False
    caps: Caps = field(default_factory=Caps)
    sasl_mech: SaslMech = SaslMech.NONE
    sasl_state: SaslState = SaslState.NONE
    sasl_user: Optional[str] = None
    sasl_pass: Optional[str] = None


def _send(session: Ircv3Session, line: str) -> None:
    try:
        session.send(line)
    except IoError as exc:
        raise Ircv3Error(f"Send fail: {io_err(exc.code)}") from None


def _drop_unregistered(session: Ircv3Session) -> None:
    session.sasl_state = SaslState.NONE
    if not session.registered and session.disconnect is not None:
        with contextlib.suppress(IoError):
            session.disconnect()


def _cap_req_send(caps: Caps, session: Ircv3Session) -> None:
    names = " ".join(cap.name for cap in caps if cap.req)
    _send(session, f"CAP REQ :{names}")


def _cap_end(session: Ircv3Session) -> None:
    if session.registered:
        return
    if session.caps.req_count():
        return
    if session.sasl_state not in (SaslState.NONE, SaslState.AUTHENTICATED):
        return
    _send(session, "CAP END")


def _sasl_init(session: Ircv3Session) -> None:
    if session.sasl_mech == SaslMech.NONE:
        return
    if session.sasl_state in (SaslState.REQ_MECH, SaslState.AUTHENTICATED):
        return
    _send(session, f"AUTHENTICATE {session.sasl_mech.value}")
    session.sasl_state = SaslState.REQ_MECH


def _cap_list_tokens(message: IrcMessage, name: str) -> List[str]:
    caps = message.param()
    if caps is None:
        raise Ircv3Error(f"CAP {name}: parameter is null")
    tokens = caps.split()
    if not tokens:
        raise Ircv3Error(f"CAP {name}: parameter is empty")
    return tokens


def _cap_ls(session: Ircv3Session, message: IrcMessage) -> None:
    multiline = message.param()
    caps = message.param()

    if multiline is None:
        raise Ircv3Error("CAP LS: parameter is null")
    if multiline == "*" and caps is None:
        raise Ircv3Error("CAP LS: parameter is null")
    if multiline != "*" and caps is not None:
        raise Ircv3Error("CAP LS: invalid parameters")

    if caps is None:
        caps, multiline = multiline, None

    if session.registered:
        session.info(f"CAP LS: {caps or '(no capabilities)'}")
        return

    for token in caps.split():
        key, sep, val = token.partition("=")
        cap = session.caps.get(key)
        if cap is None:
            continue
        cap.supported = True
        cap.val = val if sep else None
        if cap.req_auto:
            cap.req = True

    if multiline is not None:
        return

    if session.caps.req_count():
        _cap_req_send(session.caps, session)
    else:
        _send(session, "CAP END")


def _cap_list(session: Ircv3Session, message: IrcMessage) -> None:
    multiline = message.param()
    caps = message.param()

    if multiline is None:
        raise Ircv3Error("CAP LIST: parameter is null")
    if caps is not None and multiline != "*":
        raise Ircv3Error("CAP LIST: invalid parameters")
    if multiline == "*" and caps is None:
        raise Ircv3Error("CAP LIST: parameter is null")

    if caps is None:
        caps = multiline

    session.info(f"CAP LIST: {caps or '(no capabilities)'}")


def _cap_ack(session: Ircv3Session, message: IrcMessage) -> None:
    errors = 0

    for token in _cap_list_tokens(message, "ACK"):
        unset = token.startswith("-")
        name = token[1:] if unset else token
        cap = session.caps.get(name)

        if cap is None:
            session.error(f"CAP ACK: '{name}' not supported")
            errors += 1
            continue
        if not cap.req:
            session.error(f"CAP ACK: '{'-' if unset else ''}{name}' was not requested")
            errors += 1
            continue
        if not unset and cap.set:
            session.error(f"CAP ACK: '{name}' was set")
            errors += 1
            continue
        if unset and not cap.set:
            session.error(f"CAP ACK: '{name}' was not set")
            errors += 1
            continue

        cap.req = False
        cap.set = not unset

        value = f"={cap.val}" if cap.val else ""
        session.info(f"capability change accepted: {'-' if unset else ''}{name}{value}")

        if name == "sasl":
            try:
                _sasl_init(session)
            except Ircv3Error as exc:
                session.error(str(exc))

    if errors:
        raise Ircv3Error("CAP ACK: parameter errors")

    _cap_end(session)


def _cap_nak(session: Ircv3Session, message: IrcMessage) -> None:
    for name in _cap_list_tokens(message, "NAK"):
        cap = session.caps.get(name)
        if cap is not None:
            cap.req = False
        session.info(f"capability change rejected: {name}")

    _cap_end(session)


def _cap_del(session: Ircv3Session, message: IrcMessage) -> None:
    for name in _cap_list_tokens(message, "DEL"):
        cap = session.caps.get(name)
        if cap is None:
            continue
        if not cap.supports_del:
            raise Ircv3Error(f"CAP DEL: '{name}' doesn't support DEL")
        cap.req = False
        cap.set = False
        cap.supported = False
        session.info(f"capability lost: {name}")


def _cap_new(session: Ircv3Session, message: IrcMessage) -> None:
    batch = session.caps._blank()

    for name in _cap_list_tokens(message, "NEW"):
        cap = session.caps.get(name)
        batch_cap = batch.get(name)
        if cap is None or batch_cap is None:
            continue

        cap.supported = True

        if cap.set or cap.req or not cap.req_auto:
            session.info(f"new capability: {name}")
        else:
            cap.req = True
            batch_cap.req = True
            session.info(f"new capability: {name} (auto-req)")

    if batch.req_count():
        _cap_req_send(batch, session)


_CAP_HANDLERS = {
    "LIST": _cap_list,
    "LS": _cap_ls,
    "ACK": _cap_ack,
    "NAK": _cap_nak,
    "DEL": _cap_del,
    "NEW": _cap_new,
}


def recv_cap(session: Ircv3Session, message: IrcMessage) -> None:
    """Handle ``CAP <target> <subcommand> ...``."""
    if message.param() is None:
        raise Ircv3Error("CAP: target is null")

    command = message.param()
    if command is None:
        raise Ircv3Error("CAP: command is null")

    handler = _CAP_HANDLERS.get(command)
    if handler is None:
        raise Ircv3Error(f"CAP: unrecognized subcommand '{command}'")

    handler(session, message)


def _check_sasl_response(session: Ircv3Session, message: IrcMessage, mech: str) -> None:
    if session.sasl_state != SaslState.REQ_MECH:
        raise Ircv3Error(f"Invalid SASL state for mechanism {mech}: {int(session.sasl_state)}")

    resp = message.param()
    if resp is None:
        raise Ircv3Error(f"Invalid SASL response for mechanism {mech}: response is null")
    if resp != "+":
        raise Ircv3Error(f"Invalid SASL response for mechanism {mech}: '{resp}'")


def _authenticate_external(session: Ircv3Session, message: IrcMessage) -> None:
    _check_sasl_response(session, message, "EXTERNAL")
    _send(session, "AUTHENTICATE +")


def _authenticate_plain(session: Ircv3Session, message: IrcMessage) -> None:
    if not session.sasl_user:
        raise Ircv3Error("SASL mechanism PLAIN requires a username")
    if not session.sasl_pass:
        raise Ircv3Error("SASL mechanism PLAIN requires a password")

    _check_sasl_response(session, message, "PLAIN")

    user = session.sasl_user.encode("utf-8")
    decoded = user + b"\0" + user + b"\0" + session.sasl_pass.encode("utf-8")

    if len(decoded) >= _SASL_DECODED_MAX:
        raise Ircv3Error("SASL decoded auth message too long")

    encoded = base64.b64encode(decoded)

    if len(encoded) >= _SASL_ENCODED_MAX:
        raise Ircv3Error("SASL encoded auth message too long")

    _send(session, f"AUTHENTICATE {encoded.decode('ascii')}")


def recv_authenticate(session: Ircv3Session, message: IrcMessage) -> None:
    """Handle ``AUTHENTICATE`` for the session's SASL mechanism."""
    if session.sasl_mech == SaslMech.NONE:
        raise Ircv3Error("AUTHENTICATE: no SASL mechanism")
    if session.sasl_mech == SaslMech.EXTERNAL:
        _authenticate_external(session, message)
    elif session.sasl_mech == SaslMech.PLAIN:
        _authenticate_plain(session, message)
    else:
        raise RuntimeError("unknown SASL authentication mechanism")


def numeric_900(session: Ircv3Session, message: IrcMessage) -> None:
    """RPL_LOGGEDIN: ``<nick>!<ident>@<host> <account> :<message>``."""
    if message.param() is None:
        raise Ircv3Error("RPL_LOGGEDIN: missing nick")

    account = message.param()
    if account is None:
        raise Ircv3Error("RPL_LOGGEDIN: missing account")

    text = message.param()
    if text:
        session.info(f"SASL success: {text}")
    else:
        session.info(f"SASL success: you are logged in as {account}")


def numeric_901(session: Ircv3Session, message: IrcMessage) -> None:
    """RPL_LOGGEDOUT: ``<nick>!<ident>@<host> :<message>``."""
    if message.param() is None:
        raise Ircv3Error("RPL_LOGGEDOUT: missing nick")

    text = message.param()
    session.info(text or "You are now logged out")


def _sasl_failure(session: Ircv3Session, message: IrcMessage, default: str) -> None:
    text = message.param()
    session.error(text or default)
    _drop_unregistered(session)


def numeric_902(session: Ircv3Session, message: IrcMessage) -> None:
    """ERR_NICKLOCKED."""
    _sasl_failure(session, message, "You must use a nick assigned to you")


def numeric_903(session: Ircv3Session, message: IrcMessage) -> None:
    """RPL_SASLSUCCESS; ends capability negotiation when nothing is pending."""
    text = message.param()
    session.info(text or "SASL authentication successful")
    session.sasl_state = SaslState.AUTHENTICATED
    _cap_end(session)


def numeric_904(session: Ircv3Session, message: IrcMessage) -> None:
    """ERR_SASLFAIL."""
    _sasl_failure(session, message, "SASL authentication failed")


def numeric_905(session: Ircv3Session, message: IrcMessage) -> None:
    """ERR_SASLTOOLONG."""
    _sasl_failure(session, message, "SASL message too long")


def numeric_906(session: Ircv3Session, message: IrcMessage) -> None:
    """ERR_SASLABORTED."""
    _sasl_failure(session, message, "SASL authentication aborted")


def numeric_907(session: Ircv3Session, message: IrcMessage) -> None:
    """ERR_SASLALREADY."""
    _sasl_failure(session, message, "You have already authenticated using SASL")


def numeric_908(session: Ircv3Session, message: IrcMessage) -> None:
    """RPL_SASLMECHS: ``<mechanisms> :are available SASL mechanisms``."""
    mechanisms = message.param()
    if mechanisms is None:
        raise Ircv3Error("RPL_SASLMECHS: missing mechanisms")

    text = message.param()
    if text:
        session.info(f"{mechanisms} {text}")
    else:
        session.info(f"{mechanisms} are available SASL mechanisms")