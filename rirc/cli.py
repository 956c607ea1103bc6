"""Command line parsing and the program entry point.

Each ``-s/--server`` starts a new server entry. The options that follow it
apply to that server until the next ``-s/--server``.
"""

from __future__ import annotations

import os
import sys
import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from .connection import Connection, callback_lock
from .ircv3 import SaslMech
from .netio import Flag, IoError, io_err

VERSION = "0.1.7"
RUNTIME_NAME = "rirc"

MAX_CLI_SERVERS = 64

HELP = f"""
rirc v{VERSION}

Usage:
  rirc [-hv] [-s host [options] ...]

Info:
  -h, --help      Print help message and exit
  -v, --version   Print rirc version and exit

Options:
  -s, --server=HOST         Set connection hostname
  -p, --port=PORT           Set connection port
  -w, --pass=PASS           Set IRC password
  -u, --username=USERNAME   Set IRC username
  -r, --realname=REALNAME   Set IRC realname
  -m, --mode=MODE           Set IRC user modes
  -n, --nicks=NICKS         Set comma separated list of nicks to use
  -c, --chans=CHANNELS      Set comma separated list of channels to join
      --tls-cert=PATH       Set TLS client certificate file path
      --tls-ca-file=PATH    Set TLS peer certificate file path
      --tls-ca-path=PATH    Set TLS peer certificate directory path
      --tls-verify=MODE     Set TLS peer certificate verification mode
      --tls-disable         Set TLS disabled
      --sasl=MECHANISM      Authenticate with SASL mechanism
      --sasl-user=USER      Authenticate with SASL username
      --sasl-pass=PASS      Authenticate with SASL password
      --ipv4                Use IPv4 addresses only
      --ipv6                Use IPv6 addresses only
"""

VERSION_STRING = f"rirc v{VERSION}"

_OPTION_NAMES = {
    "s": "-s/--server",
    "p": "-p/--port",
    "w": "-w/--pass",
    "u": "-u/--username",
    "r": "-r/--realname",
    "m": "-m/--mode",
    "n": "-n/--nicks",
    "c": "-c/--chans",
    "0": "--tls-cert",
    "1": "--tls-ca-file",
    "2": "--tls-ca-path",
    "3": "--tls-verify",
    "4": "--tls-disable",
    "5": "--sasl",
    "6": "--sasl-user",
    "7": "--sasl-pass",
    "8": "--ipv4",
    "9": "--ipv6",
}

_SHORT_WITH_ARG = "spwurmnc"
_SHORT_NO_ARG = "hv"

# Flags whose long form takes no argument
_LONG_NO_ARG = "hv489"

# Long option name -> (flag, takes an argument)
_LONG = {
    display.rpartition("--")[2]: (flag, flag not in _LONG_NO_ARG)
    for flag, display in {
        **_OPTION_NAMES,
        "h": "-h/--help",
        "v": "-v/--version",
    }.items()
}

# Options that simply store their argument on the current server
_STRING_FIELDS = {
    "p": "port",
    "w": "password",
    "u": "username",
    "r": "realname",
    "m": "mode",
    "n": "nicks",
    "c": "chans",
    "0": "tls_cert",
    "1": "tls_ca_file",
    "2": "tls_ca_path",
    "6": "sasl_user",
    "7": "sasl_pass",
}

_TLS_VERIFY = {
    "0": Flag.TLS_VRFY_DISABLED,
    "DISABLED": Flag.TLS_VRFY_DISABLED,
    "1": Flag.TLS_VRFY_OPTIONAL,
    "OPTIONAL": Flag.TLS_VRFY_OPTIONAL,
    "2": Flag.TLS_VRFY_REQUIRED,
    "REQUIRED": Flag.TLS_VRFY_REQUIRED,
}

_SASL_MECHS = ("EXTERNAL", "PLAIN")


class ArgumentError(Exception):
    """The command line is invalid."""


@dataclass
class ServerOptions:
    """Connection settings for one server given on the command line."""

    host: str
    port: Optional[str] = None
    password: Optional[str] = None
    username: Optional[str] = None
    realname: Optional[str] = None
    mode: Optional[str] = None
    nicks: Optional[str] = None
    chans: Optional[str] = None
    tls_ca_file: Optional[str] = None
    tls_ca_path: Optional[str] = None
    tls_cert: Optional[str] = None
    sasl: Optional[str] = None
    sasl_user: Optional[str] = None
    sasl_pass: Optional[str] = None
    ipv: Flag = Flag.IPV_UNSPEC
    tls: Flag = Flag.TLS_ENABLED
    tls_vrfy: Flag = Flag.TLS_VRFY_REQUIRED

    @property
    def flags(self) -> Flag:
        """Connection flags for this server."""
        return self.ipv | self.tls | self.tls_vrfy

    @property
    def sasl_mech(self) -> SaslMech:
        """The SASL mechanism requested, or NONE."""
        return SaslMech(self.sasl.upper()) if self.sasl else SaslMech.NONE


def option_name(flag: str) -> str:
    """Return the printable name of an option flag."""
    try:
        return _OPTION_NAMES[flag]
    except KeyError:
        raise ValueError(f"unknown option flag '{flag}'") from None


def _match_long(name: str, token: str) -> Tuple[str, bool]:
    if name in _LONG:
        return _LONG[name]
    matches = [key for key in _LONG if name and key.startswith(name)]
    if len(matches) == 1:
        return _LONG[matches[0]]
    raise ArgumentError(f"unknown option '{token}'")


def _missing(flag: str) -> ArgumentError:
    return ArgumentError(f"option '{option_name(flag)}' requires an argument")


def _iter_options(argv: Sequence[str]) -> Iterator[Tuple[Optional[str], Optional[str]]]:
    """Yield ``(flag, value)`` per option; positional arguments come as ``(None, arg)``."""
    args = iter(argv)
    for token in args:
        if token == "--":
            for rest in args:
                yield None, rest
            return

        if token.startswith("--"):
            name, eq, value = token[2:].partition("=")
            flag, takes_arg = _match_long(name, token)
            if takes_arg:
                if not eq:
                    value = next(args, None)
                    if value is None:
                        raise _missing(flag)
                yield flag, value
            elif eq:
                raise ArgumentError(f"unknown option '{token}'")
            else:
                yield flag, None
            continue

        if token.startswith("-") and token != "-":
            chars = token[1:]
            for pos, char in enumerate(chars):
                if char in _SHORT_WITH_ARG:
                    value = chars[pos + 1:] or next(args, None)
                    if value is None:
                        raise _missing(char)
                    yield char, value
                    break
                if char in _SHORT_NO_ARG:
                    yield char, None
                    continue
                raise ArgumentError(f"unknown option '{token}'")
            continue

        yield None, token


def parse_args(argv, default_nicks=None, default_username=None, default_realname=None):
    """Parse command line arguments (without the program name).

    Returns the list of servers in the order given. ``-h`` and ``-v`` print
    to stdout and raise SystemExit(0). Raises ArgumentError for invalid input.
    """
    servers: List[ServerOptions] = []
    positional: List[str] = []

    for flag, value in _iter_options(argv):
        if flag is None:
            positional.append(value)
            continue

        if flag == "h":
            print(HELP)
            raise SystemExit(0)

        if flag == "v":
            print(VERSION_STRING)
            raise SystemExit(0)

        if flag == "s":
            if value.startswith("-"):
                raise ArgumentError("-s/--server requires an argument")
            if len(servers) + 1 == MAX_CLI_SERVERS:
                raise ArgumentError(
                    f"exceeded maximum number of servers ({MAX_CLI_SERVERS})"
                )
            servers.append(
                ServerOptions(
                    host=value,
                    username=default_username,
                    realname=default_realname,
                    nicks=default_nicks,
                )
            )
            continue

        if value is not None and value.startswith("-"):
            raise _missing(flag)
        if not servers:
            raise ArgumentError(
                f"option '{option_name(flag)}' requires a server argument first"
            )
        current = servers[-1]

        if flag in _STRING_FIELDS:
            setattr(current, _STRING_FIELDS[flag], value)
        elif flag == "3":
            mode = _TLS_VERIFY.get(value.upper())
            if mode is None:
                raise ArgumentError(f"invalid option for '--tls-verify' '{value}'")
            current.tls_vrfy = mode
        elif flag == "4":
            current.tls = Flag.TLS_DISABLED
        elif flag == "5":
            if value.upper() not in _SASL_MECHS:
                raise ArgumentError(f"invalid option for '--sasl' '{value}'")
            current.sasl = value
        elif flag == "8":
            current.ipv = Flag.IPV_4
        elif flag == "9":
            current.ipv = Flag.IPV_6
        else:
            raise ArgumentError("unknown opt error")

    if positional:
        raise ArgumentError(f"unused option '{positional[0]}'")

    seen = set()
    for entry in servers:
        if entry.port is None:
            entry.port = "6697" if entry.tls == Flag.TLS_ENABLED else "6667"
        key = (entry.host, entry.port)
        if key in seen:
            raise ArgumentError(f"duplicate server: {entry.host}:{entry.port}")
        seen.add(key)

    return servers


def _pw_name() -> str:
    import pwd

    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        raise RuntimeError("getpwuid: no such user") from None


class _ConsoleCallbacks:
    """Writes connection events to stdout."""

    def _line(self, obj, text: str) -> None:
        print(f"[{obj.host}] {text}", flush=True)

    def cxed(self, obj) -> None:
        self._line(obj, "connected")

    def dxed(self, obj) -> None:
        self._line(obj, "disconnected")

    def ping(self, obj, seconds: int) -> None:
        if seconds:
            self._line(obj, f"no activity for {seconds}s")

    def error(self, obj, message: str) -> None:
        self._line(obj, f"-!!- {message}")

    def info(self, obj, message: str) -> None:
        self._line(obj, f"-- {message}")

    def read_soc(self, obj, data: bytes) -> None:
        for line in data.decode("utf-8", errors="replace").splitlines():
            if line:
                self._line(obj, line)


def main(argv=None) -> int:
    """Run the client; returns the process exit status."""
    if argv is None:
        argv = sys.argv[1:]

    name = RUNTIME_NAME

    try:
        servers = parse_args(
            argv,
            default_nicks=None,
            default_username=None,
            default_realname=None,
        )
    except ArgumentError as exc:
        sys.stderr.write(f"{name} {exc}\n{name} --help for usage\n")
        return 1

    if not servers:
        return 0

    default_name = _pw_name()
    for entry in servers:
        entry.username = entry.username or default_name
        entry.realname = entry.realname or default_name
        entry.nicks = entry.nicks or default_name

    callbacks = _ConsoleCallbacks()
    connections = [
        Connection(
            entry,
            entry.host,
            entry.port,
            entry.tls_ca_file,
            entry.tls_ca_path,
            entry.tls_cert,
            entry.flags,
            callbacks,
        )
        for entry in servers
    ]

    for connection in connections:
        try:
            connection.connect()
        except IoError as exc:
            with callback_lock:
                print(f"[{connection.host}] -!!- failed to connect: {io_err(exc.code)}")

    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        for connection in connections:
            try:
                connection.disconnect(True)
            except IoError:
                pass

    return 0