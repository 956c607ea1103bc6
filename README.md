# rirc

The core of an IRC client:

- `rirc.netio`: connection flags (`Flag`), states (`IoState`), error
  codes (`IoErrorCode`, `IoError`, `io_err`), the reconnect delay
  (`Backoff`), message framing (`frame_message`) and the names of the
  allowed state transitions (`transition_event`).
- `rirc.connection`: `Connection`, a threaded network connection that
  resolves and connects, optionally negotiates TLS 1.2, reads from the
  socket, tracks ping timeouts and reconnects with exponential backoff.
  Events are reported through an object following the `Callbacks`
  protocol; all callbacks are serialised by `callback_lock`.
- `rirc.ircv3`: IRCv3 capability negotiation (`CAP LS`, `LIST`, `ACK`,
  `NAK`, `DEL`, `NEW`) and SASL authentication with the `EXTERNAL` and
  `PLAIN` mechanisms.
- `rirc.cli`: command-line parsing into `ServerOptions`, and the `rirc`
  command.

There are no dependencies outside the standard library. The command needs
a POSIX system (it looks up the current user name).

## Installation

```
pip install .
```

## Command line

```
rirc [-hv] [-s host [options] ...]
```

`-h/--help` prints the usage and `-v/--version` prints the version. Every
option after `-s/--server` applies to that server, up to the next
`-s/--server`:

| Option | Meaning |
| --- | --- |
| `-p, --port=PORT` | connection port (default 6697 with TLS, 6667 without) |
| `-w, --pass=PASS` | IRC password |
| `-u, --username=USERNAME` | IRC username |
| `-r, --realname=REALNAME` | IRC realname |
| `-m, --mode=MODE` | user modes |
| `-n, --nicks=NICKS` | comma separated list of nicks |
| `-c, --chans=CHANNELS` | comma separated list of channels |
| `--tls-cert=PATH` | TLS client certificate file |
| `--tls-ca-file=PATH` | TLS peer certificate file |
| `--tls-ca-path=PATH` | TLS peer certificate directory |
| `--tls-verify=MODE` | `0`/`disabled`, `1`/`optional`, `2`/`required` (default) |
| `--tls-disable` | connect without TLS |
| `--sasl=MECHANISM` | `EXTERNAL` or `PLAIN` |
| `--sasl-user=USER` | SASL username |
| `--sasl-pass=PASS` | SASL password |
| `--ipv4`, `--ipv6` | restrict the address family |

At most 63 servers may be given, and the same host and port may not be
given twice. Invalid arguments are reported on stderr and the command
exits with status 1.

Example:

```
rirc -s irc.example.com -p 6697 -s irc.example.org --tls-disable
```

The command opens a connection to every server given, prints connection
events and each line received to stdout, prefixed with the host, and runs
until interrupted with Ctrl-C. With no servers it exits at once.

## Library use

Parse arguments without connecting:

```python
from rirc.cli import parse_args, ArgumentError

try:
    servers = parse_args(["-s", "irc.example.com", "--tls-disable"],
                         "me", "me", "Me")
except ArgumentError as exc:
    print(exc)
else:
    print(servers[0].host, servers[0].port)   # irc.example.com 6667
    print(servers[0].flags)                   # IPV_UNSPEC | TLS_DISABLED | TLS_VRFY_REQUIRED
```

Open a connection:

```python
from rirc.connection import Connection

class Printer:
    def cxed(self, obj): print("connected")
    def dxed(self, obj): print("disconnected")
    def ping(self, obj, seconds): print("ping", seconds)
    def error(self, obj, message): print("error:", message)
    def info(self, obj, message): print(message)
    def read_soc(self, obj, data): print(data)

cx = Connection(None, "irc.example.com", "6697", None, None, None,
                servers[0].flags, Printer())
cx.connect()
# ... once cx.state is IoState.CXED:
cx.sendf("NICK %s", "me")
cx.disconnect(True)
```

`connect`, `disconnect` and `sendf` raise `rirc.netio.IoError`; its
`code` maps to a message through `rirc.netio.io_err`.

Drive IRCv3 negotiation with an `Ircv3Session`, which holds the
capability and SASL state and the `send`, `info`, `error` and
`disconnect` actions, and pass each received `IrcMessage` (its command
already consumed) to `recv_cap`, `recv_authenticate` or one of
`numeric_900` … `numeric_908`. A message that cannot be handled raises
`rirc.ircv3.Ircv3Error`.

## What it does not do

The `rirc` command has no terminal interface and reads no user input. It
does not register with the server (no `NICK` or `USER` is sent), does not
join the channels given with `-c`, and does not parse or dispatch the
lines it receives: it only connects, reconnects and prints. The IRCv3
handlers in `rirc.ircv3` are not wired to the command; they are for use
by code that parses IRC messages itself.