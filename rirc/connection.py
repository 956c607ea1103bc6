"""Threaded network connection driven by a reconnecting state machine.

Each connection runs a worker thread while it is not disconnected. The
thread resolves and connects, optionally negotiates TLS, reads from the
socket, watches for ping timeouts and retries with exponential backoff.
Every event is reported through a :class:`Callbacks` object. All callbacks
of all connections are serialised by the module-level ``callback_lock``,
which code outside this module may also hold while it handles user input.
"""

from __future__ import annotations

import contextlib
import enum
import select
import socket
import ssl
import threading
from typing import Callable, Optional, Protocol

from .netio import (
    DEFAULT_CA_CERTS,
    PING_MAX,
    PING_MIN,
    PING_REFRESH,
    Backoff,
    Flag,
    IoError,
    IoErrorCode,
    IoState,
    frame_message,
    transition_event,
)

_READ_SIZE = 1024

# ECDHE key exchange with AEAD ciphers only, ChaCha first
_CIPHERS = "ECDHE+CHACHA20:ECDHE+AESGCM:ECDHE+AESCCM"


class Callbacks(Protocol):
    """Receiver of connection events; ``obj`` is the connection's owner."""

    def cxed(self, obj) -> None:
        """The connection was established."""
        ...

    def dxed(self, obj) -> None:
        """An established connection was lost or closed."""
        ...

    def ping(self, obj, seconds: int) -> None:
        """Seconds without network activity; 0 once activity resumes."""
        ...

    def error(self, obj, message: str) -> None:
        """An error message about the connection."""
        ...

    def info(self, obj, message: str) -> None:
        """An informational message about the connection."""
        ...

    def read_soc(self, obj, data: bytes) -> None:
        """Data was read from the socket."""
        ...


class _CallbackLock:
    """Reentrant lock that remembers how deeply each thread holds it."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._local = threading.local()

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def __enter__(self) -> "_CallbackLock":
        self._lock.acquire()
        self._local.depth = self._depth() + 1
        return self

    def __exit__(self, *exc) -> None:
        self._local.depth = self._depth() - 1
        self._lock.release()

    @contextlib.contextmanager
    def released(self):
        """Fully release the lock held by this thread for the block."""
        depth = self._depth()
        for _ in range(depth):
            self._lock.release()
        try:
            yield
        finally:
            for _ in range(depth):
                self._lock.acquire()


callback_lock = _CallbackLock()


class _Read(enum.Enum):
    DATA = enum.auto()
    TIMEOUT = enum.auto()
    WOKEN = enum.auto()
    CLOSE_NOTIFY = enum.auto()
    EOF = enum.auto()
    RESET = enum.auto()
    ERROR = enum.auto()


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "Unknown error"
    for attr in ("verify_message", "reason", "strerror"):
        text = getattr(exc, attr, None)
        if text:
            return str(text)
    return str(exc) or "Unknown error"


class Connection:
    """A network connection to one host and port."""

    default_ca_file: Optional[str] = None
    default_ca_path: Optional[str] = None

    def __init__(self, obj, host, port, tls_ca_file, tls_ca_path, tls_cert, flags, callbacks):
        self.obj = obj
        self.host = str(host)
        self.port = str(port)
        self.tls_ca_file = tls_ca_file
        self.tls_ca_path = tls_ca_path
        self.tls_cert = tls_cert
        self.flags = Flag(flags)
        self.callbacks: Callbacks = callbacks

        self._lock = threading.Lock()
        self._st_cur = IoState.DXED
        self._st_new = IoState.INVALID
        self._callback = True
        self._destroyed = False
        self._thread: Optional[threading.Thread] = None
        self._sock: Optional[socket.socket] = None
        self._ping = 0
        self._backoff = Backoff()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)

    # -- public interface ------------------------------------------------

    @property
    def state(self) -> IoState:
        """Current state of the connection."""
        with self._lock:
            return self._st_cur

    def connect(self) -> None:
        """Start connecting, or retry at once when waiting to reconnect.

        Raises IoError(CXNG) while connecting and IoError(CXED) while
        connected.
        """
        with self._lock:
            cur = self._st_cur
            if cur == IoState.DXED:
                self._drain_wake()
                self._st_cur = IoState.CXNG
                self._st_new = IoState.INVALID
                self._callback = True
                thread = threading.Thread(
                    target=self._run, name=f"connection {self.host}:{self.port}", daemon=True
                )
                try:
                    thread.start()
                except RuntimeError:
                    self._st_cur = IoState.DXED
                    raise IoError(IoErrorCode.THREAD) from None
                self._thread = thread
            elif cur == IoState.CXNG:
                raise IoError(IoErrorCode.CXNG)
            elif cur in (IoState.CXED, IoState.PING):
                raise IoError(IoErrorCode.CXED)
            elif cur == IoState.RXNG:
                self._wake()
            else:
                raise RuntimeError(f"unknown state: {cur}")

    def disconnect(self, destroy=False) -> None:
        """Close the connection; with ``destroy`` also release its resources.

        A destroyed connection reports nothing more through its callbacks.
        Raises IoError(DXED) when already disconnected and not destroying.
        """
        with self._lock:
            cur = self._st_cur

        if cur == IoState.DXED and not destroy:
            raise IoError(IoErrorCode.DXED)

        joined = True
        if cur != IoState.DXED:
            with self._lock:
                self._callback = not destroy
                self._st_new = IoState.DXED
                if destroy:
                    self._destroyed = True
            self._wake()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                # The thread may be waiting to run a callback held by the caller
                with callback_lock.released():
                    thread.join()
            else:
                joined = False

        if destroy:
            self._destroyed = True
            if joined:
                self._close_wake()

    def sendf(self, fmt, *args) -> None:
        """Format a message and send it as one CR-LF terminated line.

        Raises IoError(DXED) when not connected, IoError(FMT) or
        IoError(TRUNC) for a bad message, and IoError(SSL_WRITE) when the
        write fails, after restarting the connection.
        """
        with self._lock:
            cur = self._st_cur
            sock = self._sock

        if cur not in (IoState.CXED, IoState.PING) or sock is None:
            raise IoError(IoErrorCode.DXED)

        data = frame_message(fmt, *args)

        try:
            sock.sendall(data)
        except OSError:
            with contextlib.suppress(IoError):
                self.disconnect(False)
            with contextlib.suppress(IoError):
                self.connect()
            raise IoError(IoErrorCode.SSL_WRITE) from None

    # -- callbacks -------------------------------------------------------

    def _notify(self, callback: Callable, *args) -> None:
        with self._lock:
            enabled = self._callback
        if enabled:
            with callback_lock:
                callback(self.obj, *args)

    def _info(self, fmt: str, *args) -> None:
        self._notify(self.callbacks.info, fmt % args if args else fmt)

    def _error(self, fmt: str, *args) -> None:
        self._notify(self.callbacks.error, fmt % args if args else fmt)

    # -- wake-up channel ---------------------------------------------------

    def _wake(self) -> None:
        with contextlib.suppress(OSError):
            self._wake_w.send(b"\0")

    def _drain_wake(self) -> None:
        with contextlib.suppress(OSError):
            while self._wake_r.recv(64):
                pass

    def _close_wake(self) -> None:
        self._wake_r.close()
        self._wake_w.close()

    def _wait(self, sock: Optional[socket.socket], timeout: float) -> Optional[bool]:
        """Wait for ``sock`` to be readable: True, False on timeout, None if woken."""
        fds = [self._wake_r] if sock is None else [self._wake_r, sock]
        readable, _, _ = select.select(fds, [], [], timeout)
        if self._wake_r in readable:
            self._drain_wake()
            return None
        return sock is not None and sock in readable

    def _close_socket(self) -> None:
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.close()

    # -- state machine ---------------------------------------------------

    def _run(self) -> None:
        handlers = {
            IoState.CXED: self._state_cxed,
            IoState.CXNG: self._state_cxng,
            IoState.PING: self._state_ping,
            IoState.RXNG: self._state_rxng,
        }

        self._info("Connecting to %s:%s", self.host, self.port)

        try:
            while True:
                st_cur = self._st_cur
                st_new = handlers[st_cur]()

                with self._lock:
                    if self._st_new != IoState.INVALID:
                        st_new = self._st_new
                    self._st_cur = st_new
                    self._st_new = IoState.INVALID

                if st_new == IoState.DXED:
                    self._close_socket()

                self._on_transition(st_cur, st_new)

                if st_new == IoState.DXED:
                    break
        finally:
            self._close_socket()
            if self._destroyed and self._thread is threading.current_thread():
                with contextlib.suppress(OSError):
                    self._close_wake()

    def _on_transition(self, old: IoState, new: IoState) -> None:
        event = transition_event(old, new)

        if event in ("A1", "A2"):
            self._info("Connecting to %s:%s", self.host, self.port)
        elif event == "F1":
            self._notify(self.callbacks.dxed)
        elif event == "F2":
            self._error("Connection timeout (%u)", self._ping)
            self._notify(self.callbacks.dxed)
        elif event in ("B1", "B2"):
            self._info("Connection cancelled")
        elif event in ("B3", "B4"):
            self._info("Connection closed")
            self._notify(self.callbacks.dxed)
        elif event == "D":
            self._info(" .. Connection successful")
            self._notify(self.callbacks.cxed)
            self._backoff.reset()
        elif event == "E":
            self._error(" .. Connection failed -- retrying")
        elif event == "G":
            self._ping = PING_MIN
            self._notify(self.callbacks.ping, self._ping)
        elif event == "H":
            self._ping += PING_REFRESH
            self._notify(self.callbacks.ping, self._ping)
        elif event == "I":
            self._ping = 0
            self._notify(self.callbacks.ping, self._ping)

    def _state_rxng(self) -> IoState:
        delay = self._backoff.next()
        self._info("Attemping reconnect in %02u:%02u", delay // 60, delay % 60)
        self._wait(None, delay)
        return IoState.CXNG

    def _state_cxng(self) -> IoState:
        if not self._net_connect():
            return IoState.RXNG
        if self.flags & Flag.TLS_ENABLED and not self._tls_establish():
            return IoState.RXNG
        return IoState.CXED

    def _state_cxed(self) -> IoState:
        while True:
            with self._lock:
                st = self._st_new
            if st != IoState.INVALID:
                return st

            result = self._read(PING_MIN)

            if result in (_Read.DATA, _Read.WOKEN):
                continue
            if result == _Read.TIMEOUT:
                return IoState.PING

            self._report_close(result)
            self._close_socket()
            return IoState.CXNG

    def _state_ping(self) -> IoState:
        if self._ping >= PING_MAX:
            self._close_socket()
            return IoState.CXNG

        result = self._read(PING_REFRESH)

        if result == _Read.DATA:
            return IoState.CXED
        if result in (_Read.TIMEOUT, _Read.WOKEN):
            return IoState.PING

        self._report_close(result)
        self._close_socket()
        return IoState.CXNG

    def _report_close(self, result: _Read) -> None:
        if result == _Read.CLOSE_NOTIFY:
            self._info("Connection closed gracefully")
        elif result in (_Read.EOF, _Read.RESET):
            self._error("Connection reset by peer")
        else:
            self._error("Connection error")

    def _read(self, timeout: float) -> _Read:
        sock = self._sock
        if sock is None:
            return _Read.ERROR

        if not (isinstance(sock, ssl.SSLSocket) and sock.pending()):
            try:
                ready = self._wait(sock, timeout)
            except (OSError, ValueError):
                return _Read.ERROR
            if ready is None:
                return _Read.WOKEN
            if not ready:
                return _Read.TIMEOUT

        try:
            data = sock.recv(_READ_SIZE)
        except ssl.SSLZeroReturnError:
            return _Read.CLOSE_NOTIFY
        except (ssl.SSLWantReadError, ssl.SSLWantWriteError):
            return _Read.DATA
        except ConnectionResetError:
            return _Read.RESET
        except OSError:
            return _Read.ERROR

        if not data:
            return _Read.EOF

        self._notify(self.callbacks.read_soc, data)
        return _Read.DATA

    # -- networking ------------------------------------------------------

    def _net_connect(self) -> bool:
        family = socket.AF_UNSPEC
        if self.flags & Flag.IPV_4:
            family = socket.AF_INET
        if self.flags & Flag.IPV_6:
            family = socket.AF_INET6

        try:
            infos = socket.getaddrinfo(
                self.host, self.port, family, socket.SOCK_STREAM, socket.IPPROTO_TCP,
                socket.AI_PASSIVE,
            )
        except socket.gaierror as exc:
            self._error(" .. Failed to resolve host: %s", _describe(exc))
            return False

        created = False
        last_error: Optional[OSError] = None

        for fam, socktype, proto, _canonname, addr in infos:
            try:
                candidate = socket.socket(fam, socktype, proto)
            except OSError as exc:
                last_error = exc
                continue
            created = True
            try:
                candidate.connect(addr)
            except OSError as exc:
                last_error = exc
                candidate.close()
                continue
            with self._lock:
                self._sock = candidate
            self._info(" .. Connected [%s]", addr[0])
            return True

        if not created:
            self._error(" .. Failed to obtain socket: %s", _describe(last_error))
        else:
            self._error(" .. Failed to connect: %s", _describe(last_error))
        return False

    def _load_ca(self, ctx: ssl.SSLContext) -> bool:
        configured = [
            (kind, location)
            for kind, location in (
                ("file", self.tls_ca_file),
                ("path", self.tls_ca_path),
                ("file", self.default_ca_file),
                ("path", self.default_ca_path),
            )
            if location
        ]

        if configured:
            kind, location = configured[0]
            try:
                if kind == "file":
                    ctx.load_verify_locations(cafile=location)
                else:
                    ctx.load_verify_locations(capath=location)
            except (OSError, ssl.SSLError) as exc:
                self._error(
                    " .. Failed to load CA cert %s: '%s': %s", kind, location, _describe(exc)
                )
                return False
            return True

        last_error: Optional[BaseException] = None
        for location in DEFAULT_CA_CERTS:
            try:
                ctx.load_verify_locations(cafile=location)
            except (OSError, ssl.SSLError) as exc:
                last_error = exc
                continue
            return True

        self._error(" .. Failed to load default CA certs: %s", _describe(last_error))
        return False

    def _tls_context(self) -> Optional[ssl.SSLContext]:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.maximum_version = ssl.TLSVersion.TLSv1_2

        try:
            ctx.set_ciphers(_CIPHERS)
        except ssl.SSLError as exc:
            self._error(" .. %s ", _describe(exc))
            return None

        if not self._load_ca(ctx):
            return None

        if self.tls_cert:
            try:
                ctx.load_cert_chain(self.tls_cert)
            except (OSError, ssl.SSLError) as exc:
                self._error(
                    " .. Failed to load client cert: '%s': %s", self.tls_cert, _describe(exc)
                )
                return None

        if self.flags & (Flag.TLS_VRFY_DISABLED | Flag.TLS_VRFY_OPTIONAL):
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE

        return ctx

    def _tls_establish(self) -> bool:
        self._info(" .. Establishing TLS connection")

        ctx = self._tls_context()
        raw = self._sock

        if ctx is not None and raw is not None:
            try:
                raw.setblocking(True)
                wrapped = ctx.wrap_socket(raw, server_hostname=self.host)
            except ssl.SSLCertVerificationError as exc:
                self._error(" .... %s", _describe(exc))
                self._error(" .. %s ", _describe(exc))
            except (OSError, ValueError) as exc:
                self._error(" .. %s ", _describe(exc))
            else:
                with self._lock:
                    self._sock = wrapped
                version = wrapped.version()
                if version == "TLSv1.2":
                    self._info(" .. TLS 1.2 connection established")
                elif version == "TLSv1.3":
                    self._info(" .. TLS 1.3 connection established")
                else:
                    self._info(" .. TLS (?) connection established")
                cipher = wrapped.cipher()
                self._info(" .... Version:     %s", version)
                self._info(" .... Ciphersuite: %s", cipher[0] if cipher else "unknown")
                return True

        self._error(" .. TLS connection failure")
        self._close_socket()
        return False