import contextlib
import socket
import threading

import pytest

from rirc.connection import Connection
from rirc.netio import Flag, IoError, IoErrorCode, IoState

FLAGS = Flag.IPV_4 | Flag.TLS_DISABLED | Flag.TLS_VRFY_REQUIRED


class Recorder:
    def __init__(self):
        self.events = []
        self.cond = threading.Condition()

    def _add(self, *event):
        with self.cond:
            self.events.append(event)
            self.cond.notify_all()

    def cxed(self, obj):
        self._add("cxed", obj)

    def dxed(self, obj):
        self._add("dxed", obj)

    def ping(self, obj, seconds):
        self._add("ping", obj, seconds)

    def error(self, obj, message):
        self._add("error", message)

    def info(self, obj, message):
        self._add("info", message)

    def read_soc(self, obj, data):
        self._add("read", data)

    def snapshot(self):
        with self.cond:
            return list(self.events)

    def received(self):
        return b"".join(e[1] for e in self.snapshot() if e[0] == "read")

    def wait_until(self, predicate, timeout=5.0):
        with self.cond:
            return self.cond.wait_for(lambda: predicate(self.events), timeout)

    def wait_for(self, event, timeout=5.0):
        return self.wait_until(lambda events: event in events, timeout)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def listener():
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(4)
    srv.settimeout(5)
    yield srv
    srv.close()


@pytest.fixture
def make(recorder):
    made = []

    def _make(port, obj="server"):
        cx = Connection(obj, "127.0.0.1", str(port), None, None, None, FLAGS, recorder)
        made.append(cx)
        return cx

    yield _make
    for cx in made:
        cx.disconnect(True)


@pytest.fixture
def closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def read_line(peer):
    data = b""
    while not data.endswith(b"\r\n"):
        chunk = peer.recv(1024)
        if not chunk:
            break
        data += chunk
    return data


def connected(make, listener, recorder):
    port = listener.getsockname()[1]
    cx = make(port)
    cx.connect()
    peer, _ = listener.accept()
    assert recorder.wait_for(("cxed", "server"))
    return cx, peer


def test_new_connection_is_disconnected(make, listener):
    cx = make(listener.getsockname()[1])
    assert cx.state == IoState.DXED


def test_disconnect_when_disconnected_raises(make, listener):
    cx = make(listener.getsockname()[1])
    with pytest.raises(IoError) as exc:
        cx.disconnect(False)
    assert exc.value.code == IoErrorCode.DXED


def test_sendf_when_disconnected_raises(make, listener):
    cx = make(listener.getsockname()[1])
    with pytest.raises(IoError) as exc:
        cx.sendf("NICK %s", "me")
    assert exc.value.code == IoErrorCode.DXED
    assert str(exc.value) == "socket not connected"


def test_connect_read_send_disconnect(make, listener, recorder):
    cx, peer = connected(make, listener, recorder)
    port = listener.getsockname()[1]
    try:
        assert cx.state == IoState.CXED
        infos = [e[1] for e in recorder.snapshot() if e[0] == "info"]
        assert infos[:3] == [
            f"Connecting to 127.0.0.1:{port}",
            " .. Connected [127.0.0.1]",
            " .. Connection successful",
        ]

        peer.sendall(b"PING :abc\r\n")
        assert recorder.wait_until(lambda _: recorder.received() == b"PING :abc\r\n")

        peer.settimeout(5)
        cx.sendf("PONG %s", "abc")
        assert read_line(peer) == b"PONG abc\r\n"

        cx.disconnect(False)
        assert cx.state == IoState.DXED
        events = recorder.snapshot()
        assert ("info", "Connection closed") in events
        assert ("dxed", "server") in events
    finally:
        peer.close()


def test_connect_while_connected_raises(make, listener, recorder):
    cx, peer = connected(make, listener, recorder)
    try:
        with pytest.raises(IoError) as exc:
            cx.connect()
        assert exc.value.code == IoErrorCode.CXED
    finally:
        peer.close()


def test_sendf_truncated_message(make, listener, recorder):
    cx, peer = connected(make, listener, recorder)
    try:
        with pytest.raises(IoError) as exc:
            cx.sendf("PRIVMSG #c :%s", "x" * 600)
        assert exc.value.code == IoErrorCode.TRUNC
        assert cx.state == IoState.CXED
    finally:
        peer.close()


def test_peer_close_reports_reset(make, listener, recorder):
    cx, peer = connected(make, listener, recorder)
    peer.close()
    assert recorder.wait_for(("error", "Connection reset by peer"))
    assert recorder.wait_for(("dxed", "server"))
    with contextlib.suppress(IoError):
        cx.disconnect(False)
    assert cx.state == IoState.DXED


def test_destroy_suppresses_callbacks(make, listener, recorder):
    cx, peer = connected(make, listener, recorder)
    try:
        before = len(recorder.snapshot())
        cx.disconnect(True)
        assert cx.state == IoState.DXED
        after = recorder.snapshot()[before:]
        assert ("dxed", "server") not in after
        assert ("info", "Connection closed") not in after
    finally:
        peer.close()


def test_failed_connect_retries_and_cancels(make, recorder, closed_port):
    cx = make(closed_port)
    cx.connect()
    assert recorder.wait_for(("error", " .. Connection failed -- retrying"))
    assert recorder.wait_until(
        lambda events: any(e[0] == "info" and e[1].startswith("Attemping reconnect in") for e in events)
    )
    assert any(
        e[0] == "error" and e[1].startswith(" .. Failed to connect: ") for e in recorder.snapshot()
    )
    assert cx.state == IoState.RXNG

    cx.disconnect(False)
    assert cx.state == IoState.DXED
    assert ("info", "Connection cancelled") in recorder.snapshot()


def test_backoff_delay_is_reported(make, recorder, closed_port):
    cx = make(closed_port)
    cx.connect()
    assert recorder.wait_for(("info", "Attemping reconnect in 00:04"))
    cx.disconnect(False)
    assert cx.state == IoState.DXED


def test_connect_during_reconnect_retries_at_once(make, recorder, closed_port):
    cx = make(closed_port)
    message = f"Connecting to 127.0.0.1:{closed_port}"
    cx.connect()
    assert recorder.wait_until(
        lambda events: any(e[0] == "info" and e[1].startswith("Attemping") for e in events)
    )
    cx.connect()
    assert recorder.wait_until(
        lambda events: sum(1 for e in events if e == ("info", message)) >= 2, timeout=2.0
    )
    cx.disconnect(False)
    assert cx.state == IoState.DXED


def test_unresolvable_port_reports_resolve_error(make, recorder):
    cx = make("notaport")
    cx.connect()
    assert recorder.wait_until(
        lambda events: any(
            e[0] == "error" and e[1].startswith(" .. Failed to resolve host: ") for e in events
        )
    )
    cx.disconnect(False)
    assert cx.state == IoState.DXED