"""
Panel 503 — Transport Tests

MessageSocket halves over socket.socketpair(), fault classification, the
TCP listener and the WRU/IAM identification handshake.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import socket
import threading

import pytest

from panel503.frame import FrameEndError, encode_extended_frame
from panel503.transport import (
    IOFault,
    MessageListener,
    MessageSocket,
    PeerClosedError,
    classify_fault,
    identify,
)


@pytest.fixture
def pair():
    """Two connected MessageSockets: (server side, panel side)."""
    a, b = socket.socketpair()
    left = MessageSocket(a, "MF", extended=True, read_timeout=2.0)
    right = MessageSocket(b, "PANEL", extended=True, read_timeout=2.0)
    yield left, right
    left.close()
    right.close()


# ═══════════════════════════════════════════════
# Fault classification
# ═══════════════════════════════════════════════

class TestClassifyFault:

    @pytest.mark.parametrize("exc", [
        PeerClosedError("eof"),
        ConnectionResetError(),
        BrokenPipeError(),
        EOFError(),
    ])
    def test_closed(self, exc):
        assert classify_fault(exc) is IOFault.CLOSED

    @pytest.mark.parametrize("exc", [socket.timeout("t"), TimeoutError(), InterruptedError()])
    def test_transient(self, exc):
        assert classify_fault(exc) is IOFault.TRANSIENT

    @pytest.mark.parametrize("exc", [FrameEndError("bad end"), OSError(5, "EIO")])
    def test_fatal(self, exc):
        assert classify_fault(exc) is IOFault.FATAL


# ═══════════════════════════════════════════════
# Sender / receiver halves
# ═══════════════════════════════════════════════

class TestMessageSocket:

    def test_send_receive_extended(self, pair):
        left, right = pair
        left.sender().send("POWER", b"\x01")
        frame = right.receiver().receive()
        assert frame.code == "POWER"
        assert frame.payload == b"\x01"
        assert frame.sender == "MF"

    def test_send_receive_minimal(self):
        a, b = socket.socketpair()
        left = MessageSocket(a, extended=False, read_timeout=2.0)
        right = MessageSocket(b, extended=False, read_timeout=2.0)
        try:
            left.sender().send("STAT")
            frame = right.receiver().receive()
            assert frame.code == "STAT"
            assert frame.sender is None
        finally:
            left.close()
            right.close()

    def test_posted_messages_arrive_in_order(self, pair):
        left, right = pair
        sender = left.sender().start()
        for code in ("POWER", "NOPRO", "ESTAT"):
            sender.post(code, b"\x01" if code != "ESTAT" else b"")
        sender.close()
        assert sender.frames_tx == 3
        receiver = right.receiver()
        assert [receiver.receive().code for _ in range(3)] == ["POWER", "NOPRO", "ESTAT"]
        assert receiver.frames_rx == 3

    def test_post_rejects_bad_code_in_caller(self, pair):
        left, _ = pair
        sender = left.sender().start()
        with pytest.raises(ValueError):
            sender.post("ÉTAT")
        sender.close()
        assert sender.alive

    def test_eof_raises_peer_closed(self, pair):
        left, right = pair
        left.close()
        with pytest.raises(PeerClosedError):
            right.receiver().receive()

    def test_read_timeout_is_transient(self, pair):
        _, right = pair
        right.settimeout(0.05)
        with pytest.raises(socket.timeout) as exc:
            right.receiver().receive()
        assert classify_fault(exc.value) is IOFault.TRANSIENT

    def test_partial_frame_survives_timeout(self, pair):
        left, right = pair
        raw = encode_extended_frame("MF", "CLEAR")
        right.settimeout(0.05)
        left.sock.sendall(raw[:5])
        with pytest.raises(socket.timeout):
            right.receiver().receive()
        left.sock.sendall(raw[5:])
        right.settimeout(2.0)
        assert right.receiver().receive().code == "CLEAR"

    def test_corrupt_end_raises(self, pair):
        left, right = pair
        raw = bytearray(encode_extended_frame("MF", "STAT"))
        raw[-1] = 0
        left.sock.sendall(bytes(raw))
        with pytest.raises(FrameEndError):
            right.receiver().receive()


# ═══════════════════════════════════════════════
# Listener
# ═══════════════════════════════════════════════

class TestMessageListener:

    def test_accept_timeout_returns_none(self):
        listener = MessageListener.bind(("127.0.0.1", 0))
        try:
            assert listener.accept(timeout=0.05) is None
        finally:
            listener.close()

    def test_accept_and_exchange(self):
        listener = MessageListener.bind(("127.0.0.1", 0), "MF", read_timeout=2.0)
        try:
            client = MessageSocket.connect(listener.addr, "PANEL", read_timeout=2.0)
            server_side = listener.accept(timeout=2.0)
            assert server_side is not None
            assert server_side.my_id == "MF"
            client.sender().send("STAT")
            frame = server_side.receiver().receive()
            assert (frame.sender, frame.code) == ("PANEL", "STAT")
            assert server_side.peer_addr == client.local_addr
            client.close()
            server_side.close()
        finally:
            listener.close()


# ═══════════════════════════════════════════════
# WRU / IAM handshake
# ═══════════════════════════════════════════════

def _answer_wru(msock, reply_code="IAM", payload=b"PANEL", noise=()):
    """Minimal panel side: wait for WRU then reply."""
    def run():
        frame = msock.receiver().receive()
        assert frame.code == "WRU"
        for code in noise:
            msock.sender().send(code)
        msock.sender().send(reply_code, payload)
    t = threading.Thread(target=run, daemon=True)
    t.start()
    return t


class TestIdentify:

    def test_extended_uses_sender_id(self, pair):
        left, right = pair
        t = _answer_wru(right, payload=b"ignored")
        assert identify(left, timeout=2.0) == "PANEL"
        assert left.peer_id == "PANEL"
        t.join(2.0)

    def test_minimal_uses_payload(self):
        a, b = socket.socketpair()
        left = MessageSocket(a, extended=False, read_timeout=2.0)
        right = MessageSocket(b, extended=False, read_timeout=2.0)
        try:
            t = _answer_wru(right, payload=b"CONSOLE-2")
            assert identify(left, timeout=2.0) == "CONSOLE-2"
            t.join(2.0)
        finally:
            left.close()
            right.close()

    def test_frames_before_iam_are_skipped(self, pair):
        left, right = pair
        t = _answer_wru(right, noise=("STAT", "STAT"))
        assert identify(left, timeout=2.0) == "PANEL"
        t.join(2.0)

    def test_silent_peer_times_out(self, pair):
        left, _ = pair
        assert identify(left, timeout=0.1) is None
        # the configured read timeout is restored
        assert left.sock.gettimeout() == 2.0

    def test_wrong_reply_times_out(self, pair):
        left, right = pair
        t = _answer_wru(right, reply_code="STAT")
        assert identify(left, timeout=0.2) is None
        t.join(2.0)

    def test_closed_peer(self, pair):
        left, right = pair
        right.close()
        assert identify(left, timeout=1.0) is None
