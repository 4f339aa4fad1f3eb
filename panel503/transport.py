"""
Panel 503 — Framed Message Transport over TCP

  MessageListener  binds once, accept() hands out MessageSockets
  MessageSocket    one connection; sender() and receiver() halves
  MessageSender    framed writes, direct (send) or via a drain thread (post)
  MessageReceiver  framed reads through one reusable FrameDecoder

The two halves share the socket but never wait on each other: reads happen
on the connection's receive thread, writes on the sender's drain thread.
Reads are bounded by the socket timeout so a silent peer shows up as a
TRANSIENT fault instead of a hung thread.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from enum import Enum
from typing import Optional, Tuple

from .frame import Frame, FrameDecoder, FrameError, encode_extended_frame, encode_frame
from .config import IDENTIFY_TIMEOUT, READ_TIMEOUT

log = logging.getLogger("panel503.transport")

Address = Tuple[str, int]


class PeerClosedError(ConnectionError):
    """The peer closed its end of the stream."""


class IOFault(Enum):
    CLOSED = "CLOSED"        # orderly teardown
    TRANSIENT = "TRANSIENT"  # log and keep reading
    FATAL = "FATAL"          # propagate, end the owning loop


def classify_fault(exc: BaseException) -> IOFault:
    if isinstance(exc, (PeerClosedError, EOFError, ConnectionResetError,
                        ConnectionAbortedError, BrokenPipeError)):
        return IOFault.CLOSED
    if isinstance(exc, (TimeoutError, socket.timeout, BlockingIOError, InterruptedError)):
        return IOFault.TRANSIENT
    return IOFault.FATAL


# ═══════════════════════════════════════════════════════════════════════
# SENDER
# ═══════════════════════════════════════════════════════════════════════

class MessageSender:
    """Frames and writes messages for one connection."""

    def __init__(self, sock: socket.socket, my_id: str = "", extended: bool = True):
        self._sock = sock
        self.my_id = my_id
        self.extended = extended
        self._write_lock = threading.Lock()
        self._queue: "queue.Queue[Optional[Tuple[str, bytes]]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self.error: Optional[BaseException] = None
        self.frames_tx = 0

    def _frame(self, code: str, payload: bytes) -> bytes:
        if self.extended:
            return encode_extended_frame(self.my_id, code, payload)
        return encode_frame(code, payload)

    def send(self, code: str, payload: bytes = b""):
        """Frame and write one message now (blocks until the kernel takes it)."""
        self._write(code, self._frame(code, payload))

    def _write(self, code: str, data: bytes):
        with self._write_lock:
            self._sock.sendall(data)
            self.frames_tx += 1
        log.debug("TX %s (%d bytes)", code, len(data))

    # --- queued path ---

    def start(self, name: str = "sender") -> "MessageSender":
        if self._thread is None:
            self._thread = threading.Thread(target=self._drain, name=name, daemon=True)
            self._thread.start()
        return self

    def post(self, code: str, payload: bytes = b""):
        """Queue a message for the drain thread; never blocks on the socket."""
        # frame errors surface here, in the caller, not in the drain thread
        self._queue.put((code, self._frame(code, payload)))

    def _drain(self):
        while True:
            item = self._queue.get()
            if item is None:
                break
            if self.error is not None:
                continue
            try:
                self._write(*item)
            except OSError as e:
                self.error = e
                if classify_fault(e) is IOFault.CLOSED:
                    log.info("Peer gone while sending %s", item[0])
                else:
                    log.error("Send failed for %s: %s", item[0], e)

    def close(self, timeout: float = 2.0):
        """Flush queued messages and stop the drain thread."""
        if self._thread is not None:
            self._queue.put(None)
            self._thread.join(timeout)
            self._thread = None

    @property
    def alive(self) -> bool:
        return self.error is None


# ═══════════════════════════════════════════════════════════════════════
# RECEIVER
# ═══════════════════════════════════════════════════════════════════════

class MessageReceiver:
    """Reads frames from one connection into a reusable decode buffer."""

    def __init__(self, sock: socket.socket, extended: bool = True):
        self._sock = sock
        self.decoder = FrameDecoder(extended=extended)
        self.frames_rx = 0

    def receive(self) -> Frame:
        """
        Return the next frame.

        Raises PeerClosedError on EOF, socket.timeout when the read timeout
        expires, FrameEndError/FrameError on a corrupt frame.
        """
        decoder = self.decoder
        while True:
            frame = decoder.next_frame()
            if frame is not None:
                self.frames_rx += 1
                log.debug("RX %r", frame)
                return frame
            with decoder.writable() as view:
                n = self._sock.recv_into(view)
            if n == 0:
                raise PeerClosedError("peer closed the connection")
            decoder.commit(n)


# ═══════════════════════════════════════════════════════════════════════
# SOCKET / LISTENER
# ═══════════════════════════════════════════════════════════════════════

class MessageSocket:
    """One framed-message connection."""

    def __init__(self, sock: socket.socket, my_id: str = "", extended: bool = True,
                 read_timeout: Optional[float] = READ_TIMEOUT):
        self.sock = sock
        self.my_id = my_id
        self.extended = extended
        self.peer_id: Optional[str] = None
        if sock.family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(read_timeout)
        self._sender: Optional[MessageSender] = None
        self._receiver: Optional[MessageReceiver] = None

    @classmethod
    def connect(cls, addr: Address, my_id: str = "", extended: bool = True,
                read_timeout: Optional[float] = READ_TIMEOUT,
                connect_timeout: float = 5.0) -> "MessageSocket":
        sock = socket.create_connection(addr, timeout=connect_timeout)
        return cls(sock, my_id, extended, read_timeout)

    @property
    def peer_addr(self) -> Address:
        return self.sock.getpeername()[:2]

    @property
    def local_addr(self) -> Address:
        return self.sock.getsockname()[:2]

    def sender(self) -> MessageSender:
        if self._sender is None:
            self._sender = MessageSender(self.sock, self.my_id, self.extended)
        return self._sender

    def receiver(self) -> MessageReceiver:
        if self._receiver is None:
            self._receiver = MessageReceiver(self.sock, self.extended)
        return self._receiver

    def settimeout(self, timeout: Optional[float]):
        self.sock.settimeout(timeout)

    def close(self):
        if self._sender is not None:
            self._sender.close()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self.sock.close()


class MessageListener:
    """Bound TCP listener handing out MessageSockets."""

    def __init__(self, sock: socket.socket, my_id: str = "", extended: bool = True,
                 read_timeout: Optional[float] = READ_TIMEOUT):
        self._sock = sock
        self.my_id = my_id
        self.extended = extended
        self.read_timeout = read_timeout

    @classmethod
    def bind(cls, addr: Address, my_id: str = "", extended: bool = True,
             read_timeout: Optional[float] = READ_TIMEOUT, backlog: int = 5) -> "MessageListener":
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind(addr)
        server.listen(backlog)
        log.info("Listening on %s:%d", *server.getsockname()[:2])
        return cls(server, my_id, extended, read_timeout)

    @property
    def addr(self) -> Address:
        return self._sock.getsockname()[:2]

    def accept(self, timeout: Optional[float] = None) -> Optional[MessageSocket]:
        """Next connection, or None if ``timeout`` seconds pass without one."""
        self._sock.settimeout(timeout)
        try:
            conn, addr = self._sock.accept()
        except socket.timeout:
            return None
        log.info("Connection from %s:%d", *addr[:2])
        return MessageSocket(conn, self.my_id, self.extended, self.read_timeout)

    def close(self):
        self._sock.close()


# ═══════════════════════════════════════════════════════════════════════
# IDENTIFICATION HANDSHAKE
# ═══════════════════════════════════════════════════════════════════════

def identify(msock: MessageSocket, timeout: float = IDENTIFY_TIMEOUT) -> Optional[str]:
    """
    Ask a fresh connection who it is (WRU) and wait for its IAM.

    Returns the peer id, or None if the peer doesn't answer in time or the
    exchange fails; the caller then just drops the socket. Frames other than
    IAM that arrive first are discarded.
    """
    sender = msock.sender()
    receiver = msock.receiver()
    old_timeout = msock.sock.gettimeout()
    deadline = time.monotonic() + timeout
    try:
        sender.send("WRU")
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("identify")
            msock.settimeout(remaining)
            frame = receiver.receive()
            if frame.code != "IAM":
                log.debug("identify: ignoring %s before IAM", frame.code)
                continue
            peer_id = frame.sender if frame.sender is not None else \
                frame.payload.decode("utf-8", errors="replace")
            msock.peer_id = peer_id
            log.info("IAM received from %s", peer_id)
            return peer_id
    except socket.timeout:
        log.info("Timeout waiting for IAM reply")
    except (OSError, FrameError) as e:
        log.info("Identification failed: %s", e)
    finally:
        msock.settimeout(old_timeout)
    return None
