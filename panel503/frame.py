"""
Panel 503 — Message Frame Builder / Parser
===========================================

Frames carry one message code plus an opaque payload between the server
and its panels. All length fields are big-endian.

Minimal frame:
  [5A 5A] [CODE_LEN] [CODE...] [PAYLOAD_LEN hi lo] [PAYLOAD...] [A5 A5]

Extended frame (multi-peer, carries the sender id):
  [5A 5A] [FRAME_LEN hi lo] [ID_LEN] [ID...] [CODE_LEN] [CODE...]
          [PAYLOAD_LEN hi lo] [PAYLOAD...] [A5 A5]

  FRAME_LEN counts everything between the two sentinels.

The payload is not escaped. A receiver that lands mid-stream finds its
footing again by scanning for the next start sentinel; a frame that parses
but ends in the wrong sentinel means the length fields can't be trusted,
so that is fatal for the connection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

FRAME_START = b"\x5A\x5A"
FRAME_END = b"\xA5\xA5"

MAX_CODE_LEN = 0xFF
MAX_ID_LEN = 0xFF
MAX_PAYLOAD_LEN = 0xFFFF

MIN_PREFIX = len(FRAME_START) + 1           # start + code_len
EXT_PREFIX = len(FRAME_START) + 2 + 1       # start + frame_len + id_len
FRAME_SLACK = 32
INITIAL_BUFFER = 256

log = logging.getLogger("panel503.frame")


class FrameError(ValueError):
    """Frame can't be built or its header is inconsistent."""


class FrameEndError(FrameError):
    """Ending sentinel missing where the length fields say it should be."""


def _ascii_field(name: str, text: str, limit: int) -> bytes:
    try:
        raw = text.encode("ascii")
    except UnicodeEncodeError:
        raise FrameError(f"{name} must be ASCII: {text!r}") from None
    if len(raw) > limit:
        raise FrameError(f"{name} too long ({len(raw)} > {limit} bytes)")
    return raw


def _check_payload(payload: bytes) -> bytes:
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD_LEN:
        raise FrameError(f"payload too long ({len(payload)} > {MAX_PAYLOAD_LEN} bytes)")
    return payload


def encode_frame(code: str, payload: bytes = b"") -> bytes:
    """Build a minimal frame."""
    code_b = _ascii_field("code", code, MAX_CODE_LEN)
    payload = _check_payload(payload)
    return b"".join((
        FRAME_START,
        bytes([len(code_b)]), code_b,
        len(payload).to_bytes(2, "big"), payload,
        FRAME_END,
    ))


def encode_extended_frame(sender: str, code: str, payload: bytes = b"") -> bytes:
    """Build an extended frame carrying ``sender`` and the overall length."""
    id_b = _ascii_field("sender id", sender, MAX_ID_LEN)
    code_b = _ascii_field("code", code, MAX_CODE_LEN)
    payload = _check_payload(payload)
    frame_len = 2 + 1 + len(id_b) + 1 + len(code_b) + 2 + len(payload)
    if frame_len > 0xFFFF:
        raise FrameError(f"extended frame too long ({frame_len} bytes)")
    return b"".join((
        FRAME_START,
        frame_len.to_bytes(2, "big"),
        bytes([len(id_b)]), id_b,
        bytes([len(code_b)]), code_b,
        len(payload).to_bytes(2, "big"), payload,
        FRAME_END,
    ))


@dataclass
class Frame:
    """One unframed message."""
    code: str
    payload: bytes = b""
    sender: Optional[str] = None

    def build(self, extended: bool = False) -> bytes:
        if extended:
            return encode_extended_frame(self.sender or "", self.code, self.payload)
        return encode_frame(self.code, self.payload)

    def __repr__(self) -> str:
        who = f"{self.sender}:" if self.sender is not None else ""
        return f"Frame({who}{self.code}, payload={hex_str(self.payload) or '(empty)'})"


# =============================================================================
#  INCREMENTAL DECODER
# =============================================================================

class FrameDecoder:
    """
    Sans-IO frame parser over one reusable receive buffer.

    Feed bytes with feed() (or recv_into(writable()) + commit(n)), then call
    next_frame() until it returns None. Partial frames stay buffered, so a
    read timeout in the middle of a frame loses nothing.
    """

    def __init__(self, extended: bool = False, size: int = INITIAL_BUFFER):
        self.extended = extended
        self._buf = bytearray(max(size, EXT_PREFIX))
        self._head = 0
        self._tail = 0
        self.discarded = 0

    def __len__(self) -> int:
        return self._tail - self._head

    @property
    def capacity(self) -> int:
        return len(self._buf)

    # --- buffer management ---

    def _compact(self):
        if self._head:
            n = self._tail - self._head
            self._buf[:n] = self._buf[self._head:self._tail]
            self._head, self._tail = 0, n

    def _reserve(self, need: int):
        """Make room for ``need`` bytes from the start of the unparsed data."""
        if len(self._buf) - self._head >= need:
            return
        self._compact()
        if len(self._buf) < need:
            new_size = max(need + FRAME_SLACK, 2 * len(self._buf))
            self._buf.extend(bytes(new_size - len(self._buf)))

    def writable(self, min_free: int = INITIAL_BUFFER) -> memoryview:
        """Free tail of the buffer, at least ``min_free`` bytes long."""
        if len(self._buf) - self._tail < min_free:
            self._reserve(self._tail - self._head + min_free)
        return memoryview(self._buf)[self._tail:]

    def commit(self, n: int):
        self._tail += n

    def feed(self, data: bytes):
        n = len(data)
        if n:
            with self.writable(n) as view:
                view[:n] = data
            self.commit(n)

    def _consume(self, n: int):
        self._head += n
        if self._head == self._tail:
            self._head = self._tail = 0

    def _resync(self):
        """Drop bytes up to the next start-sentinel candidate."""
        buf, h, t = self._buf, self._head, self._tail
        i = buf.find(FRAME_START, h + 1, t)
        if i < 0:
            # keep a trailing 0x5A, it may be the first half of a sentinel
            i = t - 1 if buf[t - 1] == FRAME_START[0] else t
        dropped = i - h
        log.warning("Invalid frame start, skipped %d byte(s): %s",
                    dropped, hex_str(buf[h:min(i, h + 16)]))
        self.discarded += dropped
        self._consume(dropped)

    # --- parsing ---

    def next_frame(self) -> Optional[Frame]:
        while True:
            if len(self) < len(FRAME_START):
                return None
            h = self._head
            if self._buf[h:h + 2] != FRAME_START:
                self._resync()
                continue
            if self.extended:
                return self._next_extended()
            return self._next_minimal()

    def _next_minimal(self) -> Optional[Frame]:
        if len(self) < MIN_PREFIX:
            return None
        buf, h = self._buf, self._head
        code_len = buf[h + 2]
        payload_len_x = MIN_PREFIX + code_len
        if len(self) < payload_len_x + 2:
            self._reserve(payload_len_x + 2)
            return None
        h = self._head
        payload_len = int.from_bytes(self._buf[h + payload_len_x:h + payload_len_x + 2], "big")
        total = payload_len_x + 2 + payload_len + len(FRAME_END)
        self._reserve(total)
        if len(self) < total:
            return None

        buf, h = self._buf, self._head
        end_x = h + total - len(FRAME_END)
        if buf[end_x:end_x + 2] != FRAME_END:
            raise FrameEndError(f"invalid frame end: {hex_str(buf[h:h + total])}")
        code = buf[h + MIN_PREFIX:h + payload_len_x].decode("ascii", errors="replace")
        payload = bytes(buf[h + payload_len_x + 2:end_x])
        self._consume(total)
        return Frame(code, payload)

    def _next_extended(self) -> Optional[Frame]:
        if len(self) < EXT_PREFIX:
            return None
        buf, h = self._buf, self._head
        frame_len = int.from_bytes(buf[h + 2:h + 4], "big")
        total = len(FRAME_START) + frame_len + len(FRAME_END)
        id_len = buf[h + 4]
        code_len_x = EXT_PREFIX + id_len
        if code_len_x + 1 > total:
            raise FrameError(f"frame id_len overflow: {code_len_x + 1} > {total}")
        self._reserve(total)
        if len(self) < total:
            return None

        buf, h = self._buf, self._head
        code_len = buf[h + code_len_x]
        payload_len_x = code_len_x + 1 + code_len
        if payload_len_x + 2 > total:
            raise FrameError(f"frame code_len overflow: {payload_len_x + 2} > {total}")
        payload_len = int.from_bytes(buf[h + payload_len_x:h + payload_len_x + 2], "big")
        end_x = payload_len_x + 2 + payload_len
        if end_x + len(FRAME_END) != total:
            raise FrameError(f"frame length mismatch: {end_x + len(FRAME_END)} != {total}")
        if buf[h + end_x:h + end_x + 2] != FRAME_END:
            raise FrameEndError(f"invalid frame end: {hex_str(buf[h:h + total])}")

        sender = buf[h + EXT_PREFIX:h + code_len_x].decode("ascii", errors="replace")
        code = buf[h + code_len_x + 1:h + payload_len_x].decode("ascii", errors="replace")
        payload = bytes(buf[h + payload_len_x + 2:h + end_x])
        self._consume(total)
        return Frame(code, payload, sender)


def decode_frame(data: bytes, extended: bool = False) -> Frame:
    """Parse exactly one frame from ``data`` (leading garbage is skipped)."""
    decoder = FrameDecoder(extended=extended, size=len(data) + FRAME_SLACK)
    decoder.feed(data)
    frame = decoder.next_frame()
    if frame is None:
        raise FrameError(f"incomplete frame ({len(data)} bytes)")
    return frame


def hex_str(data: bytes) -> str:
    """Format bytes as hex string."""
    return " ".join(f"{b:02X}" for b in data)
