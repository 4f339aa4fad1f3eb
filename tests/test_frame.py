"""
Unit tests for the frame builder / incremental decoder.

Byte-exact layouts for minimal and extended frames, resynchronisation on a
bad start, fatal bad end, partial input and buffer growth. No sockets.

Usage:
  python -m pytest tests/test_frame.py -v
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from panel503.frame import (
    FRAME_END,
    FRAME_START,
    Frame,
    FrameDecoder,
    FrameEndError,
    FrameError,
    decode_frame,
    encode_extended_frame,
    encode_frame,
    hex_str,
)


# =============================================================================
#  ENCODING
# =============================================================================

def test_minimal_layout():
    assert encode_frame("STAT") == bytes.fromhex("5A5A 04 53544154 0000 A5A5")


def test_minimal_with_payload():
    raw = encode_frame("POWER", b"\x01")
    assert raw == FRAME_START + b"\x05POWER" + b"\x00\x01" + b"\x01" + FRAME_END


def test_extended_layout():
    raw = encode_extended_frame("MF", "POWER", b"\x01")
    assert raw == bytes.fromhex("5A5A 000E 02 4D46 05 504F574552 0001 01 A5A5")
    # frame_len excludes both sentinels
    assert int.from_bytes(raw[2:4], "big") == len(raw) - 4


def test_extended_empty_sender():
    raw = encode_extended_frame("", "ESTAT")
    assert raw[4] == 0
    assert decode_frame(raw, extended=True) == Frame("ESTAT", b"", "")


def test_frame_build():
    assert Frame("KILL").build() == encode_frame("KILL")
    assert Frame("KILL", sender="MF").build(extended=True) == encode_extended_frame("MF", "KILL")


@pytest.mark.parametrize("code", ["ÉTAT", "x" * 256])
def test_bad_code_rejected(code):
    with pytest.raises(FrameError):
        encode_frame(code)


def test_payload_too_long():
    with pytest.raises(FrameError):
        encode_frame("A", bytes(0x10000))


def test_sender_id_must_be_ascii():
    with pytest.raises(FrameError):
        encode_extended_frame("pañel", "STAT")


def test_hex_str():
    assert hex_str(b"\x5a\xa5\x00") == "5A A5 00"


# =============================================================================
#  DECODING: single frames
# =============================================================================

def test_decode_minimal():
    frame = decode_frame(encode_frame("XFER", b"\x00\x00\x00\x3f"))
    assert frame.code == "XFER"
    assert frame.payload == b"\x00\x00\x00\x3f"
    assert frame.sender is None


def test_decode_extended():
    frame = decode_frame(encode_extended_frame("PANEL", "NOPRO", b"\x01"), extended=True)
    assert frame == Frame("NOPRO", b"\x01", "PANEL")


def test_decode_incomplete():
    raw = encode_frame("STAT")
    with pytest.raises(FrameError):
        decode_frame(raw[:-1])


def test_non_ascii_code_is_replaced():
    raw = FRAME_START + b"\x01\xff" + b"\x00\x00" + FRAME_END
    assert decode_frame(raw).code == "\ufffd"


# =============================================================================
#  DECODING: stream behaviour
# =============================================================================

def test_two_frames_in_one_read():
    dec = FrameDecoder()
    dec.feed(encode_frame("STAT") + encode_frame("CLEAR"))
    assert dec.next_frame().code == "STAT"
    assert dec.next_frame().code == "CLEAR"
    assert dec.next_frame() is None
    assert len(dec) == 0


@pytest.mark.parametrize("extended", [False, True])
def test_byte_at_a_time(extended):
    raw = encode_extended_frame("MF", "A", bytes(range(40))) if extended \
        else encode_frame("A", bytes(range(40)))
    dec = FrameDecoder(extended=extended)
    for b in raw[:-1]:
        dec.feed(bytes([b]))
        assert dec.next_frame() is None
    dec.feed(raw[-1:])
    frame = dec.next_frame()
    assert frame.code == "A"
    assert frame.payload == bytes(range(40))


def test_garbage_before_start_is_skipped():
    dec = FrameDecoder()
    dec.feed(b"\x00\x01\xA5" + encode_frame("STAT"))
    assert dec.next_frame().code == "STAT"
    assert dec.discarded == 3


def test_half_sentinel_kept_across_reads():
    raw = encode_frame("RESET")
    dec = FrameDecoder()
    dec.feed(b"\x00" + raw[:1])
    assert dec.next_frame() is None
    assert len(dec) == 1
    dec.feed(raw[1:])
    assert dec.next_frame().code == "RESET"
    assert dec.discarded == 1


def test_all_garbage_drains():
    dec = FrameDecoder()
    dec.feed(b"\x01\x02\x03\x04")
    assert dec.next_frame() is None
    assert len(dec) == 0


@pytest.mark.parametrize("extended", [False, True])
def test_bad_end_is_fatal(extended):
    raw = bytearray(encode_extended_frame("MF", "STAT") if extended else encode_frame("STAT"))
    raw[-2:] = b"\x00\x00"
    dec = FrameDecoder(extended=extended)
    dec.feed(bytes(raw))
    with pytest.raises(FrameEndError):
        dec.next_frame()


def test_extended_length_mismatch():
    # frame_len claims one byte more than the fields add up to
    raw = bytes.fromhex("5A5A 0009 01 41 01 42 0000 00 A5A5")
    dec = FrameDecoder(extended=True)
    dec.feed(raw)
    with pytest.raises(FrameError) as exc:
        dec.next_frame()
    assert not isinstance(exc.value, FrameEndError)


def test_extended_id_len_overflow():
    dec = FrameDecoder(extended=True)
    dec.feed(bytes.fromhex("5A5A 0003 FF"))
    with pytest.raises(FrameError):
        dec.next_frame()


def test_extended_code_len_overflow():
    # id "A", then code_len 0xFF inside an 8-byte frame
    dec = FrameDecoder(extended=True)
    dec.feed(bytes.fromhex("5A5A 0008 01 41 FF 42 0000 A5A5"))
    with pytest.raises(FrameError):
        dec.next_frame()


# =============================================================================
#  BUFFER GROWTH
# =============================================================================

@pytest.mark.parametrize("extended", [False, True])
def test_buffer_grows_for_large_frame(extended):
    payload = bytes(i & 0xFF for i in range(5000))
    raw = encode_extended_frame("MF", "A", payload) if extended else encode_frame("A", payload)
    dec = FrameDecoder(extended=extended, size=8)
    dec.feed(raw)
    assert dec.capacity >= len(raw)
    assert dec.next_frame().payload == payload


def test_writable_commit():
    raw = encode_frame("ESTAT")
    dec = FrameDecoder()
    with dec.writable(len(raw)) as view:
        view[:len(raw)] = raw
    dec.commit(len(raw))
    assert dec.next_frame().code == "ESTAT"


def test_partial_frame_survives_compaction():
    first, second = encode_frame("STAT"), encode_frame("A", bytes(300))
    dec = FrameDecoder(size=16)
    dec.feed(first + second[:10])
    assert dec.next_frame().code == "STAT"
    assert dec.next_frame() is None
    dec.feed(second[10:])
    assert dec.next_frame().payload == bytes(300)



# =============================================================================
#  ROUND TRIP AT THE LENGTH LIMITS
# =============================================================================

@pytest.mark.parametrize("code_len", [1, 255])
@pytest.mark.parametrize("payload_len", [0, 1, 0xFFFF])
def test_minimal_round_trip_limits(code_len, payload_len):
    code = "C" * code_len
    payload = bytes(i & 0xFF for i in range(payload_len))
    frame = decode_frame(encode_frame(code, payload))
    assert (frame.code, frame.payload) == (code, payload)


# frame_len is 16 bits and counts its own two bytes and the other header fields
EXT_MAX_PAYLOAD = 0xFFFF - (2 + 1 + 2 + 1 + 1 + 2)   # sender "MF", code "A"


def test_extended_round_trip_largest_payload():
    payload = bytes(i & 0xFF for i in range(EXT_MAX_PAYLOAD))
    raw = encode_extended_frame("MF", "A", payload)
    assert int.from_bytes(raw[2:4], "big") == 0xFFFF
    assert decode_frame(raw, extended=True) == Frame("A", payload, "MF")


def test_extended_one_byte_too_long():
    with pytest.raises(FrameError):
        encode_extended_frame("MF", "A", bytes(EXT_MAX_PAYLOAD + 1))


def test_extended_round_trip_long_fields():
    sender, code = "S" * 255, "C" * 255
    frame = decode_frame(encode_extended_frame(sender, code, b"\x01"), extended=True)
    assert frame == Frame(code, b"\x01", sender)


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
