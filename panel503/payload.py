"""
Panel 503 — Message Payload Encoding

Payload layouts (bincode-compatible, little-endian):
  bool         1 byte, 0x00 / 0x01
  glow         f32 (4 bytes)
  glow vector  u64 element count + count * f32
  trigger      empty
"""

from __future__ import annotations

import struct
from typing import Iterable, List

_F32 = struct.Struct("<f")
_U64 = struct.Struct("<Q")


class PayloadError(ValueError):
    """Payload bytes don't match the layout the message code requires."""


def encode_bool(value: bool) -> bytes:
    return b"\x01" if value else b"\x00"


def decode_bool(payload: bytes) -> bool:
    if len(payload) != 1 or payload[0] > 1:
        raise PayloadError(f"bool payload must be one 0/1 byte, got {bytes(payload).hex(' ')!r}")
    return payload[0] == 1


def encode_glow(value: float) -> bytes:
    return _F32.pack(value)


def decode_glow(payload: bytes) -> float:
    if len(payload) != _F32.size:
        raise PayloadError(f"glow payload must be {_F32.size} bytes, got {len(payload)}")
    return _F32.unpack(payload)[0]


def encode_glow_vector(values: Iterable[float]) -> bytes:
    values = list(values)
    return _U64.pack(len(values)) + struct.pack(f"<{len(values)}f", *values)


def decode_glow_vector(payload: bytes) -> List[float]:
    if len(payload) < _U64.size:
        raise PayloadError(f"glow vector payload too short ({len(payload)} bytes)")
    (count,) = _U64.unpack_from(payload, 0)
    expected = _U64.size + count * _F32.size
    if len(payload) != expected:
        raise PayloadError(f"glow vector of {count} needs {expected} bytes, got {len(payload)}")
    return list(struct.unpack_from(f"<{count}f", payload, _U64.size))
