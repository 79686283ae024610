from __future__ import annotations

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    """Decode one CBOR frame. Malformed input surfaces as ValueError."""
    if not isinstance(b, (bytes, bytearray, memoryview)):
        raise TypeError("frame must be bytes")
    try:
        return cbor2.loads(bytes(b))
    except cbor2.CBORDecodeError as e:
        raise ValueError(f"undecodable frame: {e}") from e
