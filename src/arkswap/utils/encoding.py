"""Bech32 helpers on top of embit.bech32.

Ark addresses and Lightning invoices exceed the 90 character limit enforced by
bech32_decode, so decoding splits and verifies the string itself.
"""

from typing import Optional

from embit.bech32 import CHARSET, Encoding, bech32_encode, bech32_verify_checksum, convertbits

CHECKSUM_LENGTH = 6


def decode_bech32(value: str, expected_hrp: Optional[str] = None) -> tuple[str, list[int], int]:
    """Decode a bech32/bech32m string of any length.

    Returns:
        (hrp, 5-bit data without checksum, Encoding.BECH32 or Encoding.BECH32M)

    Raises:
        ValueError: On mixed case, bad characters, bad checksum or hrp mismatch
    """
    if value.lower() != value and value.upper() != value:
        raise ValueError("Mixed case bech32 string")
    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + CHECKSUM_LENGTH + 1 > len(value):
        raise ValueError("Missing bech32 separator")
    hrp = value[:pos]
    if any(ord(c) < 33 or ord(c) > 126 for c in hrp):
        raise ValueError("Invalid bech32 human readable part")
    try:
        data = [CHARSET.index(c) for c in value[pos + 1:]]
    except ValueError:
        raise ValueError("Invalid bech32 character")
    encoding = bech32_verify_checksum(hrp, data)
    if encoding is None:
        raise ValueError("Invalid bech32 checksum")
    if expected_hrp is not None and hrp != expected_hrp:
        raise ValueError(f"Unexpected prefix {hrp!r}, expected {expected_hrp!r}")
    return hrp, data[:-CHECKSUM_LENGTH], encoding


def encode_bech32m(hrp: str, payload: bytes) -> str:
    return bech32_encode(Encoding.BECH32M, hrp, convertbits(payload, 8, 5))


def words_to_bytes(words: list[int], pad: bool = False) -> bytes:
    converted = convertbits(words, 5, 8, pad)
    if converted is None:
        raise ValueError("Invalid bech32 padding")
    return bytes(converted)
