"""BIP-341 signature hashes for key path and script path spends."""

import hashlib
import struct
from io import BytesIO
from typing import Optional

from embit.transaction import Transaction, TransactionOutput

from arkswap.vhtlc.taproot import tagged_hash, write_compact

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01


def _ser_output(value: int, script: bytes) -> bytes:
    return struct.pack("<q", value) + write_compact(len(script)) + script


def taproot_sighash(
    tx: Transaction,
    index: int,
    prevouts: list[TransactionOutput],
    leaf_hash: Optional[bytes] = None,
    sighash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """Compute the BIP-341 message digest for input ``index``.

    Args:
        tx: Unsigned transaction
        index: Input being signed
        prevouts: Outputs spent by every input, in input order
        leaf_hash: Tap leaf hash for script path spends, None for key path
        sighash_type: SIGHASH_DEFAULT or SIGHASH_ALL; other modes unsupported
    """
    if sighash_type not in (SIGHASH_DEFAULT, SIGHASH_ALL):
        raise ValueError(f"Unsupported sighash type {sighash_type:#x}")
    if len(prevouts) != len(tx.vin):
        raise ValueError("Need one prevout per input")

    s = BytesIO()
    s.write(b"\x00")  # epoch
    s.write(struct.pack("<B", sighash_type))
    s.write(struct.pack("<i", tx.version))
    s.write(struct.pack("<I", tx.locktime))

    h = hashlib.sha256()
    for inp in tx.vin:
        # embit keeps txids in display order
        h.update(inp.txid[::-1] + struct.pack("<I", inp.vout))
    s.write(h.digest())
    h = hashlib.sha256()
    for out in prevouts:
        h.update(struct.pack("<q", out.value))
    s.write(h.digest())
    h = hashlib.sha256()
    for out in prevouts:
        script = out.script_pubkey.data
        h.update(write_compact(len(script)) + script)
    s.write(h.digest())
    h = hashlib.sha256()
    for inp in tx.vin:
        h.update(struct.pack("<I", inp.sequence))
    s.write(h.digest())

    h = hashlib.sha256()
    for out in tx.vout:
        h.update(_ser_output(out.value, out.script_pubkey.data))
    s.write(h.digest())

    s.write(struct.pack("<B", 2 if leaf_hash is not None else 0))
    s.write(struct.pack("<I", index))

    if leaf_hash is not None:
        s.write(leaf_hash)
        s.write(b"\x00")  # key version
        s.write(struct.pack("<i", -1))  # no OP_CODESEPARATOR

    return tagged_hash("TapSighash", s.getvalue())
