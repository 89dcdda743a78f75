"""Virtual HTLC scripts for the Ark ledger.

A VHTLC locks a virtual coin so that the receiver can claim it with the
preimage (co-signed by the ledger server), the sender can take it back after
the refund locktime, and either party can exit unilaterally after a relative
delay.
"""

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from embit.hashes import ripemd160

from arkswap.errors import InvalidKeyError
from arkswap.vhtlc.taproot import TapLeafScript, TaprootTree

logger = logging.getLogger(__name__)

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_1 = 0x51
OP_16 = 0x60
OP_VERIFY = 0x69
OP_DROP = 0x75
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKSIGVERIFY = 0xAD
OP_CHECKLOCKTIMEVERIFY = 0xB1
OP_CHECKSEQUENCEVERIFY = 0xB2

# Relative delays below this are block counts, anything else is seconds
SECONDS_THRESHOLD = 512
BIP68_TYPE_FLAG = 1 << 22
BIP68_SECONDS_SHIFT = 9


class LeafRole(str, Enum):
    """Spending paths of a VHTLC, in tree order."""

    CLAIM = "claim"
    REFUND = "refund"
    REFUND_WITHOUT_RECEIVER = "refund_without_receiver"
    UNILATERAL_CLAIM = "unilateral_claim"
    UNILATERAL_REFUND = "unilateral_refund"
    UNILATERAL_REFUND_WITHOUT_RECEIVER = "unilateral_refund_without_receiver"


@dataclass(frozen=True)
class RelativeTimelock:
    """A CSV delay, either in blocks or in seconds."""

    value: int
    type: str  # "blocks" or "seconds"

    @classmethod
    def from_value(cls, value: int) -> "RelativeTimelock":
        if value <= 0:
            raise ValueError(f"Relative timelock must be positive, got {value}")
        return cls(value, "blocks" if value < SECONDS_THRESHOLD else "seconds")

    @property
    def sequence(self) -> int:
        """BIP-68 nSequence encoding."""
        if self.type == "blocks":
            if self.value > 0xFFFF:
                raise ValueError(f"Block delay {self.value} exceeds 16 bits")
            return self.value
        units = self.value >> BIP68_SECONDS_SHIFT
        if units > 0xFFFF:
            raise ValueError(f"Seconds delay {self.value} exceeds BIP-68 range")
        return BIP68_TYPE_FLAG | units


def decode_sequence(sequence: int) -> RelativeTimelock:
    if sequence & BIP68_TYPE_FLAG:
        return RelativeTimelock((sequence & 0xFFFF) << BIP68_SECONDS_SHIFT, "seconds")
    return RelativeTimelock(sequence & 0xFFFF, "blocks")


def encode_script_num(n: int) -> bytes:
    """Minimal CScriptNum encoding (without the push opcode)."""
    if n == 0:
        return b""
    result = bytearray()
    negative = n < 0
    value = abs(n)
    while value:
        result.append(value & 0xFF)
        value >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def decode_script_num(data: bytes) -> int:
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def push_data(data: bytes) -> bytes:
    if len(data) < OP_PUSHDATA1:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return bytes([OP_PUSHDATA1, len(data)]) + data
    return bytes([OP_PUSHDATA2]) + len(data).to_bytes(2, "little") + data


def push_number(n: int) -> bytes:
    if n == 0:
        return bytes([OP_0])
    if 1 <= n <= 16:
        return bytes([OP_1 + n - 1])
    return push_data(encode_script_num(n))


def iter_script(script: bytes):
    """Yield (opcode, pushed data or None) for every instruction."""
    i = 0
    while i < len(script):
        op = script[i]
        i += 1
        if 0 < op < OP_PUSHDATA1:
            yield op, script[i:i + op]
            i += op
        elif op == OP_PUSHDATA1:
            size = script[i]
            yield op, script[i + 1:i + 1 + size]
            i += 1 + size
        elif op == OP_PUSHDATA2:
            size = int.from_bytes(script[i:i + 2], "little")
            yield op, script[i + 2:i + 2 + size]
            i += 2 + size
        else:
            yield op, None


def read_script_number(op: int, data: Optional[bytes]) -> int:
    if data is not None:
        return decode_script_num(data)
    if op == OP_0:
        return 0
    if OP_1 <= op <= OP_16:
        return op - OP_1 + 1
    raise ValueError(f"Opcode {op:#x} is not a number")


def extract_timelock(script: bytes) -> Optional[int]:
    """Return the CLTV locktime or the raw CSV delay committed in a leaf.

    CSV values are decoded from BIP-68 back to blocks or seconds.
    """
    ops = list(iter_script(script))
    for i in range(1, len(ops)):
        op = ops[i][0]
        if op == OP_CHECKLOCKTIMEVERIFY:
            return read_script_number(*ops[i - 1])
        if op == OP_CHECKSEQUENCEVERIFY:
            return decode_sequence(read_script_number(*ops[i - 1])).value
    return None


def normalize_key(key: Union[bytes, str], role: str) -> bytes:
    """Accept a 32-byte x-only or 33-byte compressed key, return x-only."""
    if isinstance(key, str):
        key = bytes.fromhex(key)
    if len(key) == 33:
        return key[1:]
    if len(key) == 32:
        return key
    raise InvalidKeyError(role, len(key))


def multisig_script(pubkeys: list[bytes]) -> bytes:
    script = b""
    for key in pubkeys[:-1]:
        script += push_data(key) + bytes([OP_CHECKSIGVERIFY])
    return script + push_data(pubkeys[-1]) + bytes([OP_CHECKSIG])


def hash_lock_condition(hash_lock: bytes) -> bytes:
    return bytes([OP_HASH160]) + push_data(hash_lock) + bytes([OP_EQUAL, OP_VERIFY])


def cltv_prefix(locktime: int) -> bytes:
    return push_number(locktime) + bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])


def csv_prefix(timelock: RelativeTimelock) -> bytes:
    return push_number(timelock.sequence) + bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP])


def hash160_of_payment_hash(payment_hash: bytes) -> bytes:
    return ripemd160(payment_hash)


@dataclass(frozen=True)
class VHTLCOptions:
    """Inputs of a VHTLC.

    Attributes:
        sender: X-only key of the party locking the funds
        receiver: X-only key of the party that claims with the preimage
        server: X-only key of the ledger server
        preimage_hash: SHA256 of the preimage
        refund_locktime: Absolute locktime of the cooperative-free refund
        unilateral_claim_delay: CSV delay of the unilateral claim
        unilateral_refund_delay: CSV delay of the unilateral refund
        unilateral_refund_without_receiver_delay: CSV delay of the sender exit
    """

    sender: bytes
    receiver: bytes
    server: bytes
    preimage_hash: bytes
    refund_locktime: int
    unilateral_claim_delay: RelativeTimelock
    unilateral_refund_delay: RelativeTimelock
    unilateral_refund_without_receiver_delay: RelativeTimelock


class VHTLCScript:
    """Taproot tree of the six VHTLC spending paths."""

    def __init__(self, options: VHTLCOptions):
        if len(options.preimage_hash) != 32:
            raise ValueError("Preimage hash must be 32 bytes")
        if options.refund_locktime <= 0:
            raise ValueError("Refund locktime must be positive")
        self.options = options
        self.hash_lock = hash160_of_payment_hash(options.preimage_hash)

        o = options
        condition = hash_lock_condition(self.hash_lock)
        self.scripts: dict[LeafRole, bytes] = {
            LeafRole.CLAIM: condition + multisig_script([o.receiver, o.server]),
            LeafRole.REFUND: multisig_script([o.sender, o.receiver, o.server]),
            LeafRole.REFUND_WITHOUT_RECEIVER: cltv_prefix(o.refund_locktime)
            + multisig_script([o.sender, o.server]),
            LeafRole.UNILATERAL_CLAIM: csv_prefix(o.unilateral_claim_delay)
            + condition
            + multisig_script([o.receiver]),
            LeafRole.UNILATERAL_REFUND: csv_prefix(o.unilateral_refund_delay)
            + multisig_script([o.sender, o.receiver]),
            LeafRole.UNILATERAL_REFUND_WITHOUT_RECEIVER: csv_prefix(
                o.unilateral_refund_without_receiver_delay
            )
            + multisig_script([o.sender]),
        }
        self.tree = TaprootTree([self.scripts[role] for role in LeafRole])

    @property
    def pk_script(self) -> bytes:
        return self.tree.pk_script

    @property
    def tweaked_public_key(self) -> bytes:
        return self.tree.output_key

    def leaf(self, role: LeafRole) -> TapLeafScript:
        return self.tree.find_leaf(self.scripts[role])

    def claim(self) -> TapLeafScript:
        return self.leaf(LeafRole.CLAIM)

    def refund(self) -> TapLeafScript:
        return self.leaf(LeafRole.REFUND)

    def refund_without_receiver(self) -> TapLeafScript:
        return self.leaf(LeafRole.REFUND_WITHOUT_RECEIVER)

    def check_preimage(self, preimage: bytes) -> bool:
        """True when RIPEMD160(SHA256(preimage)) equals the hash lock."""
        return hash160_of_payment_hash(hashlib.sha256(preimage).digest()) == self.hash_lock

    def __repr__(self) -> str:
        return f"VHTLCScript(output_key={self.tweaked_public_key.hex()})"
