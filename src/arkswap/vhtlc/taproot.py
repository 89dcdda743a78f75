"""BIP-341 taproot helpers: tagged hashes, script trees, output keys.

Trees are assembled the same way the ledger and the counterparty build them
(lightest pair first, stable order), so addresses derived here match theirs.
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Optional

from coincurve import PublicKey

TAPROOT_LEAF_VERSION = 0xC0

# BIP-341 "nothing up my sleeve" point: no known discrete log, disables key path
NUMS_INTERNAL_KEY = bytes.fromhex(
    "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)


def write_compact(n: int) -> bytes:
    if n < 0xFD:
        return struct.pack("<B", n)
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def tagged_hash(tag: str, data: bytes) -> bytes:
    t = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(t + t + data).digest()


def tap_leaf_hash(script: bytes, leaf_version: int = TAPROOT_LEAF_VERSION) -> bytes:
    buf = struct.pack("B", leaf_version) + write_compact(len(script)) + script
    return tagged_hash("TapLeaf", buf)


def tap_branch_hash(a: bytes, b: bytes) -> bytes:
    if a > b:
        a, b = b, a
    return tagged_hash("TapBranch", a + b)


def tap_tweak(internal_key: bytes, merkle_root: Optional[bytes]) -> bytes:
    return tagged_hash("TapTweak", internal_key + (merkle_root or b""))


def tweak_public_key(internal_key: bytes, merkle_root: Optional[bytes]) -> tuple[bytes, int]:
    """Return (x-only output key, parity) for an x-only internal key."""
    tweak = tap_tweak(internal_key, merkle_root)
    output = PublicKey(b"\x02" + internal_key).add(tweak).format(compressed=True)
    return output[1:], output[0] & 1


@dataclass(frozen=True)
class TapLeafScript:
    """A leaf script together with the control block proving its inclusion.

    Attributes:
        script: Raw tapscript bytes
        control_block: (leaf version | parity) || internal key || merkle path
    """

    script: bytes
    control_block: bytes

    @property
    def leaf_version(self) -> int:
        return self.control_block[0] & 0xFE

    @property
    def leaf_hash(self) -> bytes:
        return tap_leaf_hash(self.script, self.leaf_version)


class TaprootTree:
    """Script tree over an internal key.

    Computes the merkle root, the tweaked output key and a control block for
    every leaf.
    """

    def __init__(self, leaves: list[bytes], internal_key: bytes = NUMS_INTERNAL_KEY):
        if not leaves:
            raise ValueError("Taproot tree needs at least one leaf")
        self.leaves = list(leaves)
        self.internal_key = internal_key
        self.merkle_root, self._paths, self._order = self._assemble(self.leaves)
        self.output_key, self.parity = tweak_public_key(internal_key, self.merkle_root)

    @staticmethod
    def _assemble(leaves: list[bytes]) -> tuple[bytes, list[list[bytes]], list[int]]:
        # Nodes are (weight, hash, indexes of leaves below)
        paths: list[list[bytes]] = [[] for _ in leaves]
        nodes = [(1, tap_leaf_hash(script), [i]) for i, script in enumerate(leaves)]
        while len(nodes) > 1:
            nodes.sort(key=lambda node: -node[0])
            right = nodes.pop()
            left = nodes.pop()
            for i in left[2]:
                paths[i].append(right[1])
            for i in right[2]:
                paths[i].append(left[1])
            nodes.append(
                (left[0] + right[0], tap_branch_hash(left[1], right[1]), left[2] + right[2])
            )
        return nodes[0][1], paths, nodes[0][2]

    def depth_first(self) -> list[tuple[int, bytes]]:
        """(depth, script) of every leaf in depth-first order."""
        return [(len(self._paths[i]), self.leaves[i]) for i in self._order]

    @property
    def pk_script(self) -> bytes:
        """Segwit v1 output script paying to the tweaked key."""
        return b"\x51\x20" + self.output_key

    def control_block(self, index: int) -> bytes:
        return (
            bytes([TAPROOT_LEAF_VERSION | self.parity])
            + self.internal_key
            + b"".join(self._paths[index])
        )

    def leaf(self, index: int) -> TapLeafScript:
        return TapLeafScript(self.leaves[index], self.control_block(index))

    def find_leaf(self, script: bytes) -> TapLeafScript:
        try:
            index = self.leaves.index(script)
        except ValueError:
            raise ValueError("Script is not a leaf of this tree")
        return self.leaf(index)


def verify_control_block(leaf: TapLeafScript, output_key: bytes) -> bool:
    """Check that a leaf and its control block commit to output_key."""
    cb = leaf.control_block
    if len(cb) < 33 or (len(cb) - 33) % 32:
        return False
    node = leaf.leaf_hash
    for i in range(33, len(cb), 32):
        node = tap_branch_hash(node, cb[i:i + 32])
    key, parity = tweak_public_key(cb[1:33], node)
    return key == output_key and parity == cb[0] & 1
