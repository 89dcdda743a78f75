"""Ark addresses: bech32m of version || server key || taproot output key."""

from dataclasses import dataclass

from embit.bech32 import Encoding

from arkswap.utils.encoding import decode_bech32, encode_bech32m, words_to_bytes

ADDRESS_VERSION = 0
MAINNET_HRP = "ark"
TESTNET_HRP = "tark"


def hrp_for_network(network: str) -> str:
    return MAINNET_HRP if network == "bitcoin" else TESTNET_HRP


@dataclass(frozen=True)
class ArkAddress:
    """Offchain address of a virtual coin.

    Attributes:
        server_pubkey: X-only key of the ledger server
        tweaked_pubkey: Taproot output key of the coin's script tree
        hrp: "ark" on mainnet, "tark" elsewhere
        version: Address version, currently 0
    """

    server_pubkey: bytes
    tweaked_pubkey: bytes
    hrp: str = MAINNET_HRP
    version: int = ADDRESS_VERSION

    def encode(self) -> str:
        payload = bytes([self.version]) + self.server_pubkey + self.tweaked_pubkey
        return encode_bech32m(self.hrp, payload)

    @property
    def pk_script(self) -> bytes:
        return b"\x51\x20" + self.tweaked_pubkey

    @classmethod
    def decode(cls, address: str) -> "ArkAddress":
        hrp, words, encoding = decode_bech32(address)
        if encoding != Encoding.BECH32M:
            raise ValueError("Ark address must be bech32m encoded")
        if hrp not in (MAINNET_HRP, TESTNET_HRP):
            raise ValueError(f"Unknown Ark address prefix {hrp!r}")
        payload = words_to_bytes(words)
        if len(payload) != 65:
            raise ValueError(f"Invalid Ark address payload length {len(payload)}")
        return cls(
            server_pubkey=payload[1:33],
            tweaked_pubkey=payload[33:],
            hrp=hrp,
            version=payload[0],
        )

    def __str__(self) -> str:
        return self.encode()
