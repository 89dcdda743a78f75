"""MuSig2 (BIP-327) two-round Schnorr multi-signatures over secp256k1.

Used for the cooperative key-path spend of the Bitcoin leg of chain swaps.
Point arithmetic goes through coincurve; scalars are plain ints mod n.
"""

import logging
import secrets
from typing import Optional

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from arkswap.errors import MusigError
from arkswap.vhtlc.taproot import tagged_hash, tap_tweak

logger = logging.getLogger(__name__)

CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def _scalar(data: bytes) -> int:
    return int.from_bytes(data, "big") % CURVE_ORDER


def _bytes32(n: int) -> bytes:
    return n.to_bytes(32, "big")


def _has_even_y(point: PublicKey) -> bool:
    return point.format(compressed=True)[0] == 0x02


def _xbytes(point: PublicKey) -> bytes:
    return point.format(compressed=True)[1:]


def _negate(point: PublicKey) -> PublicKey:
    data = point.format(compressed=True)
    return PublicKey(bytes([data[0] ^ 0x01]) + data[1:])


def _mul(point: PublicKey, scalar: int) -> Optional[PublicKey]:
    scalar %= CURVE_ORDER
    if scalar == 0:
        return None
    return point.multiply(_bytes32(scalar))


def _add(*points: Optional[PublicKey]) -> Optional[PublicKey]:
    present = [p for p in points if p is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    try:
        return PublicKey.combine_keys(present)
    except ValueError:
        # Sum is the point at infinity
        return None


def _mul_g(scalar: int) -> Optional[PublicKey]:
    scalar %= CURVE_ORDER
    if scalar == 0:
        return None
    return PublicKey.from_secret(_bytes32(scalar))


class KeyAggContext:
    """Aggregate key Q with its accumulated sign (gacc) and tweak (tacc)."""

    def __init__(self, public_keys: list[bytes]):
        if not public_keys:
            raise MusigError("No public keys to aggregate")
        for key in public_keys:
            if len(key) != 33:
                raise MusigError("MuSig2 public keys must be 33-byte compressed keys")
        self.public_keys = list(public_keys)
        self._list_hash = tagged_hash("KeyAgg list", b"".join(public_keys))
        self._second = next((k for k in public_keys[1:] if k != public_keys[0]), None)

        point = _add(*(_mul(PublicKey(k), self.coefficient(k)) for k in public_keys))
        if point is None:
            raise MusigError("Aggregate key is the point at infinity")
        self.point = point
        self.gacc = 1
        self.tacc = 0

    def coefficient(self, public_key: bytes) -> int:
        if public_key == self._second:
            return 1
        return _scalar(tagged_hash("KeyAgg coefficient", self._list_hash + public_key))

    def apply_xonly_tweak(self, tweak: bytes) -> None:
        t = int.from_bytes(tweak, "big")
        if t >= CURVE_ORDER:
            raise MusigError("Tweak exceeds curve order")
        g = 1 if _has_even_y(self.point) else CURVE_ORDER - 1
        base = self.point if g == 1 else _negate(self.point)
        point = _add(base, _mul_g(t))
        if point is None:
            raise MusigError("Tweaked key is the point at infinity")
        self.point = point
        self.gacc = (g * self.gacc) % CURVE_ORDER
        self.tacc = (t + g * self.tacc) % CURVE_ORDER

    @property
    def xonly(self) -> bytes:
        return _xbytes(self.point)


def generate_nonce(
    secret_key: Optional[bytes],
    public_key: bytes,
    aggregate_xonly: Optional[bytes] = None,
    msg: Optional[bytes] = None,
    extra_in: bytes = b"",
    rand: Optional[bytes] = None,
) -> tuple[bytes, bytes]:
    """BIP-327 NonceGen. Returns (secnonce k1||k2, pubnonce R1||R2)."""
    rand = rand if rand is not None else secrets.token_bytes(32)
    if secret_key is not None:
        mask = tagged_hash("MuSig/aux", rand)
        rand = bytes(a ^ b for a, b in zip(secret_key, mask))
    aggregate_xonly = aggregate_xonly or b""
    if msg is None:
        msg_prefixed = b"\x00"
    else:
        msg_prefixed = b"\x01" + len(msg).to_bytes(8, "big") + msg
    base = (
        rand
        + bytes([len(public_key)]) + public_key
        + bytes([len(aggregate_xonly)]) + aggregate_xonly
        + msg_prefixed
        + len(extra_in).to_bytes(4, "big") + extra_in
    )
    k1 = _scalar(tagged_hash("MuSig/nonce", base + b"\x00"))
    k2 = _scalar(tagged_hash("MuSig/nonce", base + b"\x01"))
    if k1 == 0 or k2 == 0:
        raise MusigError("Nonce generation produced zero")
    pubnonce = _mul_g(k1).format(compressed=True) + _mul_g(k2).format(compressed=True)
    return _bytes32(k1) + _bytes32(k2), pubnonce


def aggregate_nonces(pubnonces: list[bytes]) -> bytes:
    """BIP-327 NonceAgg."""
    result = b""
    for j in range(2):
        try:
            points = [PublicKey(n[33 * j:33 * (j + 1)]) for n in pubnonces]
        except ValueError:
            raise MusigError("Invalid public nonce")
        point = _add(*points)
        result += point.format(compressed=True) if point is not None else b"\x00" * 33
    return result


class Musig:
    """One signer's view of a MuSig2 session.

    Stages must run in order: tweak (optional), generate_nonce,
    aggregate_nonces, sign_partial / add_partial, aggregate_partials.

    Example:
        musig = Musig(key, [server_pubkey, key.public_key.format()])
        musig.tweak_taproot(merkle_root)
        our_nonce = musig.generate_nonce(sighash)
        musig.aggregate_nonces([(server_pubkey, server_nonce)], sighash)
        our_partial = musig.sign_partial()
        musig.add_partial(server_pubkey, server_partial)
        signature = musig.aggregate_partials()
    """

    def __init__(self, private_key: PrivateKey, public_keys: list[bytes]):
        self._private_key = private_key
        self.public_key = private_key.public_key.format(compressed=True)
        if self.public_key not in public_keys:
            raise MusigError("Own public key is not part of the key set")
        self.key_agg = KeyAggContext(public_keys)
        self._secnonce: Optional[bytes] = None
        self.pubnonce: Optional[bytes] = None
        self._nonces: dict[bytes, bytes] = {}
        self._partials: dict[bytes, int] = {}
        self._msg: Optional[bytes] = None
        self._aggnonce: Optional[bytes] = None
        self._b = 0
        self._e = 0
        self._r: Optional[PublicKey] = None

    @property
    def public_keys(self) -> list[bytes]:
        return self.key_agg.public_keys

    @property
    def aggregated_xonly(self) -> bytes:
        return self.key_agg.xonly

    def tweak(self, tweak: bytes) -> None:
        if self._secnonce is not None:
            raise MusigError("Cannot tweak after nonce generation")
        self.key_agg.apply_xonly_tweak(tweak)

    def tweak_taproot(self, merkle_root: Optional[bytes]) -> bytes:
        """Apply the BIP-341 taptweak and return the tweaked x-only key."""
        self.tweak(tap_tweak(self.key_agg.xonly, merkle_root))
        return self.key_agg.xonly

    def generate_nonce(self, msg: Optional[bytes] = None) -> bytes:
        self._secnonce, self.pubnonce = generate_nonce(
            self._private_key.secret, self.public_key, self.key_agg.xonly, msg
        )
        self._nonces[self.public_key] = self.pubnonce
        return self.pubnonce

    def aggregate_nonces(self, nonces: list[tuple[bytes, bytes]], msg: bytes) -> None:
        """Collect the other signers' nonces and open the signing session."""
        if self.pubnonce is None:
            raise MusigError("Generate our nonce first")
        for public_key, nonce in nonces:
            if public_key not in self.public_keys:
                raise MusigError("Nonce from unknown signer")
            if len(nonce) != 66:
                raise MusigError("Public nonce must be 66 bytes")
            self._nonces[public_key] = nonce
        missing = [k for k in self.public_keys if k not in self._nonces]
        if missing:
            raise MusigError(f"Missing nonces from {len(missing)} signers")

        self._aggnonce = aggregate_nonces([self._nonces[k] for k in self.public_keys])
        self._msg = msg
        q = self.key_agg.xonly
        self._b = _scalar(tagged_hash("MuSig/noncecoef", self._aggnonce + q + msg))
        r1 = self._point_or_none(self._aggnonce[:33])
        r2 = self._point_or_none(self._aggnonce[33:])
        r = _add(r1, _mul(r2, self._b) if r2 is not None else None)
        self._r = r if r is not None else PublicKey.from_secret(_bytes32(1))
        self._e = _scalar(tagged_hash("BIP0340/challenge", _xbytes(self._r) + q + msg))

    @staticmethod
    def _point_or_none(data: bytes) -> Optional[PublicKey]:
        return None if data == b"\x00" * 33 else PublicKey(data)

    def _require_session(self) -> None:
        if self._r is None:
            raise MusigError("Nonces have not been aggregated")

    def sign_partial(self) -> bytes:
        self._require_session()
        if self._secnonce is None:
            raise MusigError("Nonce already used or never generated")
        k1 = int.from_bytes(self._secnonce[:32], "big")
        k2 = int.from_bytes(self._secnonce[32:], "big")
        # Nonces are single use
        self._secnonce = None
        if not _has_even_y(self._r):
            k1, k2 = CURVE_ORDER - k1, CURVE_ORDER - k2
        g = 1 if _has_even_y(self.key_agg.point) else CURVE_ORDER - 1
        d = (g * self.key_agg.gacc * int.from_bytes(self._private_key.secret, "big")) % CURVE_ORDER
        a = self.key_agg.coefficient(self.public_key)
        s = (k1 + self._b * k2 + self._e * a * d) % CURVE_ORDER
        self._partials[self.public_key] = s
        return _bytes32(s)

    def verify_partial(self, public_key: bytes, partial: bytes) -> bool:
        self._require_session()
        s = int.from_bytes(partial, "big")
        if s >= CURVE_ORDER or public_key not in self._nonces:
            return False
        nonce = self._nonces[public_key]
        re = _add(PublicKey(nonce[:33]), _mul(PublicKey(nonce[33:]), self._b))
        if re is not None and not _has_even_y(self._r):
            re = _negate(re)
        g = 1 if _has_even_y(self.key_agg.point) else CURVE_ORDER - 1
        a = self.key_agg.coefficient(public_key)
        expected = _add(re, _mul(PublicKey(public_key), self._e * a * g * self.key_agg.gacc))
        actual = _mul_g(s)
        if expected is None or actual is None:
            return expected is actual
        return expected.format() == actual.format()

    def add_partial(self, public_key: bytes, partial: bytes) -> None:
        if len(partial) != 32 or not self.verify_partial(public_key, partial):
            raise MusigError("Invalid partial signature")
        self._partials[public_key] = int.from_bytes(partial, "big")

    def aggregate_partials(self) -> bytes:
        self._require_session()
        missing = [k for k in self.public_keys if k not in self._partials]
        if missing:
            raise MusigError(f"Missing partial signatures from {len(missing)} signers")
        g = 1 if _has_even_y(self.key_agg.point) else CURVE_ORDER - 1
        s = (sum(self._partials.values()) + self._e * g * self.key_agg.tacc) % CURVE_ORDER
        signature = _xbytes(self._r) + _bytes32(s)
        if not PublicKeyXOnly(self.key_agg.xonly).verify(signature, self._msg):
            raise MusigError("Aggregated signature does not verify")
        logger.debug(f"MuSig2 signature aggregated for key {self.key_agg.xonly.hex()}")
        return signature
