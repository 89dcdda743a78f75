"""Tests for VHTLC script derivation."""

import hashlib

import pytest
from coincurve import PrivateKey
from embit.bech32 import Encoding, bech32_encode, convertbits

from arkswap.errors import InvalidKeyError
from arkswap.utils.encoding import decode_bech32, words_to_bytes
from arkswap.vhtlc import (
    ArkAddress,
    LeafRole,
    RelativeTimelock,
    build_vhtlc,
    extract_timelock,
    normalize_key,
)
from arkswap.vhtlc.taproot import verify_control_block


def _key() -> bytes:
    return PrivateKey().public_key.format(compressed=True)


@pytest.fixture
def params(preimage_hash):
    return {
        "network": "regtest",
        "preimage_hash": preimage_hash,
        "receiver": _key(),
        "sender": _key(),
        "server": _key(),
        "refund_locktime": 800,
        "unilateral_claim_delay": 10,
        "unilateral_refund_delay": 20,
        "unilateral_refund_without_receiver_delay": 30,
    }


class TestAddressDerivation:
    """Tests for VHTLC address derivation."""

    def test_deterministic(self, params):
        """Test same inputs give the same address."""
        _, first = build_vhtlc(**params)
        _, second = build_vhtlc(**params)
        assert first == second

    def test_testnet_prefix(self, params):
        """Test non-mainnet networks use the tark prefix."""
        _, address = build_vhtlc(**params)
        assert address.startswith("tark1")

    def test_mainnet_prefix(self, params):
        """Test mainnet uses the ark prefix."""
        params["network"] = "bitcoin"
        _, address = build_vhtlc(**params)
        assert address.startswith("ark1")

    @pytest.mark.parametrize("field", ["receiver", "sender", "server"])
    def test_sensitive_to_keys(self, params, field):
        """Test changing any key changes the address."""
        _, before = build_vhtlc(**params)
        params[field] = _key()
        _, after = build_vhtlc(**params)
        assert before != after

    @pytest.mark.parametrize(
        "field",
        [
            "refund_locktime",
            "unilateral_claim_delay",
            "unilateral_refund_delay",
            "unilateral_refund_without_receiver_delay",
        ],
    )
    def test_sensitive_to_timeouts(self, params, field):
        """Test changing any timeout changes the address."""
        _, before = build_vhtlc(**params)
        params[field] += 1
        _, after = build_vhtlc(**params)
        assert before != after

    def test_sensitive_to_hash(self, params):
        """Test changing the preimage hash changes the address."""
        _, before = build_vhtlc(**params)
        params["preimage_hash"] = hashlib.sha256(b"other").hexdigest()
        _, after = build_vhtlc(**params)
        assert before != after

    def test_xonly_and_compressed_keys_agree(self, params):
        """Test keys may be given x-only or compressed."""
        _, compressed = build_vhtlc(**params)
        for field in ("receiver", "sender", "server"):
            params[field] = params[field][1:].hex()
        _, xonly = build_vhtlc(**params)
        assert compressed == xonly

    def test_address_commits_to_script(self, params):
        """Test the address decodes to the script's output key and server key."""
        script, address = build_vhtlc(**params)
        decoded = ArkAddress.decode(address)
        assert decoded.tweaked_pubkey == script.tweaked_public_key
        assert decoded.server_pubkey == params["server"][1:]
        assert decoded.pk_script == script.pk_script


class TestArkAddress:
    """Tests for bech32m address encoding."""

    def test_encode_decode(self):
        address = ArkAddress(server_pubkey=b"\x11" * 32, tweaked_pubkey=b"\x22" * 32, hrp="tark")
        encoded = address.encode()
        assert encoded.startswith("tark1")
        assert ArkAddress.decode(encoded) == address

    def test_uses_bech32m_checksum(self):
        encoded = ArkAddress(server_pubkey=b"\x11" * 32, tweaked_pubkey=b"\x22" * 32).encode()
        _, data, encoding = decode_bech32(encoded)
        assert encoding == Encoding.BECH32M
        assert words_to_bytes(data)[0] == 0

    def test_rejects_bech32(self):
        payload = convertbits(bytes(65), 8, 5)
        legacy = bech32_encode(Encoding.BECH32, "tark", payload)
        with pytest.raises(ValueError, match="bech32m"):
            ArkAddress.decode(legacy)

    def test_rejects_bad_checksum(self):
        encoded = ArkAddress(server_pubkey=b"\x11" * 32, tweaked_pubkey=b"\x22" * 32).encode()
        tampered = encoded[:-1] + ("q" if encoded[-1] != "q" else "p")
        with pytest.raises(ValueError, match="checksum"):
            ArkAddress.decode(tampered)


class TestLeaves:
    """Tests for the VHTLC spending paths."""

    def test_six_leaves(self, params):
        script, _ = build_vhtlc(**params)
        assert len(script.tree.leaves) == len(LeafRole) == 6

    def test_control_blocks_verify(self, params):
        """Test every leaf's control block proves inclusion in the output key."""
        script, _ = build_vhtlc(**params)
        for role in LeafRole:
            assert verify_control_block(script.leaf(role), script.tweaked_public_key)

    def test_claim_leaf_needs_receiver_and_server(self, params):
        script, _ = build_vhtlc(**params)
        claim = script.claim().script
        assert params["receiver"][1:] in claim
        assert params["server"][1:] in claim
        assert params["sender"][1:] not in claim

    def test_refund_without_receiver_has_locktime(self, params):
        script, _ = build_vhtlc(**params)
        assert extract_timelock(script.refund_without_receiver().script) == 800
        assert extract_timelock(script.refund().script) is None

    def test_unilateral_delays_round_trip(self, params):
        script, _ = build_vhtlc(**params)
        assert extract_timelock(script.leaf(LeafRole.UNILATERAL_CLAIM).script) == 10
        assert extract_timelock(script.leaf(LeafRole.UNILATERAL_REFUND).script) == 20
        assert (
            extract_timelock(script.leaf(LeafRole.UNILATERAL_REFUND_WITHOUT_RECEIVER).script) == 30
        )


class TestHashLock:
    """Tests for preimage checks."""

    def test_matching_preimage(self, params, preimage):
        script, _ = build_vhtlc(**params)
        assert script.check_preimage(preimage)

    def test_wrong_preimage(self, params):
        script, _ = build_vhtlc(**params)
        assert not script.check_preimage(b"\x00" * 32)


class TestValidation:
    """Tests for invalid inputs."""

    def test_bad_key_length(self):
        with pytest.raises(InvalidKeyError):
            normalize_key(b"\x02" * 20, "sender")

    def test_invalid_key_is_value_error(self, params):
        params["receiver"] = "abcd"
        with pytest.raises(ValueError):
            build_vhtlc(**params)

    def test_bad_hash_length(self, params):
        params["preimage_hash"] = "00" * 20
        with pytest.raises(ValueError):
            build_vhtlc(**params)

    def test_non_positive_delay(self, params):
        params["unilateral_claim_delay"] = 0
        with pytest.raises(ValueError):
            build_vhtlc(**params)


class TestRelativeTimelock:
    """Tests for BIP-68 encoding."""

    def test_blocks(self):
        lock = RelativeTimelock.from_value(144)
        assert lock.type == "blocks"
        assert lock.sequence == 144

    def test_seconds(self):
        lock = RelativeTimelock.from_value(1024)
        assert lock.type == "seconds"
        assert lock.sequence == (1 << 22) | 2
