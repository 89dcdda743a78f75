"""Minimal BOLT-11 invoice decoding.

Only the fields the swap flows need are extracted: amount, payment hash,
description and expiry. Signatures are not verified; the counterparty does
that when paying.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from arkswap.utils.encoding import decode_bech32, words_to_bytes

DEFAULT_EXPIRY = 3600
SIGNATURE_WORDS = 104
TIMESTAMP_WORDS = 7

TAG_PAYMENT_HASH = 1
TAG_EXPIRY = 6
TAG_DESCRIPTION = 13

_HRP_RE = re.compile(r"^ln(bcrt|bc|tbs|tb)(\d+)?([munp])?$")

# Millisatoshis per unit of the human readable amount
_MSAT_MULTIPLIERS = {
    None: Decimal(100_000_000_000),
    "m": Decimal(100_000_000),
    "u": Decimal(100_000),
    "n": Decimal(100),
    "p": Decimal("0.1"),
}

NETWORK_PREFIXES = {"bc": "bitcoin", "tb": "testnet", "tbs": "signet", "bcrt": "regtest"}


@dataclass
class DecodedInvoice:
    """Fields of a BOLT-11 invoice.

    Attributes:
        amount_sats: Requested amount in satoshis (0 when the invoice has no amount)
        payment_hash: Hex SHA256 of the payment preimage
        description: Free text description, if any
        expiry: Seconds after timestamp the invoice stays payable
        timestamp: Creation time in unix seconds
        network: Network named by the prefix
    """

    amount_sats: int
    payment_hash: str
    description: Optional[str]
    expiry: int
    timestamp: int
    network: str


def _words_to_int(words: list[int]) -> int:
    value = 0
    for word in words:
        value = value * 32 + word
    return value


def decode_invoice(invoice: str) -> DecodedInvoice:
    """Decode a BOLT-11 payment request.

    Raises:
        ValueError: If the invoice is malformed or has no payment hash
    """
    invoice = invoice.strip()
    if invoice.lower().startswith("lightning:"):
        invoice = invoice[len("lightning:"):]
    hrp, words, _ = decode_bech32(invoice)

    match = _HRP_RE.match(hrp)
    if not match:
        raise ValueError(f"Unknown invoice prefix {hrp!r}")
    prefix, amount, multiplier = match.groups()

    amount_sats = 0
    if amount:
        msat = Decimal(amount) * _MSAT_MULTIPLIERS[multiplier]
        if msat != msat.to_integral_value():
            raise ValueError("Invoice amount has sub-millisatoshi precision")
        amount_sats = int(msat) // 1000
    elif multiplier:
        raise ValueError("Invoice multiplier without amount")

    if len(words) < TIMESTAMP_WORDS + SIGNATURE_WORDS:
        raise ValueError("Invoice too short")
    timestamp = _words_to_int(words[:TIMESTAMP_WORDS])
    tagged = words[TIMESTAMP_WORDS:-SIGNATURE_WORDS]

    payment_hash = None
    description = None
    expiry = DEFAULT_EXPIRY
    i = 0
    while i + 3 <= len(tagged):
        tag = tagged[i]
        length = tagged[i + 1] * 32 + tagged[i + 2]
        field = tagged[i + 3:i + 3 + length]
        if len(field) != length:
            raise ValueError("Truncated invoice field")
        i += 3 + length

        if tag == TAG_PAYMENT_HASH and length == 52:
            payment_hash = words_to_bytes(field).hex()
        elif tag == TAG_DESCRIPTION:
            description = words_to_bytes(field).decode("utf-8")
        elif tag == TAG_EXPIRY:
            expiry = _words_to_int(field)

    if payment_hash is None:
        raise ValueError("Invoice has no payment hash")

    return DecodedInvoice(
        amount_sats=amount_sats,
        payment_hash=payment_hash,
        description=description,
        expiry=expiry,
        timestamp=timestamp,
        network=NETWORK_PREFIXES[prefix],
    )
