"""Rebuilding swap records from the counterparty's restore endpoint.

Restored records lack what only the client ever held: the reverse swap
preimage and the submarine swap invoice. They can be attached later with the
orchestrator's enrich methods.
"""

import logging
import math
from typing import Optional

from arkswap.providers.schemas import (
    FeesResponse,
    RestoredLeaf,
    RestoredSwap,
    RestoredTree,
    ReverseSwapRequest,
    ReverseSwapResponse,
    SubmarineSwapRequest,
    SubmarineSwapResponse,
    TimeoutBlockHeights,
)
from arkswap.swap.models import PendingReverseSwap, PendingSubmarineSwap
from arkswap.swap.status import SwapStatus
from arkswap.vhtlc.script import extract_timelock

logger = logging.getLogger(__name__)


def extract_invoice_amount(amount_sats: Optional[int], fees: FeesResponse) -> int:
    """Invoice amount of a reverse swap, given the amount locked after fees.

    Returns 0 when it cannot be recovered.
    """
    if not amount_sats:
        return 0
    percentage = fees.reverse.percentage
    miner = fees.reverse.miner_fees.lockup + fees.reverse.miner_fees.claim
    if percentage >= 100 or percentage < 0:
        return 0
    if miner >= amount_sats:
        return 0
    return math.ceil((amount_sats - miner) / (1 - percentage / 100))


def leaf_timelock(leaf: Optional[RestoredLeaf]) -> int:
    if leaf is None or not leaf.output:
        return 0
    try:
        return extract_timelock(bytes.fromhex(leaf.output)) or 0
    except (ValueError, IndexError):
        return 0


def timeouts_from_tree(tree: RestoredTree) -> TimeoutBlockHeights:
    return TimeoutBlockHeights(
        refund=leaf_timelock(tree.refund_without_boltz_leaf),
        unilateral_claim=leaf_timelock(tree.unilateral_claim_leaf),
        unilateral_refund=leaf_timelock(tree.unilateral_refund_leaf),
        unilateral_refund_without_receiver=leaf_timelock(tree.unilateral_refund_without_boltz_leaf),
    )


def _status(swap: RestoredSwap) -> Optional[SwapStatus]:
    try:
        return SwapStatus(swap.status)
    except ValueError:
        logger.warning(f"Skipping restored swap {swap.id} with unknown status {swap.status!r}")
        return None


def restored_reverse_swap(
    swap: RestoredSwap, public_key: str, fees: FeesResponse
) -> Optional[PendingReverseSwap]:
    details = swap.claim_details
    if swap.type != "reverse" or details is None or details.tree is None:
        return None
    status = _status(swap)
    preimage_hash = details.preimage_hash or swap.preimage_hash
    if status is None or not preimage_hash:
        return None

    return PendingReverseSwap(
        id=swap.id,
        created_at=swap.created_at,
        status=status,
        preimage="",
        request=ReverseSwapRequest(
            invoice_amount=extract_invoice_amount(details.amount, fees),
            claim_public_key=public_key,
            preimage_hash=preimage_hash,
        ),
        response=ReverseSwapResponse(
            id=swap.id,
            invoice="",
            onchain_amount=details.amount or 0,
            lockup_address=details.lockup_address,
            refund_public_key=details.server_public_key,
            timeout_block_heights=timeouts_from_tree(details.tree),
        ),
    )


def restored_submarine_swap(
    swap: RestoredSwap, public_key: str, preimage: str = ""
) -> Optional[PendingSubmarineSwap]:
    details = swap.refund_details
    if swap.type != "submarine" or details is None or details.tree is None:
        return None
    status = _status(swap)
    if status is None:
        return None

    return PendingSubmarineSwap(
        id=swap.id,
        created_at=swap.created_at,
        status=status,
        preimage=preimage,
        preimage_hash=swap.preimage_hash or details.preimage_hash,
        request=SubmarineSwapRequest(invoice="", refund_public_key=public_key),
        response=SubmarineSwapResponse(
            id=swap.id,
            address=details.lockup_address,
            expected_amount=details.amount or 0,
            claim_public_key=details.server_public_key,
            timeout_block_heights=timeouts_from_tree(details.tree),
        ),
    )
