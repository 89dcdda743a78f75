"""Swap counterparty providers."""

from arkswap.providers.base import SwapProvider
from arkswap.providers.boltz import BoltzSwapProvider

__all__ = ["BoltzSwapProvider", "SwapProvider"]
