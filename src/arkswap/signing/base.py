"""Base interfaces for signing ledger transactions.

Signing flow:
1. Build the unsigned PSBT with the spent tap leaf on each input
2. Hand it to an Identity, which signs the inputs whose leaf names its key
3. Return the PSBT with tapscript signatures added (never the raw key)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from embit.psbt import PSBT

from arkswap.errors import ArkSwapError

logger = logging.getLogger(__name__)


class SignerType(str, Enum):
    """Type of signing backend."""
    LOCAL = "local"           # Private key in memory
    DELEGATED = "delegated"   # Wraps another identity


class Identity(ABC):
    """Abstract key holder able to sign ledger PSBTs.

    Implementations should NEVER expose raw private keys.
    """

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type

    @abstractmethod
    async def sign(self, psbt: PSBT, input_indexes: Optional[list[int]] = None) -> PSBT:
        """Sign a PSBT.

        Args:
            psbt: Transaction to sign, inputs carry their tap leaf
            input_indexes: Inputs to sign, None for every input we can sign

        Returns:
            The same PSBT with tapscript signatures added
        """
        pass

    @abstractmethod
    async def x_only_public_key(self) -> bytes:
        """32-byte x-only public key."""
        pass

    @abstractmethod
    async def compressed_public_key(self) -> bytes:
        """33-byte compressed public key."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.signer_type.value})"


class SigningError(ArkSwapError):
    """Exception raised when signing fails."""
    pass
