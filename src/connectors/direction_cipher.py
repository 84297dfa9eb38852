"""Direction confidentiality collaborator.

Positions are submitted with their YES/NO direction encrypted so other
traders cannot read it before resolution. The threshold-encryption network
is external; the engine only hands it the ABI-encoded boolean and forwards
the ciphertext to the ledger.
"""

from __future__ import annotations

import abc


def abi_encode_bool(direction: bool) -> str:
    """Standard ABI encoding of a bool: one 32-byte word, hex with 0x prefix."""
    return "0x" + (1 if direction else 0).to_bytes(32, "big").hex()


def ensure_hex_prefix(value: str) -> str:
    return value if value.startswith("0x") else f"0x{value}"


class DirectionCipher(abc.ABC):
    """Encrypts a position direction for on-ledger submission."""

    @abc.abstractmethod
    async def encrypt_message(self, payload_hex: str) -> str:
        """Encrypt an ABI-encoded payload. Raise on failure."""
        ...

    async def encrypt_direction(self, direction: bool) -> str:
        """Encrypted ``abi.encode(bool)`` as a 0x-prefixed hex string.

        Any failure aborts only the execution attempt in progress.
        """
        try:
            encrypted = await self.encrypt_message(abi_encode_bool(direction))
        except Exception as e:
            raise RuntimeError(
                "Direction encryption failed. Cannot submit position without encryption."
            ) from e
        return ensure_hex_prefix(encrypted)
