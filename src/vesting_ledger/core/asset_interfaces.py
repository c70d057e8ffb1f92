"""
Vesting Ledger - Asset Collaborator Interface

The engine never moves balances itself. It talks to a custody object that
satisfies this Protocol, which keeps the engine testable with in-memory
tokens and lets deployments plug in a real asset.

Contract:
- A transfer either moves exactly ``amount`` or raises with nothing moved
- Implementations raise AssetTransferError for refused transfers
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class AssetTransfer(Protocol):
    """
    Protocol for moving the vested asset in and out of ledger custody.

    Thread Safety: the engine calls these while holding the beneficiary's
    lock; implementations must not call back into the engine for the same
    beneficiary.
    """

    @property
    def custody_address(self) -> str:
        """Address holding deposited funds until they are withdrawn."""
        ...

    def available_balance(self, owner: str) -> int:
        """
        Amount ``owner`` can currently move into custody.

        Args:
            owner: Payer address

        Returns:
            Transferable amount in base units
        """
        ...

    def transfer_in(self, payer: str, amount: int) -> None:
        """
        Move ``amount`` from ``payer`` into custody.

        Raises:
            AssetTransferError: If the transfer is refused
        """
        ...

    def transfer_out(self, recipient: str, amount: int) -> None:
        """
        Move ``amount`` from custody to ``recipient``.

        Raises:
            AssetTransferError: If the transfer is refused
        """
        ...
