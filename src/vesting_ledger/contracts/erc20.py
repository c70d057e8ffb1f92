"""
ERC20-style fungible token used as the vesting ledger's asset.

Provides the subset of EIP-20 the ledger needs:
- balanceOf, allowance, approve, transfer, transferFrom
- Owner-only minting, for funding payers in local deployments
- Transfer/Approval events

Security features:
- 256-bit amount bounds
- Zero address checks
- Every check runs before any balance changes, so a failed call leaves
  the token untouched
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Dict

from vesting_ledger.core.constants import LOG_ADDRESS_PREFIX, UINT256_MAX, ZERO_ADDRESS
from vesting_ledger.core.vesting_exceptions import AssetTransferError

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a token operation is refused."""


@dataclass
class TokenEvent:
    """Represents an ERC20 event."""

    event_type: str  # "Transfer" or "Approval"
    from_address: str
    to_address: str
    value: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class ERC20Token:
    """
    In-memory ERC20 token.

    All balances and allowances live in dictionaries keyed by lowercase
    address and can be saved with ``to_dict``.
    """

    name: str
    symbol: str
    decimals: int = 18
    total_supply: int = 0

    address: str = ""

    # Owner (for minting permissions)
    owner: str = ""

    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[str, dict[str, int]] = field(default_factory=dict)

    events: list[TokenEvent] = field(default_factory=list)

    # Supply cap (0 = unlimited)
    max_supply: int = 0

    def __post_init__(self) -> None:
        if not self.address:
            addr_input = f"{self.name}{self.symbol}{time.time()}".encode()
            addr_hash = hashlib.sha3_256(addr_input).digest()
            self.address = f"0x{addr_hash[-20:].hex()}"
        self.owner = self._normalize(self.owner)

    # ==================== View Functions ====================

    def balance_of(self, account: str) -> int:
        return self.balances.get(self._normalize(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        owner_norm = self._normalize(owner)
        spender_norm = self._normalize(spender)
        return self.allowances.get(owner_norm, {}).get(spender_norm, 0)

    # ==================== State-Changing Functions ====================

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        """
        Transfer tokens from sender to recipient.

        Raises:
            TokenError: If transfer fails
        """
        sender_norm = self._normalize(sender)
        recipient_norm = self._normalize(recipient)

        self._validate_address(recipient_norm, "recipient")
        self._validate_amount(amount)

        sender_balance = self.balances.get(sender_norm, 0)
        if sender_balance < amount:
            raise TokenError(
                f"ERC20: transfer amount exceeds balance "
                f"({amount} > {sender_balance})"
            )

        self._move(sender_norm, recipient_norm, amount)

        logger.debug(
            "ERC20 transfer",
            extra={
                "event": "erc20.transfer",
                "token": self.symbol,
                "from": sender_norm[:LOG_ADDRESS_PREFIX],
                "to": recipient_norm[:LOG_ADDRESS_PREFIX],
                "amount": amount,
            }
        )
        return True

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        """
        Approve spender to spend tokens on behalf of owner.

        Raises:
            TokenError: If approval fails
        """
        owner_norm = self._normalize(owner)
        spender_norm = self._normalize(spender)

        self._validate_address(spender_norm, "spender")
        self._validate_amount(amount)

        self.allowances.setdefault(owner_norm, {})[spender_norm] = amount
        self.events.append(
            TokenEvent(
                event_type="Approval",
                from_address=owner_norm,
                to_address=spender_norm,
                value=amount,
            )
        )
        return True

    def transfer_from(
        self, spender: str, from_addr: str, to_addr: str, amount: int
    ) -> bool:
        """
        Transfer tokens using an allowance.

        Raises:
            TokenError: If transfer fails
        """
        spender_norm = self._normalize(spender)
        from_norm = self._normalize(from_addr)
        to_norm = self._normalize(to_addr)

        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)

        current_allowance = self.allowance(from_norm, spender_norm)
        if current_allowance < amount:
            raise TokenError(
                f"ERC20: insufficient allowance ({current_allowance} < {amount})"
            )

        from_balance = self.balances.get(from_norm, 0)
        if from_balance < amount:
            raise TokenError(
                f"ERC20: transfer amount exceeds balance ({amount} > {from_balance})"
            )

        # Unlimited allowances are never decremented
        if current_allowance != UINT256_MAX:
            self.allowances[from_norm][spender_norm] = current_allowance - amount

        self._move(from_norm, to_norm, amount)
        return True

    def mint(self, minter: str, to: str, amount: int) -> bool:
        """
        Mint new tokens (owner only).

        Raises:
            TokenError: If minting fails
        """
        if self._normalize(minter) != self.owner:
            raise TokenError("ERC20: caller is not owner")

        to_norm = self._normalize(to)
        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)

        if self.max_supply > 0 and self.total_supply + amount > self.max_supply:
            raise TokenError(
                f"ERC20: mint would exceed max supply "
                f"({self.total_supply + amount} > {self.max_supply})"
            )

        self.total_supply += amount
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount
        self.events.append(
            TokenEvent(event_type="Transfer", from_address=ZERO_ADDRESS, to_address=to_norm, value=amount)
        )

        logger.info(
            "ERC20 mint",
            extra={
                "event": "erc20.mint",
                "token": self.symbol,
                "to": to_norm[:LOG_ADDRESS_PREFIX],
                "amount": amount,
                "new_supply": self.total_supply,
            }
        )
        return True

    # ==================== Helpers ====================

    def _normalize(self, address: str) -> str:
        return address.lower()

    def _validate_address(self, address: str, field: str) -> None:
        if address == ZERO_ADDRESS or not address:
            raise TokenError(f"ERC20: {field} is zero address")

    def _validate_amount(self, amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TokenError("ERC20: amount must be an integer")
        if amount < 0:
            raise TokenError("ERC20: amount cannot be negative")
        if amount > UINT256_MAX:
            raise TokenError("ERC20: amount exceeds uint256")

    def _move(self, from_norm: str, to_norm: str, amount: int) -> None:
        self.balances[from_norm] = self.balances.get(from_norm, 0) - amount
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount
        self.events.append(
            TokenEvent(event_type="Transfer", from_address=from_norm, to_address=to_norm, value=amount)
        )

    # ==================== Serialization ====================

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "total_supply": self.total_supply,
            "address": self.address,
            "owner": self.owner,
            "balances": dict(self.balances),
            "allowances": {k: dict(v) for k, v in self.allowances.items()},
            "max_supply": self.max_supply,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ERC20Token":
        token = cls(
            name=data["name"],
            symbol=data["symbol"],
            decimals=data.get("decimals", 18),
            total_supply=data.get("total_supply", 0),
            address=data.get("address", ""),
            owner=data.get("owner", ""),
            max_supply=data.get("max_supply", 0),
        )
        token.balances = dict(data.get("balances", {}))
        token.allowances = {
            k: dict(v) for k, v in data.get("allowances", {}).items()
        }
        return token


class ERC20Custody:
    """
    AssetTransfer implementation holding deposits in a custody address.

    With ``require_allowance`` set, payers must approve the custody address
    first and deposits are pulled with transferFrom, as an on-chain vault
    would. Otherwise deposits are plain transfers from the payer.
    """

    def __init__(self, token: ERC20Token, custody_address: str, require_allowance: bool = False):
        if not custody_address or custody_address.lower() == ZERO_ADDRESS:
            raise ValueError("Custody address cannot be empty or the zero address.")
        self.token = token
        self._custody_address = custody_address.lower()
        self.require_allowance = require_allowance

    @property
    def custody_address(self) -> str:
        return self._custody_address

    def available_balance(self, owner: str) -> int:
        balance = self.token.balance_of(owner)
        if self.require_allowance:
            return min(balance, self.token.allowance(owner, self._custody_address))
        return balance

    def transfer_in(self, payer: str, amount: int) -> None:
        try:
            if self.require_allowance:
                self.token.transfer_from(self._custody_address, payer, self._custody_address, amount)
            else:
                self.token.transfer(payer, self._custody_address, amount)
        except TokenError as exc:
            raise AssetTransferError(
                f"Deposit transfer refused: {exc}",
                details={"payer": payer, "amount": amount},
            ) from exc

    def transfer_out(self, recipient: str, amount: int) -> None:
        try:
            self.token.transfer(self._custody_address, recipient, amount)
        except TokenError as exc:
            raise AssetTransferError(
                f"Withdrawal transfer refused: {exc}",
                details={"recipient": recipient, "amount": amount},
            ) from exc
