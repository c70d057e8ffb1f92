"""
Asset contracts the vesting ledger can hold in custody.
"""

from vesting_ledger.contracts.erc20 import ERC20Custody, ERC20Token, TokenError, TokenEvent

__all__ = ["ERC20Custody", "ERC20Token", "TokenError", "TokenEvent"]
