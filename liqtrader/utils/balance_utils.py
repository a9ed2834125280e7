"""
Balance utility functions for reading the unified account balance.
"""

from typing import Dict, List, Union


def parse_wallet_balance(balance_data: Union[List[Dict], Dict, None]) -> float:
    """
    Extract the total wallet balance from a wallet-balance response list.

    Bybit unified accounts report one entry per account type with
    totalWalletBalance in USD terms. Falls back to the USDT coin entry when
    the account-level figure is missing.

    Args:
        balance_data: the result.list of /v5/account/wallet-balance

    Returns:
        Balance as float, or 0.0 if not found
    """
    if not balance_data:
        return 0.0

    accounts = balance_data if isinstance(balance_data, list) else [balance_data]
    for account in accounts:
        total = account.get("totalWalletBalance")
        if total not in (None, ""):
            return float(total)
        for coin in account.get("coin") or []:
            if coin.get("coin") == "USDT":
                return float(coin.get("walletBalance") or coin.get("equity") or 0)

    return 0.0
