"""
Asset transfer capability.

The governance core never implements a token. It talks to an external
fungible-asset service through the narrow ``AssetTransfer`` protocol:

- ``transfer(amount, sender, recipient, asset=None) -> bool``
- ``balance_of(account, asset=None) -> int``

``asset=None`` designates the native currency. ``InMemoryAssetLedger`` is the
host double used by local nodes and tests.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

NATIVE_ASSET = "native"


@runtime_checkable
class AssetTransfer(Protocol):
    """
    Protocol for the external fungible-asset service.

    Implementations must either move the full amount and return True, or
    move nothing and return False.
    """

    def transfer(self, amount: int, sender: str, recipient: str, asset: str | None = None) -> bool:
        """
        Move ``amount`` of ``asset`` from ``sender`` to ``recipient``.

        Args:
            amount: Positive amount in base units
            sender: Account debited
            recipient: Account credited
            asset: Asset identifier, None for the native currency

        Returns:
            True on success, False if the service rejected the transfer
        """
        ...

    def balance_of(self, account: str, asset: str | None = None) -> int:
        """
        Current balance of ``account`` in ``asset``.

        Args:
            account: Account to query
            asset: Asset identifier, None for the native currency

        Returns:
            Balance in base units
        """
        ...


class InMemoryAssetLedger:
    """
    Balance map implementing ``AssetTransfer``.

    Security considerations:
    - Zero-account and self-transfer checks
    - Balance underflow prevention (transfer returns False, nothing moves)
    """

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _asset_key(asset: str | None) -> str:
        return asset or NATIVE_ASSET

    def mint(self, account: str, amount: int, asset: str | None = None) -> int:
        if not account:
            raise ValueError("Account cannot be empty")
        if not isinstance(amount, int) or amount <= 0:
            raise ValueError("Mint amount must be a positive integer")
        with self._lock:
            key = (self._asset_key(asset), account)
            self.balances[key] = self.balances.get(key, 0) + amount
            return self.balances[key]

    def balance_of(self, account: str, asset: str | None = None) -> int:
        with self._lock:
            return self.balances.get((self._asset_key(asset), account), 0)

    def transfer(self, amount: int, sender: str, recipient: str, asset: str | None = None) -> bool:
        if not isinstance(amount, int) or amount <= 0:
            return False
        if not sender or not recipient or sender == recipient:
            return False

        asset_key = self._asset_key(asset)
        with self._lock:
            sender_balance = self.balances.get((asset_key, sender), 0)
            if sender_balance < amount:
                logger.warning(
                    "Transfer rejected: %s holds %d %s, needs %d",
                    sender,
                    sender_balance,
                    asset_key,
                    amount,
                    extra={"event": "assets.transfer_rejected", "asset": asset_key},
                )
                return False
            self.balances[(asset_key, sender)] = sender_balance - amount
            self.balances[(asset_key, recipient)] = (
                self.balances.get((asset_key, recipient), 0) + amount
            )

        logger.debug(
            "Transferred %d %s from %s to %s",
            amount,
            asset_key,
            sender,
            recipient,
            extra={"event": "assets.transferred", "asset": asset_key},
        )
        return True
