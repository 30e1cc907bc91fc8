"""Settlement ledger boundary.

The escrow engine and token paymaster move value through a ``ValueLedger``.
``LocalLedger`` stands in for the settlement chain in local runs and tests.
It keeps balances and allowances in the same ``KeyValueStore`` as the rest
of the service, so a transfer made inside an escrow transaction commits or
fails together with the state change. Each transfer returns a transaction
reference, which callers pass on as the settlement reference of an audit
commitment.
"""

from __future__ import annotations

import secrets
from typing import Protocol

from eth_utils import keccak

from .errors import AllowanceError, InsufficientBalanceError, InvalidAmountError
from .signing import bytes_to_hex, normalize_address
from .storage import KeyValueStore


NATIVE_ASSET = "native"

BALANCES = "ledger_balances"
ALLOWANCES = "ledger_allowances"


def normalize_asset(asset: str) -> str:
    """``native`` or a checksummed token address."""
    if asset.strip().lower() == NATIVE_ASSET:
        return NATIVE_ASSET
    return normalize_address(asset)


class ValueLedger(Protocol):
    def balance_of(self, asset: str, account: str) -> int: ...

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> str: ...

    def allowance(self, asset: str, owner: str, spender: str) -> int: ...

    def transfer_from(
        self, asset: str, spender: str, owner: str, recipient: str, amount: int
    ) -> str: ...


def _balance_key(asset: str, account: str) -> str:
    return f"{normalize_asset(asset)}:{normalize_address(account)}"


def _allowance_key(asset: str, owner: str, spender: str) -> str:
    return f"{normalize_asset(asset)}:{normalize_address(owner)}:{normalize_address(spender)}"


class LocalLedger:
    """Balances and allowances held in a key-value store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def _tx_ref(*parts: object) -> str:
        material = "|".join(str(p) for p in (*parts, secrets.token_hex(8)))
        return bytes_to_hex(keccak(text=material))

    def _get(self, namespace: str, key: str) -> int:
        raw = self.store.get(namespace, key)
        return int(raw["amount"]) if raw else 0

    def _set(self, namespace: str, key: str, amount: int) -> None:
        self.store.put(namespace, key, {"amount": str(amount)})

    def mint(self, asset: str, account: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError(amount)
        key = _balance_key(asset, account)
        with self.store.transaction():
            self._set(BALANCES, key, self._get(BALANCES, key) + amount)

    def balance_of(self, asset: str, account: str) -> int:
        return self._get(BALANCES, _balance_key(asset, account))

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmountError(amount)
        self._set(ALLOWANCES, _allowance_key(asset, owner, spender), amount)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        return self._get(ALLOWANCES, _allowance_key(asset, owner, spender))

    def _move(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        src = _balance_key(asset, sender)
        dst = _balance_key(asset, recipient)
        balance = self._get(BALANCES, src)
        if balance < amount:
            raise InsufficientBalanceError(
                normalize_address(sender), normalize_asset(asset), amount, balance
            )
        self._set(BALANCES, src, balance - amount)
        self._set(BALANCES, dst, self._get(BALANCES, dst) + amount)

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> str:
        if amount <= 0:
            raise InvalidAmountError(amount)
        with self.store.transaction():
            self._move(asset, sender, recipient, amount)
        return self._tx_ref("transfer", asset, sender, recipient, amount)

    def transfer_from(
        self, asset: str, spender: str, owner: str, recipient: str, amount: int
    ) -> str:
        if amount <= 0:
            raise InvalidAmountError(amount)
        key = _allowance_key(asset, owner, spender)
        with self.store.transaction():
            allowed = self._get(ALLOWANCES, key)
            if allowed < amount:
                raise AllowanceError(
                    normalize_address(owner), normalize_address(spender), amount, allowed
                )
            self._move(asset, owner, recipient, amount)
            self._set(ALLOWANCES, key, allowed - amount)
        return self._tx_ref("transfer_from", asset, spender, owner, recipient, amount)
