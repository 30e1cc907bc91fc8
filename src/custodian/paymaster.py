"""
Validation counterpart of the sponsorship signer.

Mirrors what the paymaster contract does when the entry point hands it an
operation: recompute the authorization digest from on-chain-visible fields,
recover the signer, and answer with packed validation data. A wrong signer
is reported through the ``sig_failed`` bit, never raised, so one bad
operation cannot abort the surrounding batch. The time window travels back
in the same packed value for the entry point to enforce.

After execution ``post_op`` accounts the actual fee against the sender.
The token variant also pulls the token-equivalent cost from the sender:

    token_cost = actual_fee_cost * token_price_per_gas / 10**token_decimals
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import AllowanceError, NotAuthorizedError
from .ledger import ValueLedger
from .signing import (
    authorization_digest,
    decode_paymaster_data,
    normalize_address,
    recover_signer,
    split_paymaster_and_data,
)

logger = logging.getLogger(__name__)


SIG_VALIDATION_FAILED = 1
_ADDRESS_BITS = 160
_UINT48_BITS = 48


@dataclass(frozen=True)
class ValidationData:
    """Unpacked form of the uint256 returned to the entry point."""

    sig_failed: bool
    valid_until: int
    valid_after: int

    def pack(self) -> int:
        return (
            (SIG_VALIDATION_FAILED if self.sig_failed else 0)
            | (self.valid_until << _ADDRESS_BITS)
            | (self.valid_after << (_ADDRESS_BITS + _UINT48_BITS))
        )

    @classmethod
    def unpack(cls, packed: int) -> ValidationData:
        mask48 = (1 << _UINT48_BITS) - 1
        aggregator = packed & ((1 << _ADDRESS_BITS) - 1)
        return cls(
            sig_failed=aggregator == SIG_VALIDATION_FAILED,
            valid_until=(packed >> _ADDRESS_BITS) & mask48,
            valid_after=(packed >> (_ADDRESS_BITS + _UINT48_BITS)) & mask48,
        )

    def check(self, now: Optional[float] = None) -> tuple[bool, str]:
        """The entry point's acceptance rule for this validation data."""
        now = int(time.time() if now is None else now)
        if self.sig_failed:
            return False, "AA34 signature error"
        if self.valid_until and now > self.valid_until:
            return False, f"AA32 paymaster expired (valid_until {self.valid_until})"
        if now < self.valid_after:
            return False, f"AA32 paymaster not due (valid_after {self.valid_after})"
        return True, "OK"


@dataclass
class UserOperation:
    """The fields of a sponsored operation the paymaster reads."""

    sender: str
    call_data: str
    paymaster_and_data: str
    nonce: int = 0


class PostOpMode(str, Enum):
    OP_SUCCEEDED = "opSucceeded"
    OP_REVERTED = "opReverted"


@dataclass
class PaymasterContext:
    sender: str
    max_token_cost: int = 0


class NativePaymaster:
    """Fronts fees in the native asset for operations the sponsor signed."""

    def __init__(
        self,
        address: str,
        sponsor_signer: str,
        entry_point: str,
        chain_id: int,
        owner: Optional[str] = None,
    ):
        self.address = normalize_address(address)
        self.sponsor_signer = normalize_address(sponsor_signer)
        self.entry_point = normalize_address(entry_point)
        self.chain_id = chain_id
        self.owner = normalize_address(owner) if owner else self.sponsor_signer
        self._sponsored_gas: dict[str, int] = {}
        self._sponsored_ops: dict[str, int] = {}
        self._lock = threading.Lock()

    def set_sponsor_signer(self, caller: str, signer: str) -> None:
        self._only_owner(caller, "set the sponsor signer")
        self.sponsor_signer = normalize_address(signer)

    def _only_owner(self, caller: str, action: str) -> None:
        if normalize_address(caller) != self.owner:
            raise NotAuthorizedError(caller, action)

    def _validate_signature(self, op: UserOperation) -> tuple[str, ValidationData]:
        packed = split_paymaster_and_data(op.paymaster_and_data)
        valid_until, valid_after, signature = decode_paymaster_data(packed.paymaster_data)
        sender = normalize_address(op.sender)
        digest = authorization_digest(
            sender,
            valid_until,
            valid_after,
            self.address,
            self.chain_id,
            self.entry_point,
        )
        recovered = recover_signer(digest, signature)
        sig_failed = recovered is None or recovered.lower() != self.sponsor_signer.lower()
        if sig_failed:
            logger.info("Paymaster %s: signature check failed for %s", self.address, sender)
        return sender, ValidationData(sig_failed, valid_until, valid_after)

    def validate_paymaster_user_op(
        self, op: UserOperation, max_cost: int
    ) -> tuple[Optional[PaymasterContext], int]:
        """Return ``(context, packed_validation_data)`` for ``op``."""
        sender, data = self._validate_signature(op)
        if data.sig_failed:
            return None, data.pack()
        return PaymasterContext(sender=sender), data.pack()

    def post_op(self, mode: PostOpMode, context: PaymasterContext, actual_gas_cost: int) -> None:
        """Record the fee actually spent on behalf of ``context.sender``."""
        self._account(context.sender, actual_gas_cost)

    def _account(self, sender: str, actual_gas_cost: int) -> None:
        with self._lock:
            self._sponsored_gas[sender] = self._sponsored_gas.get(sender, 0) + actual_gas_cost
            self._sponsored_ops[sender] = self._sponsored_ops.get(sender, 0) + 1

    def sponsored_gas(self, sender: str) -> int:
        with self._lock:
            return self._sponsored_gas.get(normalize_address(sender), 0)

    def sponsored_ops_count(self, sender: str) -> int:
        with self._lock:
            return self._sponsored_ops.get(normalize_address(sender), 0)

    def get_sponsorship_info(self, sender: str) -> tuple[int, int]:
        return self.sponsored_gas(sender), self.sponsored_ops_count(sender)


class TokenPaymaster(NativePaymaster):
    """Fronts fees and recoups them in an ERC-20 token from the sender."""

    def __init__(
        self,
        address: str,
        sponsor_signer: str,
        entry_point: str,
        chain_id: int,
        ledger: ValueLedger,
        token: str,
        token_price_per_gas: int,
        token_decimals: int = 18,
        owner: Optional[str] = None,
    ):
        super().__init__(address, sponsor_signer, entry_point, chain_id, owner=owner)
        self.ledger = ledger
        self.token = normalize_address(token)
        self.token_price_per_gas = token_price_per_gas
        self.scaling_factor = 10**token_decimals
        self._tokens_paid: dict[str, int] = {}

    def set_token_price(self, caller: str, price: int) -> None:
        self._only_owner(caller, "set the token price")
        if price <= 0:
            raise ValueError("token price must be > 0")
        self.token_price_per_gas = price

    def token_cost(self, gas_cost: int) -> int:
        return gas_cost * self.token_price_per_gas // self.scaling_factor

    def _require_allowance(self, sender: str, required: int) -> None:
        allowance = self.ledger.allowance(self.token, sender, self.address)
        if allowance < required:
            raise AllowanceError(sender, self.address, required, allowance)

    def validate_paymaster_user_op(
        self, op: UserOperation, max_cost: int
    ) -> tuple[Optional[PaymasterContext], int]:
        sender, data = self._validate_signature(op)
        if data.sig_failed:
            return None, data.pack()
        max_token_cost = self.token_cost(max_cost)
        self._require_allowance(sender, max_token_cost)
        return PaymasterContext(sender=sender, max_token_cost=max_token_cost), data.pack()

    def post_op(self, mode: PostOpMode, context: PaymasterContext, actual_gas_cost: int) -> None:
        """Pull the actual token cost; the allowance is re-checked first."""
        cost = self.token_cost(actual_gas_cost)
        if cost > 0:
            self._require_allowance(context.sender, cost)
            self.ledger.transfer_from(self.token, self.address, context.sender, self.address, cost)
        self._account(context.sender, actual_gas_cost)
        with self._lock:
            self._tokens_paid[context.sender] = self._tokens_paid.get(context.sender, 0) + cost

    def tokens_paid(self, sender: str) -> int:
        with self._lock:
            return self._tokens_paid.get(normalize_address(sender), 0)
