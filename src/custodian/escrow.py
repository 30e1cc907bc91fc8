"""
Escrow settlement state machine.

    EMPTY --deposit--> FUNDED --release--> RELEASED
                         |----refund-----> REFUNDED
                         `----dispute----> DISPUTED --resolve(to seller)--> RELEASED
                                                    `-resolve(to buyer)---> REFUNDED

Records are keyed by the keccak hash of the scope id. Every transition
re-reads the record inside a store transaction, checks the caller and the
current state, moves value on the ledger and only then writes the new
state, so a failed transfer leaves the record untouched. Once the
transaction commits, a commitment for the stage is published to the audit
chain with the ledger transaction reference as its settlement reference.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

from eth_utils import keccak

from .audit import AuditStage, CommitmentChain
from .errors import (
    EscrowAlreadyFundedError,
    EscrowInvalidStateError,
    InvalidAmountError,
    NotAuthorizedError,
    QuoteRejectedError,
)
from .ledger import NATIVE_ASSET, ValueLedger, normalize_asset
from .quote import PriceQuote, QuoteService
from .signing import ZERO_ADDRESS, bytes_to_hex, normalize_address
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


ESCROWS = "escrows"


class EscrowState(IntEnum):
    EMPTY = 0
    FUNDED = 1
    RELEASED = 2
    REFUNDED = 3
    DISPUTED = 4


def escrow_key(scope_id: str) -> str:
    return bytes_to_hex(keccak(text=scope_id))


@dataclass
class EscrowRecord:
    scope_id: str
    buyer: str = ZERO_ADDRESS
    seller: str = ZERO_ADDRESS
    amount: int = 0
    asset: str = NATIVE_ASSET
    state: EscrowState = EscrowState.EMPTY
    funded_at: int = 0
    closed_at: int = 0
    deposit_tx: Optional[str] = None
    settlement_tx: Optional[str] = None

    @property
    def key(self) -> str:
        return escrow_key(self.scope_id)

    def to_dict(self) -> dict:
        return {
            "scope_id": self.scope_id,
            "key": self.key,
            "buyer": self.buyer,
            "seller": self.seller,
            "amount": str(self.amount),
            "asset": self.asset,
            "state": self.state.name,
            "funded_at": self.funded_at,
            "closed_at": self.closed_at,
            "deposit_tx": self.deposit_tx,
            "settlement_tx": self.settlement_tx,
        }

    @classmethod
    def from_dict(cls, d: dict) -> EscrowRecord:
        return cls(
            scope_id=d["scope_id"],
            buyer=d["buyer"],
            seller=d["seller"],
            amount=int(d["amount"]),
            asset=d["asset"],
            state=EscrowState[d["state"]],
            funded_at=int(d.get("funded_at", 0)),
            closed_at=int(d.get("closed_at", 0)),
            deposit_tx=d.get("deposit_tx"),
            settlement_tx=d.get("settlement_tx"),
        )


class EscrowEngine:
    """Holds deposits in a custody account until the bridge or arbitrator decides."""

    def __init__(
        self,
        store: KeyValueStore,
        ledger: ValueLedger,
        custody_address: str,
        bridge: str,
        arbitrator: str,
        quotes: Optional[QuoteService] = None,
        audit: Optional[CommitmentChain] = None,
        quote_assets: Optional[dict[str, str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ledger = ledger
        self.custody_address = normalize_address(custody_address)
        self.bridge = normalize_address(bridge)
        self.arbitrator = normalize_address(arbitrator)
        self.quotes = quotes
        self.audit = audit
        # quote settlement asset name -> ledger asset
        self.quote_assets = {
            name: normalize_asset(asset)
            for name, asset in (quote_assets or {"ADI_NATIVE": NATIVE_ASSET}).items()
        }
        self.clock = clock

    def _load(self, scope_id: str) -> EscrowRecord:
        raw = self.store.get(ESCROWS, escrow_key(scope_id))
        return EscrowRecord.from_dict(raw) if raw else EscrowRecord(scope_id=scope_id)

    def _save(self, record: EscrowRecord) -> None:
        self.store.put(ESCROWS, record.key, record.to_dict())

    def info(self, scope_id: str) -> EscrowRecord:
        return self._load(scope_id)

    def _publish(self, record: EscrowRecord, stage: AuditStage, tx_ref: Optional[str]) -> None:
        if self.audit is None:
            return
        self.audit.publish_commitment(
            record.scope_id,
            stage,
            settlement_ref=tx_ref,
            details={"state": record.state.name},
        )

    def _check_quote(self, scope_id: str, quote: PriceQuote, amount: int, asset: str) -> None:
        if self.quotes is None:
            raise QuoteRejectedError("No quote service configured to check the quote")
        if not self.quotes.verify_quote(quote):
            raise QuoteRejectedError("Quote signature or contents are invalid")
        if quote.scope_id != scope_id:
            raise QuoteRejectedError(f"Quote is for scope {quote.scope_id}, not {scope_id}")
        if quote.is_expired(self.clock()):
            raise QuoteRejectedError(f"Quote expired at {quote.valid_until}")
        if self.quote_assets.get(quote.settlement_asset) != asset:
            raise QuoteRejectedError(
                f"Quote settles in {quote.settlement_asset}, deposit is in {asset}"
            )
        floor = quote.minimum_acceptable_amount()
        if amount < floor:
            raise QuoteRejectedError(f"Deposit {amount} is below the quoted minimum {floor}")

    def deposit(
        self,
        buyer: str,
        scope_id: str,
        seller: str,
        amount: int,
        asset: str = NATIVE_ASSET,
        quote: Optional[PriceQuote] = None,
    ) -> EscrowRecord:
        """Move ``amount`` from ``buyer`` into custody for ``scope_id``."""
        if amount <= 0:
            raise InvalidAmountError(amount)
        buyer = normalize_address(buyer)
        seller = normalize_address(seller)
        asset = normalize_asset(asset)
        if quote is not None:
            self._check_quote(scope_id, quote, amount, asset)

        with self.store.transaction():
            record = self._load(scope_id)
            if record.state != EscrowState.EMPTY:
                raise EscrowAlreadyFundedError(scope_id)
            tx_ref = self.ledger.transfer(asset, buyer, self.custody_address, amount)
            record = EscrowRecord(
                scope_id=scope_id,
                buyer=buyer,
                seller=seller,
                amount=amount,
                asset=asset,
                state=EscrowState.FUNDED,
                funded_at=int(self.clock()),
                deposit_tx=tx_ref,
            )
            self._save(record)

        logger.info("Escrow funded: scope=%s amount=%d asset=%s", scope_id, amount, asset)
        self._publish(record, AuditStage.FUNDED, tx_ref)
        return record

    def _close(
        self,
        record: EscrowRecord,
        recipient: str,
        state: EscrowState,
    ) -> str:
        tx_ref = self.ledger.transfer(record.asset, self.custody_address, recipient, record.amount)
        record.state = state
        record.closed_at = int(self.clock())
        record.settlement_tx = tx_ref
        self._save(record)
        return tx_ref

    def release(self, caller: str, scope_id: str) -> EscrowRecord:
        """Pay the seller. Bridge only."""
        if normalize_address(caller) != self.bridge:
            raise NotAuthorizedError(caller, "release escrow")
        with self.store.transaction():
            record = self._load(scope_id)
            if record.state != EscrowState.FUNDED:
                raise EscrowInvalidStateError(scope_id, record.state.name, "release")
            tx_ref = self._close(record, record.seller, EscrowState.RELEASED)

        logger.info("Escrow released: scope=%s", scope_id)
        self._publish(record, AuditStage.SETTLED, tx_ref)
        return record

    def refund(self, caller: str, scope_id: str) -> EscrowRecord:
        """Return the deposit to the buyer. Bridge only."""
        if normalize_address(caller) != self.bridge:
            raise NotAuthorizedError(caller, "refund escrow")
        with self.store.transaction():
            record = self._load(scope_id)
            if record.state != EscrowState.FUNDED:
                raise EscrowInvalidStateError(scope_id, record.state.name, "refund")
            tx_ref = self._close(record, record.buyer, EscrowState.REFUNDED)

        logger.info("Escrow refunded: scope=%s", scope_id)
        self._publish(record, AuditStage.REFUNDED, tx_ref)
        return record

    def dispute(self, caller: str, scope_id: str) -> EscrowRecord:
        """Freeze a funded escrow for arbitration. Buyer or seller only."""
        caller = normalize_address(caller)
        with self.store.transaction():
            record = self._load(scope_id)
            if record.state != EscrowState.FUNDED:
                raise EscrowInvalidStateError(scope_id, record.state.name, "dispute")
            if caller not in (record.buyer, record.seller):
                raise NotAuthorizedError(caller, "dispute escrow")
            record.state = EscrowState.DISPUTED
            self._save(record)

        logger.info("Escrow disputed: scope=%s by=%s", scope_id, caller)
        self._publish(record, AuditStage.DISPUTED, None)
        return record

    def resolve(self, caller: str, scope_id: str, release_to_seller: bool) -> EscrowRecord:
        """Settle a disputed escrow. Arbitrator or bridge only."""
        if normalize_address(caller) not in (self.arbitrator, self.bridge):
            raise NotAuthorizedError(caller, "resolve escrow")
        with self.store.transaction():
            record = self._load(scope_id)
            if record.state != EscrowState.DISPUTED:
                raise EscrowInvalidStateError(scope_id, record.state.name, "resolve")
            if release_to_seller:
                tx_ref = self._close(record, record.seller, EscrowState.RELEASED)
            else:
                tx_ref = self._close(record, record.buyer, EscrowState.REFUNDED)

        logger.info("Escrow resolved: scope=%s outcome=%s", scope_id, record.state.name)
        self._publish(record, AuditStage.RESOLVED, tx_ref)
        return record
