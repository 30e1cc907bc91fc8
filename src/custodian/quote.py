"""
Signed fiat-to-settlement price quotes.

A quote fixes the settlement amount for a fiat price, for one scope, until
``valid_until``. The sponsor key signs the quote digest (see ``signing``),
so the escrow side can check that a quote presented at deposit time was
issued by us and has not been edited. Expiry is not part of verification:
callers compare ``valid_until`` with their own clock at the point of use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Mapping, Optional

from .errors import (
    CustodianError,
    InvalidAmountError,
    UnsupportedAssetError,
    UnsupportedCurrencyError,
)
from .money import (
    apply_slippage_floor,
    fiat_to_minor_units,
    is_exact_fiat,
    quantize_fiat,
    to_base_units,
    to_decimal,
)
from .signing import PersonalSigner, quote_digest, recover_signer

logger = logging.getLogger(__name__)


DEFAULT_QUOTE_VALIDITY_SECONDS = 600
DEFAULT_MAX_SLIPPAGE_BPS = 50

# Settlement units per fiat unit.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("10"),
    "AED": Decimal("2.72"),
}

# Settlement asset -> decimals.
DEFAULT_ASSETS: dict[str, int] = {
    "ADI_NATIVE": 18,
    "MOCK_ERC20": 18,
}


@dataclass
class PriceQuote:
    """An immutable, signed price conversion."""

    scope_id: str
    fiat_amount: Decimal
    fiat_currency: str
    settlement_amount: int
    settlement_asset: str
    exchange_rate: Decimal
    max_slippage_bps: int
    valid_until: int
    signature: str

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) > self.valid_until

    def minimum_acceptable_amount(self) -> int:
        return apply_slippage_floor(self.settlement_amount, self.max_slippage_bps)

    def to_dict(self) -> dict:
        return {
            "scope_id": self.scope_id,
            "fiat_amount": str(self.fiat_amount),
            "fiat_currency": self.fiat_currency,
            "settlement_amount": str(self.settlement_amount),
            "settlement_asset": self.settlement_asset,
            "exchange_rate": str(self.exchange_rate),
            "max_slippage_bps": self.max_slippage_bps,
            "valid_until": self.valid_until,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: Mapping) -> PriceQuote:
        return cls(
            scope_id=str(d["scope_id"]),
            fiat_amount=to_decimal(d["fiat_amount"]),
            fiat_currency=str(d["fiat_currency"]),
            settlement_amount=int(d["settlement_amount"]),
            settlement_asset=str(d["settlement_asset"]),
            exchange_rate=to_decimal(d["exchange_rate"]),
            max_slippage_bps=int(d["max_slippage_bps"]),
            valid_until=int(d["valid_until"]),
            signature=str(d["signature"]),
        )


class QuoteService:
    """Generates and verifies quotes signed by the sponsor key."""

    def __init__(
        self,
        signer: PersonalSigner,
        rates: Optional[Mapping[str, Decimal | str | float]] = None,
        assets: Optional[Mapping[str, int]] = None,
        max_slippage_bps: int = DEFAULT_MAX_SLIPPAGE_BPS,
        clock: Callable[[], float] = time.time,
    ):
        self.signer = signer
        self.rates = {k.upper(): to_decimal(v) for k, v in (rates or DEFAULT_RATES).items()}
        self.assets = dict(assets or DEFAULT_ASSETS)
        self.max_slippage_bps = max_slippage_bps
        self.clock = clock

    def rate(self, fiat_currency: str) -> Decimal:
        try:
            return self.rates[fiat_currency.upper()]
        except KeyError:
            raise UnsupportedCurrencyError(f"No exchange rate for {fiat_currency}") from None

    def asset_decimals(self, settlement_asset: str) -> int:
        try:
            return self.assets[settlement_asset]
        except KeyError:
            raise UnsupportedAssetError(f"Unknown settlement asset {settlement_asset}") from None

    def settlement_amount_for(
        self, fiat_amount: Decimal, rate: Decimal, settlement_asset: str
    ) -> int:
        return to_base_units(fiat_amount * rate, self.asset_decimals(settlement_asset))

    def generate_quote(
        self,
        scope_id: str,
        fiat_amount: Decimal | float | int | str,
        fiat_currency: str,
        settlement_asset: str = "ADI_NATIVE",
        validity_seconds: int = DEFAULT_QUOTE_VALIDITY_SECONDS,
    ) -> PriceQuote:
        """Price ``fiat_amount`` in the settlement asset and sign the result.

        The amount must be exact to the cent; finer precision is rejected.
        """
        try:
            exact = is_exact_fiat(fiat_amount)
        except ArithmeticError:
            raise InvalidAmountError(fiat_amount) from None
        if not exact:
            raise InvalidAmountError(fiat_amount, "must be exact to the cent")
        amount = quantize_fiat(fiat_amount)
        if amount <= 0:
            raise InvalidAmountError(fiat_amount)
        currency = fiat_currency.upper()
        rate = self.rate(currency)
        settlement_amount = self.settlement_amount_for(amount, rate, settlement_asset)
        valid_until = int(self.clock()) + validity_seconds

        digest = quote_digest(
            scope_id,
            fiat_to_minor_units(amount),
            currency,
            settlement_amount,
            valid_until,
            settlement_asset,
        )
        quote = PriceQuote(
            scope_id=scope_id,
            fiat_amount=amount,
            fiat_currency=currency,
            settlement_amount=settlement_amount,
            settlement_asset=settlement_asset,
            exchange_rate=rate,
            max_slippage_bps=self.max_slippage_bps,
            valid_until=valid_until,
            signature=self.signer.sign_digest(digest),
        )
        logger.info(
            "Quote issued: scope=%s %s %s -> %d %s (valid until %d)",
            scope_id,
            amount,
            currency,
            settlement_amount,
            settlement_asset,
            valid_until,
        )
        return quote

    def verify_quote(self, quote: PriceQuote) -> bool:
        """True when the quote is ours and internally consistent. Ignores expiry."""
        try:
            if not is_exact_fiat(quote.fiat_amount) or quote.fiat_amount <= 0:
                return False
            if quote.max_slippage_bps != self.max_slippage_bps:
                return False
            expected_amount = self.settlement_amount_for(
                quote.fiat_amount, quote.exchange_rate, quote.settlement_asset
            )
            if expected_amount != quote.settlement_amount:
                return False
            digest = quote_digest(
                quote.scope_id,
                fiat_to_minor_units(quote.fiat_amount),
                quote.fiat_currency,
                quote.settlement_amount,
                quote.valid_until,
                quote.settlement_asset,
            )
        except (ArithmeticError, CustodianError, TypeError, ValueError):
            return False
        recovered = recover_signer(digest, quote.signature)
        return recovered is not None and recovered.lower() == self.signer.address.lower()
