"""Tests for signed price quotes."""

from dataclasses import replace
from decimal import Decimal

import pytest
from eth_account import Account

from custodian.errors import InvalidAmountError, UnsupportedAssetError, UnsupportedCurrencyError
from custodian.quote import PriceQuote, QuoteService
from custodian.signing import PersonalSigner


SPONSOR = PersonalSigner(Account.create())
OTHER = PersonalSigner(Account.create())
NOW = 1_700_000_000


@pytest.fixture
def service():
    return QuoteService(SPONSOR, clock=lambda: NOW)


class TestGenerateQuote:
    def test_usd_scenario(self, service):
        quote = service.generate_quote("auction-1", 100, "USD")
        assert quote.settlement_amount == 1000 * 10**18
        assert quote.exchange_rate == Decimal("10")
        assert quote.max_slippage_bps == 50
        assert quote.valid_until == NOW + 600
        assert quote.fiat_amount == Decimal("100.00")

    def test_aed_rate(self, service):
        quote = service.generate_quote("auction-1", "100", "aed", settlement_asset="MOCK_ERC20")
        assert quote.fiat_currency == "AED"
        assert quote.settlement_amount == 272 * 10**18

    def test_fractional_amount_keeps_precision(self, service):
        quote = service.generate_quote("auction-1", "0.01", "USD")
        assert quote.settlement_amount == 10**17

    def test_custom_validity(self, service):
        quote = service.generate_quote("auction-1", 5, "USD", validity_seconds=30)
        assert quote.valid_until == NOW + 30
        assert not quote.is_expired(NOW + 30)
        assert quote.is_expired(NOW + 31)

    @pytest.mark.parametrize("amount", [0, -1, "0.00", "0.001"])
    def test_rejects_non_positive_amount(self, service, amount):
        with pytest.raises(InvalidAmountError):
            service.generate_quote("auction-1", amount, "USD")

    @pytest.mark.parametrize("amount", ["100.005", Decimal("19.999"), "ten"])
    def test_rejects_amount_not_exact_to_the_cent(self, service, amount):
        with pytest.raises(InvalidAmountError):
            service.generate_quote("auction-1", amount, "USD")

    def test_asset_is_bound_into_signature(self, service):
        native = service.generate_quote("auction-1", 100, "USD")
        token = service.generate_quote("auction-1", 100, "USD", settlement_asset="MOCK_ERC20")
        assert native.settlement_amount == token.settlement_amount
        assert native.signature != token.signature

    def test_unsupported_currency(self, service):
        with pytest.raises(UnsupportedCurrencyError):
            service.generate_quote("auction-1", 10, "EUR")

    def test_unsupported_asset(self, service):
        with pytest.raises(UnsupportedAssetError):
            service.generate_quote("auction-1", 10, "USD", settlement_asset="BTC")

    def test_minimum_acceptable_amount(self, service):
        quote = service.generate_quote("auction-1", 100, "USD")
        assert quote.minimum_acceptable_amount() == 995 * 10**18


class TestVerifyQuote:
    def test_generated_quote_verifies(self, service):
        quote = service.generate_quote("auction-1", "123.45", "USD")
        assert service.verify_quote(quote)

    def test_expired_quote_still_verifies(self, service):
        quote = service.generate_quote("auction-1", 10, "USD", validity_seconds=1)
        later = QuoteService(SPONSOR, clock=lambda: NOW + 10_000)
        assert later.verify_quote(quote)

    @pytest.mark.parametrize(
        "field, value",
        [
            ("scope_id", "auction-2"),
            ("fiat_amount", Decimal("100.01")),
            ("fiat_currency", "AED"),
            ("settlement_amount", 1000 * 10**18 + 1),
            ("settlement_asset", "UNKNOWN"),
            ("settlement_asset", "MOCK_ERC20"),
            ("exchange_rate", Decimal("11")),
            ("max_slippage_bps", 500),
            ("valid_until", NOW + 601),
            ("fiat_amount", Decimal("100.001")),
        ],
    )
    def test_mutating_any_field_fails(self, service, field, value):
        quote = service.generate_quote("auction-1", 100, "USD")
        assert not service.verify_quote(replace(quote, **{field: value}))

    def test_flipped_signature_byte_fails(self, service):
        quote = service.generate_quote("auction-1", 100, "USD")
        sig = bytearray(bytes.fromhex(quote.signature[2:]))
        sig[5] ^= 0x01
        assert not service.verify_quote(replace(quote, signature="0x" + sig.hex()))

    def test_other_signer_rejected(self, service):
        quote = QuoteService(OTHER, clock=lambda: NOW).generate_quote("auction-1", 100, "USD")
        assert not service.verify_quote(quote)

    def test_garbage_signature_returns_false(self, service):
        quote = service.generate_quote("auction-1", 100, "USD")
        assert not service.verify_quote(replace(quote, signature="0x1234"))

    def test_dict_round_trip(self, service):
        quote = service.generate_quote("auction-1", "19.99", "AED")
        restored = PriceQuote.from_dict(quote.to_dict())
        assert restored == quote
        assert service.verify_quote(restored)
