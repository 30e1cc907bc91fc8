"""
Custodian facade.

Wires the policy store, sponsorship signer, quote service, escrow engine and
audit chain over one key-value store, and exposes the operation surface the
HTTP API and the CLI share. Escrow calls made without an explicit caller act
as the operator, the account behind the sponsor key.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Mapping, Optional

from eth_account import Account

from .audit import AuditLogEntry, AuditStage, CommitmentChain
from .breaker import CircuitBreaker
from .config import CustodianConfig
from .errors import QuoteRejectedError
from .escrow import EscrowEngine, EscrowRecord
from .ledger import NATIVE_ASSET, LocalLedger
from .log_client import AuditLogPublisher, HttpLogPublisher
from .paymaster import NativePaymaster, UserOperation, ValidationData
from .policy import PolicyStore, SponsorPolicy
from .quote import PriceQuote, QuoteService
from .signing import PersonalSigner
from .sponsor import PaymasterVariant, SponsorshipResult, SponsorshipSigner
from .storage import JsonFileStore, KeyValueStore

logger = logging.getLogger(__name__)


class Custodian:
    """Operation surface over all components."""

    def __init__(
        self,
        config: CustodianConfig,
        store: KeyValueStore,
        publisher: Optional[AuditLogPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.clock = clock
        self.signer = PersonalSigner.from_key(config.require("sponsor_key"))
        self.operator = self.signer.address

        self.policies = PolicyStore(
            store,
            hourly_cap=config.hourly_cap,
            window_seconds=config.rate_window_seconds,
            clock=clock,
        )
        self.sponsor = SponsorshipSigner(
            self.signer,
            self.policies,
            chain_id=config.chain_id,
            entry_point=config.entry_point,
            paymasters={
                PaymasterVariant.NATIVE: config.native_paymaster,
                PaymasterVariant.TOKEN: config.token_paymaster,
            },
            clock_skew_seconds=config.clock_skew_seconds,
            clock=clock,
        )
        self.quotes = QuoteService(
            self.signer, max_slippage_bps=config.max_slippage_bps, clock=clock
        )
        self.ledger = LocalLedger(store)
        self.audit = CommitmentChain(store, publisher, breaker=CircuitBreaker("audit-log"))

        quote_assets = {"ADI_NATIVE": NATIVE_ASSET}
        if config.token_address:
            quote_assets["MOCK_ERC20"] = config.token_address
        bridge = config.bridge_address or self.operator
        self.escrow = EscrowEngine(
            store,
            self.ledger,
            custody_address=config.escrow_address or self.operator,
            bridge=bridge,
            arbitrator=config.arbitrator_address or bridge,
            quotes=self.quotes,
            audit=self.audit,
            quote_assets=quote_assets,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        config: CustodianConfig,
        store: Optional[KeyValueStore] = None,
        publisher: Optional[AuditLogPublisher] = None,
    ) -> Custodian:
        """Build against the state file under ``config.home`` and the configured log."""
        if store is None:
            store = JsonFileStore(config.state_path)
        if publisher is None and config.log_url:
            publisher = HttpLogPublisher(
                config.log_url,
                operator_id=config.log_operator,
                operator_secret=config.require("log_secret"),
            )
            logger.info("Publishing audit commitments to %s", config.log_url)
        return cls(config, store, publisher)

    def health(self) -> dict:
        return {
            "chain_id": self.config.chain_id,
            "entry_point": self.config.entry_point,
            "sponsor_signer": self.operator,
            "log_network": self.config.log_network,
            "audit_log": "remote" if self.audit.publisher is not None else "local",
            "audit_breaker": self.audit.breaker.state.value,
        }

    # ── Sponsorship ───────────────────────────────────────────────

    def register_policy(
        self,
        scope_id: str,
        beneficiary: str,
        allowed_selectors: Optional[list[str]] = None,
        allowed_targets: Optional[list[str]] = None,
        max_ops_per_scope: int = 10,
        expiry_seconds: int = 3600,
        max_gas_per_op: Optional[int] = None,
    ) -> SponsorPolicy:
        if expiry_seconds <= 0:
            raise ValueError("expiry_seconds must be > 0")
        extra = {} if max_gas_per_op is None else {"max_gas_per_op": max_gas_per_op}
        policy = SponsorPolicy(
            scope_id=scope_id,
            beneficiary=beneficiary,
            max_ops_per_scope=max_ops_per_scope,
            expires_at=int(self.clock()) + expiry_seconds,
            allowed_selectors=list(allowed_selectors or []),
            allowed_targets=list(allowed_targets or []),
            **extra,
        )
        self.policies.register_policy(policy)
        return policy

    def sign(
        self,
        sender: str,
        scope_id: str,
        paymaster_variant: PaymasterVariant | str = PaymasterVariant.NATIVE,
        validity_seconds: Optional[int] = None,
        call_data: str = "0x",
        call_selector: Optional[str] = None,
    ) -> SponsorshipResult:
        paymaster = self.sponsor.resolve_paymaster(paymaster_variant)
        result = self.sponsor.sign(
            sender,
            scope_id,
            paymaster,
            validity_seconds=validity_seconds or self.config.sponsor_validity_seconds,
            call_data=call_data,
            call_selector=call_selector,
        )
        if result.success:
            assert result.authorization is not None
            self.audit.publish_commitment(
                scope_id,
                AuditStage.SPONSORED,
                ledger_ref=result.authorization.authorization_hash,
                details={
                    "sender": result.authorization.sender,
                    "paymaster": paymaster,
                    "valid_until": result.authorization.valid_until,
                },
            )
        return result

    def demo_failures(self) -> dict:
        """Canned rejections, with the validator's verdict on the signed ones."""
        paymaster_address = self.config.native_paymaster or self.operator
        impostor = PersonalSigner(Account.create())
        exemplars = self.sponsor.demo_failures(paymaster_address, impostor)

        validator = NativePaymaster(
            paymaster_address,
            self.signer.address,
            self.config.entry_point,
            self.config.chain_id,
        )
        now = self.clock()
        for name in ("expired", "bad_signer"):
            auth = exemplars[name]["authorization"]
            op = UserOperation(
                sender=auth["sender"],
                call_data="0x",
                paymaster_and_data=auth["paymaster_and_data"],
            )
            _, packed = validator.validate_paymaster_user_op(op, max_cost=0)
            accepted, reason = ValidationData.unpack(packed).check(now)
            exemplars[name]["validation"] = {"accepted": accepted, "reason": reason}
        return exemplars

    # ── Quotes ────────────────────────────────────────────────────

    def generate_quote(
        self,
        scope_id: str,
        fiat_amount,
        fiat_currency: str,
        settlement_asset: str = "ADI_NATIVE",
        validity_seconds: Optional[int] = None,
    ) -> PriceQuote:
        return self.quotes.generate_quote(
            scope_id,
            fiat_amount,
            fiat_currency,
            settlement_asset=settlement_asset,
            validity_seconds=validity_seconds or self.config.quote_validity_seconds,
        )

    def verify_quote(self, quote: PriceQuote | Mapping) -> bool:
        if isinstance(quote, Mapping):
            try:
                quote = PriceQuote.from_dict(quote)
            except (KeyError, TypeError, ValueError, ArithmeticError):
                return False
        return self.quotes.verify_quote(quote)

    # ── Escrow ────────────────────────────────────────────────────

    def fund(self, account: str, amount: int, asset: str = NATIVE_ASSET) -> int:
        """Credit ``account`` on the local ledger and return its new balance."""
        self.ledger.mint(asset, account, amount)
        return self.ledger.balance_of(asset, account)

    def balance(self, account: str, asset: str = NATIVE_ASSET) -> int:
        return self.ledger.balance_of(asset, account)

    def deposit(
        self,
        scope_id: str,
        seller: str,
        amount: int,
        asset: str = NATIVE_ASSET,
        quote: Optional[PriceQuote | Mapping] = None,
        caller: Optional[str] = None,
    ) -> EscrowRecord:
        if isinstance(quote, Mapping):
            try:
                quote = PriceQuote.from_dict(quote)
            except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                raise QuoteRejectedError(f"Malformed quote: {e!r}") from e
        return self.escrow.deposit(
            caller or self.operator, scope_id, seller, int(amount), asset=asset, quote=quote
        )

    def release(self, scope_id: str, caller: Optional[str] = None) -> EscrowRecord:
        return self.escrow.release(caller or self.operator, scope_id)

    def refund(self, scope_id: str, caller: Optional[str] = None) -> EscrowRecord:
        return self.escrow.refund(caller or self.operator, scope_id)

    def dispute(self, scope_id: str, caller: Optional[str] = None) -> EscrowRecord:
        return self.escrow.dispute(caller or self.operator, scope_id)

    def resolve(
        self, scope_id: str, release_to_seller: bool, caller: Optional[str] = None
    ) -> EscrowRecord:
        return self.escrow.resolve(caller or self.operator, scope_id, release_to_seller)

    def escrow_info(self, scope_id: str) -> EscrowRecord:
        return self.escrow.info(scope_id)

    # ── Audit ─────────────────────────────────────────────────────

    def publish_commitment(
        self,
        scope_id: str,
        stage: str,
        ledger_ref: Optional[str] = None,
        settlement_ref: Optional[str] = None,
    ) -> AuditLogEntry:
        return self.audit.publish_commitment(scope_id, stage, ledger_ref, settlement_ref)

    def audit_log(self, scope_id: str) -> list[AuditLogEntry]:
        return self.audit.get_audit_log(scope_id)

    def verify_commitment(self, entry: AuditLogEntry | Mapping) -> bool:
        return self.audit.verify_commitment(entry)

    def verify_published(self, entry: AuditLogEntry | Mapping) -> bool:
        if isinstance(entry, Mapping):
            try:
                entry = AuditLogEntry.from_dict(entry)
            except TypeError:
                return False
        return self.audit.verify_published(entry)

    def republish_pending(self, scope_id: str) -> int:
        return self.audit.republish_pending(scope_id)
