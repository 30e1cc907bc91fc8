"""
Sponsorship authorization signing.

Flow:
1. Reserve one operation against the beneficiary's policy (abuse controls)
2. Derive the validity window (clock-skew tolerant ``valid_after``)
3. Hash the authorization tuple and sign it with the sponsor key
4. Pack ``paymasterData`` / ``paymasterAndData`` for the operation envelope

Nothing is signed unless the reservation succeeds, and a denied reservation
reaches the caller with its code unchanged. Usage is consumed at signing
time: an authorization that is never submitted still counts against quota.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

from .policy import PolicyErrorCode, PolicyStore
from .signing import (
    PersonalSigner,
    authorization_digest,
    build_paymaster_and_data,
    bytes_to_hex,
    encode_paymaster_data,
    normalize_address,
    selector_from_call_data,
)

logger = logging.getLogger(__name__)


DEFAULT_VALIDITY_SECONDS = 300
DEFAULT_CLOCK_SKEW_SECONDS = 30


class PaymasterVariant(str, Enum):
    NATIVE = "native"
    TOKEN = "token"


@dataclass
class SponsorshipAuthorization:
    """A freshly signed, time-boxed permission to front fees for ``sender``."""

    sender: str
    paymaster_address: str
    valid_after: int
    valid_until: int
    chain_id: int
    entry_point: str
    signature: str
    sponsor_signer: str
    paymaster_data: str
    paymaster_and_data: str
    authorization_hash: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SponsorshipResult:
    """Result of a sign request."""

    success: bool
    authorization: Optional[SponsorshipAuthorization] = None
    code: Optional[str] = None
    reason: Optional[str] = None
    ops_used: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "authorization": self.authorization.to_dict() if self.authorization else None,
            "code": self.code,
            "reason": self.reason,
            "ops_used": self.ops_used,
        }


class SponsorshipSigner:
    """Issues sponsorship authorizations gated by the policy store."""

    def __init__(
        self,
        signer: PersonalSigner,
        policies: PolicyStore,
        chain_id: int,
        entry_point: str,
        paymasters: Optional[dict[PaymasterVariant, str]] = None,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.signer = signer
        self.policies = policies
        self.chain_id = chain_id
        self.entry_point = normalize_address(entry_point)
        self.paymasters = {
            PaymasterVariant(k): normalize_address(v) for k, v in (paymasters or {}).items() if v
        }
        self.clock_skew_seconds = clock_skew_seconds
        self.clock = clock

    def resolve_paymaster(self, variant: PaymasterVariant | str) -> str:
        if isinstance(variant, str) and variant.lower() == "erc20":
            variant = PaymasterVariant.TOKEN
        try:
            key = PaymasterVariant(variant)
        except ValueError:
            raise ValueError(f"Unknown paymaster variant: {variant}") from None
        address = self.paymasters.get(key)
        if not address:
            raise ValueError(f"{key.value} paymaster not deployed")
        return address

    def sign(
        self,
        sender: str,
        scope_id: str,
        paymaster_address: str,
        validity_seconds: int = DEFAULT_VALIDITY_SECONDS,
        call_data: str = "0x",
        call_selector: Optional[str] = None,
    ) -> SponsorshipResult:
        """Reserve quota and sign an authorization for ``sender``."""
        if validity_seconds <= 0:
            return SponsorshipResult(
                success=False,
                code="INVALID_VALIDITY",
                reason="validity_seconds must be > 0",
            )
        try:
            sender = normalize_address(sender)
            paymaster_address = normalize_address(paymaster_address)
        except ValueError as exc:
            return SponsorshipResult(success=False, code="INVALID_ADDRESS", reason=str(exc))

        selector = call_selector or selector_from_call_data(call_data)
        reservation = self.policies.check_and_reserve(scope_id, sender, selector)
        if not reservation.allowed:
            assert reservation.code is not None
            return SponsorshipResult(
                success=False,
                code=reservation.code.value,
                reason=reservation.reason,
                ops_used=reservation.ops_used,
            )

        now = int(self.clock())
        authorization = self._build(
            sender,
            paymaster_address,
            valid_after=now - self.clock_skew_seconds,
            valid_until=now + validity_seconds,
        )
        logger.info(
            "Sponsorship issued: scope=%s sender=%s paymaster=%s valid_until=%d",
            scope_id,
            sender,
            paymaster_address,
            authorization.valid_until,
        )
        return SponsorshipResult(
            success=True,
            authorization=authorization,
            ops_used=reservation.ops_used,
        )

    def _build(
        self,
        sender: str,
        paymaster_address: str,
        valid_after: int,
        valid_until: int,
        signer: Optional[PersonalSigner] = None,
    ) -> SponsorshipAuthorization:
        signer = signer or self.signer
        digest = authorization_digest(
            sender,
            valid_until,
            valid_after,
            paymaster_address,
            self.chain_id,
            self.entry_point,
        )
        signature = signer.sign_digest(digest)
        paymaster_data = encode_paymaster_data(valid_until, valid_after, signature)
        return SponsorshipAuthorization(
            sender=sender,
            paymaster_address=paymaster_address,
            valid_after=valid_after,
            valid_until=valid_until,
            chain_id=self.chain_id,
            entry_point=self.entry_point,
            signature=signature,
            sponsor_signer=signer.address,
            paymaster_data=paymaster_data,
            paymaster_and_data=build_paymaster_and_data(paymaster_address, paymaster_data),
            authorization_hash=bytes_to_hex(digest),
        )

    def demo_failures(self, paymaster_address: str, impostor: PersonalSigner) -> dict:
        """Canned exemplars of each rejection path, without touching quota.

        ``impostor`` signs the bad-signer exemplar; a validator configured
        with this signer's address reports it as a signature failure.
        """
        now = int(self.clock())
        zero = "0x" + "00" * 20
        expired = self._build(zero, paymaster_address, valid_after=now - 7200, valid_until=now - 3600)
        bad_signer = self._build(
            zero, paymaster_address, valid_after=now - self.clock_skew_seconds,
            valid_until=now + DEFAULT_VALIDITY_SECONDS, signer=impostor,
        )
        return {
            "expired": {
                "authorization": expired.to_dict(),
                "error": "Authorization window closed: valid_until is in the past",
            },
            "bad_signer": {
                "authorization": bad_signer.to_dict(),
                "error": f"Recovered signer {impostor.address} is not the sponsor signer",
            },
            "disallowed_selector": {
                "code": PolicyErrorCode.SELECTOR_DISALLOWED.value,
                "error": "Selector 0xdeadbeef not in allowlist",
            },
            "rate_limited": {
                "code": PolicyErrorCode.RATE_LIMIT.value,
                "error": "Exceeded max_ops_per_scope for this scope",
            },
            "policy_not_found": {
                "code": PolicyErrorCode.POLICY_NOT_FOUND.value,
                "error": f"No sponsorship policy for {zero}",
            },
        }
