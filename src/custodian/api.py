"""
HTTP+JSON surface over the ``Custodian`` facade.

Every response uses the envelope ``{"ok": true, "data": ...}`` or
``{"ok": false, "error": message, "code": code}``.

    GET  /api/health
    POST /api/sponsor/policy            register a sponsorship policy
    POST /api/sponsor/sign              issue a sponsorship authorization
    GET  /api/sponsor/demo-failures     canned rejection exemplars
    POST /api/quote/generate            sign a price quote
    POST /api/quote/verify              check a quote's signature and contents
    POST /api/escrow/deposit            fund an escrow
    POST /api/escrow/release            pay the seller (bridge)
    POST /api/escrow/refund             repay the buyer (bridge)
    POST /api/escrow/dispute            freeze for arbitration (buyer or seller)
    POST /api/escrow/resolve-dispute    settle a dispute (arbitrator or bridge)
    GET  /api/escrow/{scope_id}         current escrow record
    POST /api/audit/publish             commit a lifecycle stage
    POST /api/audit/verify              recompute an entry's commitment hash
    POST /api/audit/{scope_id}/republish
    GET  /api/audit/{scope_id}          private audit log for a scope
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import (
    CustodianError,
    EscrowAlreadyFundedError,
    EscrowInvalidStateError,
    InvalidAmountError,
    NotAuthorizedError,
    QuoteRejectedError,
    TransferError,
    UnsupportedAssetError,
    UnsupportedCurrencyError,
)
from .service import Custodian

logger = logging.getLogger(__name__)


_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotAuthorizedError, 403),
    (EscrowAlreadyFundedError, 409),
    (EscrowInvalidStateError, 409),
    (QuoteRejectedError, 400),
    (InvalidAmountError, 400),
    (UnsupportedCurrencyError, 400),
    (UnsupportedAssetError, 400),
    (TransferError, 400),
]


def _ok(data: Any) -> dict:
    return {"ok": True, "data": data}


def _fail(status: int, error: str, code: Optional[str] = None) -> JSONResponse:
    body: dict[str, Any] = {"ok": False, "error": error}
    if code:
        body["code"] = code
    return JSONResponse(status_code=status, content=body)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PolicyRequest(_Body):
    auction_id: str
    beneficiary: str
    allowed_selectors: list[str] = []
    allowed_targets: list[str] = []
    max_ops_per_auction: int = Field(10, ge=0)
    expiry_seconds: int = Field(3600, gt=0)
    max_gas_per_op: Optional[int] = None


class SignRequest(_Body):
    sender: str
    auction_id: str
    paymaster_type: str = "native"
    validity_seconds: Optional[int] = Field(None, gt=0)
    call_data: str = "0x"


class QuoteRequest(_Body):
    auction_id: str
    fiat_amount: Decimal
    fiat_currency: str = "USD"
    settlement_asset: str = "ADI_NATIVE"
    validity_seconds: Optional[int] = Field(None, gt=0)


class QuoteVerifyRequest(_Body):
    quote: dict[str, Any]


class DepositRequest(_Body):
    auction_id: str
    seller_address: str
    amount: int
    asset: str = "native"
    quote: Optional[dict[str, Any]] = None
    caller: Optional[str] = None


class EscrowActionRequest(_Body):
    auction_id: str
    caller: Optional[str] = None


class ResolveRequest(EscrowActionRequest):
    release_to_seller: bool


class PublishRequest(_Body):
    auction_id: str
    stage: str
    ledger_ref: Optional[str] = None
    settlement_ref: Optional[str] = None


class AuditVerifyRequest(_Body):
    entry: dict[str, Any]
    check_published: bool = False


def create_app(custodian: Custodian) -> FastAPI:
    """Build the FastAPI application bound to ``custodian``."""
    app = FastAPI(title="Custodian", version="0.1.0")

    @app.exception_handler(CustodianError)
    async def _custodian_error(request: Request, exc: CustodianError):
        status = next((s for cls, s in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
        if status == 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return _fail(status, str(exc), exc.code)

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError):
        return _fail(400, str(exc), "BAD_REQUEST")

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in e["loc"][1:]) for e in exc.errors())
        return _fail(400, f"Invalid request: {fields}", "BAD_REQUEST")

    @app.get("/api/health")
    def health():
        return _ok(custodian.health())

    # ── Sponsorship ───────────────────────────────────────────────

    @app.post("/api/sponsor/policy")
    def register_policy(body: PolicyRequest):
        policy = custodian.register_policy(
            body.auction_id,
            body.beneficiary,
            allowed_selectors=body.allowed_selectors,
            allowed_targets=body.allowed_targets,
            max_ops_per_scope=body.max_ops_per_auction,
            expiry_seconds=body.expiry_seconds,
            max_gas_per_op=body.max_gas_per_op,
        )
        return _ok({"message": "Policy registered", "policy": policy.to_dict()})

    @app.post("/api/sponsor/sign")
    def sign(body: SignRequest):
        result = custodian.sign(
            body.sender,
            body.auction_id,
            paymaster_variant=body.paymaster_type,
            validity_seconds=body.validity_seconds,
            call_data=body.call_data,
        )
        if not result.success:
            status = 400 if result.code in ("INVALID_VALIDITY", "INVALID_ADDRESS") else 403
            return _fail(status, result.reason or "Sponsorship denied", result.code)
        assert result.authorization is not None
        data = result.authorization.to_dict()
        data["ops_used"] = result.ops_used
        return _ok(data)

    @app.get("/api/sponsor/demo-failures")
    def demo_failures():
        return _ok(custodian.demo_failures())

    # ── Quotes ────────────────────────────────────────────────────

    @app.post("/api/quote/generate")
    def generate_quote(body: QuoteRequest):
        quote = custodian.generate_quote(
            body.auction_id,
            body.fiat_amount,
            body.fiat_currency,
            settlement_asset=body.settlement_asset,
            validity_seconds=body.validity_seconds,
        )
        return _ok(quote.to_dict())

    @app.post("/api/quote/verify")
    def verify_quote(body: QuoteVerifyRequest):
        return _ok({"valid": custodian.verify_quote(body.quote)})

    # ── Escrow ────────────────────────────────────────────────────

    @app.post("/api/escrow/deposit")
    def deposit(body: DepositRequest):
        record = custodian.deposit(
            body.auction_id,
            body.seller_address,
            body.amount,
            asset=body.asset,
            quote=body.quote,
            caller=body.caller,
        )
        return _ok(record.to_dict())

    @app.post("/api/escrow/release")
    def release(body: EscrowActionRequest):
        return _ok(custodian.release(body.auction_id, caller=body.caller).to_dict())

    @app.post("/api/escrow/refund")
    def refund(body: EscrowActionRequest):
        return _ok(custodian.refund(body.auction_id, caller=body.caller).to_dict())

    @app.post("/api/escrow/dispute")
    def dispute(body: EscrowActionRequest):
        return _ok(custodian.dispute(body.auction_id, caller=body.caller).to_dict())

    @app.post("/api/escrow/resolve-dispute")
    def resolve(body: ResolveRequest):
        record = custodian.resolve(
            body.auction_id, body.release_to_seller, caller=body.caller
        )
        return _ok(record.to_dict())

    @app.get("/api/escrow/{scope_id}")
    def escrow_info(scope_id: str):
        return _ok(custodian.escrow_info(scope_id).to_dict())

    # ── Audit ─────────────────────────────────────────────────────

    @app.post("/api/audit/publish")
    def publish(body: PublishRequest):
        entry = custodian.publish_commitment(
            body.auction_id, body.stage, body.ledger_ref, body.settlement_ref
        )
        return _ok(entry.to_dict())

    @app.post("/api/audit/verify")
    def verify_entry(body: AuditVerifyRequest):
        data = {"valid": custodian.verify_commitment(body.entry)}
        if body.check_published:
            data["published"] = custodian.verify_published(body.entry)
        return _ok(data)

    @app.post("/api/audit/{scope_id}/republish")
    def republish(scope_id: str):
        return _ok({"republished": custodian.republish_pending(scope_id)})

    @app.get("/api/audit/{scope_id}")
    def audit_log(scope_id: str):
        entries = custodian.audit_log(scope_id)
        return _ok({"scope_id": scope_id, "entries": [e.to_dict() for e in entries]})

    return app
