"""
Custodian: sponsored authorizations and custodial settlement.

Policy-gated fee sponsorship for smart accounts, signed price quotes,
an escrow state machine and a public audit commitment chain:
Policy reserves quota → Sponsor signs → Escrow settles → Commitments published.
"""

__version__ = "0.1.0"

from .policy import PolicyErrorCode, PolicyStore, ReservationResult, SponsorPolicy
from .signing import PersonalSigner, authorization_digest, quote_digest, recover_signer
from .sponsor import (
    PaymasterVariant,
    SponsorshipAuthorization,
    SponsorshipResult,
    SponsorshipSigner,
)
from .paymaster import NativePaymaster, TokenPaymaster, UserOperation, ValidationData
from .ledger import LocalLedger, ValueLedger
from .escrow import EscrowEngine, EscrowRecord, EscrowState
from .quote import PriceQuote, QuoteService
from .audit import AuditLogEntry, AuditStage, CommitmentChain, verify_commitment
from .log_client import HttpLogPublisher, InMemoryLogPublisher
from .storage import JsonFileStore, MemoryStore
from .config import CustodianConfig
from .service import Custodian

__all__ = [
    "SponsorPolicy", "PolicyStore", "PolicyErrorCode", "ReservationResult",
    "PersonalSigner", "authorization_digest", "quote_digest", "recover_signer",
    "PaymasterVariant", "SponsorshipAuthorization", "SponsorshipResult", "SponsorshipSigner",
    "NativePaymaster", "TokenPaymaster", "UserOperation", "ValidationData",
    "LocalLedger", "ValueLedger",
    "EscrowEngine", "EscrowRecord", "EscrowState",
    "PriceQuote", "QuoteService",
    "AuditLogEntry", "AuditStage", "CommitmentChain", "verify_commitment",
    "HttpLogPublisher", "InMemoryLogPublisher",
    "JsonFileStore", "MemoryStore",
    "CustodianConfig", "Custodian",
]
