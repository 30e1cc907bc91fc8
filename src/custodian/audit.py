"""
Audit commitment chain.

Each lifecycle transition is committed as

    keccak256(utf8(json({scope_id, stage, ledger_ref, settlement_ref, timestamp, nonce})))

and only that hash, the stage label and the timestamp are sent to the
public per-scope topic. The full entry, nonce and upstream references
included, stays in the private audit store.

Writes are two-phase: the entry is persisted locally first (the source of
truth for replay and verification), then publication is attempted through
a circuit breaker. If the log is unreachable the entry keeps its local
sequence number, is flagged unpublished and a warning is logged; the
caller's flow is never failed. ``republish_pending`` retries later.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from eth_utils import keccak

from .breaker import CircuitBreaker
from .errors import LogServiceError
from .log_client import AuditLogPublisher
from .signing import bytes_to_hex
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


AUDIT_ENTRIES = "audit_entries"
AUDIT_TOPICS = "audit_topics"

DEFAULT_LEDGER_REF = "LEDGER-PENDING"
DEFAULT_SETTLEMENT_REF = "SETTLEMENT-PENDING"


class AuditStage(str, Enum):
    CREATED = "created"
    BIDDING_OPEN = "bidding-open"
    BIDDING_CLOSED = "bidding-closed"
    SCORING = "scoring"
    AWARDED = "awarded"
    CONDITIONS_CHECKING = "conditions-checking"
    FUNDED = "funded"
    SETTLED = "settled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    SPONSORED = "sponsored"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def commitment_hash(
    scope_id: str,
    stage: str,
    ledger_ref: str,
    settlement_ref: str,
    timestamp: str,
    nonce: str,
) -> str:
    """One-way hash over the commitment fields, in fixed key order."""
    payload = json.dumps(
        {
            "scope_id": scope_id,
            "stage": stage,
            "ledger_ref": ledger_ref,
            "settlement_ref": settlement_ref,
            "timestamp": timestamp,
            "nonce": nonce,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return bytes_to_hex(keccak(text=payload))


@dataclass
class AuditLogEntry:
    """A commitment plus where it landed."""

    scope_id: str
    stage: str
    ledger_ref: str
    settlement_ref: str
    timestamp: str
    nonce: str
    commitment_hash: str
    sequence_number: int
    topic_id: str
    topic_sequence_number: Optional[int] = None
    consensus_timestamp: Optional[str] = None
    published: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def public_message(self) -> dict:
        return {
            "commitment_hash": self.commitment_hash,
            "stage": self.stage,
            "timestamp": self.timestamp,
        }

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Mapping) -> AuditLogEntry:
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def verify_commitment(entry: AuditLogEntry | Mapping) -> bool:
    """Recompute the hash from the entry's own fields. Never raises."""
    try:
        if isinstance(entry, Mapping):
            entry = AuditLogEntry.from_dict(entry)
        expected = commitment_hash(
            entry.scope_id,
            entry.stage,
            entry.ledger_ref,
            entry.settlement_ref,
            entry.timestamp,
            entry.nonce,
        )
        return expected == entry.commitment_hash
    except Exception:
        return False


def local_topic_id(scope_id: str) -> str:
    return f"0.0.LOCAL-{scope_id[-6:]}"


class CommitmentChain:
    """Publishes and verifies per-scope commitments."""

    def __init__(
        self,
        store: KeyValueStore,
        publisher: Optional[AuditLogPublisher] = None,
        breaker: Optional[CircuitBreaker] = None,
        nonce_factory: Callable[[], str] = lambda: "0x" + secrets.token_hex(16),
        clock: Callable[[], str] = utc_timestamp,
    ):
        self.store = store
        self.publisher = publisher
        self.breaker = breaker or CircuitBreaker("audit-log")
        self.nonce_factory = nonce_factory
        self.clock = clock

    def get_or_create_topic(self, scope_id: str) -> str:
        cached = self.store.get(AUDIT_TOPICS, scope_id)
        if cached:
            return cached["topic_id"]

        topic_id = local_topic_id(scope_id)
        if self.publisher is None:
            logger.info("No audit log configured; scope %s is recorded locally only", scope_id)
        elif self.breaker.allow_request():
            try:
                topic_id = self.publisher.create_topic(f"Audit log: {scope_id}")
                self.breaker.record_success()
            except LogServiceError as exc:
                self.breaker.record_failure()
                logger.warning("Topic creation failed for %s: %s", scope_id, exc)
                return topic_id
            except Exception:
                self.breaker.record_failure()
                logger.exception("Unexpected error creating topic for %s", scope_id)
                return topic_id
        else:
            return topic_id

        self.store.put(AUDIT_TOPICS, scope_id, {"topic_id": topic_id})
        return topic_id

    def publish_commitment(
        self,
        scope_id: str,
        stage: AuditStage | str,
        ledger_ref: Optional[str] = None,
        settlement_ref: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditLogEntry:
        """Commit ``stage`` for ``scope_id``; publication failures degrade locally."""
        stage = AuditStage(stage).value
        ledger_ref = ledger_ref or DEFAULT_LEDGER_REF
        settlement_ref = settlement_ref or DEFAULT_SETTLEMENT_REF
        timestamp = self.clock()
        nonce = self.nonce_factory()
        digest = commitment_hash(scope_id, stage, ledger_ref, settlement_ref, timestamp, nonce)
        topic_id = self.get_or_create_topic(scope_id)

        with self.store.transaction():
            log = self.store.get(AUDIT_ENTRIES, scope_id) or {"entries": []}
            entry = AuditLogEntry(
                scope_id=scope_id,
                stage=stage,
                ledger_ref=ledger_ref,
                settlement_ref=settlement_ref,
                timestamp=timestamp,
                nonce=nonce,
                commitment_hash=digest,
                sequence_number=len(log["entries"]) + 1,
                topic_id=topic_id,
                details=dict(details or {}),
            )
            log["entries"].append(entry.to_dict())
            self.store.put(AUDIT_ENTRIES, scope_id, log)

        if self._publish(entry):
            self._save(entry)
        return entry

    def _publish(self, entry: AuditLogEntry) -> bool:
        if self.publisher is None or entry.topic_id == local_topic_id(entry.scope_id):
            return False
        if not self.breaker.allow_request():
            logger.warning(
                "Audit log circuit open; %s/%s kept as local entry #%d",
                entry.scope_id,
                entry.stage,
                entry.sequence_number,
            )
            return False
        try:
            receipt = self.publisher.submit(entry.topic_id, entry.public_message())
        except LogServiceError as exc:
            self.breaker.record_failure()
            logger.warning(
                "Audit log submission failed; %s/%s kept as local entry #%d: %s",
                entry.scope_id,
                entry.stage,
                entry.sequence_number,
                exc,
            )
            return False
        except Exception:
            self.breaker.record_failure()
            logger.exception(
                "Unexpected audit log error; %s/%s kept as local entry #%d",
                entry.scope_id,
                entry.stage,
                entry.sequence_number,
            )
            return False
        self.breaker.record_success()
        entry.topic_sequence_number = receipt.sequence_number
        entry.consensus_timestamp = receipt.consensus_timestamp
        entry.published = True
        return True

    def _save(self, entry: AuditLogEntry) -> None:
        with self.store.transaction():
            log = self.store.get(AUDIT_ENTRIES, entry.scope_id) or {"entries": []}
            log["entries"][entry.sequence_number - 1] = entry.to_dict()
            self.store.put(AUDIT_ENTRIES, entry.scope_id, log)

    def get_audit_log(self, scope_id: str) -> list[AuditLogEntry]:
        log = self.store.get(AUDIT_ENTRIES, scope_id) or {"entries": []}
        return [AuditLogEntry.from_dict(e) for e in log["entries"]]

    def republish_pending(self, scope_id: str) -> int:
        """Retry publication of unpublished entries, oldest first."""
        published = 0
        if self.publisher is None:
            return published
        if self.store.get(AUDIT_TOPICS, scope_id) is None:
            self.get_or_create_topic(scope_id)
        topic = self.store.get(AUDIT_TOPICS, scope_id)
        if topic is None:
            return published

        for entry in self.get_audit_log(scope_id):
            if entry.published:
                continue
            entry.topic_id = topic["topic_id"]
            if not self._publish(entry):
                break
            self._save(entry)
            published += 1
        return published

    def verify_commitment(self, entry: AuditLogEntry | Mapping) -> bool:
        return verify_commitment(entry)

    def verify_published(self, entry: AuditLogEntry) -> bool:
        """Cross-check the entry against the public log's copy.

        False when the entry was never published, the log cannot be read, or
        the published hash, stage or timestamp differ from the private record.
        """
        if not entry.published or entry.topic_sequence_number is None or self.publisher is None:
            return False
        try:
            message = self.publisher.read(entry.topic_id, entry.topic_sequence_number)
        except LogServiceError as exc:
            logger.warning("Audit log read failed for %s: %s", entry.scope_id, exc)
            return False
        except Exception:
            logger.exception("Unexpected error reading audit log for %s", entry.scope_id)
            return False
        if message is None:
            return False
        return message.message == entry.public_message() and verify_commitment(entry)
