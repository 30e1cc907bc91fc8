"""Tests for the audit commitment chain."""

import json
import logging

import httpx
import pytest
from eth_utils import keccak

from custodian.audit import (
    AuditLogEntry,
    CommitmentChain,
    commitment_hash,
    verify_commitment,
)
from custodian.breaker import BreakerState, CircuitBreaker
from custodian.log_client import HttpLogPublisher, InMemoryLogPublisher
from custodian.storage import JsonFileStore, MemoryStore


SCOPE = "auction-0001"


@pytest.fixture
def publisher():
    return InMemoryLogPublisher()


@pytest.fixture
def chain(publisher):
    return CommitmentChain(MemoryStore(), publisher)


class TestCommitmentHash:
    def test_matches_compact_json_keccak(self):
        payload = json.dumps(
            {
                "scope_id": "a",
                "stage": "created",
                "ledger_ref": "r1",
                "settlement_ref": "r2",
                "timestamp": "2026-01-01T00:00:00.000Z",
                "nonce": "0x00",
            },
            separators=(",", ":"),
        )
        expected = "0x" + keccak(text=payload).hex()
        assert commitment_hash("a", "created", "r1", "r2", "2026-01-01T00:00:00.000Z", "0x00") == expected

    def test_every_field_contributes(self):
        base = ["a", "created", "r1", "r2", "t", "n"]
        reference = commitment_hash(*base)
        for i in range(len(base)):
            changed = list(base)
            changed[i] = changed[i] + "x"
            assert commitment_hash(*changed) != reference


class TestPublish:
    def test_publish_then_verify(self, chain):
        entry = chain.publish_commitment(SCOPE, "created", "ref-a", "ref-b")
        assert chain.verify_commitment(entry)
        assert entry.published
        assert entry.sequence_number == 1
        assert entry.topic_sequence_number == 1
        assert entry.nonce.startswith("0x") and len(entry.nonce) == 34
        assert entry.timestamp.endswith("Z")

    def test_mutating_nonce_or_timestamp_breaks_verification(self, chain):
        entry = chain.publish_commitment(SCOPE, "created", "ref-a", "ref-b")
        stored = chain.get_audit_log(SCOPE)[0]
        assert verify_commitment(stored)

        stored.nonce = "0x" + "00" * 16
        assert not verify_commitment(stored)

        stored = chain.get_audit_log(SCOPE)[0]
        stored.timestamp = "2020-01-01T00:00:00.000Z"
        assert not chain.verify_commitment(stored)
        assert chain.verify_commitment(entry)

    def test_public_message_excludes_private_fields(self, chain, publisher):
        entry = chain.publish_commitment(SCOPE, "awarded", "ledger-secret", "settle-secret")
        [message] = publisher.messages(entry.topic_id)
        assert message.message == {
            "commitment_hash": entry.commitment_hash,
            "stage": "awarded",
            "timestamp": entry.timestamp,
        }
        raw = json.dumps(message.message)
        assert "ledger-secret" not in raw
        assert entry.nonce not in raw

    def test_default_refs(self, chain):
        entry = chain.publish_commitment(SCOPE, "bidding-open")
        assert entry.ledger_ref == "LEDGER-PENDING"
        assert entry.settlement_ref == "SETTLEMENT-PENDING"

    def test_unknown_stage_rejected(self, chain):
        with pytest.raises(ValueError):
            chain.publish_commitment(SCOPE, "teleported")
        assert chain.get_audit_log(SCOPE) == []

    def test_topic_created_once_per_scope(self, chain):
        first = chain.publish_commitment(SCOPE, "created")
        second = chain.publish_commitment(SCOPE, "bidding-open")
        other = chain.publish_commitment("auction-0002", "created")
        assert first.topic_id == second.topic_id
        assert other.topic_id != first.topic_id
        assert [e.sequence_number for e in chain.get_audit_log(SCOPE)] == [1, 2]

    def test_verify_malformed_entry_returns_false(self, chain):
        assert not verify_commitment({"scope_id": SCOPE})
        assert not chain.verify_commitment({"garbage": True})


class TestLocalFallback:
    def test_no_publisher_uses_local_topic(self):
        chain = CommitmentChain(MemoryStore())
        entry = chain.publish_commitment(SCOPE, "created")
        assert entry.topic_id == "0.0.LOCAL-n-0001"
        assert not entry.published
        assert entry.topic_sequence_number is None
        assert chain.verify_commitment(entry)

    def test_unreachable_log_never_fails_caller(self, publisher, caplog):
        chain = CommitmentChain(MemoryStore(), publisher)
        chain.publish_commitment(SCOPE, "created")
        publisher.available = False

        with caplog.at_level(logging.WARNING, logger="custodian.audit"):
            entry = chain.publish_commitment(SCOPE, "funded", "ref-a", "ref-b")

        assert not entry.published
        assert entry.sequence_number == 2
        assert chain.verify_commitment(entry)
        assert "kept as local entry #2" in caplog.text

    def test_local_sequence_stays_monotonic_across_outages(self, publisher):
        chain = CommitmentChain(MemoryStore(), publisher)
        chain.publish_commitment(SCOPE, "created")
        publisher.available = False
        chain.publish_commitment(SCOPE, "bidding-open")
        publisher.available = True
        chain.publish_commitment(SCOPE, "bidding-closed")

        entries = chain.get_audit_log(SCOPE)
        assert [e.sequence_number for e in entries] == [1, 2, 3]
        assert [e.published for e in entries] == [True, False, True]
        assert [e.topic_sequence_number for e in entries] == [1, None, 2]

    def test_breaker_opens_and_skips_log(self, publisher):
        breaker = CircuitBreaker("test", failure_threshold=2, recovery_seconds=60, clock=lambda: 0)
        chain = CommitmentChain(MemoryStore(), publisher, breaker=breaker)
        chain.publish_commitment(SCOPE, "created")
        publisher.available = False
        chain.publish_commitment(SCOPE, "funded")
        chain.publish_commitment(SCOPE, "settled")
        assert breaker.state == BreakerState.OPEN

        publisher.available = True
        entry = chain.publish_commitment(SCOPE, "resolved")
        assert not entry.published

    def test_republish_pending(self, publisher):
        chain = CommitmentChain(MemoryStore(), publisher)
        publisher.available = False
        chain.publish_commitment(SCOPE, "created")
        chain.publish_commitment(SCOPE, "funded")
        assert chain.get_audit_log(SCOPE)[0].topic_id == "0.0.LOCAL-n-0001"

        publisher.available = True
        assert chain.republish_pending(SCOPE) == 2
        entries = chain.get_audit_log(SCOPE)
        assert all(e.published for e in entries)
        assert [e.topic_sequence_number for e in entries] == [1, 2]
        assert all(chain.verify_published(e) for e in entries)
        assert chain.republish_pending(SCOPE) == 0


class TestVerifyPublished:
    def test_matches_public_log(self, chain):
        entry = chain.publish_commitment(SCOPE, "scoring", "ref-a", "ref-b")
        assert chain.verify_published(entry)

    def test_detects_tampered_public_hash(self, chain, publisher):
        entry = chain.publish_commitment(SCOPE, "scoring")
        [message] = publisher.messages(entry.topic_id)
        message.message["commitment_hash"] = "0x" + "11" * 32
        assert chain.verify_commitment(entry)
        assert not chain.verify_published(entry)

    def test_unpublished_entry(self):
        chain = CommitmentChain(MemoryStore())
        entry = chain.publish_commitment(SCOPE, "created")
        assert not chain.verify_published(entry)

    def test_unreadable_log(self, chain, publisher):
        entry = chain.publish_commitment(SCOPE, "created")
        publisher.available = False
        assert not chain.verify_published(entry)


class TestPersistence:
    def test_entries_survive_reopen(self, tmp_path):
        path = tmp_path / "state.json"
        CommitmentChain(JsonFileStore(path)).publish_commitment(SCOPE, "created", "a", "b")
        entries = CommitmentChain(JsonFileStore(path)).get_audit_log(SCOPE)
        assert len(entries) == 1
        assert isinstance(entries[0], AuditLogEntry)
        assert verify_commitment(entries[0].to_dict())


class BrokenLogPublisher(InMemoryLogPublisher):
    """In-memory log whose submit and read fail with arbitrary errors."""

    def __init__(self):
        super().__init__()
        self.broken = True

    def submit(self, topic_id, message):
        if self.broken:
            raise RuntimeError("decoder exploded")
        return super().submit(topic_id, message)

    def read(self, topic_id, sequence_number):
        if self.broken:
            raise KeyError("message")
        return super().read(topic_id, sequence_number)


class TestMalformedLogResponses:
    def test_non_object_body_falls_back_to_local_topic(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["unexpected"]))
        publisher = HttpLogPublisher("https://log.test", "op", "secret", transport=transport)
        breaker = CircuitBreaker("test", failure_threshold=1, clock=lambda: 0)
        chain = CommitmentChain(MemoryStore(), publisher, breaker=breaker)

        entry = chain.publish_commitment("s1", "created", "a", "b")

        assert entry.topic_id == "0.0.LOCAL-s1"
        assert not entry.published
        assert chain.verify_commitment(entry)
        assert breaker.state == BreakerState.OPEN

    def test_unexpected_submit_error_keeps_entry_local(self, caplog):
        publisher = BrokenLogPublisher()
        chain = CommitmentChain(MemoryStore(), publisher)

        with caplog.at_level(logging.ERROR, logger="custodian.audit"):
            entry = chain.publish_commitment(SCOPE, "funded")

        assert not entry.published
        assert entry.sequence_number == 1
        assert "kept as local entry #1" in caplog.text

    def test_failed_half_open_trial_allows_a_later_trial(self):
        publisher = BrokenLogPublisher()
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_seconds=0, clock=lambda: 0)
        chain = CommitmentChain(MemoryStore(), publisher, breaker=breaker)

        chain.publish_commitment(SCOPE, "created")
        chain.publish_commitment(SCOPE, "funded")
        publisher.broken = False
        entry = chain.publish_commitment(SCOPE, "settled")

        assert entry.published
        assert breaker.state == BreakerState.CLOSED
        assert chain.republish_pending(SCOPE) == 2

    def test_unexpected_read_error_fails_verification(self):
        publisher = BrokenLogPublisher()
        publisher.broken = False
        chain = CommitmentChain(MemoryStore(), publisher)
        entry = chain.publish_commitment(SCOPE, "created")
        publisher.broken = True
        assert not chain.verify_published(entry)
