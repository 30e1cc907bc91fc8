"""Tests for the HTTP API."""

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from custodian.api import create_app
from custodian.config import CustodianConfig
from custodian.log_client import InMemoryLogPublisher
from custodian.service import Custodian
from custodian.storage import MemoryStore


OPERATOR = Account.create()
PAYMASTER = Account.create().address
SENDER = Account.create().address
SELLER = Account.create().address
STRANGER = Account.create().address


@pytest.fixture
def custodian(tmp_path):
    config = CustodianConfig(
        sponsor_key=OPERATOR.key.hex(),
        native_paymaster=PAYMASTER,
        home=tmp_path,
    )
    return Custodian(config, MemoryStore(), InMemoryLogPublisher())


@pytest.fixture
def client(custodian):
    return TestClient(create_app(custodian))


def register(client, max_ops=1, **extra):
    body = {"auctionId": "auction-1", "beneficiary": SENDER, "maxOpsPerAuction": max_ops}
    body.update(extra)
    return client.post("/api/sponsor/policy", json=body)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["data"]["sponsor_signer"] == OPERATOR.address


class TestSponsor:
    def test_policy_then_sign_then_rate_limit(self, client):
        response = register(client, allowedSelectors=["0xa9059cbb"])
        assert response.status_code == 200
        assert response.json()["data"]["policy"]["allowed_selectors"] == ["0xa9059cbb"]

        sign = {"sender": SENDER, "auctionId": "auction-1", "callData": "0xa9059cbb" + "00" * 64}
        first = client.post("/api/sponsor/sign", json=sign)
        assert first.status_code == 200
        data = first.json()["data"]
        assert data["paymaster_address"] == PAYMASTER
        assert data["ops_used"] == 1
        assert data["paymaster_and_data"].startswith(PAYMASTER.lower())

        second = client.post("/api/sponsor/sign", json=sign)
        assert second.status_code == 403
        assert second.json() == {
            "ok": False,
            "error": second.json()["error"],
            "code": "RATE_LIMIT",
        }

    def test_disallowed_selector(self, client):
        register(client, allowedSelectors=["0xa9059cbb"])
        response = client.post(
            "/api/sponsor/sign",
            json={"sender": SENDER, "auctionId": "auction-1", "callData": "0xdeadbeef"},
        )
        assert response.status_code == 403
        assert response.json()["code"] == "SELECTOR_DISALLOWED"

    def test_bad_sender_is_bad_request(self, client):
        response = client.post("/api/sponsor/sign", json={"sender": "0x12", "auctionId": "a"})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_ADDRESS"

    def test_missing_field(self, client):
        response = client.post("/api/sponsor/sign", json={"sender": SENDER})
        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert "auctionId" in response.json()["error"]

    def test_unknown_paymaster_type(self, client):
        register(client)
        response = client.post(
            "/api/sponsor/sign",
            json={"sender": SENDER, "auctionId": "auction-1", "paymasterType": "gasless"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "BAD_REQUEST"

    def test_demo_failures(self, client):
        data = client.get("/api/sponsor/demo-failures").json()["data"]
        assert data["rate_limited"]["code"] == "RATE_LIMIT"
        assert data["bad_signer"]["validation"]["reason"] == "AA34 signature error"


class TestQuote:
    def test_generate_and_verify(self, client):
        response = client.post(
            "/api/quote/generate",
            json={"auctionId": "auction-1", "fiatAmount": "100", "fiatCurrency": "USD"},
        )
        assert response.status_code == 200
        quote = response.json()["data"]
        assert quote["settlement_amount"] == str(1000 * 10**18)

        assert client.post("/api/quote/verify", json={"quote": quote}).json()["data"] == {"valid": True}
        quote["fiat_amount"] = "99.00"
        assert client.post("/api/quote/verify", json={"quote": quote}).json()["data"] == {"valid": False}

    def test_unsupported_currency(self, client):
        response = client.post(
            "/api/quote/generate",
            json={"auctionId": "auction-1", "fiatAmount": "1", "fiatCurrency": "EUR"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "UNSUPPORTED_CURRENCY"


class TestEscrow:
    def deposit(self, client, custodian, amount=100, **extra):
        custodian.fund(OPERATOR.address, 1_000)
        body = {"auctionId": "auction-1", "sellerAddress": SELLER, "amount": amount}
        body.update(extra)
        return client.post("/api/escrow/deposit", json=body)

    def test_deposit_and_release(self, client, custodian):
        response = self.deposit(client, custodian)
        assert response.status_code == 200
        assert response.json()["data"]["state"] == "FUNDED"

        response = client.post("/api/escrow/release", json={"auctionId": "auction-1"})
        assert response.json()["data"]["state"] == "RELEASED"
        assert custodian.balance(SELLER) == 100

        info = client.get("/api/escrow/auction-1").json()["data"]
        assert info["state"] == "RELEASED"
        assert info["amount"] == "100"

    def test_double_deposit_conflicts(self, client, custodian):
        self.deposit(client, custodian)
        response = self.deposit(client, custodian)
        assert response.status_code == 409
        assert response.json()["code"] == "ESCROW_ALREADY_FUNDED"

    def test_release_of_empty_escrow_conflicts(self, client):
        response = client.post("/api/escrow/release", json={"auctionId": "auction-9"})
        assert response.status_code == 409
        assert response.json()["code"] == "ESCROW_INVALID_STATE"

    def test_stranger_cannot_dispute(self, client, custodian):
        self.deposit(client, custodian)
        response = client.post("/api/escrow/dispute", json={"auctionId": "auction-1", "caller": STRANGER})
        assert response.status_code == 403
        assert response.json()["code"] == "NOT_AUTHORIZED"

    def test_dispute_and_resolve(self, client, custodian):
        self.deposit(client, custodian)
        client.post("/api/escrow/dispute", json={"auctionId": "auction-1"})
        response = client.post(
            "/api/escrow/resolve-dispute",
            json={"auctionId": "auction-1", "releaseToSeller": True},
        )
        assert response.json()["data"]["state"] == "RELEASED"

    def test_insufficient_funds(self, client, custodian):
        response = self.deposit(client, custodian, amount=10_000)
        assert response.status_code == 400
        assert response.json()["code"] == "TRANSFER_FAILED"

    def test_quote_below_floor(self, client, custodian):
        quote = custodian.generate_quote("auction-1", "0.01", "USD")
        response = self.deposit(client, custodian, amount=1, quote=quote.to_dict())
        assert response.status_code == 400
        assert response.json()["code"] == "QUOTE_REJECTED"

    @pytest.mark.parametrize(
        "edit",
        [
            lambda q: q.pop("signature"),
            lambda q: q.update(fiat_amount="lots"),
            lambda q: q.update(settlement_amount="1e3x"),
        ],
    )
    def test_malformed_quote_is_rejected(self, client, custodian, edit):
        quote = custodian.generate_quote("auction-1", "0.01", "USD").to_dict()
        edit(quote)
        response = self.deposit(client, custodian, amount=1, quote=quote)
        assert response.status_code == 400
        assert response.json() == {
            "ok": False,
            "error": response.json()["error"],
            "code": "QUOTE_REJECTED",
        }
        assert client.get("/api/escrow/auction-1").json()["data"]["state"] == "EMPTY"


class TestAudit:
    def test_publish_list_verify(self, client):
        response = client.post(
            "/api/audit/publish",
            json={"auctionId": "auction-1", "stage": "created", "ledgerRef": "L1"},
        )
        assert response.status_code == 200
        entry = response.json()["data"]
        assert entry["published"] is True

        log = client.get("/api/audit/auction-1").json()["data"]
        assert log["scope_id"] == "auction-1"
        assert [e["stage"] for e in log["entries"]] == ["created"]

        verified = client.post("/api/audit/verify", json={"entry": entry, "checkPublished": True})
        assert verified.json()["data"] == {"valid": True, "published": True}

        entry["ledger_ref"] = "L2"
        tampered = client.post("/api/audit/verify", json={"entry": entry})
        assert tampered.json()["data"] == {"valid": False}

    def test_unknown_stage(self, client):
        response = client.post("/api/audit/publish", json={"auctionId": "auction-1", "stage": "nope"})
        assert response.status_code == 400
        assert response.json()["ok"] is False

    def test_republish(self, client):
        response = client.post("/api/audit/auction-1/republish")
        assert response.json()["data"] == {"republished": 0}
