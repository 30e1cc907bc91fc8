"""CLI tests: key handling and end-to-end flows against a temporary home."""

import json

import pytest
from click.testing import CliRunner
from eth_account import Account

from custodian.cli import _resolve_private_key, main


OPERATOR = Account.create()
PAYMASTER = Account.create().address
SENDER = Account.create().address
SELLER = Account.create().address


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def env(tmp_path):
    return {
        "CUSTODIAN_HOME": str(tmp_path / "home"),
        "CUSTODIAN_SPONSOR_KEY": OPERATOR.key.hex(),
        "CUSTODIAN_NATIVE_PAYMASTER": PAYMASTER,
    }


def invoke(runner, env, *args):
    return runner.invoke(main, list(args), env=env)


class TestKeyHandling:
    def test_rejects_raw_key_on_argv(self, runner, env):
        result = invoke(runner, env, "--sponsor-key", OPERATOR.key.hex(), "audit", "log", "auction-1")
        assert result.exit_code != 0
        assert "Refusing --sponsor-key from argv" in result.output

    def test_unsafe_flag_allows_raw_key(self, runner, env):
        env = dict(env, CUSTODIAN_SPONSOR_KEY="")
        result = invoke(
            runner, env, "--unsafe-allow-key-arg", "--sponsor-key", OPERATOR.key.hex(),
            "audit", "log", "auction-1",
        )
        assert result.exit_code == 0
        assert "No audit entries found." in result.output

    def test_malformed_key_is_a_configuration_error(self, runner, env):
        env = dict(env, CUSTODIAN_SPONSOR_KEY="0x1234")
        result = invoke(runner, env, "audit", "log", "auction-1")
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_resolve_private_key_normalizes_prefix(self):
        raw = "ab" * 32
        assert _resolve_private_key(raw) == "0x" + raw
        assert _resolve_private_key(" 0x" + raw + " ") == "0x" + raw
        with pytest.raises(ValueError):
            _resolve_private_key("zz" * 32)


class TestSponsorFlow:
    def test_register_sign_and_rate_limit(self, runner, env):
        result = invoke(
            runner, env, "policy", "register",
            "--scope", "auction-1", "--beneficiary", SENDER, "--max-ops", "1",
        )
        assert result.exit_code == 0, result.output
        assert "✅ Policy registered" in result.output

        result = invoke(runner, env, "sponsor", "sign", "--sender", SENDER, "--scope", "auction-1", "--json")
        assert result.exit_code == 0, result.output
        auth = json.loads(result.output)
        assert auth["paymaster_address"] == PAYMASTER
        assert auth["sponsor_signer"] == OPERATOR.address

        result = invoke(runner, env, "sponsor", "sign", "--sender", SENDER, "--scope", "auction-1")
        assert result.exit_code == 1
        assert "Sponsorship denied [RATE_LIMIT]" in result.output

        result = invoke(runner, env, "audit", "log", "auction-1", "--json")
        entries = json.loads(result.output)
        assert [e["stage"] for e in entries] == ["sponsored"]
        assert entries[0]["ledger_ref"] == auth["authorization_hash"]

    def test_failures(self, runner, env):
        result = invoke(runner, env, "sponsor", "failures")
        assert result.exit_code == 0
        assert set(json.loads(result.output)) >= {"expired", "bad_signer", "rate_limited"}


class TestQuoteFlow:
    def test_generate_and_verify(self, runner, env, tmp_path):
        out = tmp_path / "quote.json"
        result = invoke(
            runner, env, "quote", "generate", "--scope", "auction-1", "--amount", "100", "--out", str(out),
        )
        assert result.exit_code == 0, result.output
        assert json.loads(out.read_text())["settlement_amount"] == str(1000 * 10**18)

        result = invoke(runner, env, "quote", "verify", str(out))
        assert result.exit_code == 0
        assert "✅ Quote is valid" in result.output

        quote = json.loads(out.read_text())
        quote["settlement_amount"] = "1"
        out.write_text(json.dumps(quote))
        result = invoke(runner, env, "quote", "verify", str(out))
        assert result.exit_code == 1
        assert "Quote is invalid" in result.output

    def test_unsupported_currency(self, runner, env):
        result = invoke(runner, env, "quote", "generate", "--scope", "a", "--amount", "1", "--currency", "EUR")
        assert result.exit_code == 1
        assert "Failed to generate quote" in result.output


class TestEscrowFlow:
    def test_state_persists_between_invocations(self, runner, env):
        result = invoke(runner, env, "ledger", "mint", "--account", OPERATOR.address, "--amount", str(3 * 10**18))
        assert result.exit_code == 0, result.output
        assert "balance: 3 (" in result.output

        result = invoke(
            runner, env, "escrow", "deposit", "--scope", "auction-1", "--seller", SELLER, "--amount", "1000",
        )
        assert result.exit_code == 0, result.output
        assert "✅ Escrow funded" in result.output

        result = invoke(runner, env, "escrow", "deposit", "--scope", "auction-1", "--seller", SELLER, "--amount", "1")
        assert result.exit_code == 1
        assert "Escrow deposit failed" in result.output

        result = invoke(runner, env, "escrow", "release", "--scope", "auction-1")
        assert result.exit_code == 0, result.output
        assert "State:   RELEASED" in result.output

        result = invoke(runner, env, "ledger", "balance", "--account", SELLER)
        assert result.output.strip() == "1000"

        result = invoke(runner, env, "audit", "verify", "auction-1")
        assert result.exit_code == 0
        assert "✅ 2 commitment(s) verified" in result.output

    def test_release_by_stranger(self, runner, env):
        stranger = Account.create().address
        result = invoke(runner, env, "escrow", "release", "--scope", "auction-1", "--caller", stranger)
        assert result.exit_code == 1
        assert "not authorized" in result.output

    def test_info_for_unknown_scope(self, runner, env):
        result = invoke(runner, env, "escrow", "info", "nothing")
        assert result.exit_code == 0
        assert "State:   EMPTY" in result.output


class TestAuditFlow:
    def test_publish_and_verify(self, runner, env):
        result = invoke(runner, env, "audit", "publish", "--scope", "auction-1", "--stage", "created")
        assert result.exit_code == 0, result.output
        assert "(local only)" in result.output
        assert "0.0.LOCAL-tion-1" in result.output

        result = invoke(runner, env, "audit", "verify", "auction-1")
        assert "✅ 1 commitment(s) verified" in result.output

    def test_unknown_stage(self, runner, env):
        result = invoke(runner, env, "audit", "publish", "--scope", "auction-1", "--stage", "nope")
        assert result.exit_code == 2

    def test_verify_without_entries(self, runner, env):
        result = invoke(runner, env, "audit", "verify", "auction-1")
        assert result.exit_code == 1
        assert "No audit entries" in result.output

    def test_republish_without_log(self, runner, env):
        invoke(runner, env, "audit", "publish", "--scope", "auction-1", "--stage", "created")
        result = invoke(runner, env, "audit", "republish", "auction-1")
        assert "Republished 0 entries" in result.output
