"""
Test suite for the treasury command line
"""

import json

import pytest
from click.testing import CliRunner
from eth_utils import to_checksum_address

from treasury.cli.main import cli


USER = to_checksum_address("0x" + "a" * 40)
MARKET_A = to_checksum_address("0x" + "b" * 40)
MARKET_B = to_checksum_address("0x" + "c" * 40)


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    for name in ("TREASURY_CONFIG", "TREASURY_LEDGER_BACKEND", "TREASURY_DB_PATH", "TREASURY_RPC_URL"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.toml"
    path.write_text(
        "[ledger]\n"
        'backend = "sqlite"\n'
        "[ledger.sqlite]\n"
        f'path = "{(tmp_path / "treasury.db").as_posix()}"\n'
        "[chain]\n"
        "chain_id = 31337\n"
        "[logging]\n"
        'level = "WARNING"\n'
    )
    return str(path)


@pytest.fixture
def invoke(config_path):
    runner = CliRunner()

    def run(*args):
        return runner.invoke(cli, ["--config", config_path, *args])

    return run


def output_json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestCommands:

    def test_exchange_in_then_list(self, invoke):
        created = output_json(invoke("exchange-in", USER, "10"))
        assert created["operation"]["status"] == "open"
        assert created["transactionObject"]["chainId"] == 31337

        listing = output_json(invoke("operations", "--user", USER))
        assert [op["transferId"] for op in listing["operations"]] == [created["transferId"]]

    def test_operations_paging(self, invoke):
        for amount in ("1", "2", "3"):
            output_json(invoke("exchange-in", USER, amount))

        listing = output_json(invoke("operations", "--page", "2", "--page-size", "2"))
        assert listing["page"] == 2
        assert listing["page_size"] == 1

    def test_payment_and_set_paid(self, invoke):
        created = output_json(invoke("payment", MARKET_A, USER, "40"))

        paid = output_json(invoke("set-paid", MARKET_A, created["transferId"], "BANK-1"))
        assert paid["transferId"] == created["transferId"]

        listing = output_json(invoke("operations", "--transfer-id", created["transferId"]))
        assert listing["operations"][0]["status"] == "closed"
        assert listing["operations"][0]["transferCode"] == "BANK-1"

    def test_exchange_out_with_tokens(self, invoke):
        created = output_json(invoke("exchange-out", USER, MARKET_A, "--tokens", "5"))
        assert created["operation"]["amount"] == "5"

    def test_clearing_flow(self, invoke):
        output_json(invoke("fee-payment", MARKET_A, MARKET_B, "7"))
        output_json(invoke("fee-payment", MARKET_B, MARKET_A, "2"))

        [entry] = output_json(invoke("clearing"))
        assert entry["transactionObject"]["from"] == MARKET_A
        assert output_json(invoke("clearing")) == []

        confirmed = output_json(invoke("confirm", entry["transferId"]))
        assert confirmed["status"] == "closed"

        fees = output_json(invoke("operations", "--type", "fee_payment"))
        assert {op["status"] for op in fees["operations"]} == {"closed"}


class TestErrors:

    def test_invalid_address(self, invoke):
        result = invoke("exchange-in", "0x1234", "10")
        assert result.exit_code == 1
        assert "userAddress must be a hexadecimal address" in result.output

    def test_unknown_transfer(self, invoke):
        result = invoke("confirm", "missing")
        assert result.exit_code == 1
        assert "missing not found" in result.output

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text('[ledger]\nbackend = "postgres"\n')

        result = CliRunner().invoke(cli, ["--config", str(path), "clearing"])

        assert result.exit_code == 1
        assert "Unknown ledger backend" in result.output
