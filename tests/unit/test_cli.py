"""Unit tests for the command line interface."""

import logging
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from nutledger import __version__
from nutledger.cli import app
from nutledger.wallet import Wallet

from conftest import MINT_URL, FakeMint

runner = CliRunner()


class TestCli:
    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"nutledger v{__version__}" in result.output

    @pytest.mark.parametrize(
        "bolt11,expected",
        [("lnbc210n1pjqxyz", "21 sats"), ("lnbc1pjqxyz", "Invoice has no amount")],
    )
    def test_decode(self, bolt11, expected):
        result = runner.invoke(app, ["decode", bolt11])

        assert result.exit_code == 0
        assert expected in result.output

    def test_missing_nsec(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("NSEC", "")

        result = runner.invoke(app, ["balance"])

        assert result.exit_code == 2
        assert "NSEC is not set" in result.output

    @pytest.mark.parametrize(
        "args,env,expected",
        [
            (["--log-level", "debug"], None, logging.DEBUG),
            ([], "info", logging.INFO),
            ([], None, logging.WARNING),
        ],
    )
    def test_log_level(self, monkeypatch, tmp_path, args, env, expected):
        monkeypatch.chdir(tmp_path)
        if env is None:
            monkeypatch.delenv("NUTLEDGER_LOG_LEVEL", raising=False)
        else:
            monkeypatch.setenv("NUTLEDGER_LOG_LEVEL", env)

        with patch("nutledger.cli.logging.basicConfig") as basic_config:
            result = runner.invoke(app, [*args, "decode", "lnbc1pjqxyz"])

        assert result.exit_code == 0
        assert basic_config.call_args.kwargs["level"] == expected

    def test_unknown_log_level(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(app, ["--log-level", "loud", "decode", "lnbc1pjqxyz"])

        assert result.exit_code == 2
        assert "not a log level" in result.output


OTHER_MINT = "https://other.example.com"


class TestMintsCommand:
    @pytest.fixture
    def wallet(self, monkeypatch, tmp_path, signer, transport, fake_mint) -> Wallet:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("NSEC", "nsec1placeholder")
        mints = {MINT_URL: fake_mint, OTHER_MINT: FakeMint(OTHER_MINT)}
        wallet = Wallet(signer, transport, mint_urls=list(mints), mint_factory=mints.__getitem__)
        monkeypatch.setattr(Wallet, "from_settings", AsyncMock(return_value=wallet))
        return wallet

    def test_lists_mints(self, wallet):
        result = runner.invoke(app, ["mints"])

        assert result.exit_code == 0
        assert "Mints" in result.output
        assert wallet.mint_urls == [MINT_URL, OTHER_MINT]

    def test_remove_and_use(self, wallet):
        result = runner.invoke(app, ["mints", "--use", OTHER_MINT])
        assert result.exit_code == 0
        assert wallet.active_mint == OTHER_MINT

        result = runner.invoke(app, ["mints", "--remove", OTHER_MINT])
        assert result.exit_code == 0
        assert wallet.mint_urls == [MINT_URL]
        assert wallet.active_mint == MINT_URL

    def test_last_mint_is_kept(self, wallet):
        runner.invoke(app, ["mints", "--remove", OTHER_MINT])

        result = runner.invoke(app, ["mints", "--remove", MINT_URL])

        assert result.exit_code == 1
        assert "Cannot remove the last mint" in result.output
        assert wallet.mint_urls == [MINT_URL]
