"""Unit tests for BOLT11 amount parsing."""

import pytest

from nutledger.invoice import parse_invoice_amount


class TestParseInvoiceAmount:
    """Amounts come from the human readable part only."""

    @pytest.mark.parametrize(
        "invoice,expected",
        [
            ("lnbc210n1pjqxyz", 21),
            ("lnbc1500n1pjqxyz", 150),
            ("lnbc1u1pjqxyz", 100),
            ("lnbc2500u1pjqxyz", 250_000),
            ("lnbc20m1pjqxyz", 2_000_000),
            ("lnbc1pjqxyz", None),
            ("lntb100u1pjqxyz", 10_000),
            ("lnbcrt50u1pjqxyz", 5_000),
            ("lntbs3u1pjqxyz", 300),
        ],
    )
    def test_multipliers_and_networks(self, invoice, expected):
        assert parse_invoice_amount(invoice) == expected

    def test_whole_bitcoin_amount(self):
        assert parse_invoice_amount("lnbc21pjqxyz") == 200_000_000

    @pytest.mark.parametrize("invoice", ["lnbc10p1pjqxyz", "lnbc9999p1pjqxyz"])
    def test_sub_sat_amounts_are_floored(self, invoice):
        assert parse_invoice_amount(invoice) == 0

    def test_pico_amount_rounding(self):
        assert parse_invoice_amount("lnbc12340p1pjqxyz") == 1

    def test_prefix_and_case_are_ignored(self):
        assert parse_invoice_amount("lightning:LNBC210N1PJQXYZ") == 21
        assert parse_invoice_amount("  lnbc210n1pjqxyz\n") == 21

    @pytest.mark.parametrize("invoice", ["", "hello", "lnxx210n1pjq", "cashuAey1", "1lnbc"])
    def test_unrecognised_input(self, invoice):
        assert parse_invoice_amount(invoice) is None
