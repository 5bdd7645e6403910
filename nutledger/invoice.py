"""Amount extraction from BOLT11 Lightning invoices.

Only the human readable part is read; the invoice signature and tagged
fields are left to the mint, which rejects anything invalid when quoting.
"""

from __future__ import annotations

import re

# ln + network prefix + optional amount with multiplier
_HRP_PATTERN = re.compile(r"^ln(bcrt|bc|tbs|tb|sb)(\d+)?([munp])?$")

# Millisatoshis per unit of each multiplier, as a (numerator, denominator) pair
_MSAT_PER_UNIT = {
    None: (100_000_000_000, 1),  # BTC
    "m": (100_000_000, 1),
    "u": (100_000, 1),
    "n": (100, 1),
    "p": (1, 10),
}


def parse_invoice_amount(invoice: str) -> int | None:
    """Amount of a BOLT11 invoice in sats.

    Args:
        invoice: BOLT11 payment request, optionally prefixed with ``lightning:``

    Returns:
        The amount in whole sats (sub-sat amounts are floored), or None when
        the invoice carries no amount or is not recognisable.
    """
    value = invoice.strip().lower()
    if value.startswith("lightning:"):
        value = value[len("lightning:") :]

    # The bech32 data part never contains "1", so the last one is the separator
    separator = value.rfind("1")
    if separator <= 0:
        return None
    match = _HRP_PATTERN.match(value[:separator])
    if match is None or match.group(2) is None:
        return None

    numerator, denominator = _MSAT_PER_UNIT[match.group(3)]
    msat = int(match.group(2)) * numerator // denominator
    return msat // 1000
