"""Coin selection over the spendable proofs of one mint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from .ledger import ProofLedger
from .types import InsufficientFunds, Proof

logger = logging.getLogger(__name__)


@dataclass
class Selection:
    """Proofs chosen for a spend and the change owed back by the mint."""

    mint: str
    spend: list[Proof]
    change_needed: int

    @property
    def total(self) -> int:
        return sum(p["amount"] for p in self.spend)

    @property
    def secrets(self) -> set[str]:
        return {p["secret"] for p in self.spend}


class CoinSelector:
    """Greedy largest-first selection with in-flight reservations.

    Selecting never mutates the ledger; spent proofs are removed by the caller
    only after the mint confirms the operation. While a selection is reserved
    its proofs are invisible to other selections, so two concurrent spends on
    one mint never pick the same proof.
    """

    def __init__(self, ledger: ProofLedger) -> None:
        self.ledger = ledger
        self._reserved: set[str] = set()

    def available(self, mint_url: str) -> list[Proof]:
        """Spendable, unreserved proofs of ``mint_url``."""
        return [
            p for p in self.ledger.proofs_for_mint(mint_url) if p["secret"] not in self._reserved
        ]

    def select(self, mint_url: str, target: int, fee_reserve: int = 0) -> Selection:
        """Pick proofs of one mint covering ``target + fee_reserve``.

        Args:
            mint_url: Mint to spend from
            target: Amount to spend, must be positive
            fee_reserve: Extra amount the mint may charge as fee

        Returns:
            Selection whose ``change_needed`` is the overshoot

        Raises:
            ValueError: If target is not positive or fee_reserve is negative
            UnknownMint: If the mint was never registered
            InsufficientFunds: If the available balance is below the requirement
        """
        if target <= 0:
            raise ValueError(f"Amount to select must be positive, got {target}")
        if fee_reserve < 0:
            raise ValueError(f"Fee reserve cannot be negative, got {fee_reserve}")

        need = target + fee_reserve
        candidates = self.available(mint_url)
        have = sum(p["amount"] for p in candidates)
        if have < need:
            raise InsufficientFunds(have, need, mint_url=mint_url)

        candidates.sort(key=lambda p: p["amount"], reverse=True)
        spend: list[Proof] = []
        total = 0
        for proof in candidates:
            if total >= need:
                break
            spend.append(proof)
            total += proof["amount"]

        logger.debug(
            "Selected %d proofs (%d) for %d + %d fee at %s",
            len(spend),
            total,
            target,
            fee_reserve,
            mint_url,
        )
        return Selection(
            mint=self.ledger.mint(mint_url).url, spend=spend, change_needed=total - need
        )

    def select_with_fees(self, mint_url: str, target: int, fee_reserve: int = 0) -> Selection:
        """Like :meth:`select`, but also covering the input fee of the chosen proofs."""
        input_fee = 0
        while True:
            selection = self.select(mint_url, target, fee_reserve + input_fee)
            fee = self.input_fees(selection.spend)
            if fee <= input_fee:
                return selection
            input_fee = fee

    @asynccontextmanager
    async def reserve(self, selection: Selection) -> AsyncIterator[Selection]:
        """Hold the selected proofs back from other selections until exit.

        Raises:
            ValueError: If a proof of the selection is already reserved
        """
        secrets = selection.secrets
        if secrets & self._reserved:
            raise ValueError("Selection overlaps proofs reserved by another spend")
        self._reserved |= secrets
        try:
            yield selection
        finally:
            self._reserved -= secrets

    def is_reserved(self, proof: Proof) -> bool:
        return proof["secret"] in self._reserved

    def input_fees(self, proofs: list[Proof]) -> int:
        """Input fee charged by the mint for spending ``proofs`` (NUT-02).

        Each proof costs its keyset's ``input_fee_ppk`` parts per thousand;
        the total is rounded up to a whole unit.
        """
        total_ppk = 0
        for proof in proofs:
            if not self.ledger.has_mint(proof["mint"]):
                continue
            keyset = self.ledger.mint(proof["mint"]).keyset(proof["id"])
            if keyset is not None:
                total_ppk += keyset.input_fee_ppk
        return (total_ppk + 999) // 1000
