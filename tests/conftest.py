"""Shared fixtures: in-memory relay transport and a scripted mint."""

from __future__ import annotations

import itertools
import secrets

import pytest

from nutledger.crypto import generate_privkey, split_amount
from nutledger.events import EventManager
from nutledger.mint import MintClient
from nutledger.relay import EventTransport
from nutledger.signer import LocalSigner
from nutledger.state import WalletState
from nutledger.storage import MemoryStorage
from nutledger.types import (
    KeysetInfo,
    MeltQuote,
    MeltResult,
    MintQuote,
    MintRecord,
    NostrEvent,
    NostrFilter,
    Proof,
    RelayError,
    SendResult,
)

MINT_URL = "https://mint.example.com"
KEYSET_ID = "00ad268c4d1f5826"


def make_proof(
    amount: int,
    secret: str | None = None,
    *,
    mint: str = MINT_URL,
    keyset_id: str = KEYSET_ID,
) -> Proof:
    return Proof(
        id=keyset_id,
        amount=amount,
        secret=secret or secrets.token_hex(16),
        C="02" + "ab" * 32,
        mint=mint,
    )


class FakeTransport(EventTransport):
    """Relay stand-in that stores published events and answers filters."""

    def __init__(self) -> None:
        self.events: list[NostrEvent] = []
        self.published: list[NostrEvent] = []
        self.queries: list[list[NostrFilter]] = []
        self.fail_publish = False
        self.closed = False

    def add(self, *events: NostrEvent) -> None:
        self.events.extend(events)

    @staticmethod
    def _matches(event: NostrEvent, f: NostrFilter) -> bool:
        if "authors" in f and event["pubkey"] not in f["authors"]:
            return False
        if "kinds" in f and event["kind"] not in f["kinds"]:
            return False
        if "since" in f and event["created_at"] < f["since"]:
            return False
        if "until" in f and event["created_at"] > f["until"]:
            return False
        return True

    async def query(self, filters: list[NostrFilter]) -> list[NostrEvent]:
        self.queries.append(filters)
        found: dict[str, NostrEvent] = {}
        for f in filters:
            matching = [e for e in self.events if self._matches(e, f)]
            matching.sort(key=lambda e: e["created_at"], reverse=True)
            if "limit" in f:
                matching = matching[: f["limit"]]
            for event in matching:
                found.setdefault(event["id"], event)
        return list(found.values())

    async def publish(self, event: NostrEvent) -> bool:
        if self.fail_publish:
            raise RelayError("No relay accepted event")
        self.published.append(event)
        self.events.append(event)
        return True

    async def close(self) -> None:
        self.closed = True

    def of_kind(self, kind: int) -> list[NostrEvent]:
        return [e for e in self.published if e["kind"] == kind]


class FakeMint(MintClient):
    """Scripted mint.

    ``quote_states`` is consumed one entry per status check; the last state
    repeats once the script runs out.
    """

    def __init__(self, url: str = MINT_URL, *, fee_reserve: int = 0) -> None:
        self.url = url
        self.fee_reserve = fee_reserve
        self.quote_states: list[str] = ["PAID"]
        self.status_checks = 0
        self.minted: list[list[Proof]] = []
        self.melt_change: list[int] = []
        self.melt_error: Exception | None = None
        self.melted: list[list[Proof]] = []
        self.swapped: list[list[Proof]] = []
        self.invoice_amounts: dict[str, int] = {}
        self._ids = itertools.count(1)

    def _new_proofs(self, amounts: list[int]) -> list[Proof]:
        return [make_proof(a, mint=self.url) for a in amounts]

    async def load_mint(self) -> MintRecord:
        return MintRecord(
            url=self.url,
            info={"name": "fake"},
            keysets=[KeysetInfo(id=KEYSET_ID)],
            keys={KEYSET_ID: {}},
        )

    async def create_mint_quote(self, amount: int) -> MintQuote:
        quote_id = f"quote-{next(self._ids)}"
        return MintQuote(quote=quote_id, request=f"lnbc{amount}n1fake{quote_id}", state="UNPAID")

    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        index = min(self.status_checks, len(self.quote_states) - 1)
        self.status_checks += 1
        return MintQuote(quote=quote_id, request="", state=self.quote_states[index])

    async def mint_proofs(self, amount: int, quote_id: str) -> list[Proof]:
        proofs = self._new_proofs(split_amount(amount))
        self.minted.append(proofs)
        return proofs

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        return MeltQuote(
            quote=f"melt-{next(self._ids)}",
            amount=self.invoice_amounts.get(invoice, 0),
            fee_reserve=self.fee_reserve,
            state="UNPAID",
        )

    async def send(
        self, amount: int, proofs: list[Proof], *, include_fees: bool = False
    ) -> SendResult:
        self.swapped.append(proofs)
        total = sum(p["amount"] for p in proofs)
        return SendResult(
            keep=self._new_proofs(split_amount(total - amount) if total > amount else []),
            send=self._new_proofs(split_amount(amount)),
        )

    async def melt_proofs(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult:
        if self.melt_error is not None:
            raise self.melt_error
        self.melted.append(proofs)
        return MeltResult(paid=True, change=self._new_proofs(self.melt_change), preimage="00" * 32)


@pytest.fixture
def signer() -> LocalSigner:
    return LocalSigner(generate_privkey())


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def state(signer: LocalSigner, storage: MemoryStorage) -> WalletState:
    return WalletState(signer.pubkey, storage=storage)


@pytest.fixture
def events(signer: LocalSigner, transport: FakeTransport) -> EventManager:
    return EventManager(signer, transport)


@pytest.fixture
def fake_mint() -> FakeMint:
    return FakeMint()

