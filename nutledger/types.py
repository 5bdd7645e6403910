"""Type definitions for the nutledger package following NUT-00 and NIP-60."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict


class Proof(TypedDict):
    """Proof held by the wallet.

    Extends the NUT-00 proof with the URL of the mint that issued it, so a
    proof carries its own mint scope through the ledger.
    """

    id: str  # keyset ID
    amount: int
    secret: str
    C: str  # hex encoded unblinded signature
    mint: str


Direction = Literal["in", "out"]


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors."""


class UnsupportedEncryption(WalletError):
    """Raised when the signer cannot encrypt or decrypt NIP-44 payloads."""


class MalformedPayload(WalletError):
    """Raised when an event payload cannot be decrypted or parsed."""

    def __init__(self, message: str, *, event_id: str | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class UnknownMint(WalletError):
    """Raised when a mint was never registered with the ledger."""

    def __init__(self, mint_url: str) -> None:
        super().__init__(f"Unknown mint: {mint_url}")
        self.mint_url = mint_url


class UnknownKeyset(WalletError):
    """A held proof references a keyset its mint does not list."""

    def __init__(self, mint_url: str, keyset_id: str) -> None:
        super().__init__(f"Unknown keyset {keyset_id} for mint {mint_url}")
        self.mint_url = mint_url
        self.keyset_id = keyset_id


class InsufficientFunds(WalletError):
    """Raised when the spendable balance of a mint cannot cover a spend."""

    def __init__(self, have: int, need: int, *, mint_url: str | None = None) -> None:
        where = f" at mint {mint_url}" if mint_url else ""
        super().__init__(f"Insufficient balance{where}: need {need}, have {have}")
        self.have = have
        self.need = need
        self.mint_url = mint_url


class InvoiceNotPaidYet(WalletError):
    """The Lightning invoice behind a mint quote has not been paid yet."""


class MintError(Exception):
    """Base exception for mint errors."""


class MintOperationFailed(MintError):
    """A mint call failed terminally. Not retried automatically."""


class RelayError(Exception):
    """Base exception for relay errors."""


# ──────────────────────────────────────────────────────────────────────────────
# Nostr
# ──────────────────────────────────────────────────────────────────────────────


class EventKind:
    """Nostr event kinds used by the wallet."""

    # NIP-60 wallet events
    Wallet = 17375  # replaceable wallet descriptor
    Token = 7375  # unspent proofs
    History = 7376  # spending history
    Quote = 7374  # pending mint quotes

    # Standard Nostr events
    Deletion = 5  # NIP-09 event deletion


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


class UnsignedEvent(TypedDict):
    """Event template before id and signature are attached."""

    kind: int
    created_at: int
    tags: list[list[str]]
    content: str


class NostrFilter(TypedDict, total=False):
    """Filter for REQ subscriptions."""

    ids: list[str]
    authors: list[str]
    kinds: list[int]
    since: int
    until: int
    limit: int
    # Tags filters use #<tag> format


# ──────────────────────────────────────────────────────────────────────────────
# Mint records
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class KeysetInfo:
    """Keyset descriptor as listed by GET /v1/keysets."""

    id: str
    unit: str = "sat"
    active: bool = True
    input_fee_ppk: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeysetInfo:
        return cls(
            id=str(data["id"]),
            unit=str(data.get("unit", "sat")),
            active=bool(data.get("active", True)),
            input_fee_ppk=int(data.get("input_fee_ppk", 0) or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "unit": self.unit,
            "active": self.active,
            "input_fee_ppk": self.input_fee_ppk,
        }


@dataclass
class MintRecord:
    """What the wallet knows about one mint.

    ``keysets`` is ``None`` until the keyset list has been loaded; an empty
    list means the mint was loaded and lists no keysets.
    """

    url: str
    info: dict[str, Any] | None = None
    keysets: list[KeysetInfo] | None = None
    keys: dict[str, dict[str, str]] = field(default_factory=dict)  # id -> amount -> pubkey

    @property
    def active_keyset_ids(self) -> set[str]:
        return {ks.id for ks in self.keysets or [] if ks.active}

    def keyset(self, keyset_id: str) -> KeysetInfo | None:
        for ks in self.keysets or []:
            if ks.id == keyset_id:
                return ks
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "info": self.info,
            "keysets": None
            if self.keysets is None
            else [ks.to_dict() for ks in self.keysets],
            "keys": self.keys,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MintRecord:
        keysets = data.get("keysets")
        return cls(
            url=data["url"],
            info=data.get("info"),
            keysets=None
            if keysets is None
            else [KeysetInfo.from_dict(ks) for ks in keysets],
            keys=dict(data.get("keys") or {}),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Decoded event payloads
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class WalletDescriptor:
    """Decoded NIP-60 wallet event (kind 17375)."""

    mints: list[str] = field(default_factory=list)
    privkey: str | None = None
    event_id: str | None = None
    created_at: int = 0


@dataclass
class TokenEvent:
    """Decoded NIP-60 token event (kind 7375)."""

    mint: str
    proofs: list[Proof]
    superseded_ids: list[str] = field(default_factory=list)  # NIP-60 "del"
    event_id: str | None = None
    created_at: int = 0

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)


@dataclass(frozen=True)
class HistoryEntry:
    """Decoded NIP-60 spending history event (kind 7376). Never mutated."""

    direction: Direction
    amount: int
    created_ids: tuple[str, ...] = ()
    destroyed_ids: tuple[str, ...] = ()
    redeemed_ids: tuple[str, ...] = ()
    timestamp: int = 0
    event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "amount": self.amount,
            "created_ids": list(self.created_ids),
            "destroyed_ids": list(self.destroyed_ids),
            "redeemed_ids": list(self.redeemed_ids),
            "timestamp": self.timestamp,
            "event_id": self.event_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            direction=data["direction"],
            amount=int(data["amount"]),
            created_ids=tuple(data.get("created_ids", ())),
            destroyed_ids=tuple(data.get("destroyed_ids", ())),
            redeemed_ids=tuple(data.get("redeemed_ids", ())),
            timestamp=int(data.get("timestamp", 0)),
            event_id=data.get("event_id"),
        )


@dataclass
class Deletion:
    """Decoded NIP-09 deletion event."""

    deleted_ids: list[str]
    kinds: list[int] = field(default_factory=list)
    event_id: str | None = None
    created_at: int = 0

    def applies_to(self, kind: int) -> bool:
        """True if the deletion targets ``kind`` (no ``k`` tags means any kind)."""
        return not self.kinds or kind in self.kinds


# ──────────────────────────────────────────────────────────────────────────────
# Mint API responses
# ──────────────────────────────────────────────────────────────────────────────


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


class MintQuote(TypedDict):
    """Response from POST /v1/mint/quote/bolt11."""

    quote: str
    request: str  # Lightning invoice
    state: str  # "UNPAID", "PAID", "ISSUED"


class MeltQuote(TypedDict):
    """Response from POST /v1/melt/quote/bolt11."""

    quote: str
    amount: int
    fee_reserve: int
    state: str


class SendResult(TypedDict):
    """Proofs split for a spend: ``send`` covers the amount, ``keep`` is change."""

    keep: list[Proof]
    send: list[Proof]


class MeltResult(TypedDict):
    """Outcome of a melt: returned fee change."""

    paid: bool
    change: list[Proof]
    preimage: str | None
