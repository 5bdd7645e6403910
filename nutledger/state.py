"""Per-identity wallet state: ledger, spending history and sync watermarks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from .ledger import ProofLedger
from .storage import Storage
from .types import EventKind, HistoryEntry, WalletDescriptor


class HistoryLog:
    """Append-only spending history, deduplicated by event id."""

    def __init__(self, entries: Iterable[HistoryEntry] = ()) -> None:
        self._entries: list[HistoryEntry] = []
        self._ids: set[str] = set()
        for entry in entries:
            self.add(entry)

    def add(self, entry: HistoryEntry) -> bool:
        """Record an entry. Returns False if its event id was already recorded."""
        if entry.event_id is not None:
            if entry.event_id in self._ids:
                return False
            self._ids.add(entry.event_id)
        self._entries.append(entry)
        return True

    def entries(self) -> list[HistoryEntry]:
        """Entries newest first, whatever order they were received in."""
        return sorted(self._entries, key=lambda e: e.timestamp, reverse=True)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Watermarks:
    """Highest ``created_at`` seen per event kind.

    ``edge_ids`` holds the ids of events sitting exactly on the watermark, so
    an inclusive ``since`` query can skip them instead of losing or re-applying
    events that share the boundary second.
    """

    since: dict[int, int] = field(default_factory=dict)
    edge_ids: dict[int, set[str]] = field(default_factory=dict)

    def get(self, kind: int) -> int | None:
        return self.since.get(kind)

    def seen(self, kind: int, event_id: str, created_at: int) -> bool:
        return created_at == self.since.get(kind) and event_id in self.edge_ids.get(
            kind, set()
        )

    def advance(self, kind: int, events: Iterable[tuple[str, int]]) -> None:
        current = self.since.get(kind)
        edge = set(self.edge_ids.get(kind, set()))
        for event_id, created_at in events:
            if current is None or created_at > current:
                current = created_at
                edge = {event_id}
            elif created_at == current:
                edge.add(event_id)
        if current is not None:
            self.since[kind] = current
            self.edge_ids[kind] = edge

    def reset(self) -> None:
        self.since.clear()
        self.edge_ids.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "since": {str(k): v for k, v in self.since.items()},
            "edge_ids": {str(k): sorted(v) for k, v in self.edge_ids.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Watermarks:
        return cls(
            since={int(k): int(v) for k, v in data.get("since", {}).items()},
            edge_ids={int(k): set(v) for k, v in data.get("edge_ids", {}).items()},
        )


class WalletState:
    """Everything the wallet knows about one identity, saved on every mutation."""

    SYNCED_KINDS = (EventKind.Wallet, EventKind.Token, EventKind.History, EventKind.Deletion)

    def __init__(
        self,
        pubkey: str,
        *,
        storage: Storage | None = None,
        ledger: ProofLedger | None = None,
        history: HistoryLog | None = None,
        watermarks: Watermarks | None = None,
        wallet: WalletDescriptor | None = None,
        active_mint: str | None = None,
    ) -> None:
        self.pubkey = pubkey
        self.storage = storage
        self.ledger = ledger or ProofLedger()
        self.ledger.on_change = lambda _ledger: self.save()
        self.history = history or HistoryLog()
        self.watermarks = watermarks or Watermarks()
        self.wallet = wallet
        self.active_mint = active_mint

    @classmethod
    def load(cls, pubkey: str, storage: Storage) -> WalletState:
        """Restore the state saved for ``pubkey``, or start empty."""
        data = storage.load(pubkey)
        if not data:
            return cls(pubkey, storage=storage)
        wallet_data = data.get("wallet")
        return cls(
            pubkey,
            storage=storage,
            ledger=ProofLedger.from_dict(data.get("ledger", {})),
            history=HistoryLog(HistoryEntry.from_dict(e) for e in data.get("history", [])),
            watermarks=Watermarks.from_dict(data.get("watermarks", {})),
            wallet=None
            if wallet_data is None
            else WalletDescriptor(
                mints=list(wallet_data.get("mints", [])),
                privkey=wallet_data.get("privkey"),
                event_id=wallet_data.get("event_id"),
                created_at=int(wallet_data.get("created_at", 0)),
            ),
            active_mint=data.get("active_mint"),
        )

    def record_history(self, entry: HistoryEntry) -> bool:
        added = self.history.add(entry)
        if added:
            self.save()
        return added

    def set_wallet(self, wallet: WalletDescriptor) -> None:
        """Adopt a newer wallet descriptor.

        Mints the previous descriptor listed but this one does not are
        forgotten, unless proofs of them are still held.
        """
        dropped = (
            {url.rstrip("/") for url in self.wallet.mints} if self.wallet is not None else set()
        ) - {url.rstrip("/") for url in wallet.mints}
        self.wallet = wallet
        with self.ledger.batch():
            held = self.ledger.held_balances()
            for url in sorted(dropped):
                if self.ledger.has_mint(url) and not held.get(url):
                    self.ledger.remove_mint(url)
            if self.active_mint in dropped:
                self.active_mint = None
            for url in wallet.mints:
                self.ledger.add_mint(url)
            if wallet.privkey:
                self.ledger.privkey = wallet.privkey
        self.save()

    def set_active_mint(self, url: str | None) -> None:
        self.active_mint = url.rstrip("/") if url else None
        self.save()

    def to_dict(self) -> dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "active_mint": self.active_mint,
            "ledger": self.ledger.to_dict(),
            "history": [e.to_dict() for e in self.history.entries()],
            "watermarks": self.watermarks.to_dict(),
            "wallet": None
            if self.wallet is None
            else {
                "mints": self.wallet.mints,
                "privkey": self.wallet.privkey,
                "event_id": self.wallet.event_id,
                "created_at": self.wallet.created_at,
            },
        }

    def save(self) -> None:
        if self.storage is not None:
            self.storage.save(self.pubkey, self.to_dict())
