"""In-memory proof ledger: the wallet's authoritative view of held ecash.

Proofs are identified by their ``secret``. Each held proof is bound to the id
of the event that introduced it, so the wallet can roll over or tombstone
events whose proofs get spent without resurrecting stale balances on replay.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator

from .types import KeysetInfo, MintRecord, Proof, UnknownKeyset, UnknownMint, WalletError

logger = logging.getLogger(__name__)

# Origin of proofs that are held locally but not yet published to relays
PENDING_EVENT_ID = "__pending__"


class ProofLedger:
    """Deduplicated, mint-scoped set of held proofs.

    Args:
        on_change: Save hook called with the ledger after every mutation
    """

    def __init__(self, on_change: Callable[[ProofLedger], None] | None = None) -> None:
        self._mints: dict[str, MintRecord] = {}
        self._proofs: dict[str, Proof] = {}  # secret -> proof
        self._origins: dict[str, str] = {}  # secret -> event id
        self._carriers: dict[str, set[str]] = {}  # secret -> other events listing it
        self._tombstones: set[str] = set()
        self._spent: dict[str, tuple[str | None, int]] = {}  # secret -> (origin, spent at)
        self._deferred: dict[str, set[str]] = {}  # mint -> superseded ids not yet deleted
        self._flagged_keysets: set[tuple[str, str]] = set()
        self.privkey: str | None = None
        self.on_change = on_change
        self._batch_depth = 0
        self._dirty = False

    # ───────────────────────── Save hook ─────────────────────────────────

    def _changed(self) -> None:
        if self._batch_depth:
            self._dirty = True
            return
        if self.on_change is not None:
            self.on_change(self)

    @contextmanager
    def batch(self) -> Iterator[ProofLedger]:
        """Group mutations so the save hook runs once when the batch exits."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._dirty = False
                self._changed()

    # ───────────────────────── Mints ─────────────────────────────────

    @property
    def mints(self) -> list[str]:
        return list(self._mints)

    def add_mint(self, url: str) -> MintRecord:
        url = url.rstrip("/")
        record = self._mints.get(url)
        if record is None:
            record = self._mints[url] = MintRecord(url=url)
            self._changed()
        return record

    def mint(self, url: str) -> MintRecord:
        try:
            return self._mints[url.rstrip("/")]
        except KeyError:
            raise UnknownMint(url) from None

    def has_mint(self, url: str) -> bool:
        return url.rstrip("/") in self._mints

    def remove_mint(self, url: str) -> MintRecord:
        """Forget a mint that holds no proofs.

        Raises:
            UnknownMint: If the mint was never registered
            WalletError: If proofs of the mint are still held
        """
        record = self.mint(url)
        held = sum(p["amount"] for p in self._proofs.values() if p["mint"] == record.url)
        if held:
            raise WalletError(f"Mint {record.url} still holds {held} sats")
        del self._mints[record.url]
        self._deferred.pop(record.url, None)
        self._changed()
        return record

    def set_mint_info(self, url: str, info: dict[str, Any]) -> None:
        self.add_mint(url).info = info
        self._changed()

    def set_keysets(self, url: str, keysets: list[KeysetInfo]) -> None:
        record = self.add_mint(url)
        record.keysets = list(keysets)
        self._flag_unknown_keysets(record)
        self._changed()

    def set_keys(self, url: str, keys: dict[str, dict[str, str]]) -> None:
        self.add_mint(url).keys = dict(keys)
        self._changed()

    def _flag_unknown_keysets(self, record: MintRecord) -> None:
        if record.keysets is None:
            return
        known = {ks.id for ks in record.keysets}
        for proof in self._proofs.values():
            if proof["mint"] != record.url or proof["id"] in known:
                continue
            key = (record.url, proof["id"])
            if key not in self._flagged_keysets:
                self._flagged_keysets.add(key)
                logger.warning("%s", UnknownKeyset(record.url, proof["id"]))

    # ───────────────────────── Proofs ─────────────────────────────────

    @property
    def proofs(self) -> list[Proof]:
        return list(self._proofs.values())

    def __len__(self) -> int:
        return len(self._proofs)

    def __contains__(self, secret: object) -> bool:
        return secret in self._proofs

    def add_proofs(self, proofs: Iterable[Proof], event_id: str) -> list[Proof]:
        """Insert proofs not already held, bound to ``event_id``.

        Duplicates (same secret), proofs already spent and proofs from a
        tombstoned event are ignored, which makes replaying an event a no-op.
        A duplicate listed by a different event keeps its origin, but that
        event is remembered as a carrier so deleting the origin spares it.

        Returns:
            The proofs that were actually inserted
        """
        if event_id in self._tombstones:
            logger.debug("Ignoring proofs from deleted event %s", event_id)
            return []

        added: list[Proof] = []
        carried = False
        for proof in proofs:
            secret = proof["secret"]
            if secret in self._spent:
                continue
            if secret in self._proofs:
                if self._origins[secret] != event_id:
                    others = self._carriers.setdefault(secret, set())
                    carried = carried or event_id not in others
                    others.add(event_id)
                continue
            mint_url = proof["mint"].rstrip("/")
            record = self._mints.get(mint_url) or self.add_mint(mint_url)
            stored = Proof(
                id=proof["id"],
                amount=proof["amount"],
                secret=secret,
                C=proof["C"],
                mint=mint_url,
            )
            self._proofs[secret] = stored
            self._origins[secret] = event_id
            added.append(stored)
            if record.keysets is not None and record.keyset(stored["id"]) is None:
                self._flag_unknown_keysets(record)

        if added or carried:
            self._changed()
        return added

    def remove_proofs(self, proofs: Iterable[Proof]) -> list[Proof]:
        """Remove proofs by secret and remember them as spent.

        Removing a proof that is not held is a no-op for the held set.

        Returns:
            The proofs that were actually removed
        """
        removed: list[Proof] = []
        newly_spent = False
        now = int(time.time())
        for proof in proofs:
            secret = proof["secret"]
            if secret not in self._spent:
                self._spent[secret] = (self._origins.get(secret), now)
                newly_spent = True
            self._carriers.pop(secret, None)
            held = self._proofs.pop(secret, None)
            if held is not None:
                self._origins.pop(secret, None)
                removed.append(held)
        if removed or newly_spent:
            self._changed()
        return removed

    def rebind(self, proofs: Iterable[Proof], event_id: str) -> int:
        """Move held proofs to a new origin event (NIP-60 roll-over)."""
        count = 0
        for proof in proofs:
            secret = proof["secret"]
            if secret in self._proofs and self._origins.get(secret) != event_id:
                self._origins[secret] = event_id
                others = self._carriers.get(secret)
                if others is not None:
                    others.discard(event_id)
                count += 1
        if count:
            self._changed()
        return count

    def tombstone(self, event_id: str) -> list[Proof]:
        """Drop proofs still bound to a deleted event and refuse it from now on.

        Proofs that were rebound to another event are unaffected, and proofs
        another live event also lists move to that event. Dropped proofs are
        not marked spent: a later roll-over event may carry them.
        """
        is_new = event_id not in self._tombstones
        self._tombstones.add(event_id)
        for others in self._carriers.values():
            others.discard(event_id)

        dropped: list[Proof] = []
        moved = 0
        for secret, origin in list(self._origins.items()):
            if origin != event_id:
                continue
            others = self._carriers.pop(secret, set())
            if others:
                self._origins[secret] = min(others)
                if len(others) > 1:
                    self._carriers[secret] = others - {self._origins[secret]}
                moved += 1
                continue
            dropped.append(self._proofs.pop(secret))
            del self._origins[secret]

        if dropped or moved or is_new:
            self._changed()
        if moved:
            logger.debug("Kept %d proofs of deleted event %s listed elsewhere", moved, event_id)
        if dropped:
            logger.info(
                "Dropped %d proofs (%d) from deleted event %s",
                len(dropped),
                sum(p["amount"] for p in dropped),
                event_id,
            )
        return dropped

    def is_tombstoned(self, event_id: str) -> bool:
        return event_id in self._tombstones

    def is_spent(self, secret: str) -> bool:
        return secret in self._spent

    def prune_spent(self, before: int) -> int:
        """Forget spent secrets no sync can bring back.

        A secret goes once it was spent before ``before`` (the token
        watermark) and the event it was held under is deleted or was never
        published. Replays of a deleted event are refused by its tombstone.

        Returns:
            How many secrets were forgotten
        """
        stale = [
            secret
            for secret, (origin, spent_at) in self._spent.items()
            if spent_at < before
            and (origin is None or origin == PENDING_EVENT_ID or origin in self._tombstones)
        ]
        for secret in stale:
            del self._spent[secret]
        if stale:
            self._changed()
        return len(stale)

    # ───────────────────────── Deferred deletions ─────────────────────────

    def defer_deletions(self, mint_url: str, event_ids: Iterable[str]) -> None:
        """Remember superseded events whose deletion could not be published."""
        ids = set(event_ids)
        if not ids:
            return
        self._deferred.setdefault(mint_url.rstrip("/"), set()).update(ids)
        self._changed()

    def deferred_deletions(self, mint_url: str) -> set[str]:
        return set(self._deferred.get(mint_url.rstrip("/"), set()))

    @property
    def deferred_mints(self) -> list[str]:
        return [url for url, ids in self._deferred.items() if ids]

    def clear_deferred(self, mint_url: str, event_ids: Iterable[str] | None = None) -> None:
        url = mint_url.rstrip("/")
        if url not in self._deferred:
            return
        if event_ids is None:
            del self._deferred[url]
        else:
            self._deferred[url] -= set(event_ids)
            if not self._deferred[url]:
                del self._deferred[url]
        self._changed()

    def origin_of(self, proof: Proof) -> str | None:
        return self._origins.get(proof["secret"])

    def proofs_from_event(self, event_id: str) -> list[Proof]:
        return [
            self._proofs[secret]
            for secret, origin in self._origins.items()
            if origin == event_id
        ]

    # ───────────────────────── Spendability & balances ─────────────────────────

    def is_spendable(self, proof: Proof) -> bool:
        """True if the proof's keyset is active under its mint.

        Proofs of a mint whose keysets were never loaded count as spendable.
        """
        record = self._mints.get(proof["mint"])
        if record is None or record.keysets is None:
            return True
        keyset = record.keyset(proof["id"])
        return keyset is not None and keyset.active

    def proofs_for_mint(self, mint_url: str) -> list[Proof]:
        """Spendable proofs of one mint.

        Raises:
            UnknownMint: If the mint was never registered
        """
        record = self.mint(mint_url)
        return [
            p
            for p in self._proofs.values()
            if p["mint"] == record.url and self.is_spendable(p)
        ]

    def balances(self) -> dict[str, int]:
        """Spendable balance per registered mint."""
        balances = {url: 0 for url in self._mints}
        for proof in self._proofs.values():
            if self.is_spendable(proof):
                balances[proof["mint"]] = balances.get(proof["mint"], 0) + proof["amount"]
        return balances

    def held_balances(self) -> dict[str, int]:
        """Balance per mint including proofs under inactive or unknown keysets."""
        balances = {url: 0 for url in self._mints}
        for proof in self._proofs.values():
            balances[proof["mint"]] = balances.get(proof["mint"], 0) + proof["amount"]
        return balances

    def total_balance(self) -> int:
        return sum(self.balances().values())

    def unknown_keysets(self) -> set[tuple[str, str]]:
        """(mint, keyset id) pairs of held proofs whose keyset the mint does not list."""
        unknown: set[tuple[str, str]] = set()
        for proof in self._proofs.values():
            record = self._mints.get(proof["mint"])
            if record is None or record.keysets is None:
                continue
            if record.keyset(proof["id"]) is None:
                unknown.add((proof["mint"], proof["id"]))
        return unknown

    # ───────────────────────── Snapshot ─────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "mints": [record.to_dict() for record in self._mints.values()],
            "proofs": [
                {**proof, "eventId": self._origins[secret]}
                for secret, proof in self._proofs.items()
            ],
            "privkey": self.privkey,
            "carriers": {secret: sorted(ids) for secret, ids in self._carriers.items() if ids},
            "tombstones": sorted(self._tombstones),
            "spent": {secret: [origin, at] for secret, (origin, at) in self._spent.items()},
            "deferred": {url: sorted(ids) for url, ids in self._deferred.items()},
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        on_change: Callable[[ProofLedger], None] | None = None,
    ) -> ProofLedger:
        ledger = cls()
        for raw in data.get("mints", []):
            record = MintRecord.from_dict(raw)
            ledger._mints[record.url] = record
        for raw in data.get("proofs", []):
            proof = Proof(
                id=raw["id"],
                amount=int(raw["amount"]),
                secret=raw["secret"],
                C=raw["C"],
                mint=raw["mint"],
            )
            ledger._proofs[proof["secret"]] = proof
            ledger._origins[proof["secret"]] = raw.get("eventId", PENDING_EVENT_ID)
            ledger._mints.setdefault(proof["mint"], MintRecord(url=proof["mint"]))
        ledger.privkey = data.get("privkey")
        ledger._tombstones = set(data.get("tombstones", []))
        ledger._carriers = {
            secret: set(ids)
            for secret, ids in data.get("carriers", {}).items()
            if secret in ledger._proofs
        }
        spent = data.get("spent", {})
        if isinstance(spent, list):
            # Older snapshots kept bare secrets
            spent = {secret: [None, 0] for secret in spent}
        ledger._spent = {secret: (origin, int(at)) for secret, (origin, at) in spent.items()}
        ledger._deferred = {url: set(ids) for url, ids in data.get("deferred", {}).items()}
        ledger.on_change = on_change
        return ledger
