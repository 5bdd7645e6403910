"""Incremental merge of remote wallet events into the local wallet state.

Every ledger operation applied here is idempotent and order independent
(add by secret, remove by secret, tombstone by event id), so events can be
applied in whatever order relays deliver them. Per-kind watermarks keep
refreshes incremental; the ``since`` bound is inclusive and events sitting on
the watermark are recognised by id, so nothing at the boundary is lost.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from . import codec
from .crypto import verify_event
from .events import EventManager
from .ledger import PENDING_EVENT_ID
from .relay import EventTransport
from .signer import Signer
from .state import WalletState
from .types import EventKind, MalformedPayload, NostrEvent, TokenEvent

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 100
MAX_PAGES = 20


@dataclass
class SyncReport:
    """What one reconciliation pass did."""

    fetched: dict[int, int] = field(default_factory=dict)
    skipped: list[tuple[str, str]] = field(default_factory=list)  # (event id, reason)
    proofs_added: int = 0
    proofs_dropped: int = 0
    history_added: int = 0
    wallet_updated: bool = False

    def skip(self, event_id: str, reason: str) -> None:
        self.skipped.append((event_id, reason))
        logger.warning("Skipping event %s: %s", event_id, reason)


class Reconciler:
    """Pulls wallet, token, deletion and history events into ``WalletState``."""

    def __init__(
        self,
        state: WalletState,
        signer: Signer,
        transport: EventTransport,
        *,
        limit: int = DEFAULT_QUERY_LIMIT,
        verify_signatures: bool = True,
    ) -> None:
        self.state = state
        self.signer = signer
        self.transport = transport
        self.limit = limit
        self.verify_signatures = verify_signatures
        self._events = EventManager(signer, transport)
        self._lock = asyncio.Lock()

    # ───────────────────────── Fetching ─────────────────────────────────

    async def _fetch(self, kind: int, report: SyncReport) -> list[NostrEvent]:
        """Fetch our events of one kind newer than or on the watermark.

        Relays return at most ``limit`` events, newest first. After a full
        page the oldest second it reached is fetched again without a limit,
        since more events than fit in a page may share it, and paging goes
        on strictly below that second.
        """
        since = self.state.watermarks.get(kind)
        events: dict[str, NostrEvent] = {}
        until: int | None = None
        for _ in range(MAX_PAGES):
            page = await self.transport.query(
                self._events.wallet_filters(kind, since=since, until=until, limit=self.limit)
            )
            for event in page:
                events.setdefault(event["id"], event)
            if len(page) < self.limit:
                break
            oldest = min(e["created_at"] for e in page)
            for event in await self.transport.query(
                self._events.wallet_filters(kind, since=oldest, until=oldest, limit=None)
            ):
                events.setdefault(event["id"], event)
            if since is not None and oldest <= since:
                break
            until = oldest - 1

        accepted: list[NostrEvent] = []
        for event in events.values():
            if event.get("kind") != kind or event.get("pubkey") != self.signer.pubkey:
                continue
            if self.state.watermarks.seen(kind, event["id"], event["created_at"]):
                continue
            if self.verify_signatures and not verify_event(event):
                report.skip(event["id"], "invalid id or signature")
                continue
            accepted.append(event)
        report.fetched[kind] = len(accepted)
        return accepted

    # ───────────────────────── Sync ─────────────────────────────────

    async def sync(self) -> SyncReport:
        """Fetch everything new since the last sync and merge it.

        Raises:
            UnsupportedEncryption: The signer cannot decrypt wallet events.
                Watermarks are not advanced so the next sync retries.
        """
        async with self._lock:
            report = SyncReport()
            fetched = {
                kind: await self._fetch(kind, report) for kind in WalletState.SYNCED_KINDS
            }
            ledger = self.state.ledger
            balance_before = sum(ledger.held_balances().values())

            with ledger.batch():
                await self._apply_wallet(fetched[EventKind.Wallet], report)
                await self._apply_tokens(fetched[EventKind.Token], report)
                self._apply_deletions(fetched[EventKind.Deletion], report)
            await self._apply_history(fetched[EventKind.History], report)

            for kind, events in fetched.items():
                self.state.watermarks.advance(
                    kind, ((e["id"], e["created_at"]) for e in events)
                )
            token_mark = self.state.watermarks.get(EventKind.Token)
            if token_mark is not None:
                ledger.prune_spent(before=token_mark)
            self.state.save()

            logger.info(
                "Synced %d events (%d skipped), held balance %d -> %d",
                sum(report.fetched.values()),
                len(report.skipped),
                balance_before,
                sum(ledger.held_balances().values()),
            )
            return report

    async def _apply_wallet(self, events: list[NostrEvent], report: SyncReport) -> None:
        # Replaceable: only the newest version counts, lowest id breaks ties
        current = self.state.wallet
        for event in sorted(events, key=lambda e: (-e["created_at"], e["id"])):
            if current is not None and (
                event["created_at"] < current.created_at
                or (
                    event["created_at"] == current.created_at
                    and current.event_id is not None
                    and event["id"] >= current.event_id
                )
            ):
                return
            try:
                wallet = await codec.decode_wallet(event, self.signer)
            except MalformedPayload as e:
                report.skip(event["id"], str(e))
                continue
            self.state.set_wallet(wallet)
            report.wallet_updated = True
            return

    async def _apply_tokens(self, events: list[NostrEvent], report: SyncReport) -> None:
        tokens: list[tuple[str, TokenEvent]] = []
        for event in events:
            try:
                tokens.append((event["id"], await codec.decode_token(event, self.signer)))
            except MalformedPayload as e:
                report.skip(event["id"], str(e))

        ledger = self.state.ledger
        for event_id, token in sorted(tokens, key=lambda t: (t[1].created_at, t[0])):
            if ledger.is_tombstoned(event_id):
                continue
            report.proofs_added += len(ledger.add_proofs(token.proofs, event_id))

            # Proofs carried over from the events this one supersedes now belong to it
            previous = set(token.superseded_ids) | {PENDING_EVENT_ID}
            ledger.rebind(
                [p for p in token.proofs if ledger.origin_of(p) in previous],
                event_id,
            )
            for old_id in token.superseded_ids:
                report.proofs_dropped += len(ledger.tombstone(old_id))

    def _apply_deletions(self, events: list[NostrEvent], report: SyncReport) -> None:
        ledger = self.state.ledger
        for event in events:
            try:
                deletion = codec.decode_deletion(event)
            except MalformedPayload as e:
                report.skip(event["id"], str(e))
                continue
            if not deletion.applies_to(EventKind.Token):
                continue
            for event_id in deletion.deleted_ids:
                report.proofs_dropped += len(ledger.tombstone(event_id))

    async def _apply_history(self, events: list[NostrEvent], report: SyncReport) -> None:
        for event in events:
            try:
                entry = await codec.decode_history(event, self.signer)
            except MalformedPayload as e:
                report.skip(event["id"], str(e))
                continue
            if self.state.history.add(entry):
                report.history_added += 1
