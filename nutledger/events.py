"""Signing and publishing of locally produced NIP-60 events."""

from __future__ import annotations

import logging

from . import codec
from .relay import EventTransport
from .signer import Signer
from .types import (
    Direction,
    EventKind,
    HistoryEntry,
    NostrEvent,
    NostrFilter,
    Proof,
    TokenEvent,
    UnsignedEvent,
    WalletDescriptor,
)

logger = logging.getLogger(__name__)


class EventManager:
    """Turns wallet mutations into signed events on the transport."""

    def __init__(self, signer: Signer, transport: EventTransport) -> None:
        self.signer = signer
        self.transport = transport

    async def _sign_and_publish(self, template: UnsignedEvent) -> NostrEvent:
        event = await self.signer.sign_event(template)
        await self.transport.publish(event)
        logger.debug("Published kind %d event %s", event["kind"], event["id"])
        return event

    async def publish_wallet_event(self, wallet: WalletDescriptor) -> NostrEvent:
        return await self._sign_and_publish(await codec.encode_wallet(wallet, self.signer))

    async def publish_token_event(
        self,
        mint_url: str,
        proofs: list[Proof],
        *,
        deleted_token_ids: list[str] | None = None,
    ) -> str:
        """Publish a token event holding ``proofs``.

        Args:
            mint_url: Mint the proofs belong to
            proofs: Proofs to store
            deleted_token_ids: Token events this one supersedes (NIP-60 ``del``)

        Returns:
            The new event id
        """
        token = TokenEvent(
            mint=mint_url, proofs=proofs, superseded_ids=list(deleted_token_ids or [])
        )
        event = await self._sign_and_publish(await codec.encode_token(token, self.signer))
        return event["id"]

    async def publish_spending_history(
        self,
        *,
        direction: Direction,
        amount: int,
        created_token_ids: list[str] | None = None,
        destroyed_token_ids: list[str] | None = None,
        redeemed_event_ids: list[str] | None = None,
    ) -> HistoryEntry:
        """Publish a spending history event and return the recorded entry."""
        entry = codec.make_history_entry(
            direction,
            amount,
            created=created_token_ids,
            destroyed=destroyed_token_ids,
            redeemed=redeemed_event_ids,
        )
        event = await self._sign_and_publish(await codec.encode_history(entry, self.signer))
        return HistoryEntry(
            direction=entry.direction,
            amount=entry.amount,
            created_ids=entry.created_ids,
            destroyed_ids=entry.destroyed_ids,
            redeemed_ids=entry.redeemed_ids,
            timestamp=event["created_at"],
            event_id=event["id"],
        )

    async def delete_token_event(self, event_ids: str | list[str]) -> str:
        """Publish a NIP-09 deletion for token events. Returns the deletion id."""
        if isinstance(event_ids, str):
            event_ids = [event_ids]
        event = await self._sign_and_publish(
            codec.encode_deletion(event_ids, EventKind.Token)
        )
        return event["id"]

    def wallet_filters(
        self,
        kind: int,
        *,
        since: int | None = None,
        until: int | None = None,
        limit: int | None = 100,
    ) -> list[NostrFilter]:
        """Filters selecting our own events of one kind. ``limit=None`` sets no cap."""
        nostr_filter = NostrFilter(authors=[self.signer.pubkey], kinds=[kind])
        if limit is not None:
            nostr_filter["limit"] = limit
        if since is not None:
            nostr_filter["since"] = since
        if until is not None:
            nostr_filter["until"] = until
        return [nostr_filter]
