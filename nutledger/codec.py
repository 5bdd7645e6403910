"""Encoding and decoding of NIP-60 wallet, token and history events.

Every payload leaves this module as a typed object (``WalletDescriptor``,
``TokenEvent``, ``HistoryEntry``, ``Deletion``) or as an exception:

- ``UnsupportedEncryption``: the signer cannot do NIP-44, fatal for the caller
- ``MalformedPayload``: this one event is unusable and should be skipped
"""

from __future__ import annotations

import json
import time
from typing import Any

from .crypto import NIP44Error
from .signer import Signer
from .types import (
    Deletion,
    Direction,
    EventKind,
    HistoryEntry,
    MalformedPayload,
    NostrEvent,
    Proof,
    TokenEvent,
    UnsignedEvent,
    UnsupportedEncryption,
    WalletDescriptor,
)


def normalize_mint_url(url: str) -> str:
    return url.strip().rstrip("/")


def _require_nip44(signer: Signer | None) -> Signer:
    if signer is None or not signer.supports_nip44:
        raise UnsupportedEncryption("NIP-44 encryption not supported by your signer")
    return signer


async def _decrypt_json(event: NostrEvent, signer: Signer | None, kind: int) -> Any:
    event_id = event.get("id")
    if event.get("kind") != kind:
        raise MalformedPayload(
            f"Expected kind {kind}, got {event.get('kind')}", event_id=event_id
        )
    signer = _require_nip44(signer)
    try:
        plaintext = await signer.nip44_decrypt(signer.pubkey, event["content"])
    except (NIP44Error, ValueError, KeyError) as e:
        raise MalformedPayload(f"Could not decrypt: {e}", event_id=event_id) from e
    try:
        return json.loads(plaintext)
    except ValueError as e:
        raise MalformedPayload(f"Invalid JSON: {e}", event_id=event_id) from e


async def _encrypt_json(data: Any, signer: Signer | None) -> str:
    signer = _require_nip44(signer)
    return await signer.nip44_encrypt(signer.pubkey, json.dumps(data))


def _template(
    kind: int, content: str, tags: list[list[str]], created_at: int | None
) -> UnsignedEvent:
    return UnsignedEvent(
        kind=kind,
        content=content,
        tags=tags,
        created_at=int(time.time()) if created_at is None else created_at,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Wallet (kind 17375)
# ──────────────────────────────────────────────────────────────────────────────


async def decode_wallet(event: NostrEvent, signer: Signer | None) -> WalletDescriptor:
    data = await _decrypt_json(event, signer, EventKind.Wallet)

    mints: list[str] = []
    privkey: str | None = None
    if isinstance(data, list):
        for item in data:
            if not isinstance(item, list) or len(item) < 2:
                continue
            if item[0] == "mint":
                mints.append(str(item[1]))
            elif item[0] == "privkey":
                privkey = str(item[1])
    elif isinstance(data, dict):
        # Older clients stored {"privkey": ..., "mints": [...]}
        raw_mints = data.get("mints") or []
        if not isinstance(raw_mints, list):
            raise MalformedPayload("Wallet mints must be a list", event_id=event["id"])
        mints = [str(m) for m in raw_mints]
        privkey = data.get("privkey")
    else:
        raise MalformedPayload("Wallet payload must be a list", event_id=event["id"])

    # Public mint tags are allowed alongside the encrypted ones
    for tag in event.get("tags", []):
        if len(tag) >= 2 and tag[0] == "mint":
            mints.append(tag[1])

    return WalletDescriptor(
        mints=list(dict.fromkeys(normalize_mint_url(m) for m in mints if m)),
        privkey=privkey,
        event_id=event["id"],
        created_at=event["created_at"],
    )


async def encode_wallet(
    wallet: WalletDescriptor, signer: Signer | None, *, created_at: int | None = None
) -> UnsignedEvent:
    content: list[list[str]] = []
    if wallet.privkey:
        content.append(["privkey", wallet.privkey])
    content.extend(["mint", url] for url in wallet.mints)
    return _template(
        EventKind.Wallet,
        await _encrypt_json(content, signer),
        [["mint", url] for url in wallet.mints],
        created_at,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Token (kind 7375)
# ──────────────────────────────────────────────────────────────────────────────


def _parse_proof(raw: Any, mint_url: str, event_id: str) -> Proof:
    if not isinstance(raw, dict):
        raise MalformedPayload("Proof must be an object", event_id=event_id)
    try:
        keyset_id, amount, secret, C = raw["id"], raw["amount"], raw["secret"], raw["C"]
    except KeyError as e:
        raise MalformedPayload(f"Proof missing field {e}", event_id=event_id) from e
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise MalformedPayload(f"Invalid proof amount: {amount!r}", event_id=event_id)
    if not isinstance(secret, str) or not secret:
        raise MalformedPayload("Invalid proof secret", event_id=event_id)
    return Proof(id=str(keyset_id), amount=amount, secret=secret, C=str(C), mint=mint_url)


async def decode_token(event: NostrEvent, signer: Signer | None) -> TokenEvent:
    data = await _decrypt_json(event, signer, EventKind.Token)
    event_id = event["id"]

    if not isinstance(data, dict):
        raise MalformedPayload("Token payload must be an object", event_id=event_id)
    mint_url = data.get("mint")
    if not isinstance(mint_url, str) or not mint_url:
        raise MalformedPayload("No mint URL found in token event", event_id=event_id)
    mint_url = normalize_mint_url(mint_url)

    raw_proofs = data.get("proofs", [])
    if not isinstance(raw_proofs, list):
        raise MalformedPayload("Token proofs must be a list", event_id=event_id)

    superseded = data.get("del") or []
    if not isinstance(superseded, list):
        raise MalformedPayload("Token del must be a list", event_id=event_id)

    return TokenEvent(
        mint=mint_url,
        proofs=[_parse_proof(p, mint_url, event_id) for p in raw_proofs],
        superseded_ids=[str(i) for i in superseded],
        event_id=event_id,
        created_at=event["created_at"],
    )


async def encode_token(
    token: TokenEvent, signer: Signer | None, *, created_at: int | None = None
) -> UnsignedEvent:
    content: dict[str, Any] = {
        "mint": token.mint,
        "proofs": [
            {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
            for p in token.proofs
        ],
    }
    if token.superseded_ids:
        content["del"] = list(token.superseded_ids)
    return _template(EventKind.Token, await _encrypt_json(content, signer), [], created_at)


# ──────────────────────────────────────────────────────────────────────────────
# History (kind 7376)
# ──────────────────────────────────────────────────────────────────────────────


async def decode_history(event: NostrEvent, signer: Signer | None) -> HistoryEntry:
    data = await _decrypt_json(event, signer, EventKind.History)
    event_id = event["id"]
    if not isinstance(data, list):
        raise MalformedPayload("History payload must be a list", event_id=event_id)

    direction: str | None = None
    amount: int | None = None
    created: list[str] = []
    destroyed: list[str] = []
    for item in data:
        if not isinstance(item, list) or len(item) < 2:
            continue
        key, value = item[0], item[1]
        marker = item[3] if len(item) >= 4 else None
        if key == "direction":
            direction = value
        elif key == "amount":
            try:
                amount = int(value)
            except (TypeError, ValueError) as e:
                raise MalformedPayload(
                    f"Invalid history amount: {value!r}", event_id=event_id
                ) from e
        elif key == "e" and marker == "created":
            created.append(value)
        elif key == "e" and marker == "destroyed":
            destroyed.append(value)

    if direction not in ("in", "out"):
        raise MalformedPayload(f"Invalid direction: {direction!r}", event_id=event_id)
    if amount is None or amount < 0:
        raise MalformedPayload("History entry without amount", event_id=event_id)

    # redeemed markers live in plaintext tags so relays can index them
    redeemed = [
        tag[1]
        for tag in event.get("tags", [])
        if len(tag) >= 4 and tag[0] == "e" and tag[3] == "redeemed"
    ]

    return HistoryEntry(
        direction=direction,  # type: ignore[arg-type]
        amount=amount,
        created_ids=tuple(created),
        destroyed_ids=tuple(destroyed),
        redeemed_ids=tuple(redeemed),
        timestamp=event["created_at"],
        event_id=event_id,
    )


async def encode_history(
    entry: HistoryEntry, signer: Signer | None, *, created_at: int | None = None
) -> UnsignedEvent:
    content: list[list[str]] = [
        ["direction", entry.direction],
        ["amount", str(entry.amount)],
    ]
    content.extend(["e", i, "", "created"] for i in entry.created_ids)
    content.extend(["e", i, "", "destroyed"] for i in entry.destroyed_ids)
    tags = [["e", i, "", "redeemed"] for i in entry.redeemed_ids]
    return _template(
        EventKind.History,
        await _encrypt_json(content, signer),
        tags,
        entry.timestamp or created_at,
    )


def make_history_entry(
    direction: Direction,
    amount: int,
    *,
    created: list[str] | None = None,
    destroyed: list[str] | None = None,
    redeemed: list[str] | None = None,
    timestamp: int | None = None,
) -> HistoryEntry:
    return HistoryEntry(
        direction=direction,
        amount=amount,
        created_ids=tuple(created or ()),
        destroyed_ids=tuple(destroyed or ()),
        redeemed_ids=tuple(redeemed or ()),
        timestamp=int(time.time()) if timestamp is None else timestamp,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Deletion (kind 5, NIP-09)
# ──────────────────────────────────────────────────────────────────────────────


def decode_deletion(event: NostrEvent) -> Deletion:
    if event.get("kind") != EventKind.Deletion:
        raise MalformedPayload("Not a deletion event", event_id=event.get("id"))
    deleted: list[str] = []
    kinds: list[int] = []
    for tag in event.get("tags", []):
        if len(tag) < 2:
            continue
        if tag[0] == "e":
            deleted.append(tag[1])
        elif tag[0] == "k":
            try:
                kinds.append(int(tag[1]))
            except ValueError:
                continue
    return Deletion(
        deleted_ids=deleted,
        kinds=kinds,
        event_id=event["id"],
        created_at=event["created_at"],
    )


def encode_deletion(
    event_ids: list[str], kind: int = EventKind.Token, *, created_at: int | None = None
) -> UnsignedEvent:
    tags = [["e", i] for i in event_ids]
    tags.append(["k", str(kind)])
    return _template(EventKind.Deletion, "Deleted token", tags, created_at)
