"""Nostr relay websocket client and the event transport used by the wallet."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any
from uuid import uuid4

import websockets

from .types import NostrEvent, NostrFilter, RelayError

logger = logging.getLogger(__name__)

RELAYS_ENV_VAR = "NOSTR_RELAYS"

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.primal.net",
]


# ──────────────────────────────────────────────────────────────────────────────
# Transport port
# ──────────────────────────────────────────────────────────────────────────────


class EventTransport:
    """At-least-once, possibly reordered pub/sub feed of Nostr events."""

    async def query(self, filters: list[NostrFilter]) -> list[NostrEvent]:
        raise NotImplementedError

    async def publish(self, event: NostrEvent) -> bool:
        """Publish an event. Returns True on ack, raises RelayError otherwise."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ──────────────────────────────────────────────────────────────────────────────
# Relay client
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Minimal Nostr relay client: one connection, one request at a time."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
            timeout: Seconds to wait for EOSE / OK before giving up
        """
        self.url = url
        self.timeout = timeout
        self.ws: Any = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the relay."""
        if self.ws is None or self.ws.close_code is not None:
            try:
                async with asyncio.timeout(self.timeout):
                    self.ws = await websockets.connect(
                        self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                    )
            except TimeoutError as e:
                raise RelayError(f"Connection timeout: {self.url}") from e
            except (OSError, websockets.exceptions.WebSocketException) as e:
                raise RelayError(f"Connection failed: {self.url}: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self.ws is not None and self.ws.close_code is None:
            await self.ws.close()

    async def _send(self, message: list[Any]) -> None:
        if self.ws is None or self.ws.close_code is not None:
            raise RelayError("Not connected to relay")
        await self.ws.send(json.dumps(message))

    async def _recv(self) -> list[Any]:
        if self.ws is None or self.ws.close_code is not None:
            raise RelayError("Not connected to relay")
        return json.loads(await self.ws.recv())

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent) -> bool:
        """Publish an event to the relay.

        Returns True if accepted, False if rejected or timed out.
        """
        async with self._lock:
            await self.connect()
            await self._send(["EVENT", event])
            try:
                async with asyncio.timeout(self.timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "OK" and msg[1] == event["id"]:
                            if not msg[2] and len(msg) > 3:
                                logger.warning("%s rejected event: %s", self.url, msg[3])
                            return bool(msg[2])
                        if msg[0] == "NOTICE":
                            logger.info("Relay notice from %s: %s", self.url, msg[1])
            except TimeoutError:
                logger.warning("Timeout waiting for OK response from %s", self.url)
                return False

    # ───────────────────────── Fetching Events ─────────────────────────────────

    async def fetch_events(self, filters: list[NostrFilter]) -> list[NostrEvent]:
        """Fetch stored events matching filters, until EOSE or timeout."""
        async with self._lock:
            await self.connect()
            sub_id = str(uuid4())
            events: list[NostrEvent] = []
            await self._send(["REQ", sub_id, *filters])
            try:
                async with asyncio.timeout(self.timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "EVENT" and msg[1] == sub_id:
                            events.append(msg[2])
                        elif msg[0] == "EOSE" and msg[1] == sub_id:
                            break
                        elif msg[0] == "CLOSED" and msg[1] == sub_id:
                            logger.warning("%s closed subscription: %s", self.url, msg[2:])
                            break
            except TimeoutError:
                logger.debug("Timeout waiting for EOSE from %s", self.url)
            finally:
                if self.ws is not None and self.ws.close_code is None:
                    await self._send(["CLOSE", sub_id])
            return events


class RelayPool(EventTransport):
    """Event transport over several relays.

    Queries merge the results of every reachable relay and drop duplicate
    event ids; publishing succeeds when at least one relay accepts.
    """

    def __init__(self, urls: list[str], *, timeout: float = 5.0) -> None:
        if not urls:
            raise RelayError("No relays configured")
        self.relays = [NostrRelay(url, timeout=timeout) for url in urls]

    async def query(self, filters: list[NostrFilter]) -> list[NostrEvent]:
        results = await asyncio.gather(
            *(relay.fetch_events(filters) for relay in self.relays),
            return_exceptions=True,
        )
        seen: dict[str, NostrEvent] = {}
        failures = 0
        for relay, result in zip(self.relays, results):
            if isinstance(result, BaseException):
                failures += 1
                logger.warning("Query failed on %s: %s", relay.url, result)
                continue
            for event in result:
                seen.setdefault(event["id"], event)
        if failures == len(self.relays):
            raise RelayError("All relays failed to answer the query")
        return list(seen.values())

    async def publish(self, event: NostrEvent) -> bool:
        results = await asyncio.gather(
            *(relay.publish_event(event) for relay in self.relays),
            return_exceptions=True,
        )
        accepted = 0
        for relay, result in zip(self.relays, results):
            if isinstance(result, BaseException):
                logger.warning("Publish failed on %s: %s", relay.url, result)
            elif result:
                accepted += 1
        if not accepted:
            raise RelayError(f"No relay accepted event {event['id']}")
        logger.debug("Event %s accepted by %d relays", event["id"], accepted)
        return True

    async def close(self) -> None:
        for relay in self.relays:
            await relay.disconnect()


def get_relays_from_env() -> list[str]:
    """Relay URLs from the NOSTR_RELAYS environment variable (comma separated)."""
    value = os.getenv(RELAYS_ENV_VAR, "")
    relays = [url.strip() for url in value.split(",")]
    return list(dict.fromkeys(url for url in relays if url))
